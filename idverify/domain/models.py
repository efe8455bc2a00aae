"""
Domain models - Identity registration records and value objects.

This module defines the records the registration pipeline reads and
writes, plus the small value objects exchanged with the ports. All
types are plain dataclasses and str-mixin enums so they serialize
without any framework support.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID


class Role(str, Enum):
    """Account roles (patient and staff tiers)."""

    PATIENT = "patient"
    RECEPTIONIST = "receptionist"
    NURSE = "nurse"
    DOCTOR = "doctor"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class RegistrationStep(str, Enum):
    """
    Registration progress for a draft identity.

    - STEP1: draft created, document read (or routed), OTP issued
    - STEP2: OTP confirmed, waiting on the remaining gates
    - STEP3: every gate satisfied, ready for promotion
    - COMPLETED: promoted to a verified account
    """

    STEP1 = "step1"
    STEP2 = "step2"
    STEP3 = "step3"
    COMPLETED = "completed"


class FaceEnrollmentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class IdVerificationStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    MANUAL_REVIEW = "Manual Review"


class ExtractionStatus(Enum):
    """Outcome of a document OCR call that did not raise."""

    SUCCEEDED = "succeeded"
    MANUAL_REVIEW = "manual_review"


@dataclass(frozen=True)
class Credentials:
    """
    Login credentials submitted at registration.

    The login identifier may be a username or an email address. When no
    separate email is given, the login is used as the delivery address.
    """

    login: str
    password: str
    full_name: str = ""
    email: str | None = None


@dataclass(frozen=True)
class DocumentImage:
    """Opaque ID-document image with its upload metadata."""

    data: bytes
    filename: str = "id-document.jpg"
    content_type: str = "image/jpeg"


@dataclass(frozen=True)
class ExtractedFields:
    full_name: str | None = None
    birth_date: date | None = None
    document_number: str | None = None

    @property
    def is_usable(self) -> bool:
        """A document can be approved only when it yields a name or a number."""
        return bool(self.full_name or self.document_number)


@dataclass(frozen=True)
class ExtractionOutcome:
    status: ExtractionStatus
    fields: ExtractedFields | None = None
    detail: str | None = None


@dataclass(frozen=True)
class EnrollmentResult:
    """Successful face enrollment: biometric reference plus raw payload."""

    reference: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class Identity:
    """An account record, draft or verified."""

    id: UUID
    login: str
    email: str
    full_name: str
    password_hash: str
    role: Role = Role.PATIENT
    is_draft: bool = True
    is_verified: bool = False
    otp_verified: bool = False
    registration_step: RegistrationStep = RegistrationStep.STEP1
    face_enrollment_status: FaceEnrollmentStatus = FaceEnrollmentStatus.PENDING
    face_enrollment_error: str | None = None
    face_enrollment_ref: str | None = None
    registration_started: datetime | None = None
    registration_completed: datetime | None = None
    id_verification_id: UUID | None = None


@dataclass
class IdVerification:
    """ID-document verification record (one per identity)."""

    id: UUID
    identity_id: UUID
    image_ref: str
    status: IdVerificationStatus = IdVerificationStatus.PENDING
    full_name: str | None = None
    birth_date: date | None = None
    document_number: str | None = None
    review_note: str | None = None


@dataclass
class OtpRecord:
    id: UUID
    identity_id: UUID
    code: str
    email_sent: bool = False
    sent_at: datetime | None = None
    delivery_failed: bool = False
    created_at: datetime | None = None


@dataclass(frozen=True)
class OtpConfirmation:
    identity_id: UUID
    ready_for_promotion: bool
    message: str = "OTP verified"


@dataclass(frozen=True)
class RegistrationStatus:
    """Read-only projection of a registration's progress."""

    identity_id: UUID
    face_enrollment_status: FaceEnrollmentStatus
    is_verified: bool
    otp_email_sent: bool
    registration_step: RegistrationStep
    id_verification_status: IdVerificationStatus | None = None
    face_enrollment_error: str | None = None


@dataclass(frozen=True)
class IdentityStatistics:
    total: int
    by_role: dict[str, int]
