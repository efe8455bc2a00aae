"""
Port interfaces - Protocol definitions for infrastructure abstraction.

This module defines the interfaces (ports) that the domain requires
from infrastructure. Adapters implement these protocols.
"""

from datetime import timedelta
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from .models import (
    DocumentImage,
    EnrollmentResult,
    ExtractionOutcome,
    Identity,
    IdVerification,
    OtpRecord,
    Role,
)
from .tasks import BackgroundTask, TaskKind


class PromotionResult(Enum):
    """
    Result of a promotion attempt.

    Used by promote() to indicate success or the specific refusal.
    """

    PROMOTED = "promoted"
    ALREADY_VERIFIED = "already_verified"
    GATES_UNSATISFIED = "gates_unsatisfied"
    LOGIN_TAKEN = "login_taken"
    NOT_FOUND = "not_found"


class IdentityRepository(Protocol):
    """Port interface for identity and ID-verification persistence."""

    def create_draft(self, identity: Identity, verification: IdVerification) -> None:
        """
        Persist a draft identity together with its ID-verification record.

        Drafts never take part in login uniqueness, so this never fails on
        a colliding login.
        """
        ...

    def get(self, identity_id: UUID) -> Identity | None: ...

    def get_verification(self, identity_id: UUID) -> IdVerification | None: ...

    def find_live_by_login(self, login: str) -> Identity | None:
        """Find the non-draft identity using this login, if any."""
        ...

    def update_fields(self, identity_id: UUID, **fields: Any) -> bool:
        """
        Update only the named columns of a draft identity.

        A verified identity is terminal and is never touched.

        Returns:
            True if a row was updated, False if no draft has that id
        """
        ...

    def update_verification(self, identity_id: UUID, **fields: Any) -> bool:
        """Update only the named columns of the identity's ID-verification record."""
        ...

    def mark_ready_if_gates_satisfied(self, identity_id: UUID) -> bool:
        """
        Advance a draft to STEP3 when every gate holds.

        Gates: OTP confirmed, face enrollment completed, ID verification
        approved. Implemented as one conditional update so it is safe to
        call from whichever flow satisfies the last gate.

        Returns:
            True if the identity is now ready for promotion
        """
        ...

    def promote(self, identity_id: UUID) -> PromotionResult:
        """
        Promote a draft identity to a verified account.

        Must lock the identity, re-check the gates and login uniqueness
        among non-draft identities, and write is_draft/is_verified/
        registration_completed in a single transaction.
        """
        ...

    def count_live(self, role: Role | None = None) -> int:
        """Count non-draft identities, optionally filtered by role."""
        ...

    def delete_stale_drafts(self, older_than: timedelta) -> int:
        """Delete drafts whose registration started before now - older_than."""
        ...


class OtpRepository(Protocol):
    """Port interface for one-time passcode persistence."""

    def create(self, record: OtpRecord) -> None: ...

    def consume(self, identity_id: UUID, code: str) -> bool:
        """
        Accept the OTP matching (identity_id, code).

        On a match every OTP of the identity is deleted, so codes superseded
        by a resend cannot be confirmed later.

        Returns:
            True if a record matched, False otherwise
        """
        ...

    def mark_sent(self, otp_id: UUID) -> None: ...

    def mark_delivery_failed(self, otp_id: UUID) -> None:
        """Record an exhausted delivery: email_sent stays False for good."""
        ...

    def list_for_identity(self, identity_id: UUID) -> list[OtpRecord]: ...


class EmailSender(Protocol):
    """Port interface for email delivery."""

    def send_otp_code(self, email: str, code: str) -> None:
        """
        Send a one-time passcode to an email address.

        Args:
            email: Recipient email address
            code: 6-digit OTP code
        """
        ...


class VerificationGateway(Protocol):
    """Port interface for the remote OCR and face-enrollment services."""

    def extract_document_fields(self, document: DocumentImage) -> ExtractionOutcome:
        """
        Extract identity fields from an ID-document image.

        A review-required signal is returned as ExtractionStatus.MANUAL_REVIEW,
        never raised.

        Raises:
            ExternalServiceTransient: timeout, transport error or 5xx
            ExternalServiceConflict: any other rejection
        """
        ...

    def enroll_face(
        self,
        identity_id: UUID,
        name: str,
        email: str,
        document: DocumentImage,
        force: bool = False,
    ) -> EnrollmentResult:
        """
        Enroll the face on the document with the recognition backend.

        Enrollment is keyed by identity_id, so a repeated call for the same
        identity replaces rather than duplicates. force asks the backend to
        overwrite an existing enrollment (manual re-enrollment).

        Raises:
            ExternalServiceTransient: timeout, transport error or 5xx
            ExternalServiceConflict: duplicate enrollment or other 4xx
        """
        ...


class TaskQueue(Protocol):
    """Port interface for background work."""

    def enqueue(self, kind: TaskKind, payload: dict[str, Any]) -> BackgroundTask: ...
