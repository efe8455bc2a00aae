"""
API request and response models.

Pydantic models for FastAPI endpoint validation and OpenAPI schema generation.
"""

from datetime import datetime
from uuid import UUID

from pydantic import Base64Bytes, BaseModel, EmailStr, Field

from idverify.domain.models import (
    FaceEnrollmentStatus,
    Identity,
    IdVerificationStatus,
    RegistrationStatus,
    RegistrationStep,
    Role,
)


class DocumentUpload(BaseModel):
    """ID-document image, base64 encoded."""

    filename: str = "id-document.jpg"
    content_type: str = "image/jpeg"
    data: Base64Bytes = Field(..., description="Base64-encoded image bytes")


class RegisterRequest(BaseModel):
    """Request model for starting a registration."""

    login: str = Field(..., min_length=3, max_length=254, description="Username or email")
    password: str = Field(..., min_length=8, description="User password (min 8 characters)")
    full_name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr | None = Field(
        None, description="Delivery address for the OTP (defaults to the login)"
    )
    role: Role = Role.PATIENT
    document: DocumentUpload


class RegisterResponse(BaseModel):
    """Response model for a started registration."""

    message: str
    identity_id: UUID
    registration_step: RegistrationStep
    id_verification_status: IdVerificationStatus | None = None


class VerifyOtpRequest(BaseModel):
    """Request model for OTP confirmation."""

    identity_id: UUID
    code: str = Field(
        ...,
        min_length=4,
        max_length=8,
        pattern=r"^\d{4,8}$",
        description="Numeric one-time passcode",
    )


class VerifyOtpResponse(BaseModel):
    message: str
    identity_id: UUID
    ready_for_promotion: bool


class RegistrationStatusResponse(BaseModel):
    """Response model for registration progress."""

    identity_id: UUID
    face_enrollment_status: FaceEnrollmentStatus
    is_verified: bool
    otp_email_sent: bool
    registration_step: RegistrationStep
    id_verification_status: IdVerificationStatus | None = None
    face_enrollment_error: str | None = None

    @classmethod
    def from_status(cls, status: RegistrationStatus) -> "RegistrationStatusResponse":
        return cls(
            identity_id=status.identity_id,
            face_enrollment_status=status.face_enrollment_status,
            is_verified=status.is_verified,
            otp_email_sent=status.otp_email_sent,
            registration_step=status.registration_step,
            id_verification_status=status.id_verification_status,
            face_enrollment_error=status.face_enrollment_error,
        )


class IdentityResponse(BaseModel):
    """Public view of an identity (never includes the password hash)."""

    id: UUID
    login: str
    email: str
    full_name: str
    role: Role
    is_verified: bool
    registration_step: RegistrationStep
    registration_completed: datetime | None = None

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        return cls(
            id=identity.id,
            login=identity.login,
            email=identity.email,
            full_name=identity.full_name,
            role=identity.role,
            is_verified=identity.is_verified,
            registration_step=identity.registration_step,
            registration_completed=identity.registration_completed,
        )


class MessageResponse(BaseModel):
    message: str


class ErrorResponse(BaseModel):
    """Standard error response model."""

    detail: str
