"""
Domain layer - Pure business logic with zero framework imports.

This package contains the identity registration state machine, its
background task runner, and the port interfaces it requires from
infrastructure, keeping the hexagonal architecture decoupled.
"""

from .exceptions import (
    ExternalServiceConflict,
    ExternalServiceError,
    ExternalServiceTransient,
    IdentityNotFound,
    InvalidCredentials,
    InvalidOtp,
    LoginAlreadyClaimed,
    PreconditionFailed,
    RegistrationError,
)
from .models import (
    Credentials,
    DocumentImage,
    EnrollmentResult,
    ExtractedFields,
    ExtractionOutcome,
    ExtractionStatus,
    FaceEnrollmentStatus,
    Identity,
    IdentityStatistics,
    IdVerification,
    IdVerificationStatus,
    OtpConfirmation,
    OtpRecord,
    RegistrationStatus,
    RegistrationStep,
    Role,
)
from .ports import (
    EmailSender,
    IdentityRepository,
    OtpRepository,
    PromotionResult,
    TaskQueue,
    VerificationGateway,
)
from .registration import RegistrationService
from .tasks import BackgroundTask, BackgroundTaskRunner, TaskKind, TaskPolicy, TaskState

__all__ = [
    "BackgroundTask",
    "BackgroundTaskRunner",
    "Credentials",
    "DocumentImage",
    "EmailSender",
    "EnrollmentResult",
    "ExternalServiceConflict",
    "ExternalServiceError",
    "ExternalServiceTransient",
    "ExtractedFields",
    "ExtractionOutcome",
    "ExtractionStatus",
    "FaceEnrollmentStatus",
    "Identity",
    "IdentityNotFound",
    "IdentityRepository",
    "IdentityStatistics",
    "IdVerification",
    "IdVerificationStatus",
    "InvalidCredentials",
    "InvalidOtp",
    "LoginAlreadyClaimed",
    "OtpConfirmation",
    "OtpRecord",
    "OtpRepository",
    "PreconditionFailed",
    "PromotionResult",
    "RegistrationError",
    "RegistrationService",
    "RegistrationStatus",
    "RegistrationStep",
    "Role",
    "TaskKind",
    "TaskPolicy",
    "TaskQueue",
    "TaskState",
    "VerificationGateway",
]
