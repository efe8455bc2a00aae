"""
FastAPI dependencies - Dependency injection factories.

This module provides Depends() factories for injecting
domain services and infrastructure adapters into routes, plus the
factory that wires them together at startup.
"""

from fastapi import Depends, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from psycopg_pool import ConnectionPool

from idverify.adapters.gateway.http import HttpVerificationGateway
from idverify.adapters.repository.postgres import (
    PostgresIdentityRepository,
    PostgresOtpRepository,
)
from idverify.adapters.smtp.console import ConsoleEmailSender
from idverify.config.settings import Settings
from idverify.domain.registration import RegistrationService
from idverify.domain.tasks import BackgroundTaskRunner, TaskKind, TaskPolicy

# Module-level singleton - ConsoleEmailSender is stateless
_email_sender = ConsoleEmailSender()


def get_email_sender() -> ConsoleEmailSender:
    """Get console email sender (singleton)."""
    return _email_sender


def build_gateway(settings: Settings) -> HttpVerificationGateway:
    return HttpVerificationGateway(
        ocr_base_url=settings.ocr_base_url,
        face_base_url=settings.face_base_url,
        ocr_api_key=settings.ocr_api_key,
        face_api_key=settings.face_api_key,
        timeout=settings.gateway_timeout_seconds,
        enrollment_source=settings.enrollment_source,
    )


def build_task_runner(settings: Settings) -> BackgroundTaskRunner:
    return BackgroundTaskRunner(
        policies={
            TaskKind.FACE_ENROLLMENT: TaskPolicy(
                max_attempts=settings.face_enrollment_max_attempts,
                base_delay=settings.face_enrollment_backoff_seconds,
            ),
            TaskKind.NOTIFICATION: TaskPolicy(
                max_attempts=settings.notification_max_attempts,
                base_delay=settings.notification_backoff_seconds,
            ),
        },
        workers=settings.task_workers,
    )


def build_registration_service(
    pool: ConnectionPool,
    gateway: HttpVerificationGateway,
    runner: BackgroundTaskRunner,
    settings: Settings,
) -> RegistrationService:
    """
    Create the registration service with injected dependencies.

    Wires together the repositories, email sender, gateway and task runner,
    and registers the service's background task handlers on the runner.
    """
    service = RegistrationService(
        repository=PostgresIdentityRepository(pool),
        otp_repository=PostgresOtpRepository(pool),
        email_sender=get_email_sender(),
        gateway=gateway,
        tasks=runner,
        bcrypt_cost=settings.bcrypt_cost,
        otp_length=settings.otp_length,
        draft_retention_hours=settings.draft_retention_hours,
    )
    service.bind_tasks(runner)
    return service


def get_registration_service(request: Request) -> RegistrationService:
    """Get the registration service created during app lifespan startup."""
    return request.app.state.registration_service


# HTTP BASIC AUTH security scheme for OpenAPI documentation
http_basic = HTTPBasic()


def get_basic_auth_credentials(
    credentials: HTTPBasicCredentials = Depends(http_basic),
) -> tuple[str, str]:
    """
    Extract and normalize credentials from HTTP BASIC AUTH header.

    FastAPI's HTTPBasic automatically:
    - Returns 401 for missing Authorization header
    - Returns 401 for malformed base64 encoding
    - Parses base64(login:password) format

    Returns:
        Tuple of (normalized_login, password)
        Login is stripped and lowercased for consistency.
    """
    login = credentials.username.strip().lower()
    password = credentials.password
    return login, password
