"""
Domain exceptions - Semantic error types for registration.

This module defines domain-specific exceptions that communicate
business rule violations and remote-service failures without leaking
infrastructure details.
"""


class RegistrationError(Exception):
    """Base class for registration domain errors."""

    pass


class LoginAlreadyClaimed(RegistrationError):
    """A verified (non-draft) identity already uses this login identifier."""

    pass


class IdentityNotFound(RegistrationError):
    """No identity exists with the given id."""

    pass


class InvalidOtp(RegistrationError):
    """No live OTP matches the (identity id, code) pair."""

    pass


class PreconditionFailed(RegistrationError):
    """
    Operation attempted before its preconditions hold.

    For promotion, ``gates`` lists the unsatisfied gate names.
    """

    def __init__(self, message: str, gates: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.gates = gates


class InvalidCredentials(RegistrationError):
    """Login or password mismatch, or account not verified."""

    pass


class ExternalServiceError(Exception):
    """Base class for failures of remote verification services."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ExternalServiceTransient(ExternalServiceError):
    """Timeout, transport error or 5xx response. Retryable."""

    pass


class ExternalServiceConflict(ExternalServiceError):
    """4xx semantic rejection (duplicate enrollment, bad image). Not retried."""

    pass
