from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP status_code and a stable error_code.
    The generic codes are:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409, contended per-key locks)
    - server_error (500)

    Authentication flows refine these with more specific codes so clients can
    tell "wrong password" from "code expired" without parsing messages.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class DuplicateEmailError(ValidationError):
    """Registration with an email that already belongs to an account (400)."""
    error_code = "duplicate_email"

    def __init__(self, message: str = "user already exists") -> None:
        super().__init__(message)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Wrong email or password; never says which one (401)."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password") -> None:
        super().__init__(message)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class RoleMismatchError(ForbiddenError):
    """Credentials are valid but the account type does not match the endpoint (403)."""
    error_code = "role_mismatch"

    def __init__(self, expected_role: str) -> None:
        super().__init__(
            f"this account is not registered as a {expected_role}",
            detail={"expectedRole": expected_role},
        )


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class TwoFactorError(ValidationError):
    """Base for verification code failures (400)."""


class NoPendingCodeError(TwoFactorError):
    error_code = "no_pending_code"

    def __init__(self) -> None:
        super().__init__("no verification code found; please log in again")


class CodeExpiredError(TwoFactorError):
    error_code = "code_expired"

    def __init__(self) -> None:
        super().__init__("verification code has expired; please log in again")


class AttemptsExhaustedError(TwoFactorError):
    error_code = "attempts_exhausted"

    def __init__(self) -> None:
        super().__init__("too many failed attempts; please log in again")


class InvalidCodeError(TwoFactorError):
    error_code = "invalid_code"

    def __init__(self, remaining_attempts: int) -> None:
        super().__init__(
            f"invalid verification code; {remaining_attempts} attempt(s) remaining",
            detail={"remainingAttempts": remaining_attempts},
        )
        self.remaining_attempts = remaining_attempts


class ResendTooSoonError(RateLimitedError):
    """A new code was requested before the resend interval elapsed (429)."""
    error_code = "resend_too_soon"

    def __init__(self, wait_seconds: int) -> None:
        super().__init__(
            f"please wait {wait_seconds} seconds before requesting a new code",
            detail={"waitTime": wait_seconds},
        )
        self.wait_seconds = wait_seconds


class DeliveryFailedError(ServerError):
    """The verification email could not be sent; the code was discarded (500)."""
    error_code = "delivery_failed"

    def __init__(self, message: str = "failed to send verification code") -> None:
        super().__init__(message)


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "DuplicateEmailError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "RoleMismatchError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "TwoFactorError",
    "NoPendingCodeError",
    "CodeExpiredError",
    "AttemptsExhaustedError",
    "InvalidCodeError",
    "ResendTooSoonError",
    "DeliveryFailedError",
]
