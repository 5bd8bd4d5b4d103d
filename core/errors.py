"""
core/errors.py -- Domain error taxonomy for the OTP and session flows.

Every failure a client can observe is an AuthError subclass carrying a stable
machine-readable code, a human message, the HTTP status the API layer should
use, and an optional detail string. api/main.py renders all of them through a
single exception handler into the ErrorResponse envelope.

Layer rule: core/ is the kernel -- no imports from api/, auth/ or mail/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for structured, client-visible auth failures."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class AccountNotFound(AuthError):
    code = "ACCOUNT_NOT_FOUND"
    status_code = 404
    default_message = "No account is registered for this student ID."


class AccountInactive(AuthError):
    code = "ACCOUNT_INACTIVE"
    status_code = 403
    default_message = "This account has been deactivated."


class RateLimited(AuthError):
    code = "OTP_RATE_LIMITED"
    status_code = 429

    def __init__(self, window_minutes: int) -> None:
        self.window_minutes = window_minutes
        super().__init__(f"Too many OTP requests. Please wait {window_minutes} minutes.")


class OtpExpired(AuthError):
    code = "OTP_EXPIRED"
    status_code = 400
    default_message = "OTP expired or not found. Please request a new one."


class OtpInvalid(AuthError):
    code = "OTP_INVALID"
    status_code = 400

    def __init__(self, remaining_attempts: int) -> None:
        self.remaining_attempts = remaining_attempts
        super().__init__(
            f"Invalid OTP. {remaining_attempts} attempt(s) remaining.",
            detail=f"remaining_attempts={remaining_attempts}",
        )


class OtpMaxAttemptsExceeded(AuthError):
    code = "OTP_MAX_ATTEMPTS"
    status_code = 400
    default_message = "Maximum OTP attempts exceeded. Please request a new OTP."


class TokenInvalid(AuthError):
    code = "TOKEN_INVALID"
    status_code = 401
    default_message = "Invalid token."


class TokenExpired(AuthError):
    code = "TOKEN_EXPIRED"
    status_code = 401
    default_message = "Token expired."


class Unauthorized(AuthError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "User account is inactive."


class ExternalServiceError(AuthError):
    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502
    default_message = "Failed to send OTP email."


class InternalError(AuthError):
    code = "INTERNAL_ERROR"
    status_code = 500
