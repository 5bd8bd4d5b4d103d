"""
API request and response models for the CITSA Auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

JSON field names are camelCase on the wire (studentId, accessToken, ...) via
an alias generator; Python code uses snake_case. FastAPI serializes
response_model instances by alias.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import Account

OTP_PATTERN = r"^\d{6}$"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SendOtpRequest(_CamelModel):
    """Body for POST /auth/send-otp and /auth/resend-otp."""

    student_id: str = Field(min_length=1, max_length=64)


class VerifyOtpRequest(_CamelModel):
    student_id: str = Field(min_length=1, max_length=64)
    otp_code: str = Field(pattern=OTP_PATTERN, description="The 6-digit code from the email.")


class RefreshTokenRequest(_CamelModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class LogoutRequest(_CamelModel):
    """Logout is idempotent; a missing token is accepted and does nothing."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class OtpSentResponse(_CamelModel):
    model_config = ConfigDict(frozen=True)

    message: str = "OTP sent successfully"
    masked_email: str
    expires_in_seconds: int


class UserProfile(_CamelModel):
    model_config = ConfigDict(frozen=True)

    id: int
    student_id: str
    email: str
    full_name: Optional[str] = None
    program: Optional[str] = None
    class_year: Optional[str] = None
    role: str
    is_verified: bool
    created_at: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "UserProfile":
        """Build the owner's own profile payload from a domain Account."""
        return cls(
            id=account.id,
            student_id=account.student_id,
            email=account.email,
            full_name=account.full_name,
            program=account.program,
            class_year=account.class_year,
            role=account.role,
            is_verified=account.is_verified,
            created_at=account.created_at,
        )


class TokenResponse(_CamelModel):
    """Response for POST /auth/verify-otp."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in_seconds: int
    needs_profile_setup: bool
    user: UserProfile


class AccessTokenResponse(_CamelModel):
    """Response for POST /auth/refresh-token. refreshToken is present only when rotation is on."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in_seconds: int
    refresh_token: Optional[str] = None


class OkResponse(_CamelModel):
    model_config = ConfigDict(frozen=True)

    ok: bool = True
    revoked: Optional[int] = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
