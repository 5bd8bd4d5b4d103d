"""
api/routes/v1/auth.py -- OTP login and session REST endpoints.

Routes:
  POST /api/v1/auth/send-otp                     -- email a new code
  POST /api/v1/auth/resend-otp                   -- supersede old codes, email a new one
  POST /api/v1/auth/verify-otp                   -- exchange a code for access + refresh tokens
  POST /api/v1/auth/refresh-token                -- exchange a refresh token for an access token
  POST /api/v1/auth/logout                       -- revoke one refresh token (idempotent)
  POST /api/v1/auth/logout-all                   -- revoke every session of the caller
  POST /api/v1/auth/users/{user_id}/logout-all   -- revoke every session of a user (admin)
  GET  /api/v1/auth/me                           -- current account profile

Security:
  [H2] send/resend/verify are additionally rate-limited per IP (slowapi).
  [M5] Cache-Control: no-store on every response that carries a token.

Handlers are plain `def` so FastAPI runs them in its thread pool; the
services block on bcrypt and the database.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response

from api.limiter import SEND_OTP_LIMIT, VERIFY_OTP_LIMIT, limiter
from api.models import (
    AccessTokenResponse,
    LogoutRequest,
    OkResponse,
    OtpSentResponse,
    RefreshTokenRequest,
    SendOtpRequest,
    TokenResponse,
    UserProfile,
    VerifyOtpRequest,
)
from auth.dependencies import get_current_account, require_admin
from auth.models import Account
from auth.otp import OtpIssuer
from auth.sessions import SessionService

# Auth policy:
# - send-otp / resend-otp / verify-otp / refresh-token / logout: public
# - logout-all, me:                                             bearer access token
# - users/{id}/logout-all:                                      admin
router = APIRouter()


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"  # [M5]


# ---------------------------------------------------------------------------
# OTP issuance
# ---------------------------------------------------------------------------


@limiter.limit(SEND_OTP_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/send-otp", response_model=OtpSentResponse)
def send_otp(request: Request, body: SendOtpRequest) -> OtpSentResponse:
    """Email a fresh 6-digit code to the account's address.

    Errors: 404 ACCOUNT_NOT_FOUND, 403 ACCOUNT_INACTIVE, 429 OTP_RATE_LIMITED,
    502 EXTERNAL_SERVICE_ERROR (the code was stored and stays valid).
    """
    issuer: OtpIssuer = request.app.state.otp_issuer
    dispatch = issuer.send_otp(body.student_id)
    return OtpSentResponse(masked_email=dispatch.masked_email, expires_in_seconds=dispatch.expires_in_seconds)


@limiter.limit(SEND_OTP_LIMIT)  # [H2]
@router.post("/auth/resend-otp", response_model=OtpSentResponse)
def resend_otp(request: Request, body: SendOtpRequest) -> OtpSentResponse:
    """Invalidate every unused code for the account, then email a new one."""
    issuer: OtpIssuer = request.app.state.otp_issuer
    dispatch = issuer.resend_otp(body.student_id)
    return OtpSentResponse(
        message="OTP resent successfully",
        masked_email=dispatch.masked_email,
        expires_in_seconds=dispatch.expires_in_seconds,
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@limiter.limit(VERIFY_OTP_LIMIT)  # [H2] brute-force mitigation on top of the per-code attempt limit
@router.post("/auth/verify-otp", response_model=TokenResponse)
def verify_otp(
    request: Request, response: Response, body: VerifyOtpRequest, background_tasks: BackgroundTasks
) -> TokenResponse:
    """Verify a code and open a session.

    The welcome email for a first verification goes out after the response.

    Errors: 404 ACCOUNT_NOT_FOUND, 400 OTP_EXPIRED, 400 OTP_INVALID (detail
    carries the remaining attempts), 400 OTP_MAX_ATTEMPTS.
    """
    sessions: SessionService = request.app.state.session_service
    result = sessions.verify_otp(body.student_id, body.otp_code)
    if result.first_verification:
        background_tasks.add_task(sessions.send_welcome, result.account)
    _no_store(response)
    return TokenResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in_seconds=result.expires_in_seconds,
        needs_profile_setup=result.needs_profile_setup,
        user=UserProfile.from_account(result.account),
    )


@router.post("/auth/refresh-token", response_model=AccessTokenResponse, response_model_exclude_none=True)
def refresh_token(request: Request, response: Response, body: RefreshTokenRequest) -> AccessTokenResponse:
    """Mint a new access token from a whitelisted refresh token.

    Errors: 401 TOKEN_INVALID, 401 TOKEN_EXPIRED, 401 UNAUTHORIZED.
    """
    sessions: SessionService = request.app.state.session_service
    grant = sessions.refresh_access_token(body.refresh_token)
    _no_store(response)
    return AccessTokenResponse(
        access_token=grant.access_token,
        expires_in_seconds=grant.expires_in_seconds,
        refresh_token=grant.refresh_token,
    )


@router.post("/auth/logout", response_model=OkResponse, response_model_exclude_none=True)
def logout(request: Request, body: LogoutRequest) -> OkResponse:
    """Revoke the given refresh token. Unknown or missing tokens are a no-op."""
    if body.refresh_token:
        sessions: SessionService = request.app.state.session_service
        sessions.logout(body.refresh_token)
    return OkResponse()


@router.post("/auth/logout-all", response_model=OkResponse)
def logout_all(request: Request, current: Account = Depends(get_current_account)) -> OkResponse:
    """Revoke every refresh token of the authenticated account."""
    sessions: SessionService = request.app.state.session_service
    return OkResponse(revoked=sessions.logout_all(current.id))


@router.post("/auth/users/{user_id}/logout-all", response_model=OkResponse)
def admin_logout_all(user_id: int, request: Request, admin: Account = Depends(require_admin)) -> OkResponse:
    """Revoke every refresh token of any user. Admin only."""
    sessions: SessionService = request.app.state.session_service
    return OkResponse(revoked=sessions.logout_all(user_id))


@router.get("/auth/me", response_model=UserProfile)
def me(current: Account = Depends(get_current_account)) -> UserProfile:
    """Return the profile of the authenticated account."""
    return UserProfile.from_account(current)
