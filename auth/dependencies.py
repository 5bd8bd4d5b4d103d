"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Only one auth method exists: an access JWT in the Authorization: Bearer
header. Access tokens are stateless, but the account is re-read on every
request so a deactivated account loses access immediately.

get_current_account() raises the domain error (TokenInvalid / TokenExpired /
Unauthorized), which api/main.py renders as a 401 envelope.
require_admin() wraps get_current_account() and raises HTTP 403 if not admin.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Account
from auth.tokens import TokenIssuer
from core.errors import TokenInvalid, Unauthorized


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_current_account(request: Request) -> Account:
    """Require a valid access token for an active account.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise TokenInvalid("Access token required.")
    issuer: TokenIssuer = request.app.state.token_issuer
    payload = issuer.decode_access_token(token)
    account = request.app.state.account_store.get_by_id(payload["user_id"])
    if account is None or not account.is_active:
        raise Unauthorized("User not found or inactive.")
    return account


def require_admin(request: Request) -> Account:
    account = get_current_account(request)
    if account.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "FORBIDDEN", "message": "Admin access required."},
        )
    return account
