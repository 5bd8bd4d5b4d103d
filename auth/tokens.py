"""
auth/tokens.py -- JWT issuing, OTP code hashing, and refresh-token hashing.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with two
       distinct secrets and carry a "type" claim, so neither can be replayed
       as the other. Both carry user_id, student_id, email, role, exp, iat and
       a random jti (two tokens minted in the same second stay distinct, which
       keeps the UNIQUE(token_hash) constraint meaningful).

       Access tokens are stateless: validity is signature + expiry only.
       Refresh tokens are additionally whitelisted in RefreshTokenStore.

  OTP codes: bcrypt with a configurable cost (default 10). Six digits is a
       tiny keyspace, so the slow hash matters if the table ever leaks; the
       attempt limit is what protects the live flow.

  Refresh-token storage: HMAC-SHA256(refresh secret, raw token). The token
       already carries full JWT entropy, so bcrypt's slowness is unnecessary
       and the deterministic hash allows O(1) lookup by UNIQUE index.

Layer rule: no imports from api/ or mail/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from core.config import Settings, get_settings
from core.errors import TokenExpired, TokenInvalid

if TYPE_CHECKING:
    from auth.models import Account

logger = logging.getLogger("citsa.auth")

_ALGORITHM = "HS256"

_REQUIRED_CLAIMS = ("user_id", "student_id", "email", "role", "type")

# ---------------------------------------------------------------------------
# OTP codes
# ---------------------------------------------------------------------------


def generate_otp_code(length: int = 6) -> str:
    """Return a random numeric code from the OS CSPRNG, zero-padded."""
    return "".join(secrets.choice("0123456789") for _ in range(length))


def hash_otp_code(code: str, rounds: int = 10) -> str:
    return bcrypt.hashpw(code.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_otp_code(code: str, hashed: str) -> bool:
    """Return True if the submitted code matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(code.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# ---------------------------------------------------------------------------
# JWT issuing
# ---------------------------------------------------------------------------


def claims_for(account: Account) -> dict:
    """Identity claims embedded in both token types."""
    return {
        "user_id": account.id,
        "student_id": account.student_id,
        "email": account.email,
        "role": account.role,
    }


class TokenIssuer:
    """Mints and verifies access / refresh JWTs.

    Usage:
        issuer = TokenIssuer(get_settings())
        access = issuer.create_access_token(claims_for(account))
        payload = issuer.decode_access_token(access)
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    @property
    def access_expiry_seconds(self) -> int:
        return self._settings.access_token_expire_seconds

    @property
    def refresh_expiry_seconds(self) -> int:
        return self._settings.refresh_token_expire_seconds

    def create_access_token(self, claims: dict) -> str:
        return self._encode(claims, "access", self._settings.jwt_access_secret, self.access_expiry_seconds)

    def create_refresh_token(self, claims: dict) -> str:
        return self._encode(claims, "refresh", self._settings.jwt_refresh_secret, self.refresh_expiry_seconds)

    def decode_access_token(self, token: str) -> dict:
        """Verify an access token and return its payload.

        Raises TokenExpired when the signature is valid but exp has passed,
        TokenInvalid for every other failure.
        """
        return self._decode(token, "access", self._settings.jwt_access_secret)

    def decode_refresh_token(self, token: str) -> dict:
        return self._decode(token, "refresh", self._settings.jwt_refresh_secret)

    def hash_refresh_token(self, raw_token: str) -> str:
        """Return HMAC-SHA256(refresh secret, raw_token) as hex, the storage key."""
        return hmac.new(
            self._settings.jwt_refresh_secret.encode(),
            raw_token.encode(),
            hashlib.sha256,
        ).hexdigest()

    def _encode(self, claims: dict, token_type: str, secret: str, expire_seconds: int) -> str:
        issued = datetime.now(timezone.utc)
        payload = {
            **claims,
            "type": token_type,
            "iat": issued,
            "exp": issued + timedelta(seconds=expire_seconds),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    def _decode(self, token: str, token_type: str, secret: str) -> dict:
        try:
            payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenExpired(f"{token_type.capitalize()} token expired.") from exc
        except JWTError as exc:
            raise TokenInvalid(f"Invalid {token_type} token.") from exc
        if any(name not in payload for name in _REQUIRED_CLAIMS) or payload["type"] != token_type:
            raise TokenInvalid(f"Invalid {token_type} token.")
        return payload
