"""
auth/sessions.py -- Session orchestration: verify -> mint -> persist, refresh, logout.

Token model:
  Access tokens are stateless JWTs; nothing here ever looks them up.
  Refresh tokens are whitelisted: a refresh JWT is only honoured while its
  HMAC hash is present in RefreshTokenStore, which makes sessions revocable
  before cryptographic expiry (logout, logout_all, cleanup).

Rotation:
  Off by default -- the same refresh token is accepted until it expires or is
  revoked, and refresh_access_token() returns a new access token only. With
  REFRESH_TOKEN_ROTATION=true every successful refresh deletes the presented
  token and returns a replacement, which bounds replay exposure of a leaked
  refresh token to a single use.

The welcome email after an account's first verification is the only
best-effort step. The API layer runs send_welcome() as a background task
after the response is sent; its failure is logged and never fails the login.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from auth.models import Account, AccountLookup, RefreshTokenRecord
from auth.otp import Clock, OtpVerifier, mask_email, utcnow
from auth.store import RefreshTokenStore, from_iso, store_errors, to_iso
from auth.tokens import TokenIssuer, claims_for
from core.config import Settings, get_settings
from core.errors import AuthError, TokenExpired, TokenInvalid, Unauthorized
from mail.sender import EmailSender
from mail.templates import render_welcome_email

logger = logging.getLogger("citsa.sessions")


@dataclass(frozen=True)
class SessionTokens:
    """Everything the client receives after a successful verification."""

    access_token: str
    refresh_token: str
    expires_in_seconds: int
    needs_profile_setup: bool
    account: Account
    first_verification: bool = False


@dataclass(frozen=True)
class AccessGrant:
    """Result of a refresh. refresh_token is set only when rotation is on."""

    access_token: str
    expires_in_seconds: int
    refresh_token: str | None = None


class SessionService:
    def __init__(
        self,
        accounts: AccountLookup,
        verifier: OtpVerifier,
        tokens: TokenIssuer,
        refresh_tokens: RefreshTokenStore,
        sender: EmailSender,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._settings = settings or get_settings()
        self._accounts = accounts
        self._verifier = verifier
        self._tokens = tokens
        self._refresh_tokens = refresh_tokens
        self._sender = sender
        self._clock = clock

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def verify_otp(self, student_id: str, code: str) -> SessionTokens:
        """Verify the code and open a new session for the account.

        The refresh token is persisted before the OTP is consumed, so a store
        failure leaves the code usable for a retry. If consuming then fails
        (a concurrent submission won), the new refresh token is removed again.
        The welcome email is not sent here; callers pass the returned
        first_verification flag to send_welcome() off the request path.
        """
        account, record = self._verifier.check(student_id, code)
        claims = claims_for(account)
        access_token = self._tokens.create_access_token(claims)
        refresh_token = self._issue_refresh_token(claims, account.id)

        try:
            verification = self._verifier.consume(account, record)
        except AuthError:
            with store_errors("refresh token delete"):
                self._refresh_tokens.delete_by_hash(self._tokens.hash_refresh_token(refresh_token))
            raise

        account = verification.account
        logger.info("Session opened for user_id=%s", account.id)
        return SessionTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in_seconds=self._tokens.access_expiry_seconds,
            needs_profile_setup=account.needs_profile_setup,
            account=account,
            first_verification=verification.first_verification,
        )

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh_access_token(self, refresh_token: str) -> AccessGrant:
        """Exchange a whitelisted refresh token for a new access token.

        Raises TokenInvalid (bad signature, malformed, not whitelisted),
        TokenExpired (whitelist entry past its expiry; the entry is deleted),
        or Unauthorized (account missing or deactivated).
        """
        jwt_expired = False
        try:
            self._tokens.decode_refresh_token(refresh_token)
        except TokenExpired:
            # Still check the whitelist so an expired entry gets deleted and
            # reported as TokenExpired; a second attempt then fails TokenInvalid.
            jwt_expired = True

        token_hash = self._tokens.hash_refresh_token(refresh_token)
        with store_errors("refresh token lookup"):
            record = self._refresh_tokens.get_by_hash(token_hash)
        if record is None:
            raise TokenInvalid("Refresh token not found.")

        if jwt_expired or from_iso(record.expires_at) < self._clock():
            with store_errors("refresh token delete"):
                self._refresh_tokens.delete_by_id(record.id)
            logger.info("Expired refresh token removed for user_id=%s", record.user_id)
            raise TokenExpired("Refresh token expired.")

        with store_errors("account lookup"):
            account = self._accounts.get_by_id(record.user_id)
        if account is None or not account.is_active:
            raise Unauthorized()

        claims = claims_for(account)
        access_token = self._tokens.create_access_token(claims)
        rotated = None
        if self._settings.refresh_token_rotation:
            with store_errors("refresh token rotate"):
                if self._refresh_tokens.delete_by_id(record.id) == 0:
                    # A concurrent refresh already consumed this token.
                    raise TokenInvalid("Refresh token not found.")
            rotated = self._issue_refresh_token(claims, account.id)

        return AccessGrant(
            access_token=access_token,
            expires_in_seconds=self._tokens.access_expiry_seconds,
            refresh_token=rotated,
        )

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, refresh_token: str) -> None:
        """Revoke one session. Idempotent: unknown tokens are ignored."""
        with store_errors("logout"):
            self._refresh_tokens.delete_by_hash(self._tokens.hash_refresh_token(refresh_token))

    def logout_all(self, user_id: int) -> int:
        """Revoke every session of the user in one bulk delete."""
        with store_errors("logout all"):
            revoked = self._refresh_tokens.delete_for_user(user_id)
        logger.info("Revoked %d session(s) for user_id=%s", revoked, user_id)
        return revoked

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue_refresh_token(self, claims: dict, user_id: int) -> str:
        raw = self._tokens.create_refresh_token(claims)
        now = self._clock()
        record = RefreshTokenRecord(
            token_hash=self._tokens.hash_refresh_token(raw),
            user_id=user_id,
            created_at=to_iso(now),
            expires_at=to_iso(now + timedelta(seconds=self._tokens.refresh_expiry_seconds)),
        )
        with store_errors("refresh token insert"):
            self._refresh_tokens.create(record)
        return raw

    # ------------------------------------------------------------------
    # Welcome email
    # ------------------------------------------------------------------

    def send_welcome(self, account: Account) -> None:
        """Best-effort welcome email after a first verification. Never raises."""
        subject, html, text = render_welcome_email(account.full_name)
        try:
            delivered = self._sender.send(account.email, subject, html, text)
        except Exception:
            logger.exception("Welcome email raised for %s", mask_email(account.email))
            return
        if not delivered:
            logger.warning("Welcome email not delivered to %s", mask_email(account.email))
