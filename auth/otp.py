"""
auth/otp.py -- OTP issuance, rate limiting and verification.

OtpRecord lifecycle:
  ACTIVE      is_used = 0, expires_at in the future, attempts < max
  USED        terminal -- the correct code was submitted
  EXHAUSTED   terminal -- attempts reached the configured maximum
  EXPIRED     terminal -- detected lazily when a read filters it out
  SUPERSEDED  terminal -- bulk-invalidated by resend_otp()

Nothing ever moves back to ACTIVE.

Known trade-offs (accepted, not patched):
  - RateLimiter recomputes its count from the otp_records history on every
    call. Two concurrent sends can both read a count below the limit and both
    insert, momentarily exceeding it by one. For a student-facing OTP flow at
    this volume that is acceptable; a stricter limiter would need an
    atomically incremented counter row.
  - send_otp() does not invalidate earlier active codes. Calling it twice
    leaves two active records; verification only ever selects the newest, so
    the older one is dead weight until it expires. Only resend_otp()
    supersedes earlier codes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

from auth.models import Account, AccountLookup, OtpRecord
from auth.store import OtpStore, store_errors, to_iso
from auth.tokens import generate_otp_code, hash_otp_code, verify_otp_code
from core.config import Settings, get_settings
from core.errors import (
    AccountInactive,
    AccountNotFound,
    ExternalServiceError,
    OtpExpired,
    OtpInvalid,
    OtpMaxAttemptsExceeded,
    RateLimited,
)
from mail.sender import EmailSender
from mail.templates import render_otp_email

logger = logging.getLogger("citsa.otp")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mask_email(email: str) -> str:
    """Return a display-safe version of an email address.

    Local parts longer than 4 characters keep their first 3 characters;
    shorter ones keep only the first character.

        mask_email("ama.osei@ucc.edu.gh")  -> "ama****@ucc.edu.gh"
        mask_email("kofi@ucc.edu.gh")      -> "k***@ucc.edu.gh"
    """
    local, sep, domain = email.partition("@")
    if len(local) <= 4:
        masked = f"{local[:1]}***"
    else:
        masked = f"{local[:3]}****"
    return f"{masked}{sep}{domain}"


@dataclass(frozen=True)
class OtpDispatch:
    """Outcome of a successful send/resend."""

    masked_email: str
    expires_in_seconds: int


@dataclass(frozen=True)
class Verification:
    """Outcome of a successful verification."""

    account: Account
    first_verification: bool


def resolve_active_account(accounts: AccountLookup, student_id: str) -> Account:
    with store_errors("account lookup"):
        account = accounts.find_by_student_id(student_id)
    if account is None:
        raise AccountNotFound()
    if not account.is_active:
        raise AccountInactive()
    return account


class RateLimiter:
    """Windowed issuance counter keyed by email.

    Holds no state of its own: the window count is rebuilt from the
    otp_records history on every call, so any service instance observes the
    same limit without coordination.
    """

    def __init__(self, otps: OtpStore, window_minutes: int, max_requests: int, clock: Clock = utcnow) -> None:
        self._otps = otps
        self.window_minutes = window_minutes
        self.max_requests = max_requests
        self._clock = clock

    def recent_count(self, email: str) -> int:
        since = self._clock() - timedelta(minutes=self.window_minutes)
        with store_errors("rate limit count"):
            return self._otps.count_created_since(email, to_iso(since))

    def check(self, email: str) -> None:
        """Raise RateLimited if email already used up its window."""
        if self.recent_count(email) >= self.max_requests:
            logger.warning("OTP rate limit hit for %s", mask_email(email))
            raise RateLimited(self.window_minutes)


class OtpIssuer:
    """Generates, stores and emails verification codes."""

    def __init__(
        self,
        accounts: AccountLookup,
        otps: OtpStore,
        sender: EmailSender,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._settings = settings or get_settings()
        self._accounts = accounts
        self._otps = otps
        self._sender = sender
        self._clock = clock
        self.rate_limiter = RateLimiter(
            otps,
            window_minutes=self._settings.otp_rate_limit_window_minutes,
            max_requests=self._settings.otp_rate_limit_max_requests,
            clock=clock,
        )

    def send_otp(self, student_id: str) -> OtpDispatch:
        """Issue a fresh code for the account and email it.

        Raises AccountNotFound, AccountInactive, RateLimited, or
        ExternalServiceError. On ExternalServiceError the stored record is
        left in place and remains verifiable.
        """
        account = resolve_active_account(self._accounts, student_id)
        self.rate_limiter.check(account.email)
        return self._issue(account)

    def resend_otp(self, student_id: str) -> OtpDispatch:
        """Supersede every unused code for the account, then issue a new one.

        Resends count toward the same rate-limit window as sends.
        """
        account = resolve_active_account(self._accounts, student_id)
        self.rate_limiter.check(account.email)
        with store_errors("otp invalidate"):
            superseded = self._otps.invalidate_unused(account.email)
        if superseded:
            logger.info("Superseded %d unused OTP(s) for %s", superseded, mask_email(account.email))
        return self._issue(account)

    def _issue(self, account: Account) -> OtpDispatch:
        code = generate_otp_code(6)
        now = self._clock()
        expiry = self._settings.otp_expiry_seconds
        record = OtpRecord(
            email=account.email,
            hashed_code=hash_otp_code(code, rounds=self._settings.otp_hash_rounds),
            created_at=to_iso(now),
            expires_at=to_iso(now + timedelta(seconds=expiry)),
        )
        with store_errors("otp insert"):
            self._otps.create(record)

        subject, html, text = render_otp_email(code, expiry)
        if not self._sender.send(account.email, subject, html, text):
            logger.error("OTP email delivery failed for %s", mask_email(account.email))
            raise ExternalServiceError()

        logger.info("OTP sent to %s", mask_email(account.email))
        return OtpDispatch(masked_email=mask_email(account.email), expires_in_seconds=expiry)


class OtpVerifier:
    """Checks a submitted code against the newest active record."""

    def __init__(
        self,
        accounts: AccountLookup,
        otps: OtpStore,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._settings = settings or get_settings()
        self._accounts = accounts
        self._otps = otps
        self._clock = clock

    def check(self, student_id: str, code: str) -> tuple[Account, OtpRecord]:
        """Validate code against the newest active record without consuming it.

        Raises AccountNotFound, OtpExpired, OtpMaxAttemptsExceeded, or
        OtpInvalid carrying the remaining attempt count.
        """
        with store_errors("account lookup"):
            account = self._accounts.find_by_student_id(student_id)
        if account is None:
            raise AccountNotFound()

        with store_errors("otp lookup"):
            record = self._otps.find_latest_active(account.email, to_iso(self._clock()))
        if record is None:
            raise OtpExpired()

        max_attempts = self._settings.otp_max_attempts
        if record.attempts >= max_attempts:
            raise OtpMaxAttemptsExceeded()

        if not verify_otp_code(code, record.hashed_code):
            with store_errors("otp attempt increment"):
                attempts = self._otps.increment_attempts(record.id, max_attempts)
            if attempts is None:
                # Concurrent wrong guesses used up the last attempt first.
                raise OtpMaxAttemptsExceeded()
            remaining = max(0, max_attempts - attempts)
            logger.info("Invalid OTP for %s (%d attempt(s) remaining)", mask_email(account.email), remaining)
            raise OtpInvalid(remaining)

        return account, record

    def consume(self, account: Account, record: OtpRecord) -> Verification:
        """Mark a checked record used and flip the account's verified flag.

        Raises OtpExpired when a concurrent verification consumed it first.
        """
        with store_errors("otp consume"):
            if not self._otps.mark_used(record.id):
                raise OtpExpired()
            self._accounts.mark_verified(account.id)
        logger.info("OTP verified for %s", mask_email(account.email))
        return Verification(
            account=replace(account, is_verified=True),
            first_verification=not account.is_verified,
        )

    def verify_otp(self, student_id: str, code: str) -> Verification:
        """check() then consume() in one call."""
        account, record = self.check(student_id, code)
        return self.consume(account, record)
