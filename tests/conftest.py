"""
tests/conftest.py -- Shared test fixtures for CITSA Auth.

This module provides:
  - FakeClock / RecordingSender: controllable time and a capturing EmailSender
  - unit fixtures: in-memory engine, stores, OtpIssuer, OtpVerifier,
    SessionService wired with the fake clock and sender
  - api_client: TestClient over the real app with a patched lifespan

Design: API tests use named shared-memory SQLite URIs (not plain :memory:)
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker.

DEBUG must be set before any core/auth import so get_settings() generates
the JWT secrets instead of raising. OTP_HASH_ROUNDS is lowered so bcrypt
does not dominate the test run.
"""

from __future__ import annotations

import os
import re
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("OTP_HASH_ROUNDS", "4")
os.environ.setdefault("EMAIL_PROVIDER", "console")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from auth.models import Account
from auth.otp import OtpIssuer, OtpVerifier
from auth.sessions import SessionService
from auth.store import AccountStore, OtpStore, RefreshTokenStore, create_store_engine
from auth.tokens import TokenIssuer
from core.config import Settings

STUDENT_ID = "PS/ITC/22/0120"
STUDENT_EMAIL = "ama.osei@ucc.edu.gh"

_CODE_RE = re.compile(r"verification code is: (\d{6})")


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class SentEmail:
    to: str
    subject: str
    html: str
    text: str


@dataclass
class RecordingSender:
    """EmailSender that records every message.

    attempted holds every call, sent only the accepted ones. Set fail=True to
    simulate a provider outage, raise_error=True for a misbehaving adapter.
    """

    fail: bool = False
    raise_error: bool = False
    sent: list[SentEmail] = field(default_factory=list)
    attempted: list[SentEmail] = field(default_factory=list)

    def send(self, to: str, subject: str, html: str, text: str) -> bool:
        message = SentEmail(to, subject, html, text)
        self.attempted.append(message)
        if self.raise_error:
            raise RuntimeError("provider exploded")
        if self.fail:
            return False
        self.sent.append(message)
        return True

    def codes_for(self, email: str) -> list[str]:
        codes = []
        for msg in self.attempted:
            match = _CODE_RE.search(msg.text)
            if msg.to == email and match:
                codes.append(match.group(1))
        return codes

    def last_code(self, email: str) -> str:
        return self.codes_for(email)[-1]


def wrong_code(code: str) -> str:
    """A six-digit code guaranteed to differ from code."""
    return f"{(int(code) + 1) % 1_000_000:06d}"


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        debug=True,
        otp_hash_rounds=4,
        otp_expiry_seconds=60,
        otp_max_attempts=3,
        otp_rate_limit_window_minutes=5,
        otp_rate_limit_max_requests=3,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def engine():
    e = create_store_engine("sqlite:///:memory:")
    yield e
    e.dispose()


@pytest.fixture
def accounts(engine) -> AccountStore:
    return AccountStore(engine)


@pytest.fixture
def otps(engine) -> OtpStore:
    return OtpStore(engine)


@pytest.fixture
def refresh_tokens(engine) -> RefreshTokenStore:
    return RefreshTokenStore(engine)


@pytest.fixture
def student(accounts: AccountStore) -> Account:
    """Active, unverified student with no profile details."""
    accounts.create_account(Account(student_id=STUDENT_ID, email=STUDENT_EMAIL))
    return accounts.find_by_student_id(STUDENT_ID)


@pytest.fixture
def token_issuer(settings: Settings) -> TokenIssuer:
    return TokenIssuer(settings)


@pytest.fixture
def issuer(accounts, otps, sender, settings, clock) -> OtpIssuer:
    return OtpIssuer(accounts, otps, sender, settings, clock=clock)


@pytest.fixture
def verifier(accounts, otps, settings, clock) -> OtpVerifier:
    return OtpVerifier(accounts, otps, settings, clock=clock)


@pytest.fixture
def sessions(accounts, verifier, token_issuer, refresh_tokens, sender, settings, clock) -> SessionService:
    return SessionService(accounts, verifier, token_issuer, refresh_tokens, sender, settings, clock=clock)


# ---------------------------------------------------------------------------
# API fixture -- one TestClient per test module
# ---------------------------------------------------------------------------


def _patch_lifespan(engine, sender: RecordingSender):
    """Return a lifespan that wires test doubles instead of the real engine and sender."""

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, engine, sender)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, RecordingSender], None, None]:
    """Yield (client, sender) for API integration tests.

    Per-IP slowapi limits are disabled so many requests from the single
    TestClient address do not trip them; tests that exercise slowapi turn it
    back on locally.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    engine = create_store_engine(f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")
    sender = RecordingSender()
    app.router.lifespan_context = _patch_lifespan(engine, sender)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, sender

    limiter.enabled = True
    engine.dispose()
