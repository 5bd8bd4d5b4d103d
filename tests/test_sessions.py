"""Unit tests for auth/sessions.py -- SessionService.

Covers:
- verify_otp: access + refresh tokens, profile-setup flag, whitelist entry
- refresh_access_token: happy path, expired whitelist entry, revoked token,
  deactivated account, access token presented as refresh token
- logout / logout_all
- optional refresh-token rotation
- welcome email: flagged on first verification only, sent separately, failures tolerated
- a failed refresh-token insert leaves the code usable; a lost consume race
  removes the session it had just stored
"""

import pytest
from sqlalchemy.exc import OperationalError

from auth.models import Account
from auth.sessions import SessionService
from auth.tokens import TokenIssuer, claims_for
from core.config import Settings
from core.errors import InternalError, OtpExpired, OtpInvalid, TokenExpired, TokenInvalid, Unauthorized
from tests.conftest import STUDENT_EMAIL, STUDENT_ID, wrong_code


def _login(issuer, sessions, sender):
    issuer.send_otp(STUDENT_ID)
    return sessions.verify_otp(STUDENT_ID, sender.last_code(STUDENT_EMAIL))


# ---------------------------------------------------------------------------
# verify_otp
# ---------------------------------------------------------------------------


class TestVerifyOtp:
    def test_issues_session(self, issuer, sessions, token_issuer, student, sender):
        tokens = _login(issuer, sessions, sender)

        assert tokens.expires_in_seconds == 3600
        assert tokens.needs_profile_setup is True
        assert tokens.account.is_verified is True

        access = token_issuer.decode_access_token(tokens.access_token)
        assert access["user_id"] == student.id
        assert access["student_id"] == STUDENT_ID
        assert access["email"] == STUDENT_EMAIL
        assert access["role"] == "student"
        refresh = token_issuer.decode_refresh_token(tokens.refresh_token)
        assert refresh["type"] == "refresh"

    def test_whitelists_hash_not_raw_token(self, issuer, sessions, token_issuer, refresh_tokens, student, sender):
        tokens = _login(issuer, sessions, sender)
        assert refresh_tokens.get_by_hash(tokens.refresh_token) is None
        record = refresh_tokens.get_by_hash(token_issuer.hash_refresh_token(tokens.refresh_token))
        assert record is not None
        assert record.user_id == student.id

    def test_complete_profile_needs_no_setup(self, issuer, sessions, accounts, sender):
        accounts.create_account(
            Account(
                student_id="PS/ITC/21/0042",
                email="kojo.appiah@ucc.edu.gh",
                full_name="Kojo Appiah",
                program="BSc Information Technology",
                class_year="2025",
            )
        )
        issuer.send_otp("PS/ITC/21/0042")
        tokens = sessions.verify_otp("PS/ITC/21/0042", sender.last_code("kojo.appiah@ucc.edu.gh"))
        assert tokens.needs_profile_setup is False

    def test_failed_verification_issues_nothing(self, issuer, sessions, refresh_tokens, student, sender):
        issuer.send_otp(STUDENT_ID)
        with pytest.raises(OtpInvalid):
            sessions.verify_otp(STUDENT_ID, wrong_code(sender.last_code(STUDENT_EMAIL)))
        assert refresh_tokens.count_for_user(student.id) == 0

    def test_each_login_is_a_separate_session(self, issuer, sessions, refresh_tokens, student, sender, clock):
        first = _login(issuer, sessions, sender)
        clock.advance(seconds=30)
        second = _login(issuer, sessions, sender)
        assert first.refresh_token != second.refresh_token
        assert refresh_tokens.count_for_user(student.id) == 2


class TestWelcomeEmail:
    def test_verify_flags_first_verification_only(self, issuer, sessions, student, sender, clock):
        first = _login(issuer, sessions, sender)
        clock.advance(seconds=30)
        second = _login(issuer, sessions, sender)
        assert first.first_verification is True
        assert second.first_verification is False

    def test_verify_does_not_send_welcome(self, issuer, sessions, student, sender):
        _login(issuer, sessions, sender)
        assert [m for m in sender.sent if m.subject.startswith("Welcome")] == []

    def test_send_welcome(self, sessions, student, sender):
        sessions.send_welcome(student)
        assert len(sender.sent) == 1
        assert sender.sent[0].to == STUDENT_EMAIL
        assert sender.sent[0].subject.startswith("Welcome")

    def test_send_welcome_tolerates_errors(self, sessions, student, sender):
        sender.raise_error = True
        sessions.send_welcome(student)
        assert sender.sent == []

    def test_send_welcome_tolerates_rejection(self, sessions, student, sender):
        sender.fail = True
        sessions.send_welcome(student)
        assert sender.sent == []


class TestLoginOrdering:
    def test_refresh_insert_failure_keeps_code_usable(
        self, issuer, sessions, otps, refresh_tokens, student, sender, monkeypatch
    ):
        issuer.send_otp(STUDENT_ID)
        code = sender.last_code(STUDENT_EMAIL)

        def broken_create(record):
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(refresh_tokens, "create", broken_create)
        with pytest.raises(InternalError):
            sessions.verify_otp(STUDENT_ID, code)
        assert otps.list_for_email(STUDENT_EMAIL)[0].is_used is False

        monkeypatch.undo()
        tokens = sessions.verify_otp(STUDENT_ID, code)
        assert refresh_tokens.count_for_user(student.id) == 1
        assert tokens.first_verification is True

    def test_lost_consume_race_removes_new_session(
        self, issuer, sessions, otps, refresh_tokens, student, sender, monkeypatch
    ):
        issuer.send_otp(STUDENT_ID)
        code = sender.last_code(STUDENT_EMAIL)
        # Another submission of the same code marks the record used first.
        monkeypatch.setattr(otps, "mark_used", lambda record_id: False)

        with pytest.raises(OtpExpired):
            sessions.verify_otp(STUDENT_ID, code)
        assert refresh_tokens.count_for_user(student.id) == 0


# ---------------------------------------------------------------------------
# refresh_access_token
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_returns_new_access_token(self, issuer, sessions, token_issuer, student, sender):
        tokens = _login(issuer, sessions, sender)
        grant = sessions.refresh_access_token(tokens.refresh_token)

        assert grant.expires_in_seconds == 3600
        assert grant.refresh_token is None
        payload = token_issuer.decode_access_token(grant.access_token)
        assert payload["user_id"] == student.id

    def test_refresh_token_reusable_without_rotation(self, issuer, sessions, student, sender):
        tokens = _login(issuer, sessions, sender)
        sessions.refresh_access_token(tokens.refresh_token)
        sessions.refresh_access_token(tokens.refresh_token)

    def test_expired_entry_is_deleted(self, issuer, sessions, token_issuer, refresh_tokens, student, sender, clock):
        tokens = _login(issuer, sessions, sender)
        clock.advance(days=31)

        with pytest.raises(TokenExpired):
            sessions.refresh_access_token(tokens.refresh_token)
        assert refresh_tokens.get_by_hash(token_issuer.hash_refresh_token(tokens.refresh_token)) is None
        with pytest.raises(TokenInvalid):
            sessions.refresh_access_token(tokens.refresh_token)

    def test_garbage_token(self, sessions):
        with pytest.raises(TokenInvalid):
            sessions.refresh_access_token("not-a-jwt")

    def test_access_token_rejected(self, issuer, sessions, student, sender):
        tokens = _login(issuer, sessions, sender)
        with pytest.raises(TokenInvalid):
            sessions.refresh_access_token(tokens.access_token)

    def test_signed_but_not_whitelisted(self, sessions, token_issuer, student):
        raw = token_issuer.create_refresh_token(claims_for(student))
        with pytest.raises(TokenInvalid):
            sessions.refresh_access_token(raw)

    def test_deactivated_account(self, issuer, sessions, accounts, student, sender):
        tokens = _login(issuer, sessions, sender)
        accounts.set_active(STUDENT_ID, False)
        with pytest.raises(Unauthorized):
            sessions.refresh_access_token(tokens.refresh_token)


class TestRotation:
    @pytest.fixture
    def rotating(self, accounts, verifier, refresh_tokens, sender, clock) -> SessionService:
        settings = Settings(debug=True, otp_hash_rounds=4, refresh_token_rotation=True)
        return SessionService(accounts, verifier, TokenIssuer(settings), refresh_tokens, sender, settings, clock=clock)

    def test_rotation_replaces_token(self, issuer, rotating, refresh_tokens, student, sender):
        tokens = _login(issuer, rotating, sender)
        grant = rotating.refresh_access_token(tokens.refresh_token)

        assert grant.refresh_token is not None
        assert grant.refresh_token != tokens.refresh_token
        assert refresh_tokens.count_for_user(student.id) == 1
        with pytest.raises(TokenInvalid):
            rotating.refresh_access_token(tokens.refresh_token)
        rotating.refresh_access_token(grant.refresh_token)


# ---------------------------------------------------------------------------
# logout / logout_all
# ---------------------------------------------------------------------------


class TestLogout:
    def test_logout_revokes_session(self, issuer, sessions, student, sender):
        tokens = _login(issuer, sessions, sender)
        sessions.logout(tokens.refresh_token)
        with pytest.raises(TokenInvalid):
            sessions.refresh_access_token(tokens.refresh_token)

    def test_logout_is_idempotent(self, issuer, sessions, student, sender):
        tokens = _login(issuer, sessions, sender)
        sessions.logout(tokens.refresh_token)
        sessions.logout(tokens.refresh_token)
        sessions.logout("never-issued")

    def test_logout_leaves_other_sessions(self, issuer, sessions, student, sender, clock):
        first = _login(issuer, sessions, sender)
        clock.advance(seconds=30)
        second = _login(issuer, sessions, sender)
        sessions.logout(first.refresh_token)
        sessions.refresh_access_token(second.refresh_token)

    def test_logout_all(self, issuer, sessions, refresh_tokens, student, sender, clock):
        first = _login(issuer, sessions, sender)
        clock.advance(seconds=30)
        second = _login(issuer, sessions, sender)

        assert sessions.logout_all(student.id) == 2
        assert refresh_tokens.count_for_user(student.id) == 0
        for tokens in (first, second):
            with pytest.raises(TokenInvalid):
                sessions.refresh_access_token(tokens.refresh_token)
        assert sessions.logout_all(student.id) == 0
