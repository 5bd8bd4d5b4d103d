"""Unit tests for auth/otp.py -- OtpVerifier and the OtpRecord state machine.

Covers:
- correct code: record USED, account verified, first_verification flag
- wrong codes: remaining attempts 2, 1, 0 then OtpMaxAttemptsExceeded even
  with the correct code (EXHAUSTED)
- replay of a verified code fails OtpExpired
- time-based expiry is detected lazily at read time (EXPIRED)
- two plain sends: only the newest record is ever selected
- racing wrong codes on a file-backed database stop at the maximum
"""

import threading
from datetime import timedelta

import pytest

from auth.models import Account, OtpRecord
from auth.otp import OtpVerifier
from auth.store import AccountStore, OtpStore, create_store_engine, to_iso
from auth.tokens import hash_otp_code
from core.errors import AccountNotFound, OtpExpired, OtpInvalid, OtpMaxAttemptsExceeded
from tests.conftest import STUDENT_EMAIL, STUDENT_ID, wrong_code


class TestVerifySuccess:
    def test_correct_code_verifies_account(self, issuer, verifier, accounts, otps, student, sender):
        issuer.send_otp(STUDENT_ID)
        verification = verifier.verify_otp(STUDENT_ID, sender.last_code(STUDENT_EMAIL))

        assert verification.account.id == student.id
        assert verification.account.is_verified is True
        assert verification.first_verification is True
        assert accounts.get_by_id(student.id).is_verified is True
        assert otps.list_for_email(STUDENT_EMAIL)[0].is_used is True

    def test_second_login_is_not_first_verification(self, issuer, verifier, student, sender, clock):
        issuer.send_otp(STUDENT_ID)
        verifier.verify_otp(STUDENT_ID, sender.last_code(STUDENT_EMAIL))
        clock.advance(minutes=1)
        issuer.send_otp(STUDENT_ID)
        verification = verifier.verify_otp(STUDENT_ID, sender.last_code(STUDENT_EMAIL))
        assert verification.first_verification is False

    def test_replay_fails(self, issuer, verifier, student, sender):
        issuer.send_otp(STUDENT_ID)
        code = sender.last_code(STUDENT_EMAIL)
        verifier.verify_otp(STUDENT_ID, code)
        with pytest.raises(OtpExpired):
            verifier.verify_otp(STUDENT_ID, code)

    def test_correct_code_after_one_miss(self, issuer, verifier, student, sender):
        issuer.send_otp(STUDENT_ID)
        code = sender.last_code(STUDENT_EMAIL)
        with pytest.raises(OtpInvalid):
            verifier.verify_otp(STUDENT_ID, wrong_code(code))
        verifier.verify_otp(STUDENT_ID, code)


class TestVerifyFailures:
    def test_unknown_student(self, verifier):
        with pytest.raises(AccountNotFound):
            verifier.verify_otp("PS/ITC/22/9999", "123456")

    def test_no_code_issued(self, verifier, student):
        with pytest.raises(OtpExpired):
            verifier.verify_otp(STUDENT_ID, "123456")

    def test_expired_code(self, issuer, verifier, student, sender, clock):
        issuer.send_otp(STUDENT_ID)
        code = sender.last_code(STUDENT_EMAIL)
        clock.advance(seconds=61)
        with pytest.raises(OtpExpired):
            verifier.verify_otp(STUDENT_ID, code)

    def test_code_valid_at_exact_expiry(self, issuer, verifier, student, sender, clock):
        issuer.send_otp(STUDENT_ID)
        clock.advance(seconds=60)
        verifier.verify_otp(STUDENT_ID, sender.last_code(STUDENT_EMAIL))

    def test_attempts_countdown_then_lockout(self, issuer, verifier, otps, student, sender):
        issuer.send_otp(STUDENT_ID)
        code = sender.last_code(STUDENT_EMAIL)
        bad = wrong_code(code)

        remaining = []
        for _ in range(3):
            with pytest.raises(OtpInvalid) as exc_info:
                verifier.verify_otp(STUDENT_ID, bad)
            remaining.append(exc_info.value.remaining_attempts)
        assert remaining == [2, 1, 0]
        assert otps.list_for_email(STUDENT_EMAIL)[0].attempts == 3

        with pytest.raises(OtpMaxAttemptsExceeded):
            verifier.verify_otp(STUDENT_ID, code)
        # Lockout does not consume further attempts.
        assert otps.list_for_email(STUDENT_EMAIL)[0].attempts == 3

    def test_invalid_message_mentions_remaining(self, issuer, verifier, student, sender):
        issuer.send_otp(STUDENT_ID)
        with pytest.raises(OtpInvalid) as exc_info:
            verifier.verify_otp(STUDENT_ID, wrong_code(sender.last_code(STUDENT_EMAIL)))
        assert exc_info.value.message == "Invalid OTP. 2 attempt(s) remaining."
        assert exc_info.value.code == "OTP_INVALID"

    def test_resend_after_lockout_gives_fresh_attempts(self, issuer, verifier, student, sender, clock):
        issuer.send_otp(STUDENT_ID)
        bad = wrong_code(sender.last_code(STUDENT_EMAIL))
        for _ in range(3):
            with pytest.raises(OtpInvalid):
                verifier.verify_otp(STUDENT_ID, bad)
        issuer.resend_otp(STUDENT_ID)
        verification = verifier.verify_otp(STUDENT_ID, sender.last_code(STUDENT_EMAIL))
        assert verification.account.student_id == STUDENT_ID


class TestDoubleSend:
    def test_only_newest_record_is_selected(self, issuer, verifier, otps, student, sender, clock):
        issuer.send_otp(STUDENT_ID)
        first = sender.last_code(STUDENT_EMAIL)
        clock.advance(seconds=5)
        issuer.send_otp(STUDENT_ID)
        second = sender.last_code(STUDENT_EMAIL)

        if first != second:
            with pytest.raises(OtpInvalid):
                verifier.verify_otp(STUDENT_ID, first)
        records = otps.list_for_email(STUDENT_EMAIL)
        assert records[0].attempts == 0
        assert records[0].is_used is False

        verifier.verify_otp(STUDENT_ID, second)
        records = otps.list_for_email(STUDENT_EMAIL)
        assert records[1].is_used is True
        # The older record was never superseded; it stays unused until it expires.
        assert records[0].is_used is False


class TestConcurrentFailures:
    def test_racing_wrong_codes_never_exceed_max(self, tmp_path, monkeypatch, settings, clock):
        # File-backed so each thread gets its own connection to the same database.
        engine = create_store_engine(f"sqlite:///{tmp_path / 'race.db'}")
        accounts, otps = AccountStore(engine), OtpStore(engine)
        accounts.create_account(Account(student_id=STUDENT_ID, email=STUDENT_EMAIL))
        record_id = otps.create(
            OtpRecord(
                email=STUDENT_EMAIL,
                hashed_code=hash_otp_code("111111", rounds=4),
                created_at=to_iso(clock()),
                expires_at=to_iso(clock() + timedelta(seconds=60)),
            )
        )
        otps.increment_attempts(record_id, 3)
        otps.increment_attempts(record_id, 3)
        verifier = OtpVerifier(accounts, otps, settings, clock=clock)

        # Both submissions read attempts=2 before either one writes.
        barrier = threading.Barrier(2, timeout=5)

        def mismatch_after_barrier(code, hashed):
            barrier.wait()
            return False

        monkeypatch.setattr("auth.otp.verify_otp_code", mismatch_after_barrier)

        outcomes = []

        def submit():
            try:
                verifier.verify_otp(STUDENT_ID, "222222")
            except (OtpInvalid, OtpMaxAttemptsExceeded) as exc:
                outcomes.append(type(exc).__name__)

        threads = [threading.Thread(target=submit) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        try:
            assert sorted(outcomes) == ["OtpInvalid", "OtpMaxAttemptsExceeded"]
            assert otps.list_for_email(STUDENT_EMAIL)[0].attempts == 3
        finally:
            engine.dispose()
