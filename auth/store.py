"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AccountStore, OtpStore and
RefreshTokenStore are the repositories; _row_to_* are the mappers. Service
code never touches SQL directly.

All three repositories share one Engine built by create_store_engine(), so
they see the same database and connection pool.

Concurrency:
  The core holds no locks. Counters rely on the database's atomic statements:
  attempts are bumped with UPDATE ... SET attempts = attempts + 1 WHERE
  attempts < max, and refresh-token inserts are guarded by UNIQUE(token_hash).
  Nothing here caches OTP or token state -- every call reads the latest row.

Time:
  Timestamps are UTC ISO-8601 strings with a fixed microsecond precision so
  that lexical order equals chronological order. Callers pass "now" in
  explicitly; the stores never read the clock for query predicates.

Security:
  All queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import Account, OtpRecord, RefreshTokenRecord
from core.errors import InternalError

logger = logging.getLogger("citsa.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("student_id", String(64), nullable=False, unique=True),
    Column("email", String(255), nullable=False),
    Column("role", String(30), nullable=False, server_default="student"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("full_name", Text),
    Column("program", Text),
    Column("class_year", String(16)),
    Column("created_at", String(32), nullable=False),
)

_otp_records = Table(
    "otp_records",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, index=True),
    Column("hashed_code", String(60), nullable=False),  # bcrypt hash
    Column("created_at", String(32), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("is_used", Integer, nullable=False, server_default="0"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("user_id", Integer, nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    """Build the shared Engine and create any missing tables."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Translate driver failures into InternalError.

    The original exception is logged with its traceback and chained, but only
    the generic InternalError message reaches the client.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Store failure during %s", operation)
        raise InternalError("A storage error occurred.") from exc


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account records. Implements the AccountLookup protocol.

    Usage:
        engine = create_store_engine("sqlite:///citsa_auth.db")
        accounts = AccountStore(engine)
        accounts.create_account(Account(student_id="PS/ITC/22/0120", email="ama.osei@ucc.edu.gh"))
        account = accounts.find_by_student_id("PS/ITC/22/0120")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its database ID.

        Raises sqlalchemy.exc.IntegrityError if the student ID already exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    student_id=account.student_id,
                    email=account.email,
                    role=account.role,
                    is_active=1 if account.is_active else 0,
                    is_verified=1 if account.is_verified else 0,
                    full_name=account.full_name,
                    program=account.program,
                    class_year=account.class_year,
                    created_at=account.created_at or _now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def find_by_student_id(self, student_id: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.student_id == student_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_id(self, user_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == user_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def mark_verified(self, user_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == user_id).values(is_verified=1))

    def set_active(self, student_id: str, active: bool) -> bool:
        """Activate or deactivate an account. Returns False if it does not exist."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.student_id == student_id).values(is_active=1 if active else 0)
            )
        return result.rowcount > 0


class OtpStore:
    """Repository for OtpRecord rows."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, record: OtpRecord) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _otp_records.insert().values(
                    email=record.email,
                    hashed_code=record.hashed_code,
                    created_at=record.created_at or _now_iso(),
                    expires_at=record.expires_at,
                    attempts=record.attempts,
                    is_used=1 if record.is_used else 0,
                )
            )
            return result.inserted_primary_key[0]

    def count_created_since(self, email: str, since: str) -> int:
        """Number of records issued for email at or after the given timestamp."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_otp_records)
                .where((_otp_records.c.email == email) & (_otp_records.c.created_at >= since))
            ).scalar()
        return result or 0

    def find_latest_active(self, email: str, now: str) -> OtpRecord | None:
        """Return the newest unused, unexpired record for email, or None.

        Ties on created_at fall back to the insertion order (id).
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _otp_records.select()
                .where(
                    (_otp_records.c.email == email)
                    & (_otp_records.c.is_used == 0)
                    & (_otp_records.c.expires_at >= now)
                )
                .order_by(_otp_records.c.created_at.desc(), _otp_records.c.id.desc())
                .limit(1)
            ).fetchone()
        return _row_to_otp(row) if row is not None else None

    def increment_attempts(self, record_id: int, max_attempts: int) -> int | None:
        """Atomically add one failed attempt and return the stored count.

        The update only applies while attempts < max_attempts, so concurrent
        failures can never push the count past the limit. Returns None when
        the limit was already reached.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _otp_records.update()
                .where((_otp_records.c.id == record_id) & (_otp_records.c.attempts < max_attempts))
                .values(attempts=_otp_records.c.attempts + 1)
            )
            if result.rowcount == 0:
                return None
            attempts = conn.execute(
                select(_otp_records.c.attempts).where(_otp_records.c.id == record_id)
            ).scalar()
        return attempts or 0

    def mark_used(self, record_id: int) -> bool:
        """Flip is_used on one record.

        Returns False when the record was already used, so two concurrent
        verifications of the same code cannot both succeed.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _otp_records.update()
                .where((_otp_records.c.id == record_id) & (_otp_records.c.is_used == 0))
                .values(is_used=1)
            )
        return result.rowcount > 0

    def invalidate_unused(self, email: str) -> int:
        """Mark every unused record for email as used. Returns rows changed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _otp_records.update()
                .where((_otp_records.c.email == email) & (_otp_records.c.is_used == 0))
                .values(is_used=1)
            )
        return result.rowcount

    def delete_expired(self, now: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_otp_records.delete().where(_otp_records.c.expires_at < now))
        return result.rowcount

    def list_for_email(self, email: str) -> list[OtpRecord]:
        """All records for email, oldest first. Used by the admin CLI and tests."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _otp_records.select()
                .where(_otp_records.c.email == email)
                .order_by(_otp_records.c.created_at, _otp_records.c.id)
            ).fetchall()
        return [_row_to_otp(r) for r in rows]


class RefreshTokenStore:
    """Repository for the refresh-token whitelist."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, record: RefreshTokenRecord) -> int:
        """Insert a whitelist entry.

        Raises sqlalchemy.exc.IntegrityError if the token hash already exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(
                    token_hash=record.token_hash,
                    user_id=record.user_id,
                    created_at=record.created_at or _now_iso(),
                    expires_at=record.expires_at,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_hash(self, token_hash: str) -> RefreshTokenRecord | None:
        """Look up a whitelist entry by hash. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def delete_by_hash(self, token_hash: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token_hash == token_hash))
        return result.rowcount

    def delete_by_id(self, record_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.id == record_id))
        return result.rowcount

    def delete_for_user(self, user_id: int) -> int:
        """Revoke every session of a user in one statement."""
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
        return result.rowcount

    def delete_expired(self, now: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < now))
        return result.rowcount

    def count_for_user(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_refresh_tokens).where(_refresh_tokens.c.user_id == user_id)
            ).scalar()
        return result or 0


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        student_id=row.student_id,
        email=row.email,
        role=row.role,
        is_active=bool(row.is_active),
        is_verified=bool(row.is_verified),
        full_name=row.full_name,
        program=row.program,
        class_year=row.class_year,
        created_at=row.created_at,
    )


def _row_to_otp(row) -> OtpRecord:
    return OtpRecord(
        id=row.id,
        email=row.email,
        hashed_code=row.hashed_code,
        created_at=row.created_at,
        expires_at=row.expires_at,
        attempts=row.attempts,
        is_used=bool(row.is_used),
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        token_hash=row.token_hash,
        user_id=row.user_id,
        created_at=row.created_at,
        expires_at=row.expires_at,
    )
