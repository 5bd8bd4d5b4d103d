"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these classes only own the domain shape.

Layer rule: no imports from api/ or mail/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass
class Account:
    """A student account as seen by the auth core.

    The account store owns these records. The OTP flow only reads them and
    flips is_verified after the first successful verification.
    """

    student_id: str
    email: str
    role: str = "student"  # "student", "class_rep", "admin"
    id: int | None = None
    is_active: bool = True
    is_verified: bool = False
    full_name: str | None = None
    program: str | None = None
    class_year: str | None = None
    created_at: str | None = None

    @property
    def needs_profile_setup(self) -> bool:
        return not (self.full_name and self.program and self.class_year)


@dataclass
class OtpRecord:
    """One issued verification code.

    hashed_code is a bcrypt hash; the plaintext code only ever exists in the
    outgoing email. Timestamps are UTC ISO-8601 strings.
    """

    email: str
    hashed_code: str
    expires_at: str
    id: int | None = None
    created_at: str | None = None
    attempts: int = 0
    is_used: bool = False


@dataclass
class RefreshTokenRecord:
    """Whitelist entry for an issued refresh token.

    token_hash is HMAC-SHA256(refresh secret, raw token). The raw token is
    returned to the client once and never persisted.
    """

    token_hash: str
    user_id: int
    expires_at: str
    id: int | None = None
    created_at: str | None = None


class AccountLookup(Protocol):
    """Read access to the external account store."""

    def find_by_student_id(self, student_id: str) -> Account | None: ...

    def get_by_id(self, user_id: int) -> Account | None: ...

    def mark_verified(self, user_id: int) -> None: ...
