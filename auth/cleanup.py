"""
auth/cleanup.py -- Periodic sweep of expired OTP and refresh-token rows.

Expiry is enforced lazily at read time by the OTP and session flows, so this
sweep is maintenance only: it keeps the tables small. A failing run is logged
and the loop carries on; nothing here may propagate into request handling.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from auth.otp import Clock, utcnow
from auth.store import OtpStore, RefreshTokenStore, to_iso

logger = logging.getLogger("citsa.cleanup")


@dataclass(frozen=True)
class CleanupResult:
    otps_deleted: int
    tokens_deleted: int


class CleanupScheduler:
    """Deletes expired rows on a fixed interval.

    Usage (inside the API lifespan):
        scheduler = CleanupScheduler(otps, refresh_tokens, interval_seconds=3600)
        task = asyncio.create_task(scheduler.run_forever())
        ...
        task.cancel()
    """

    def __init__(
        self,
        otps: OtpStore,
        refresh_tokens: RefreshTokenStore,
        interval_seconds: int = 3600,
        clock: Clock = utcnow,
    ) -> None:
        self._otps = otps
        self._refresh_tokens = refresh_tokens
        self.interval_seconds = interval_seconds
        self._clock = clock

    def run_once(self) -> CleanupResult:
        now = to_iso(self._clock())
        otps_deleted = self._otps.delete_expired(now)
        tokens_deleted = self._refresh_tokens.delete_expired(now)
        logger.info(
            "Cleaned up %d expired OTPs and %d expired refresh tokens",
            otps_deleted,
            tokens_deleted,
        )
        return CleanupResult(otps_deleted=otps_deleted, tokens_deleted=tokens_deleted)

    def safe_run_once(self) -> CleanupResult | None:
        """run_once() that logs and returns None instead of raising."""
        try:
            return self.run_once()
        except Exception:
            logger.exception("Token cleanup failed")
            return None

    async def run_forever(self) -> None:
        """Sweep every interval_seconds until cancelled.

        The blocking store calls run in a worker thread so the event loop keeps
        serving requests. CancelledError from task.cancel() during shutdown
        propagates out of asyncio.sleep and unwinds the coroutine cleanly.
        """
        while True:
            await asyncio.sleep(self.interval_seconds)
            await asyncio.to_thread(self.safe_run_once)
