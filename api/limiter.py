"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

These are per-IP limits that sit in front of the per-email OTP window
enforced by auth.otp.RateLimiter. The IP limit blunts code brute-forcing
and email spraying across many student IDs; the per-email window is the
authoritative one and survives restarts because it is rebuilt from the store.

Using a single shared instance ensures all routes share the same in-memory
counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

SEND_OTP_LIMIT = _settings.send_otp_rate_limit
VERIFY_OTP_LIMIT = _settings.verify_otp_rate_limit
