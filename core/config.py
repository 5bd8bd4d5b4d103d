"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for CITSA Auth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Settings
      are loaded once at startup and never mutated afterwards.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_access_secret -> JWT_ACCESS_SECRET).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode (DEBUG=true) generates missing JWT secrets with a
      warning; production mode refuses to start without them.

Security notes:
  [M6] JWT secrets shorter than 32 chars are rejected outright.
  [M7] The access and refresh secrets must differ. A refresh token must never
       verify as an access token and vice versa.

Layer rule: core/ is the kernel. This module may not import from api/, auth/
or mail/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("citsa.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = "sqlite:///citsa_auth.db"

    # ------------------------------------------------------------------
    # JWT
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured".
    jwt_access_secret: str = ""
    jwt_refresh_secret: str = ""
    access_token_expire_seconds: int = Field(default=3600, gt=0)
    refresh_token_expire_seconds: int = Field(default=30 * 24 * 3600, gt=0)
    # Off by default: the refresh token is reused until it expires or is revoked.
    refresh_token_rotation: bool = False

    # ------------------------------------------------------------------
    # OTP
    # ------------------------------------------------------------------

    otp_expiry_seconds: int = Field(default=60, gt=0)
    otp_max_attempts: int = Field(default=3, gt=0)
    otp_rate_limit_window_minutes: int = Field(default=5, gt=0)
    otp_rate_limit_max_requests: int = Field(default=3, gt=0)
    otp_hash_rounds: int = Field(default=10, ge=4, le=16)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    cleanup_interval_seconds: int = Field(default=3600, gt=0)

    # ------------------------------------------------------------------
    # Email delivery
    # ------------------------------------------------------------------

    email_provider: Literal["console", "smtp", "resend"] = "console"
    email_from_address: str = "noreply@clink.citsaucc.org"
    email_from_name: str = "CITSA App"

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True

    resend_api_key: str = ""

    # ------------------------------------------------------------------
    # Per-IP rate limiting (slowapi), in addition to the per-email OTP limit
    # ------------------------------------------------------------------

    send_otp_rate_limit: str = "5/minute"
    verify_otp_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the JWT secret policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either secret is missing.
        """
        for name in ("jwt_access_secret", "jwt_refresh_secret"):
            if getattr(self, name):
                continue
            if self.debug:
                setattr(self, name, secrets.token_hex(32))
                logger.warning(
                    "WARNING: Using auto-generated %s. Sessions will not persist across restarts.",
                    name.upper(),
                )
            else:
                raise ValueError(
                    f"{name.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.jwt_access_secret) < 32 or len(self.jwt_refresh_secret) < 32:
            raise ValueError("JWT secrets must be at least 32 characters.")
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ.")
        return self

    @model_validator(mode="after")
    def validate_email_provider(self) -> "Settings":
        """Fail fast when the selected email provider is missing its credentials."""
        if self.email_provider == "smtp" and not self.smtp_host:
            raise ValueError("EMAIL_PROVIDER=smtp requires SMTP_HOST.")
        if self.email_provider == "resend" and not self.resend_api_key:
            raise ValueError("EMAIL_PROVIDER=resend requires RESEND_API_KEY.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
