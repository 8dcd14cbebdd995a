"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the portal happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): field names map to env var names
      (e.g. secret_key -> SECRET_KEY, max_login_attempts -> MAX_LOGIN_ATTEMPTS).
      List fields (allowed_hosts, cors_origins) are read as JSON arrays.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. HS256 token signing
  relies on key entropy.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure. In dev mode a random key is generated, which means issued
  tokens stop verifying after a restart.

  Access tokens must expire before refresh tokens: refresh_token_ratio is the
  refresh lifetime as a multiple of the access lifetime and must exceed 1.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("portal.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///portal_auth.db"
    store_timeout_seconds: float = Field(default=5.0, gt=0)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = Field(default=86400, gt=0)
    refresh_token_ratio: int = 7

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    max_login_attempts: int = Field(default=5, ge=1)
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    login_rate_limit: str = "10/minute"
    # False collapses every login failure to one generic message.
    expose_login_failure_reason: bool = True

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    registration_auto_activate: bool = True

    # First administrator, created at startup only while the user table is
    # empty. Leave the password blank to skip.
    bootstrap_admin_username: str = "admin"
    bootstrap_admin_email: str = "admin@localhost"
    bootstrap_admin_password: str = ""

    # ------------------------------------------------------------------
    # Access policy
    # ------------------------------------------------------------------

    # Verdict for unauthenticated requests to paths no rule matches.
    policy_unmatched_default: Literal["deny", "permit"] = "deny"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1"]
    cors_origins: list[str] = []

    # ------------------------------------------------------------------
    # Derived
    # ------------------------------------------------------------------

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(seconds=self.access_token_expire_seconds)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return self.access_token_ttl * self.refresh_token_ratio

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Issued tokens will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_token_lifetimes(self) -> "Settings":
        if self.refresh_token_ratio <= 1:
            raise ValueError("REFRESH_TOKEN_RATIO must be greater than 1 so access tokens expire first.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
