"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for credcore happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. DEBUG mode generates a SECRET_KEY with a
      warning; production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. The HMAC digests
       for opaque tokens and the per-kind JWT signing keys are all derived from
       it -- a short key weakens every one of them.

  [M7] In production mode a missing SECRET_KEY is a hard startup failure.

  Cookies: SECURE_COOKIES defaults to on unless DEBUG is set, so a production
       deployment never ships session cookies over plain HTTP by accident.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("credcore.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'credcore.db'}"


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
    database_url: str = _DEFAULT_DB_URL
    api_version: str = "1"

    # ------------------------------------------------------------------
    # Bearer tokens and cookies
    # ------------------------------------------------------------------

    # Optional per-kind signing keys. Empty means "derive from SECRET_KEY".
    user_signing_key: str = ""
    admin_signing_key: str = ""
    token_expire_seconds: int = 3600
    # None means "decide from DEBUG" (secure unless running in dev mode).
    secure_cookies: Optional[bool] = None

    # ------------------------------------------------------------------
    # Secret lifetimes (seconds)
    # ------------------------------------------------------------------

    email_verification_ttl_seconds: int = 24 * 60 * 60
    password_reset_ttl_seconds: int = 60 * 60
    two_factor_otp_ttl_seconds: int = 5 * 60
    login_otp_ttl_seconds: int = 5 * 60
    authorization_code_ttl_seconds: int = 60

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    # bcrypt cost factor. Tests lower this to keep the suite fast.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7] and resolve the cookie default.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        for name in ("user_signing_key", "admin_signing_key"):
            value = getattr(self, name)
            if value and len(value) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.user_signing_key and self.user_signing_key == self.admin_signing_key:
            raise ValueError("USER_SIGNING_KEY and ADMIN_SIGNING_KEY must differ.")
        if self.secure_cookies is None:
            self.secure_cookies = not self.debug
        return self

    @property
    def api_prefix(self) -> str:
        return f"/api/v{self.api_version}"


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
