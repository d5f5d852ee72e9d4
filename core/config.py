"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for campusgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing secret with a
      warning, production mode refuses to start without one.

Security notes:
  JWT_SECRET shorter than 32 chars is rejected outright. HMAC token
       digests and JWT signing both rely on key entropy.

  In production mode (DEBUG not set or false), a missing JWT_SECRET is a
       hard startup failure. Every issued token would silently become invalid
       on restart otherwise.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or tenancy/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("campusgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'campusgate.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    database_url: str = _DEFAULT_DB_URL
    # Public host used to build links in outbound mail.
    domain: str = "localhost:3000"
    # Host headers accepted by TrustedHostMiddleware (JSON list in the env).
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Token signing
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev secret or raises, so callers never see "".
    jwt_secret: str = ""
    jwt_algorithm: Literal["HS256", "HS384", "HS512"] = "HS256"

    default_token_ttl_seconds: int = 60 * 60
    access_token_ttl_seconds: int = 60 * 60 * 24
    activation_token_ttl_seconds: int = 60 * 60 * 24 * 30
    reset_token_ttl_seconds: int = 60 * 60 * 24

    # ------------------------------------------------------------------
    # Internal service channel (S-Token header)
    # ------------------------------------------------------------------

    # Empty disables the channel: every S-Token request is rejected.
    internal_secret_token: str = ""

    # ------------------------------------------------------------------
    # Account recovery / rate limiting
    # ------------------------------------------------------------------

    recovery_delay_min_ms: int = 150
    recovery_delay_max_ms: int = 300

    login_rate_limit: str = "10/minute"
    recovery_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    super_admin_email: str = "sadmin@management-app.com"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_jwt_secret(self) -> "Settings":
        """Enforce the JWT_SECRET policy.

        Dev mode (DEBUG=true): auto-generate a random secret with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if JWT_SECRET is missing.

        Both modes: reject secrets shorter than 32 characters.
        """
        if not self.jwt_secret:
            if self.debug:
                self.jwt_secret = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated JWT_SECRET. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "JWT_SECRET is required in production mode. "
                    "Set JWT_SECRET in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.jwt_secret) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters.")
        if self.recovery_delay_min_ms > self.recovery_delay_max_ms:
            raise ValueError("RECOVERY_DELAY_MIN_MS must not exceed RECOVERY_DELAY_MAX_MS.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
