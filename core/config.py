"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning, production mode refuses to start without one.

Both services read the same Settings class. The auth service uses the JWT,
database and rate limit fields; the gateway uses the JWT fields (for local
verification) plus the edge_* / downstream_* / validation_* fields.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. HS256 signing
       relies on key entropy -- a short key makes offline brute force feasible.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random per-process key would make every token
       issued by the auth service unverifiable at the gateway.

Layer rule: core/ is the kernel. This module may not import from api/, auth/
or gateway/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'authgate.db'}"


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
    log_level: str = "INFO"
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "authgate"
    jwt_audience: str = "authgate-clients"
    access_token_expire_minutes: int = Field(default=15, gt=0)
    refresh_token_expire_days: int = Field(default=7, gt=0)

    # ------------------------------------------------------------------
    # Auth service
    # ------------------------------------------------------------------

    auth_db_url: str = _DEFAULT_DB_URL
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Gateway
    # ------------------------------------------------------------------

    auth_validation_endpoint: str = "http://auth-sso:8000/api/v1/auth/validate-with-claims"
    validation_timeout_seconds: float = Field(default=5.0, gt=0)
    # false = fail-closed: a presented credential that cannot be verified is
    # rejected at the edge instead of being forwarded anonymously.
    edge_fail_open: bool = False
    downstream_url: str = "http://api:8080"
    proxy_timeout_seconds: float = Field(default=30.0, gt=0)
    gateway_rate_limit: str = "300/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart and the gateway can only verify
            them remotely -- acceptable for local dev.

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
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
