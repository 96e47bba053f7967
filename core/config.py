"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for nestguard happen here. No module should
call os.getenv() or os.environ.get() directly -- the application factory
calls get_settings() once and hands the Settings object to every component
that needs it (token services, stores, the orchestrator).

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. admin_jwt_secret -> ADMIN_JWT_SECRET). Type coercion and validation
      are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Implements the signing-secret policy: dev mode generates
      throwaway secrets with a warning, production refuses to start without
      them, and short secrets are always rejected.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("nestguard.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'nestguard.db'}"

# HS256 keys below this length have too little entropy to sign anything we
# later trust for authorization decisions.
MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true). The
    model_validator enforces production-safety rules at startup.
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
    database_url: str = _DEFAULT_DB_URL
    # Upper bound on how long any single store call may wait for a lock or a
    # pooled connection. Exceeding it surfaces as a TransientError (503).
    store_timeout_seconds: float = 5.0
    # Hosts accepted by TrustedHostMiddleware and origins allowed by CORS.
    # Lists are read from the environment as JSON, e.g. ALLOWED_HOSTS='["admin.example.com"]'.
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    # Interval of the background job that marks expired tokens and sessions.
    purge_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Admin tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured"; see validator.
    admin_jwt_secret: str = ""
    admin_jwt_issuer: str = "nestguard-admin-api"
    admin_jwt_audience: str = "nestguard-admin-portal"
    admin_access_ttl_seconds: int = 3600
    admin_refresh_ttl_seconds: int = 7 * 24 * 3600

    # ------------------------------------------------------------------
    # End-user tokens
    # ------------------------------------------------------------------

    user_jwt_secret: str = ""
    user_jwt_issuer: str = "nestguard-api"
    user_jwt_audience: str = "nestguard-users"
    user_access_ttl_seconds: int = 3600
    user_refresh_ttl_seconds: int = 30 * 24 * 3600

    # ------------------------------------------------------------------
    # Passwords and lockout
    # ------------------------------------------------------------------

    # bcrypt cost factor. 12 keeps a verify in the tens of milliseconds on
    # current hardware; tests drop it to 4 (the bcrypt minimum).
    password_work_factor: int = 12
    password_min_length: int = 8
    lockout_threshold: int = 5
    lockout_window_seconds: int = 900
    lockout_duration_seconds: int = 900

    # ------------------------------------------------------------------
    # Single-use tokens
    # ------------------------------------------------------------------

    invitation_ttl_days: int = 7
    password_reset_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    permission_cache_ttl_seconds: float = 30.0

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_secrets(self) -> "Settings":
        """Enforce the signing-secret policy for both token domains.

        Dev mode (DEBUG=true): auto-generate random secrets with a warning.
            Tokens will not survive a restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if either
            secret is missing.

        Both modes: reject secrets shorter than MIN_SECRET_LENGTH, and reject
            a user secret equal to the admin secret so a token from one domain
            can never verify in the other.
        """
        for field_name in ("admin_jwt_secret", "user_jwt_secret"):
            value = getattr(self, field_name)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{field_name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                setattr(self, field_name, secrets.token_hex(32))
                logger.warning(
                    "Using auto-generated %s. Tokens will not persist across restarts.",
                    field_name.upper(),
                )
            elif len(value) < MIN_SECRET_LENGTH:
                raise ValueError(f"{field_name.upper()} must be at least {MIN_SECRET_LENGTH} characters.")
        if self.admin_jwt_secret == self.user_jwt_secret:
            raise ValueError("ADMIN_JWT_SECRET and USER_JWT_SECRET must differ.")
        if not 4 <= self.password_work_factor <= 31:
            raise ValueError("PASSWORD_WORK_FACTOR must be between 4 and 31.")
        if self.lockout_threshold < 1:
            raise ValueError("LOCKOUT_THRESHOLD must be at least 1.")
        return self

    @property
    def admin_refresh_audience(self) -> str:
        return f"{self.admin_jwt_audience}-refresh"

    @property
    def user_refresh_audience(self) -> str:
        return f"{self.user_jwt_audience}-refresh"


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or construct Settings(...)
    directly and pass it to build_components().
    """
    return Settings()
