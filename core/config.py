"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Passgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): cross-field validation after all fields are
      resolved. Used for the DEBUG-conditional SECRET_KEY logic: dev mode
      generates a key with a warning, production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the HMAC token hashes both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
notify/, or client/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("passgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'passgate.db'}"


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
    app_name: str = "Passgate"
    # Base URL of the frontend; used to build links in outgoing email.
    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Credential store
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Upper bound on waiting for a connection or a write lock.
    db_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 3600
    max_refresh_tokens_per_user: int = 5
    revoke_all_on_logout: bool = False

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    mfa_ticket_expire_seconds: int = 5 * 60
    mfa_ticket_max_attempts: int = 5
    # Accepted TOTP clock skew, in 30-second steps either side of now.
    mfa_valid_window: int = 1
    mfa_backup_code_count: int = 8

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    password_reset_expire_seconds: int = 3600
    require_verified_email: bool = False

    # ------------------------------------------------------------------
    # Rate limiting (slowapi / limits notation)
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    register_rate_limit: str = "5/minute"
    password_reset_rate_limit: str = "5/minute"
    rate_limit_storage_uri: str = "memory://"

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    purge_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Mail
    # ------------------------------------------------------------------

    mail_backend: str = "log"  # "log" or "smtp"
    mail_from: str = "no-reply@passgate.local"
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # Generic OIDC (Okta, Azure AD, Keycloak, Authentik, etc.)
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("mail_backend")
    @classmethod
    def validate_mail_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("log", "smtp"):
            raise ValueError("MAIL_BACKEND must be 'log' or 'smtp'.")
        return value

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive a restart.

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

    All modules should call get_settings() rather than constructing Settings()
    directly. In tests: call get_settings.cache_clear() between test cases if
    you need to inject different environment variables.
    """
    return Settings()
