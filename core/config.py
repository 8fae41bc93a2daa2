"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Rollcall happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, hydra_url -> HYDRA_URL).

  @model_validator(mode="after"): dev mode (DEBUG=true) generates a session
      signing key with a warning, production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. The session cookie is
  an HS256 JWT signed with it.

  trusted_client_ids gates the consent bypass scope. A client that is not in
  this list never gets scopes granted without an explicit consent round trip,
  even when it asks for the bypass scope.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, classes/, or bus/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("rollcall.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'rollcall.db'}"


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

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_expire_seconds: int = 8 * 3600

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Dry run uses a scratch SQLite file and the log-only bus publisher.
    dry_run: bool = False
    database_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Authorization server (Hydra-compatible admin + public endpoints)
    # ------------------------------------------------------------------

    hydra_url: str = "http://localhost:4445"
    hydra_public_url: str = "http://localhost:4444"
    # First-party client used by /me; must be listed in trusted_client_ids.
    hydra_client_id: str = "account"
    hydra_client_secret: str = ""
    redirect_url: str = "http://localhost:8080/callback"
    upstream_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------

    consent_bypass_scope: str = "nonconsentual"
    trusted_client_ids: list[str] = ["account"]

    # ------------------------------------------------------------------
    # Message bus (empty URL = log-only publisher)
    # ------------------------------------------------------------------

    bus_url: str = ""
    bus_timeout_seconds: float = 0.5

    # ------------------------------------------------------------------
    # Rate limiting / registration / classes
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    self_registration_enabled: bool = True
    default_member_role: str = "student"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Generate a throwaway signing key under DEBUG, otherwise require one.

        A generated key invalidates every login cookie and every OAuth state
        cookie on restart. Keys under 32 characters are refused in all modes.
        """
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY must be set outside debug mode "
                    "(environment or .env). Set DEBUG=true for a throwaway key."
                )
            self.secret_key = secrets.token_hex(32)
            logger.warning("SECRET_KEY not set; generated one for this process only.")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
