"""
core/config.py -- tokengate settings, read once from the environment.

Every knob the auth core and the API consult lives on Settings: signing keys,
token lifetimes, lockout and login rate-limit policy, the HTTP surface
(hosts, CORS, global slowapi limit) and housekeeping. Field names map to
upper-case environment variables (lockout_threshold -> LOCKOUT_THRESHOLD);
a .env file in the working directory is honoured. Read settings through
get_settings(), never os.environ.

Signing keys:
  [M6] SECRET_KEY and REFRESH_SECRET_KEY must be at least 32 characters.
  [M7] Outside DEBUG a missing SECRET_KEY stops startup; with DEBUG=true a
       throwaway key is generated and every token dies with the process.
  REFRESH_SECRET_KEY falls back to SECRET_KEY when unset.

Layer rule: core/ may not import from api/, auth/ or client/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tokengate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'tokengate_auth.db'}"


class Settings(BaseSettings):
    """Runtime configuration. Every field has a default except the signing key policy below."""

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
    refresh_secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Lockout (per principal)
    # ------------------------------------------------------------------

    lockout_threshold: int = 5
    lockout_duration_seconds: int = 2 * 60 * 60

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # Login attempts per source address, evaluated before any credential check.
    login_rate_limit_attempts: int = 5
    login_rate_limit_window_seconds: int = 15 * 60
    # "memory" keeps windows in-process; "database" shares them through the
    # auth database so several API instances see the same counters.
    rate_limit_backend: str = "memory"
    # App-wide slowapi limit per client address.
    global_rate_limit: str = "100/15minutes"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:5173", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Housekeeping / registration
    # ------------------------------------------------------------------

    purge_interval_seconds: int = 60 * 60
    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_keys(self) -> "Settings":
        """Apply the signing-key policy [M6][M7] and reject unknown backends."""
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY is required unless DEBUG=true. "
                    "Set it in the environment or in .env."
                )
            self.secret_key = secrets.token_hex(32)
            logger.warning("DEBUG: generated a throwaway SECRET_KEY; issued tokens die with this process.")
        self.refresh_secret_key = self.refresh_secret_key or self.secret_key
        for name in ("secret_key", "refresh_secret_key"):
            if len(getattr(self, name)) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if self.rate_limit_backend not in ("memory", "database"):
            raise ValueError("RATE_LIMIT_BACKEND must be 'memory' or 'database'.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Settings singleton. Tests that change the environment call get_settings.cache_clear()."""
    return Settings()
