"""
core/config.py -- Settings for TeamHarbour Auth, read from the environment.

Every environment variable the service understands is a field on Settings;
the rest of the code asks get_settings() (or receives a Settings instance)
and never touches os.environ itself. Field names map to upper-case variables
(access_token_secret -> ACCESS_TOKEN_SECRET) and a local .env file is read
when present.

get_settings() is cached with lru_cache: one Settings per process, built on
first use and never mutated afterwards.

The secret policy lives in a single after-validator. With DEBUG=true any
missing secret is generated (and a warning logged); without it, a missing
secret stops the process at startup. In both modes the two signing secrets
must be at least 32 characters and must differ, so an access token can never
verify as a refresh token or the other way round.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("teamharbour.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'teamharbour_auth.db'}"

_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Process-wide configuration. Defaults suit local development; tests
    construct Settings directly with explicit values.
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
    # Base URL of the front-end; invite links are built from it.
    client_url: str = "http://localhost:3000"
    allowed_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # either generates a dev secret or raises, so callers never see "".
    access_token_secret: str = ""
    refresh_token_secret: str = ""
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7
    token_issuer: str = "teamharbour-api"
    token_audience: str = "teamharbour-client"

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    admin_bootstrap_secret: str = ""
    invite_token_expire_hours: int = 48
    # 12 is the bcrypt default. Tests drop this to 4 (the bcrypt minimum).
    bcrypt_rounds: int = 12
    max_sessions_per_user: int = 5

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    auth_rate_limit: str = "10/15minutes"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the secret policy.

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Issued tokens stop verifying when the process restarts.

        Production mode (DEBUG=false or not set): refuse to start if any of
            the signing secrets or the bootstrap secret is missing.

        Both modes: reject signing secrets shorter than 32 characters, and
            reject identical access and refresh secrets.
        """
        for name in ("access_token_secret", "refresh_token_secret", "admin_bootstrap_secret"):
            if getattr(self, name):
                continue
            if not self.debug:
                raise ValueError(
                    f"{name.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, name, secrets.token_hex(32))
            logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", name.upper())

        for name in ("access_token_secret", "refresh_token_secret"):
            if len(getattr(self, name)) < _MIN_SECRET_LENGTH:
                raise ValueError(f"{name.upper()} must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Build Settings on first call and return the same instance afterwards.

    Call get_settings.cache_clear() to pick up changed environment variables.
    """
    return Settings()
