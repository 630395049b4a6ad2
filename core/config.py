"""
core/config.py -- Centralized configuration for authgate via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
directly -- import get_settings() instead, or accept a Settings instance.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): reads AUTHGATE_* environment variables and
      an optional .env file. Type coercion and range validation are built in.

  @model_validator(mode="after"): cross-field checks that run after all fields
      are resolved. Used for the DEBUG-conditional SECRET_KEY policy and for
      the "both or neither" rule on the Auth0 settings.

Security notes:
  SECRET_KEY signs locally issued session tokens and keys device fingerprints.
  Keys shorter than 32 characters are rejected. In production mode (DEBUG not
  set) a missing key is a hard startup failure; in debug mode a random key is
  generated with a warning.

Layer rule: core/ is the kernel. This module may not import from auth/ or
devices/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'authgate.db'}"


class Settings(BaseSettings):
    """Runtime settings loaded from AUTHGATE_* environment variables and .env.

    All fields have defaults so Settings(debug=True) can be built in tests
    without a real .env file. Field names map to env vars with the prefix,
    e.g. bcrypt_rounds reads from AUTHGATE_BCRYPT_ROUNDS.
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTHGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the "not configured" sentinel; the validator below
    # either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Local credentials
    # ------------------------------------------------------------------

    # bcrypt cost factor. Each +1 doubles verification time; 12 lands in the
    # low hundreds of milliseconds on current commodity CPUs, 10 in the tens.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    hash_workers: int = Field(default=4, ge=1, le=64)
    session_issuer: str = "authgate"
    token_expire_seconds: int = Field(default=3600, ge=60)
    refresh_token_expire_seconds: int = Field(default=7 * 24 * 3600, ge=60)
    require_verified_email: bool = True

    # ------------------------------------------------------------------
    # Auth0 (optional -- empty string means the provider is disabled)
    # ------------------------------------------------------------------

    auth0_domain: str = ""
    auth0_audience: str = ""
    jwks_cache_ttl_seconds: int = Field(default=600, ge=10)
    jwks_min_refresh_seconds: int = Field(default=30, ge=0)
    jwks_fetch_timeout_seconds: float = Field(default=5.0, gt=0)

    # Unlinked external identities are rejected unless this is switched on.
    auto_provision_external: bool = False

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Debug mode: auto-generate a random key with a warning. Session tokens
            will not survive a restart, which is fine for local development.

        Production mode: refuse to start without a key.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Session tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "AUTHGATE_SECRET_KEY is required in production mode. "
                    "Set it in your environment or .env file, or set AUTHGATE_DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("AUTHGATE_SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_auth0(self) -> "Settings":
        """Auth0 needs both a domain and an audience, or neither."""
        if bool(self.auth0_domain) != bool(self.auth0_audience):
            raise ValueError("AUTHGATE_AUTH0_DOMAIN and AUTHGATE_AUTH0_AUDIENCE must be set together.")
        return self

    @property
    def auth0_enabled(self) -> bool:
        return bool(self.auth0_domain and self.auth0_audience)

    @property
    def auth0_issuer(self) -> str:
        """Auth0 issues tokens with a trailing slash on the issuer URL."""
        return f"https://{self.auth0_domain.strip('/')}/"

    @property
    def auth0_jwks_url(self) -> str:
        return f"https://{self.auth0_domain.strip('/')}/.well-known/jwks.json"


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between cases that inject
    different environment variables, or build Settings(...) directly.
    """
    return Settings()
