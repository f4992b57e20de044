"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the gateway happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, central_login_url -> CENTRAL_LOGIN_URL).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates a SECRET_KEY with a warning; production
      mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It signs the
       access tokens handed to MCP clients.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random per-process key would invalidate every
       issued access token on restart.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, or cache/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("skillmap.config")


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
    secret_key: str = ""
    # Public base URL of this server, used as the OAuth issuer and to build
    # redirect URIs when the request URL cannot be trusted (behind a proxy).
    public_url: str = "http://localhost:8000"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    # Relational store for users and API keys (SQLAlchemy URL).
    database_url: str = "sqlite:///./skillmap_auth.db"
    # Key-value store for PKCE verifiers, grants and OAuth clients.
    # memory://, sqlite:///path or redis://host:port/db
    kv_url: str = "sqlite:///./skillmap_kv.db"
    # Shared SSO session store. Empty means "same store as kv_url".
    session_store_url: str = ""

    # ------------------------------------------------------------------
    # Session cookie
    # ------------------------------------------------------------------

    session_cookie_name: str = "workos_session"
    # Root domain shared by every server in the SSO family, e.g. ".example.com".
    # Empty string omits the Domain attribute (host-only cookie).
    cookie_domain: str = ""
    secure_cookies: bool = True

    # ------------------------------------------------------------------
    # Centralized login (account panel)
    # ------------------------------------------------------------------

    # When set, unauthenticated /authorize requests are sent here with
    # return_to=<authorize URL>. When empty, the gateway runs the PKCE
    # exchange against the identity provider itself.
    central_login_url: str = ""
    registration_url: str = "https://panel.wtyczki.ai/"

    # ------------------------------------------------------------------
    # Upstream identity provider
    # ------------------------------------------------------------------

    idp_client_id: str = ""
    idp_client_secret: str = ""
    idp_authorize_url: str = "https://api.workos.com/user_management/authorize"
    idp_token_url: str = "https://api.workos.com/user_management/authenticate"
    idp_provider: str = "authkit"
    idp_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Tokens issued to MCP clients
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 3600
    refresh_token_expire_days: int = 30

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    api_key_max_per_user: int = 10

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    callback_rate_limit: str = "20/minute"
    token_rate_limit: str = "30/minute"
    register_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Access tokens issued to MCP clients will not survive restart.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Issued access tokens will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @property
    def effective_session_store_url(self) -> str:
        """The URL of the SSO session store, falling back to kv_url."""
        return self.session_store_url or self.kv_url


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
