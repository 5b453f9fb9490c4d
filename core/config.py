"""
core/config.py -- Process configuration via pydantic-settings.

All environment variable reads for Homeboard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Two kinds of configuration exist and must not be confused:

  Process settings (this module): read once from the environment / .env at
      startup. Database location, cookie flags, log level, listener address.
      Changing them requires a restart.

  Runtime settings (auth/config_store.py): persisted in the system_config
      table and editable by an administrator while the server runs. Proxy
      trust, session TTLs and the default permission group live there and are
      read fresh on every request.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  @model_validator(mode="after"): cross-field validation after the
      environment has been resolved. Used for the DEBUG-conditional
      SECRET_KEY policy and to derive database/backup locations from DATA_DIR.

Security notes:
  SECRET_KEY keys the HMAC under which session tokens are stored. A key
  shorter than 32 chars is rejected outright. In production mode a missing
  key is a hard startup failure; rotating it invalidates every session.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/ or database/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("homeboard.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `database_url` reads from DATABASE_URL, `debug` reads from DEBUG.
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
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    data_dir: Path = Path("data")
    # Empty string means "derive from data_dir".
    database_url: str = ""
    backup_dir: Path | None = None
    max_backups: int = 3
    # Upper bound on a single migration step. A step that runs longer is
    # interrupted and reported as failed.
    migration_statement_timeout_seconds: float = 300.0

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    host: str = "0.0.0.0"  # nosec B104 -- self-hosted dashboard, bound behind a proxy
    port: int = 3001
    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = []

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_cookie_name: str = "session_id"
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def derive_storage_paths(self) -> "Settings":
        """Fill database_url and backup_dir from data_dir when they are unset."""
        if not self.database_url:
            self.database_url = f"sqlite:///{self.data_dir / 'homeboard.db'}"
        if self.backup_dir is None:
            self.backup_dir = self.data_dir / "backups"
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
