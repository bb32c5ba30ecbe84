"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the trade-in service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. alchemy_api_key -> ALCHEMY_API_KEY). Type coercion and validation
      are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. A remote valuation URL without an API key is a hard startup
      failure in production and a warning (mock mode) in debug.

Layer rule: core/ is the kernel. This module may not import from api/,
tradein/, shipping/, or cache/.
"""

import logging
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("equipped.config")


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
    # SQLAlchemy URL for the trade-in store. Empty string means the default
    # SQLite file next to tradein/store.py.
    database_url: str = ""
    # SQLite file for issued valuations. Empty string means the default path.
    valuation_db_path: str = ""
    # Optional JSON file replacing the built-in device catalog and base values.
    catalog_path: str = ""

    # ------------------------------------------------------------------
    # Lifecycle deadlines and tolerances
    # ------------------------------------------------------------------

    valuation_ttl_days: int = Field(default=30, ge=1)
    label_ttl_days: int = Field(default=30, ge=1)
    trade_in_ttl_days: int = Field(default=30, ge=1)
    # Inspected value may differ from the quote by up to this many dollars
    # without requiring customer approval.
    adjustment_tolerance: float = Field(default=0.0, ge=0)

    # ------------------------------------------------------------------
    # Integrations
    # ------------------------------------------------------------------

    default_carrier: str = "FedEx"
    alchemy_api_url: str = ""
    alchemy_api_key: str = ""

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    rate_limit_enabled: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_alchemy(self) -> "Settings":
        """Refuse a half-configured valuation partner outside debug mode.

        Debug mode: a URL without a key falls back to the local mock engine
            with a warning.
        Production mode: a URL without a key is a startup error. Silently
            quoting from the mock catalog in production would issue offers
            nobody can honour.
        """
        if self.alchemy_api_url and not self.alchemy_api_key:
            if self.debug:
                logger.warning("ALCHEMY_API_URL set without ALCHEMY_API_KEY -- using local mock valuations.")
            else:
                raise ValueError(
                    "ALCHEMY_API_KEY is required when ALCHEMY_API_URL is set. "
                    "Unset ALCHEMY_API_URL to use local valuations, or set DEBUG=true."
                )
        return self

    @property
    def use_remote_valuations(self) -> bool:
        return bool(self.alchemy_api_url and self.alchemy_api_key) and not self.debug


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
