"""Application settings loaded from the environment."""
import logging
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class Settings(BaseSettings):
    """Runtime configuration for revisable-core.

    Every field can be overridden with a ``REVISABLE_``-prefixed environment
    variable (e.g. ``REVISABLE_DATABASE_URL``) or a ``.env`` file.
    """

    database_url: str = Field(default="sqlite:///./revisable.db")
    database_echo: bool = False
    database_pool_size: int = Field(default=3, ge=1)
    database_max_overflow: int = Field(default=7, ge=0)

    log_level: str = "INFO"

    # Retroactive change events are dispatched after commit when enabled
    notifications_enabled: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="REVISABLE_",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level '{value}'")
        return level

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings (cached after the first call)."""
    return Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging the same way for every entry point."""
    logging.basicConfig(
        level=level or get_settings().log_level,
        format=LOG_FORMAT,
    )
