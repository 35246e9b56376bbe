"""
Configuration management for polydoc.

All configuration is done via environment variables (prefix ``POLYDOC_``),
loaded through pydantic-settings. Settings cover schema defaults, the storage
backend and logging.

Invariants:
    - All settings have sensible defaults for local development
    - Settings are loaded once per process and cached
    - Invalid values fail at load time, never at first use

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Schema-level defaults only apply to schemas created after loading
"""

from __future__ import annotations

import logging
from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported collection store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


class Settings(BaseSettings):
    """polydoc configuration loaded from environment."""

    # Schema defaults
    discriminator_key: str = Field(default="__t", description="Default discriminator key field")
    type_key: str = Field(default="type", description="Key marking a typed path definition")
    strict: bool = Field(default=True, description="Drop values for undeclared paths")
    apply_plugins_to_discriminators: bool = Field(
        default=False,
        description="Apply registry-level plugins to discriminator child schemas",
    )

    # Storage
    store_backend: StoreBackend = Field(default=StoreBackend.MEMORY)
    data_dir: str = Field(default="./polydoc-data", description="Directory for SQLite files")
    sqlite_busy_timeout_ms: int = Field(default=5000, ge=0)
    sqlite_wal_mode: bool = Field(default=True)

    # Observability
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="text", pattern="^(json|text)$")

    model_config = {"env_prefix": "POLYDOC_"}

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "polydoc configuration loaded",
            extra={
                "discriminator_key": self.discriminator_key,
                "store_backend": self.store_backend.value,
                "data_dir": self.data_dir,
                "log_level": self.log_level,
            },
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide settings (loaded from environment on first call)."""
    return Settings()


def reset_settings() -> None:
    """Drop cached settings (for testing only)."""
    get_settings.cache_clear()
