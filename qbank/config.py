"""Application configuration using Pydantic Settings.

Every field can be set through a ``QBANK_``-prefixed environment variable
(``QBANK_DB_HOST``, ``QBANK_LOCK_TIMEOUT_SECONDS``, ...) or a ``.env`` file.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="QBANK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # Application
    # =========================================================================
    environment: Literal["prod", "staging", "dev"] = Field(
        default="dev",
        description="Deployment environment; dev logs to a colored console",
    )
    debug: bool = Field(
        default=False,
        description="Echo SQL statements",
    )

    # =========================================================================
    # Database
    # =========================================================================
    database_dsn: str | None = Field(
        default=None,
        description="SQLAlchemy URL; takes precedence over the db_* fields",
    )
    db_user: str = Field(default="qbank_app")
    db_password: str = Field(default="")
    db_name: str = Field(default="qbank")
    db_host: str = Field(default="localhost")
    db_port: int = Field(default=5432)
    db_pool_size: int = Field(
        default=5,
        ge=1,
        description="Connections kept open per process",
    )
    db_pool_max_overflow: int = Field(
        default=10,
        ge=0,
        description="Extra connections allowed under load",
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def database_url(self) -> str:
        """``database_dsn`` when set, otherwise asyncpg over TCP."""
        if self.database_dsn:
            return self.database_dsn
        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    # =========================================================================
    # Tree engine
    # =========================================================================
    lock_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Max wait for subtree/question locks and row locks",
    )
    bulk_chunk_size: int = Field(
        default=500,
        ge=1,
        description="Questions locked together in bulk categorization",
    )
    max_search_results: int = Field(
        default=100,
        ge=1,
        description="Default cap on category search hits",
    )
    max_tree_depth: int = Field(
        default=10,
        ge=0,
        description="Default depth limit for tree reads",
    )
    export_format_version: str = Field(
        default="1.0",
        description="Version stamped on tree exports",
    )

    # =========================================================================
    # Logging
    # =========================================================================
    log_level: str = Field(default="INFO")
    log_json: bool = Field(
        default=True,
        description="JSON log lines outside dev",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
