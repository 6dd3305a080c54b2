"""Configuration management using pydantic-settings"""

import os
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when the environment cannot support the configured paths"""


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server Configuration
    port: int = 3000
    host: str = "0.0.0.0"
    request_body_max_bytes: int = Field(default=1_048_576, description="Maximum accepted request body size")
    shutdown_timeout_ms: int = Field(default=30_000, description="Grace period for in-flight requests on shutdown")

    # Storage Configuration
    download_dir: str = Field(default="/data/files", description="Root directory for downloaded files")
    db_path: str = Field(default="/data/mega-bridge.db", description="SQLite database file")
    database_url: Optional[str] = Field(default=None, description="SQLAlchemy URL, derived from db_path when unset")

    # Download Configuration
    max_concurrent: int = Field(default=2, description="Maximum concurrent file transfers")
    retry_interval: int = Field(default=60, description="Minutes between rate-limit retry sweeps")
    transfer_timeout_seconds: Optional[int] = Field(
        default=None, description="Abort a single transfer after this many seconds (disabled when unset)"
    )
    source_timeout_seconds: int = Field(default=60, description="Timeout for remote folder API calls")

    # Application Configuration
    environment: str = Field(default="production", validation_alias=AliasChoices("ENVIRONMENT", "NODE_ENV"))
    log_level: str = Field(default="info", description="Log level: debug, info, warning, error")

    @field_validator(
        "port",
        "request_body_max_bytes",
        "shutdown_timeout_ms",
        "max_concurrent",
        "retry_interval",
        "source_timeout_seconds",
    )
    @classmethod
    def require_positive_int(cls, v: int, info: ValidationInfo) -> int:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be a positive integer, got {v!r}")
        return v

    @field_validator("transfer_timeout_seconds", mode="before")
    @classmethod
    def validate_transfer_timeout(cls, v):
        """Treat an empty TRANSFER_TIMEOUT_SECONDS= as disabled"""
        if v == "" or v is None:
            return None
        if int(v) <= 0:
            raise ValueError(f"transfer_timeout_seconds must be a positive integer, got {v!r}")
        return v

    @model_validator(mode="after")
    def derive_database_url(self) -> "Settings":
        """Build the SQLite URL from db_path unless DATABASE_URL overrides it"""
        if not self.database_url:
            self.database_url = f"sqlite:///{Path(self.db_path).as_posix()}"
        return self

    @property
    def retry_interval_minutes(self) -> int:
        return self.retry_interval

    def ensure_directories(self) -> None:
        """Create the database and download directories and verify they are writable"""
        db_dir = Path(self.db_path).parent
        download_dir = Path(self.download_dir)

        db_dir.mkdir(parents=True, exist_ok=True)
        download_dir.mkdir(parents=True, exist_ok=True)

        if not os.access(db_dir, os.W_OK):
            raise ConfigurationError(
                f"Cannot write to database directory: {db_dir}. "
                "If running in Docker with a volume mount, ensure the volume is writable by the container user."
            )
        if not os.access(download_dir, os.W_OK):
            raise ConfigurationError(f"Cannot write to download directory: {download_dir}.")


# Global settings instance
settings = Settings()
