"""
Recon Sync Configuration System.

This module provides a type-safe configuration system using Pydantic.
Settings can be loaded from:
1. Environment variables (prefixed with RECON_SYNC_)
2. Config file (TOML or JSON)
3. CLI arguments (highest priority)

Example usage:
    from recon_sync.config import Settings

    # Load from environment
    settings = Settings()

    # Or with explicit values
    settings = Settings(
        source_base_url="https://app.example.com/api/1.1/obj",
        source_api_token="your-token",
    )
"""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SourceLimits(BaseModel):
    """Paging, retry and concurrency limits for the source REST interface."""

    page_limit: int = Field(
        default=100,
        ge=1,
        le=100,
        description="Records requested per page (the source caps this at 100)",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout applied to every individual source call",
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per source call before giving up",
    )
    retry_backoff_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Linear backoff step between retries of a failed call",
    )
    max_retry_after_seconds: float = Field(
        default=60.0,
        ge=0,
        description="Upper bound on a Retry-After delay sent with HTTP 429",
    )
    max_concurrency: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Maximum source calls in flight at once",
    )
    id_batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Records fetched per chunk during an ID-list pass",
    )


class StoreConfig(BaseModel):
    """Local store configuration."""

    path: Path = Field(
        default=Path("recon.db"),
        description="Path to the local SQLite database",
    )


class SyncOptions(BaseModel):
    """Options controlling reconciliation behavior."""

    enable_push: bool = Field(
        default=True,
        description="Write locally newer records back to the source",
    )
    push_classes: list[str] = Field(
        default_factory=lambda: ["agent", "user", "payment"],
        description="Entity classes allowed to push local edits to the source",
    )
    repair_after_batch: bool = Field(
        default=True,
        description="Run the relationship repair pass after every batch",
    )
    progress_file: Path | None = Field(
        default=Path(".recon-sync-progress.json"),
        description="File used to share progress sessions between processes",
    )
    progress_ttl_hours: float = Field(
        default=24.0,
        gt=0,
        description="Age after which finished progress sessions are deleted",
    )
    progress_flush_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Minimum seconds between progress counter writes during a batch",
    )
    problem_queue_file: Path = Field(
        default=Path(".recon-sync-problems.json"),
        description="Durable problem queue location",
    )


class RepairOptions(BaseModel):
    """Relationship repair and validation options."""

    report_dir: Path = Field(
        default=Path("logs/relationship-validation"),
        description="Directory for relationship validation reports",
    )
    write_reports: bool = Field(
        default=False,
        description="Write JSON and text reports after validation",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Log level",
    )
    file: Path | None = Field(
        default=None,
        description="Log file path (None = console only)",
    )
    format: str = Field(
        default="rich",
        pattern="^(rich|json|simple)$",
        description="Log format: rich (colored), json, or simple",
    )
    max_file_size_mb: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Max log file size before rotation",
    )
    backup_count: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Number of rotated log files to keep",
    )
    activity_file: Path | None = Field(
        default=None,
        description="Append-only sync activity log (None = memory only)",
    )
    activity_buffer_size: int = Field(
        default=500,
        ge=10,
        le=10_000,
        description="Activity entries kept in memory for quick inspection",
    )


class Settings(BaseSettings):
    """
    Main settings class for Recon Sync.

    Settings are loaded in this priority (highest first):
    1. Explicit constructor arguments
    2. Environment variables (RECON_SYNC_* prefix)
    3. Config file (if specified)
    4. Defaults

    Example:
        # From environment
        export RECON_SYNC_SOURCE_BASE_URL="https://app.example.com/api/1.1/obj"
        export RECON_SYNC_SOURCE_API_TOKEN="your-token"
        settings = Settings()

        # From config file
        settings = Settings.from_file("config.toml")
    """

    model_config = SettingsConfigDict(
        env_prefix="RECON_SYNC_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Source credentials
    source_base_url: str = Field(
        default="",
        description="Base URL of the source object API",
    )
    source_api_token: SecretStr = Field(
        default=SecretStr(""),
        description="Bearer token for the source API",
    )

    # Nested configs
    source: SourceLimits = Field(default_factory=SourceLimits)
    store: StoreConfig = Field(default_factory=StoreConfig)
    sync: SyncOptions = Field(default_factory=SyncOptions)
    repair: RepairOptions = Field(default_factory=RepairOptions)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("source_api_token", mode="before")
    @classmethod
    def validate_token(cls, v: Any) -> SecretStr:
        """Handle token from various sources."""
        if isinstance(v, SecretStr):
            return v
        if isinstance(v, str):
            return SecretStr(v)
        return SecretStr("")

    @field_validator("source_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @classmethod
    def from_file(cls, path: Path | str) -> "Settings":
        """Load settings from a TOML or JSON config file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        content = path.read_text()

        if path.suffix in (".toml", ".tml"):
            data = tomllib.loads(content)
        elif path.suffix == ".json":
            data = json.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")

        return cls.model_validate(data)

    def to_file(self, path: Path | str) -> None:
        """Save current settings to a config file."""
        path = Path(path)
        data = self.model_dump(mode="json", exclude_none=True)

        # Mask sensitive data
        if "source_api_token" in data:
            data["source_api_token"] = "***REDACTED***"

        if path.suffix in (".toml", ".tml"):
            lines = []
            sections = []
            for key, value in data.items():
                if isinstance(value, dict):
                    sections.append((key, value))
                else:
                    lines.append(f"{key} = {json.dumps(value)}")
            for key, value in sections:
                lines.append(f"\n[{key}]")
                for k, v in value.items():
                    lines.append(f"{k} = {json.dumps(v)}")
            path.write_text("\n".join(lines) + "\n")
        else:
            path.write_text(json.dumps(data, indent=2))

    def validate_credentials(self) -> list[str]:
        """Validate that required credentials are present. Returns list of errors."""
        errors = []
        if not self.source_base_url:
            errors.append("source_base_url is required")
        elif not self.source_base_url.startswith(("http://", "https://")):
            errors.append("source_base_url must be an http(s) URL")
        if not self.source_api_token.get_secret_value():
            errors.append("source_api_token is required")
        return errors


def load_settings(
    config_file: Path | str | None = None,
    **overrides: Any,
) -> Settings:
    """
    Load settings with optional config file and overrides.

    Args:
        config_file: Optional path to config file
        **overrides: Settings to override (highest priority)

    Returns:
        Configured Settings instance
    """
    if config_file:
        settings = Settings.from_file(config_file)
        if overrides:
            data = settings.model_dump()
            data.update(overrides)
            return Settings.model_validate(data)
        return settings
    return Settings(**overrides)
