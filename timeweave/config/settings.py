"""
Environment and configuration settings for Timeweave.

Uses pydantic-settings for environment variable management with validation.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TRACKED_ENTITY_TYPES = [
    "campaign",
    "world",
    "location",
    "character",
    "party",
    "kingdom",
    "settlement",
    "structure",
    "encounter",
    "event",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TIMEWEAVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    store_path: Optional[str] = Field(
        default=None,
        description="Directory for the JSON-backed timeline store (memory only if unset)",
    )

    # Versioning limits
    max_payload_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Maximum serialized payload size, before and after compression",
    )
    max_ancestry_depth: int = Field(
        default=100,
        description="Maximum hops when walking branch ancestry",
    )

    # Fork / merge
    tracked_entity_types: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TRACKED_ENTITY_TYPES),
        description="Entity types copied into a child branch on fork",
    )
    merge_entity_types: list[str] = Field(
        default_factory=lambda: ["settlement", "structure"],
        description="Entity types compared by branch merge preview/execute",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string",
    )

    # Telemetry
    otel_enabled: bool = Field(default=False, description="Export traces/metrics via OTLP")
    otel_endpoint: str = Field(
        default="http://localhost:4317",
        description="OTLP collector endpoint",
    )
    service_name: str = Field(default="timeweave", description="Telemetry service name")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()


def load_settings_file(config_path: str) -> Settings:
    """
    Load settings overrides from a YAML file.

    Values in the file take precedence over environment variables.

    Args:
        config_path: Path to a YAML mapping of setting names to values

    Returns:
        Settings instance with the overrides applied
    """
    path = Path(config_path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {config_path}")

    with open(path) as f:
        overrides = yaml.safe_load(f) or {}

    if not isinstance(overrides, dict):
        raise ValueError(f"Settings file must contain a mapping: {config_path}")

    return Settings(**overrides)


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure root logging from settings."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=settings.log_format,
    )
