"""
Configuration for branch merging.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from timeweave.config.settings import get_settings


@dataclass
class MergeConfig:
    """Settings for merge preview, execution and conflict detection."""

    # Entity types compared by preview/execute
    entity_types: list[str] = field(
        default_factory=lambda: list(get_settings().merge_entity_types)
    )

    # Objects nested deeper than this are compared as whole values
    max_depth: int = 50

    # Include auto-resolved changes in previews
    include_auto_resolved: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_types": list(self.entity_types),
            "max_depth": self.max_depth,
            "include_auto_resolved": self.include_auto_resolved,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MergeConfig":
        """Create from dictionary."""
        config = cls(
            max_depth=data.get("max_depth", 50),
            include_auto_resolved=data.get("include_auto_resolved", True),
        )
        if "entity_types" in data:
            config.entity_types = list(data["entity_types"])
        return config


# Global configuration instance
_merge_config: Optional[MergeConfig] = None


def get_merge_config() -> MergeConfig:
    """
    Get the global merge configuration.

    Creates a default configuration if none exists.
    """
    global _merge_config
    if _merge_config is None:
        _merge_config = MergeConfig()
    return _merge_config


def set_merge_config(config: Optional[MergeConfig]):
    """Set (or with None, reset) the global merge configuration."""
    global _merge_config
    _merge_config = config


def configure_merge(
    entity_types: Optional[list[str]] = None,
    max_depth: int = 50,
    include_auto_resolved: bool = True,
) -> MergeConfig:
    """
    Convenience function to configure merge settings.

    Returns:
        The configured MergeConfig, also installed globally
    """
    config = MergeConfig(max_depth=max_depth, include_auto_resolved=include_auto_resolved)
    if entity_types is not None:
        config.entity_types = list(entity_types)

    set_merge_config(config)
    return config
