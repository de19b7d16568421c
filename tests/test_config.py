"""Tests for settings, merge configuration and telemetry setup."""

import pytest

from timeweave.config.settings import Settings, load_settings_file
from timeweave.merge.config import MergeConfig, configure_merge, get_merge_config, set_merge_config
from timeweave.telemetry import configure_telemetry, is_telemetry_configured


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self):
        """Test default limits."""
        settings = Settings()
        assert settings.max_payload_bytes == 10 * 1024 * 1024
        assert settings.max_ancestry_depth == 100
        assert "settlement" in settings.tracked_entity_types
        assert settings.merge_entity_types == ["settlement", "structure"]

    def test_environment_override(self, monkeypatch):
        """Test TIMEWEAVE_ prefixed variables."""
        monkeypatch.setenv("TIMEWEAVE_MAX_ANCESTRY_DEPTH", "7")
        assert Settings().max_ancestry_depth == 7

    def test_yaml_file(self, tmp_path):
        """Test YAML overrides."""
        config = tmp_path / "timeweave.yaml"
        config.write_text("max_ancestry_depth: 12\nmerge_entity_types: [kingdom]\n")

        settings = load_settings_file(str(config))
        assert settings.max_ancestry_depth == 12
        assert settings.merge_entity_types == ["kingdom"]

    def test_yaml_file_missing(self, tmp_path):
        """Test a missing settings file."""
        with pytest.raises(FileNotFoundError):
            load_settings_file(str(tmp_path / "nope.yaml"))


class TestMergeConfig:
    """Tests for MergeConfig."""

    @pytest.fixture(autouse=True)
    def reset(self):
        yield
        set_merge_config(None)

    def test_round_trip_dict(self):
        """Test to_dict/from_dict keep every field."""
        config = MergeConfig(entity_types=["kingdom"], max_depth=5, include_auto_resolved=False)
        assert MergeConfig.from_dict(config.to_dict()) == config

    def test_configure_installs_global(self):
        """Test configure_merge replaces the global config."""
        config = configure_merge(entity_types=["structure"], max_depth=3)
        assert get_merge_config() is config
        assert config.entity_types == ["structure"]


class TestTelemetry:
    """Tests for telemetry setup."""

    def test_disabled_by_default(self):
        """Test nothing is exported unless enabled."""
        assert configure_telemetry(Settings(otel_enabled=False)) is False
        assert not is_telemetry_configured()
