"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for settings files.
"""

import os
import tempfile

import pytest
import yaml

from usage_analytics.config.loader import (
    DatabaseConfig,
    IngestionConfig,
    Settings,
    load_settings,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "database": {
                "path": "/tmp/usage.db",
                "timeout_seconds": 10
            },
            "ingestion": {
                "batch_size": 250,
                "max_workers": 4
            },
            "reports": {
                "top_users_limit": 25
            },
            "logging": {
                "level": "debug",
                "json": True
            }
        }

        config = load_settings(self._write_config(config_data))

        assert config.database.path == "/tmp/usage.db"
        assert config.database.timeout_seconds == 10.0
        assert config.ingestion.batch_size == 250
        assert config.ingestion.max_workers == 4
        assert config.reports.top_users_limit == 25
        assert config.logging.level == "DEBUG"
        assert config.logging.json is True

    def test_partial_config_keeps_defaults(self):
        """Test that omitted sections and keys fall back to defaults."""
        config = load_settings(self._write_config({"ingestion": {"max_workers": 2}}))

        assert config.ingestion.max_workers == 2
        assert config.ingestion.batch_size == 100
        assert config.database == DatabaseConfig()
        assert config.reports.top_users_limit == 10

    def test_empty_file_gives_defaults(self):
        """Test that an empty file is the default configuration."""
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("")

        assert load_settings(config_path) == Settings()

    def test_missing_file_raises_error(self):
        """Test that missing config file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_settings(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml_raises_error(self):
        """Test that invalid YAML raises YAMLError."""
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("database: [unclosed\n")

        with pytest.raises(yaml.YAMLError, match="Invalid YAML"):
            load_settings(config_path)

    def test_non_mapping_rejected(self):
        with pytest.raises(ValueError, match="must be a mapping"):
            load_settings(self._write_config(["database"]))

    def test_unknown_top_level_key_rejected(self):
        """Test that a typo in a section name is not silently ignored."""
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_settings(self._write_config({"databse": {"path": "x.db"}}))

    def test_unknown_section_key_rejected(self):
        with pytest.raises(ValueError, match="Unknown keys in ingestion"):
            load_settings(self._write_config({"ingestion": {"batch": 5}}))

    def test_section_must_be_dictionary(self):
        with pytest.raises(ValueError, match="'reports' must be a dictionary"):
            load_settings(self._write_config({"reports": 5}))

    @pytest.mark.parametrize("config_data, message", [
        ({"database": {"path": 5}}, "database.path"),
        ({"database": {"timeout_seconds": "slow"}}, "database.timeout_seconds"),
        ({"ingestion": {"batch_size": 1.5}}, "ingestion.batch_size"),
        ({"ingestion": {"max_workers": True}}, "ingestion.max_workers"),
        ({"reports": {"top_users_limit": "ten"}}, "reports.top_users_limit"),
        ({"logging": {"json": "yes"}}, "logging.json"),
    ])
    def test_wrong_types_rejected(self, config_data, message):
        """Test that values of the wrong type name the offending key."""
        with pytest.raises(ValueError, match=message):
            load_settings(self._write_config(config_data))

    @pytest.mark.parametrize("config_data", [
        {"database": {"path": ""}},
        {"database": {"timeout_seconds": 0}},
        {"ingestion": {"batch_size": 0}},
        {"ingestion": {"max_workers": -1}},
        {"reports": {"top_users_limit": 0}},
        {"logging": {"level": "verbose"}},
    ])
    def test_out_of_range_values_rejected(self, config_data):
        with pytest.raises(ValueError):
            load_settings(self._write_config(config_data))


class TestConfigDefaults:
    def test_defaults(self):
        settings = Settings()
        assert settings.database.path == "usage_analytics.db"
        assert settings.database.timeout_seconds == 5.0
        assert settings.ingestion == IngestionConfig(batch_size=100, max_workers=1)
        assert settings.reports.top_users_limit == 10
        assert settings.logging.level == "INFO"
        assert settings.logging.json is False
