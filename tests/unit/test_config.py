"""
Tests for configuration loading and the default meter setting.
"""

import pytest

from flowsense.config import (
    FlowSenseConfig,
    LoggingConfig,
    get_config_path,
    get_default_meter,
    load_config,
    load_settings,
    save_config,
    set_default_meter,
    unset_default_meter,
)
from flowsense.constants import SegmentationConstants


@pytest.fixture
def config_file(isolated_home):
    path = get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


class TestLoadConfig:
    def test_missing_file_is_empty(self):
        assert load_config() == {}
        assert load_settings() == FlowSenseConfig()

    def test_defaults(self):
        settings = load_settings()

        assert settings.segmentation.flow_threshold_ml == SegmentationConstants.FLOW_THRESHOLD_ML
        assert settings.segmentation.min_event_samples == 3
        assert settings.classifier.backend == "llm"
        assert settings.display.timezone == "UTC"

    def test_sections_read(self, config_file):
        config_file.write_text(
            "[segmentation]\n"
            "flow_threshold_ml = 100\n"
            "sampling_interval_seconds = 30.0\n"
            "\n"
            "[classifier]\n"
            'backend = "rules"\n'
            "\n"
            "[display]\n"
            'timezone = "Europe/London"\n'
        )

        settings = load_settings()

        assert settings.segmentation.flow_threshold_ml == 100
        assert settings.segmentation.sampling_interval_seconds == 30.0
        assert settings.classifier.backend == "rules"
        assert settings.display.timezone == "Europe/London"

    def test_corrupt_file_is_empty(self, config_file, caplog):
        config_file.write_text("[segmentation\nbroken")

        assert load_config() == {}
        assert "Failed to load config" in caplog.text

    def test_invalid_values_use_defaults(self, config_file, caplog):
        config_file.write_text('[classifier]\nbackend = "magic"\n')

        assert load_settings() == FlowSenseConfig()
        assert "Invalid configuration values" in caplog.text

    def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

        assert load_settings().classifier.get_api_key() == "sk-test"

    def test_logging_section(self, config_file):
        config_file.write_text(
            "[logging]\n"
            "enabled = false\n"
            'level = "info"\n'
            "max_size_mb = 2\n"
            "backup_count = 1\n"
        )

        logging_settings = load_settings().logging

        assert not logging_settings.enabled
        assert logging_settings.level == "INFO"
        assert logging_settings.max_bytes == 2 * 1024 * 1024
        assert logging_settings.backup_count == 1

    def test_invalid_logging_values_use_defaults(self, config_file, caplog):
        config_file.write_text('[logging]\nmax_size_mb = "large"\n')

        assert load_settings().logging == LoggingConfig()
        assert "Invalid configuration values" in caplog.text


class TestDefaultMeter:
    def test_round_trip(self):
        assert get_default_meter() is None

        set_default_meter("kitchen-main")

        assert get_default_meter() == "kitchen-main"
        assert get_config_path().exists()

    def test_unset_removes_empty_file(self):
        set_default_meter("kitchen-main")

        unset_default_meter()

        assert get_default_meter() is None
        assert not get_config_path().exists()

    def test_unset_keeps_other_sections(self):
        save_config({"display": {"timezone": "Europe/Paris"}, "meter": {"default": "m1"}})

        unset_default_meter()

        assert load_config() == {"display": {"timezone": "Europe/Paris"}}
