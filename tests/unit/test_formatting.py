"""Tests for display formatting helpers."""

from datetime import UTC, datetime

import pytest

from flowsense.utils.formatting import (
    format_duration,
    format_flow_rate,
    format_liters,
    format_local,
    format_volume,
    get_zone,
)


class TestVolumes:
    @pytest.mark.parametrize(
        "ml,expected", [(0, "0.0"), (1700, "1.7"), (60000, "60.0"), (40, "0.0"), (123456, "123.5")]
    )
    def test_format_liters(self, ml, expected):
        assert format_liters(ml) == expected

    def test_format_volume(self):
        assert format_volume(1700) == "1.7 L"


class TestDuration:
    @pytest.mark.parametrize(
        "seconds,expected",
        [
            (0, "0m 0s"),
            (45, "0m 45s"),
            (180, "3m 0s"),
            (3599, "59m 59s"),
            (3600, "1h 0m"),
            (3900, "1h 5m"),
            (90061, "25h 1m"),
        ],
    )
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    def test_missing_duration(self):
        assert format_duration(None) == "N/A"


class TestFlowRate:
    def test_uniform_flow(self):
        assert format_flow_rate(5000, 5000) == "5.0 L/min"

    def test_varied_flow(self):
        assert format_flow_rate(6000, 5000) == "Varied"


class TestTimezones:
    def test_known_zone(self):
        zone = get_zone("Europe/Berlin")
        value = datetime(2025, 7, 1, 12, 0, tzinfo=UTC)

        assert format_local(value, zone, "%H:%M") == "14:00"

    @pytest.mark.parametrize("name", [None, ""])
    def test_default_is_utc(self, name):
        assert str(get_zone(name)) == "UTC"

    def test_unknown_zone_falls_back(self, caplog):
        assert str(get_zone("Not/AZone")) == "UTC"
        assert "Unknown timezone" in caplog.text
