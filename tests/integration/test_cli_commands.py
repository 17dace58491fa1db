"""
Tests for CLI commands.

These tests verify the command-line interface functionality including:
- generate-sample and import-readings
- usage summaries in text and JSON form
- event listing, inspection and correction
- settings, data deletion and retention purge
- db and config management
"""

import json

import pytest

from click.testing import CliRunner

from flowsense.cli import cli
from flowsense.config import get_default_meter
from flowsense.database.session import cleanup_database

START = "2025-03-01T00:00:00+00:00"


@pytest.fixture
def cli_runner():
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def reset_database_state():
    """Reset global database state before and after each test."""
    cleanup_database()
    yield
    cleanup_database()


@pytest.fixture
def imported_db(cli_runner, temp_db, tmp_path):
    """Database holding one generated day of readings for meter 'home'."""
    csv_path = tmp_path / "sample.csv"
    result = cli_runner.invoke(
        cli,
        ["generate-sample", str(csv_path), "--start", START, "--seed", "11", "--leak"],
    )
    assert result.exit_code == 0, result.output

    result = cli_runner.invoke(
        cli,
        ["import-readings", str(csv_path), "--meter", "home", "--offline", "--db", str(temp_db)],
    )
    assert result.exit_code == 0, result.output
    return temp_db


def parse_json_output(output: str) -> dict:
    return json.loads(output[output.index("{"):])


class TestImport:
    def test_generate_sample(self, cli_runner, tmp_path):
        csv_path = tmp_path / "out.csv"

        result = cli_runner.invoke(
            cli, ["generate-sample", str(csv_path), "--start", START, "--days", "2"]
        )

        assert result.exit_code == 0
        assert "✓ Wrote 2880 readings" in result.output
        assert csv_path.read_text().startswith("timestamp,value")

    def test_generate_sample_invalid_days(self, cli_runner, tmp_path):
        result = cli_runner.invoke(
            cli, ["generate-sample", str(tmp_path / "x.csv"), "--days", "0"]
        )

        assert result.exit_code == 1
        assert "days must be at least 1" in result.output

    def test_import_summary(self, cli_runner, temp_db, tmp_path):
        csv_path = tmp_path / "sample.csv"
        cli_runner.invoke(cli, ["generate-sample", str(csv_path), "--start", START, "--seed", "2"])

        result = cli_runner.invoke(
            cli,
            ["import-readings", str(csv_path), "-m", "home", "--offline", "--db", str(temp_db)],
        )

        assert result.exit_code == 0
        assert "✓ Imported readings for meter 'home'" in result.output
        assert "Accepted:         1440" in result.output

    def test_import_missing_columns(self, cli_runner, temp_db, tmp_path):
        csv_path = tmp_path / "bad.csv"
        csv_path.write_text("when,litres\n2025-03-01,1\n")

        result = cli_runner.invoke(
            cli, ["import-readings", str(csv_path), "-m", "home", "--db", str(temp_db)]
        )

        assert result.exit_code == 1
        assert "expected columns" in result.output


class TestUsage:
    def test_usage_json(self, cli_runner, imported_db):
        result = cli_runner.invoke(
            cli,
            [
                "usage", "--meter", "home", "--start", START,
                "--end", "2025-03-02T00:00:00+00:00", "--json", "--offline",
                "--db", str(imported_db),
            ],
        )

        assert result.exit_code == 0, result.output
        report = parse_json_output(result.output)
        assert report["meter_id"] == "home"
        assert report["summary"]["total_usage_ml"] > 0
        assert report["summary"]["event_count"] > 0
        assert report["summary"]["anomaly_count"] >= 1
        assert len(report["summary"]["flow_data"]) == 288
        assert report["recommendations"][0]["id"] == "tip-leak"

    def test_usage_text_resolves_single_meter(self, cli_runner, imported_db):
        result = cli_runner.invoke(
            cli,
            [
                "usage", "--range", "day", "--end", "2025-03-02T00:00:00+00:00",
                "--offline", "--db", str(imported_db),
            ],
        )

        assert result.exit_code == 0, result.output
        assert "Water Usage: home (day)" in result.output
        assert "Tips:" in result.output

    def test_start_requires_end(self, cli_runner, imported_db):
        result = cli_runner.invoke(
            cli, ["usage", "--start", START, "--db", str(imported_db)]
        )

        assert result.exit_code == 2
        assert "--start requires --end" in result.output

    def test_reversed_window(self, cli_runner, imported_db):
        result = cli_runner.invoke(
            cli,
            [
                "usage", "--start", "2025-03-02", "--end", "2025-03-01",
                "--offline", "--db", str(imported_db),
            ],
        )

        assert result.exit_code == 1
        assert "before start" in result.output

    def test_no_meters(self, cli_runner, temp_db):
        result = cli_runner.invoke(cli, ["usage", "--db", str(temp_db)])

        assert result.exit_code == 1
        assert "No meters found" in result.output


class TestEvents:
    def test_list_events(self, cli_runner, imported_db):
        result = cli_runner.invoke(
            cli, ["list-events", "--limit", "5", "--db", str(imported_db)]
        )

        assert result.exit_code == 0
        assert "Category" in result.output
        assert "Showing 5 most recent events" in result.output

    def test_list_events_empty_filter(self, cli_runner, imported_db):
        result = cli_runner.invoke(
            cli,
            ["list-events", "--from", "2030-01-01", "--db", str(imported_db)],
        )

        assert result.exit_code == 0
        assert "No events found" in result.output

    def test_show_event(self, cli_runner, imported_db):
        result = cli_runner.invoke(cli, ["show-event", "1", "--db", str(imported_db)])

        assert result.exit_code == 0
        assert "Event 1 (home)" in result.output
        assert "Flow profile:" in result.output

    def test_show_missing_event(self, cli_runner, imported_db):
        result = cli_runner.invoke(cli, ["show-event", "99999", "--db", str(imported_db)])

        assert result.exit_code == 1
        assert "Event 99999 not found" in result.output

    def test_set_category(self, cli_runner, imported_db):
        result = cli_runner.invoke(
            cli, ["set-category", "1", "shower", "--db", str(imported_db)]
        )

        assert result.exit_code == 0
        assert "✓ Event 1 categorized as shower" in result.output

    def test_set_invalid_category(self, cli_runner, imported_db):
        result = cli_runner.invoke(
            cli, ["set-category", "1", "jacuzzi", "--db", str(imported_db)]
        )

        assert result.exit_code == 2

    def test_flag_and_clear(self, cli_runner, imported_db):
        flagged = cli_runner.invoke(
            cli, ["flag-event", "1", "--reason", "Night use", "--db", str(imported_db)]
        )
        cleared = cli_runner.invoke(
            cli, ["flag-event", "1", "--clear", "--db", str(imported_db)]
        )

        assert "✓ Event 1 flagged as anomalous" in flagged.output
        assert "✓ Anomaly flag cleared for event 1" in cleared.output


class TestSettingsAndLifecycle:
    def test_settings_show(self, cli_runner, imported_db):
        result = cli_runner.invoke(cli, ["settings", "show", "--db", str(imported_db)])

        assert result.exit_code == 0
        assert "data_retention_days" in result.output
        assert "90" in result.output

    def test_settings_set(self, cli_runner, imported_db):
        result = cli_runner.invoke(
            cli,
            [
                "settings", "set", "--retention-days", "30",
                "--no-allow-ai-analysis", "--db", str(imported_db),
            ],
        )

        assert result.exit_code == 0
        assert "✓ Settings updated" in result.output
        assert "allow_ai_analysis          False" in result.output

    def test_settings_set_requires_option(self, cli_runner, imported_db):
        result = cli_runner.invoke(cli, ["settings", "set", "--db", str(imported_db)])

        assert result.exit_code == 2
        assert "No settings given" in result.output

    def test_settings_reset(self, cli_runner, imported_db):
        cli_runner.invoke(
            cli, ["settings", "set", "--retention-days", "7", "--db", str(imported_db)]
        )

        result = cli_runner.invoke(
            cli, ["settings", "reset", "--yes", "--db", str(imported_db)]
        )

        assert result.exit_code == 0
        assert "data_retention_days        90" in result.output

    def test_delete_data(self, cli_runner, imported_db):
        result = cli_runner.invoke(
            cli, ["delete-data", "--meter", "home", "--force", "--db", str(imported_db)]
        )

        assert result.exit_code == 0
        assert "✓ Deleted 1440 readings" in result.output

    def test_delete_data_unknown_meter(self, cli_runner, imported_db):
        result = cli_runner.invoke(
            cli, ["delete-data", "--meter", "garage", "--force", "--db", str(imported_db)]
        )

        assert result.exit_code == 1
        assert "Meter 'garage' not found" in result.output

    def test_delete_data_aborted(self, cli_runner, imported_db):
        result = cli_runner.invoke(
            cli, ["delete-data", "--meter", "home", "--db", str(imported_db)], input="n\n"
        )

        assert result.exit_code == 1
        assert "Aborted" in result.output

    def test_purge(self, cli_runner, imported_db):
        result = cli_runner.invoke(
            cli, ["purge", "--now", "2025-07-01", "--db", str(imported_db)]
        )

        assert result.exit_code == 0
        assert "✓ Purged 1440 readings, cleared 0 flow profiles" in result.output


class TestDbAndConfig:
    def test_db_init_and_stats(self, cli_runner, temp_db):
        init = cli_runner.invoke(cli, ["db", "init", "--db", str(temp_db)])
        stats = cli_runner.invoke(cli, ["db", "stats", "--db", str(temp_db)])

        assert init.exit_code == 0
        assert f"✓ Database initialized at {temp_db}" in init.output
        assert stats.exit_code == 0
        assert "Meters: 0" in stats.output

    def test_set_default_meter(self, cli_runner, imported_db):
        result = cli_runner.invoke(
            cli, ["config", "set-default-meter", "home", "--db", str(imported_db)]
        )

        assert result.exit_code == 0
        assert "✓ Default meter: home" in result.output
        assert get_default_meter() == "home"

        shown = cli_runner.invoke(cli, ["config", "show"])
        assert 'default = "home"' in shown.output

        unset = cli_runner.invoke(cli, ["config", "unset-default-meter"])
        assert "✓ Removed default meter: home" in unset.output
        assert get_default_meter() is None

    def test_set_unknown_default_meter(self, cli_runner, imported_db):
        result = cli_runner.invoke(
            cli, ["config", "set-default-meter", "garage", "--db", str(imported_db)]
        )

        assert result.exit_code == 1
        assert "Available meters: home" in result.output

    def test_config_show_without_file(self, cli_runner):
        result = cli_runner.invoke(cli, ["config", "show"])

        assert "No config file" in result.output

    def test_version(self, cli_runner):
        result = cli_runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "flowsense" in result.output
