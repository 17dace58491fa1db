"""
Tests for CSV reading import.
"""

from datetime import UTC, datetime

import pytest

from flowsense.analysis.service import IngestionService
from flowsense.database.importers import ReadingImporter, import_readings
from flowsense.sample_data import generate_household_readings, write_readings_csv

METER = "meter-1"


@pytest.fixture
def ingestion(store, rules_config):
    service = IngestionService(store, rules_config)
    yield service
    service.close()


def write_csv(path, text):
    path.write_text(text, encoding="utf-8")
    return path


class TestReadingImporter:
    def test_import_creates_events(self, ingestion, store, tmp_path):
        path = write_csv(
            tmp_path / "readings.csv",
            "timestamp,value\n"
            "2025-03-01T07:00:00+00:00,0\n"
            "2025-03-01T07:01:00+00:00,500\n"
            "2025-03-01T07:02:00+00:00,600\n"
            "2025-03-01T07:03:00+00:00,550\n"
            "2025-03-01T07:04:00+00:00,0\n",
        )

        summary = ReadingImporter(ingestion, METER).import_file(path)

        assert summary.readings_read == 5
        assert summary.readings_accepted == 5
        assert summary.events_created == 1
        assert summary.invalid_rows == 0
        assert store.list_events(METER)[0].volume_ml == 1650

    def test_legacy_flowrate_column(self, ingestion, tmp_path):
        path = write_csv(
            tmp_path / "legacy.csv",
            "Timestamp,FlowRate\n"
            "2025-03-01T07:00:00Z,500\n"
            "2025-03-01T07:01:00Z,500\n"
            "2025-03-01T07:02:00Z,500\n",
        )

        summary = import_readings(ingestion, METER, path)

        assert summary.readings_accepted == 3
        assert summary.events_created == 1

    def test_invalid_rows_counted(self, ingestion, tmp_path, caplog):
        path = write_csv(
            tmp_path / "dirty.csv",
            "timestamp,value\n"
            "2025-03-01T07:00:00,0\n"
            "not-a-time,100\n"
            "2025-03-01T07:02:00,-4\n"
            "2025-03-01T07:03:00,abc\n"
            "2025-03-01T07:04:00,0\n",
        )

        summary = ReadingImporter(ingestion, METER).import_file(path)

        assert summary.invalid_rows == 3
        assert summary.readings_read == 2
        assert "skipping invalid row" in caplog.text

    def test_out_of_order_rows_rejected(self, ingestion, tmp_path):
        path = write_csv(
            tmp_path / "shuffled.csv",
            "timestamp,value\n"
            "2025-03-01T07:01:00,0\n"
            "2025-03-01T07:00:00,0\n"
            "2025-03-01T07:02:00,0\n",
        )

        summary = ReadingImporter(ingestion, METER).import_file(path)

        assert summary.readings_accepted == 2
        assert summary.readings_rejected == 1

    def test_missing_columns(self, ingestion, tmp_path):
        path = write_csv(tmp_path / "bad.csv", "time,volume\n2025-03-01,1\n")

        with pytest.raises(ValueError, match="expected columns"):
            ReadingImporter(ingestion, METER).import_file(path)

    def test_no_flush_leaves_event_open(self, ingestion, tmp_path):
        path = write_csv(
            tmp_path / "open.csv",
            "timestamp,value\n"
            "2025-03-01T07:00:00,500\n"
            "2025-03-01T07:01:00,500\n"
            "2025-03-01T07:02:00,500\n",
        )

        summary = ReadingImporter(ingestion, METER).import_file(path, flush=False)

        assert summary.events_created == 0
        assert ingestion.segmenter.has_open_event(METER)


class TestSampleData:
    def test_generated_day_round_trips_through_import(self, ingestion, store, tmp_path):
        start = datetime(2025, 3, 1, tzinfo=UTC)
        readings = generate_household_readings(start, days=1, seed=7, include_leak=True)
        path = tmp_path / "sample.csv"

        written = write_readings_csv(readings, path)
        summary = ReadingImporter(ingestion, METER).import_file(path)

        assert written == 1440
        assert summary.readings_accepted == 1440
        assert summary.events_created > 0
        assert store.stats()["anomalies"] >= 1

    def test_generation_is_reproducible(self):
        start = datetime(2025, 3, 1, tzinfo=UTC)

        first = generate_household_readings(start, seed=3)
        second = generate_household_readings(start, seed=3)

        assert first == second
        assert sum(r.value for r in first) > 0

    @pytest.mark.parametrize("kwargs", [{"days": 0}, {"interval_seconds": 0}])
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            generate_household_readings(datetime(2025, 3, 1, tzinfo=UTC), **kwargs)
