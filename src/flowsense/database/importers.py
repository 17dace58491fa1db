"""
Bulk reading import.

Reads meter exports in CSV form and feeds them through ingestion so that
events are segmented, classified and stored exactly as for live readings.
"""

import csv
import logging

from collections.abc import Iterator
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from flowsense.analysis.types import Reading
from flowsense.models.ingest import ImportSummary
from flowsense.utils.validation import parse_datetime

if TYPE_CHECKING:
    from flowsense.analysis.service import IngestionService

logger = logging.getLogger(__name__)

TIMESTAMP_COLUMN = "timestamp"
# Older exports name the volume column "flowrate"
VALUE_COLUMNS = ("value", "flowrate")


class ReadingImporter:
    """
    Imports readings for one meter from a CSV file.

    Expected columns: timestamp (ISO 8601) and value (mL since the previous
    reading). Extra columns are ignored.
    """

    def __init__(self, service: "IngestionService", meter_id: str):
        self.service = service
        self.meter_id = meter_id
        self.invalid_rows = 0

    def read_csv(self, path: Path) -> Iterator[Reading]:
        """
        Yield valid readings from a CSV file, skipping malformed rows.

        Raises:
            ValueError: If required columns are missing
        """
        with open(path, newline="", encoding="utf-8") as f:
            reader = csv.DictReader(f)
            fields = [name.strip().lower() for name in reader.fieldnames or []]
            reader.fieldnames = fields

            value_column = next((c for c in VALUE_COLUMNS if c in fields), None)
            if TIMESTAMP_COLUMN not in fields or value_column is None:
                raise ValueError(
                    f"{path}: expected columns 'timestamp' and 'value', got {fields}"
                )

            for line_number, row in enumerate(reader, start=2):
                try:
                    yield Reading(
                        timestamp=parse_datetime(row[TIMESTAMP_COLUMN]),
                        value=int(row[value_column]),
                    )
                except (TypeError, ValueError, ValidationError) as e:
                    self.invalid_rows += 1
                    logger.warning(f"{path}:{line_number}: skipping invalid row: {e}")

    def import_file(self, path: str | Path, flush: bool = True) -> ImportSummary:
        """
        Import a CSV file.

        Args:
            path: CSV file path
            flush: Close an event still open at the end of the file

        Returns:
            ImportSummary with counts of accepted and rejected readings
        """
        path = Path(path)
        self.invalid_rows = 0
        logger.info(f"Importing readings for meter '{self.meter_id}' from {path}")

        summary = self.service.ingest_many(self.meter_id, self.read_csv(path), flush=flush)
        summary.invalid_rows = self.invalid_rows

        logger.info(
            f"Imported {summary.readings_accepted}/{summary.readings_read} readings, "
            f"{summary.events_created} events, {summary.invalid_rows} invalid rows"
        )
        return summary


def import_readings(
    service: "IngestionService", meter_id: str, path: str | Path, flush: bool = True
) -> ImportSummary:
    """Convenience wrapper around ReadingImporter.import_file."""
    return ReadingImporter(service, meter_id).import_file(path, flush=flush)
