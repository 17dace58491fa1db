"""Pydantic models for reading ingestion results."""

from datetime import datetime

from pydantic import BaseModel, Field

from flowsense.models.event import WaterEventRecord


class IngestResult(BaseModel):
    """Outcome of ingesting one reading."""

    meter_id: str
    timestamp: datetime
    accepted: bool = Field(description="False when the reading was dropped")
    reason: str | None = Field(default=None, description="Why the reading was dropped")
    event: WaterEventRecord | None = Field(
        default=None, description="Event completed by this reading"
    )


class ImportSummary(BaseModel):
    """Outcome of a bulk reading import."""

    meter_id: str
    readings_read: int = 0
    readings_accepted: int = 0
    readings_rejected: int = 0
    events_created: int = 0
    invalid_rows: int = 0
