"""Pydantic models for persisted water usage events."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from flowsense.analysis.types import FlowSample, ensure_utc


class WaterEventRecord(BaseModel):
    """A closed, classified water usage event as stored."""

    model_config = ConfigDict(
        from_attributes=True,
        frozen=True,
        json_schema_extra={
            "example": {
                "id": 42,
                "meter_id": "kitchen-main",
                "start_time": "2025-03-01T07:01:00+00:00",
                "end_time": "2025-03-01T07:04:00+00:00",
                "duration_seconds": 180,
                "volume_ml": 1650,
                "peak_flow_rate": 600,
                "avg_flow_rate": 550,
                "category": "faucet",
                "confidence": 80,
                "anomaly": False,
            }
        },
    )

    id: int
    meter_id: str = Field(description="Meter the event was observed on")
    start_time: datetime
    end_time: datetime
    duration_seconds: int = Field(ge=0)
    volume_ml: int = Field(ge=0, description="Event volume (mL)")
    peak_flow_rate: int = Field(ge=0, description="Peak flow rate (mL/min)")
    avg_flow_rate: int = Field(ge=0, description="Average flow rate (mL/min)")
    category: str = Field(default="", description="Category label, empty if unclassified")
    confidence: int = Field(default=0, ge=0, le=100)
    anomaly: bool = False
    anomaly_description: str | None = None
    flow_data: list[FlowSample] = Field(default_factory=list)

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_times(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def volume_liters(self) -> float:
        return self.volume_ml / 1000

    def contains(self, timestamp: datetime) -> bool:
        """Whether timestamp lies within [start_time, end_time]."""
        return self.start_time <= timestamp <= self.end_time
