"""Shared analysis type definitions."""

from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from flowsense.constants import AnomalyType, ClassifierConstants


def ensure_utc(value: datetime) -> datetime:
    """Normalize a timestamp to an aware UTC datetime (naive input is taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ============================================================================
# Segmentation Types
# ============================================================================


class Reading(BaseModel):
    """
    One timestamped volume sample from a meter.

    Attributes:
        timestamp: Sample instant (UTC)
        value: Volume accumulated since the previous reading (mL)
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(description="Sample instant (UTC)")
    value: int = Field(ge=0, description="Volume since previous reading (mL)")

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class FlowSample(BaseModel):
    """
    Instantaneous flow rate derived from one reading.

    Attributes:
        time: Reading instant (UTC)
        rate: Flow rate (mL/min)
    """

    model_config = ConfigDict(frozen=True)

    time: datetime = Field(description="Reading instant (UTC)")
    rate: int = Field(ge=0, description="Flow rate (mL/min)")

    @field_validator("time")
    @classmethod
    def _normalize_time(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def rate_l_per_min(self) -> float:
        """Flow rate in liters per minute."""
        return self.rate / 1000


class ClosedEvent(BaseModel):
    """
    A finalized, not yet classified, usage event.

    Attributes:
        meter_id: Meter the event was observed on
        start_time: First above-threshold reading
        end_time: Reading that closed the event
        duration_seconds: end_time - start_time (seconds)
        volume_ml: Sum of constituent reading values (mL)
        peak_flow_rate: Highest sample rate (mL/min)
        avg_flow_rate: volume / duration (mL/min)
        flow_data: Constituent flow samples in order
    """

    model_config = ConfigDict(frozen=True)

    meter_id: str
    start_time: datetime
    end_time: datetime
    duration_seconds: int = Field(ge=0)
    volume_ml: int = Field(ge=0)
    peak_flow_rate: int = Field(ge=0)
    avg_flow_rate: int = Field(ge=0)
    flow_data: list[FlowSample]

    @property
    def sample_count(self) -> int:
        return len(self.flow_data)


# ============================================================================
# Classification Types
# ============================================================================


class OutcomeStatus(str, Enum):
    """Where a classification result came from."""

    OK = "ok"  # answered by the classifier backend
    HEURISTIC = "heuristic"  # answered by a local heuristic, backend not called
    UNAVAILABLE = "unavailable"  # backend failed or timed out, fallback values


class CategoryResult(BaseModel):
    """Category label for an event flow profile."""

    model_config = ConfigDict(frozen=True)

    category: str = Field(description="Normalized category label")
    confidence: int = Field(ge=0, le=100, description="Confidence (0-100)")
    reasoning: str = ""
    status: OutcomeStatus = OutcomeStatus.OK
    error: str | None = Field(
        default=None, description="Failure reason when status is UNAVAILABLE"
    )

    @classmethod
    def fallback(cls, error: str | None = None) -> "CategoryResult":
        """Deterministic result used when the backend cannot answer."""
        return cls(
            category=ClassifierConstants.FALLBACK_CATEGORY,
            confidence=ClassifierConstants.FALLBACK_CONFIDENCE,
            reasoning=ClassifierConstants.FALLBACK_REASONING,
            status=OutcomeStatus.UNAVAILABLE,
            error=error,
        )


class AnomalyFinding(BaseModel):
    """A single anomaly within an event flow profile."""

    model_config = ConfigDict(frozen=True)

    type: str = Field(description="Anomaly type, e.g. possible_leak")
    severity: Literal["low", "medium", "high"] = "medium"
    start: datetime | None = None
    end: datetime | None = None


class AnomalyResult(BaseModel):
    """Anomaly determination for an event flow profile."""

    model_config = ConfigDict(frozen=True)

    anomalies: list[AnomalyFinding] = Field(default_factory=list)
    details: str = ""
    status: OutcomeStatus = OutcomeStatus.OK
    error: str | None = None

    @property
    def is_anomalous(self) -> bool:
        return bool(self.anomalies)

    @classmethod
    def fallback(cls, error: str | None = None) -> "AnomalyResult":
        return cls(status=OutcomeStatus.UNAVAILABLE, error=error)

    @classmethod
    def heuristic(
        cls, anomaly_type: AnomalyType, severity: str, samples: list[FlowSample], details: str
    ) -> "AnomalyResult":
        """Build a result for a locally detected anomaly spanning samples."""
        return cls(
            anomalies=[
                AnomalyFinding(
                    type=anomaly_type.value,
                    severity=severity,
                    start=samples[0].time,
                    end=samples[-1].time,
                )
            ],
            details=details,
            status=OutcomeStatus.HEURISTIC,
        )


class ChainAnalysis(BaseModel):
    """Whether a sequence of events forms one logical activity."""

    model_config = ConfigDict(frozen=True)

    is_chain: bool = False
    chain_type: str = ""
    explanation: str = ""
    status: OutcomeStatus = OutcomeStatus.OK
    error: str | None = None
