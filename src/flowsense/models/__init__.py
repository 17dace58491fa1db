"""Pydantic models for FlowSense API responses and CLI output."""

from flowsense.models.event import WaterEventRecord
from flowsense.models.ingest import ImportSummary, IngestResult
from flowsense.models.settings import SettingsUpdate, UserSettingsModel
from flowsense.models.usage import (
    CategoryUsage,
    FlowPoint,
    FormattedEvent,
    Recommendation,
    UsageReport,
    UsageSummary,
)

__all__ = [
    "CategoryUsage",
    "FlowPoint",
    "FormattedEvent",
    "ImportSummary",
    "IngestResult",
    "Recommendation",
    "SettingsUpdate",
    "UsageReport",
    "UsageSummary",
    "UserSettingsModel",
    "WaterEventRecord",
]
