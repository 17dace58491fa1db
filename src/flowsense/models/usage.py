"""Pydantic models for usage dashboards and recommendations."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from flowsense.constants import Granularity


class FlowPoint(BaseModel):
    """One chart bucket of the flow series."""

    model_config = ConfigDict(frozen=True)

    time: datetime = Field(description="Bucket start (UTC)")
    value: float = Field(description="Mean flow rate of bucket readings (L/min)")


class CategoryUsage(BaseModel):
    """Volume attributed to one category within the window."""

    model_config = ConfigDict(frozen=True)

    name: str
    volume: str = Field(description="Display volume, e.g. '12.5 L'")
    volume_ml: int = Field(ge=0)
    event_count: int = Field(ge=0)
    percentage: float = Field(description="Share of total event volume (%)")
    usage_share: float = Field(description="Share of total metered volume (%)")


class FormattedEvent(BaseModel):
    """Event prepared for display."""

    model_config = ConfigDict(frozen=True)

    id: int
    time: str = Field(description="Localized start time")
    category: str
    duration: str = Field(description="'Xh Ym' or 'Xm Ys'")
    volume: str = Field(description="Display volume, e.g. '1.7 L'")
    flow_rate: str = Field(description="'X.X L/min' for steady flow, else 'Varied'")
    start_time: datetime
    end_time: datetime
    anomaly: bool = False


class UsageSummary(BaseModel):
    """Aggregated usage for one meter and time window."""

    model_config = ConfigDict(frozen=True)

    granularity: Granularity
    start_date: datetime
    end_date: datetime
    total_usage: str = Field(description="Total metered volume (L)")
    total_usage_ml: int = Field(ge=0)
    usage_comparison: int = Field(
        description="Change vs previous equal-length window (%)"
    )
    peak_flow: str = Field(description="Largest single reading (L)")
    peak_flow_time: str = ""
    peak_flow_category: str = ""
    event_count: int = 0
    category_count: int = 0
    anomaly_count: int = 0
    anomaly_description: str | None = None
    flow_data: list[FlowPoint] = Field(default_factory=list)
    events: list[FormattedEvent] = Field(default_factory=list)
    categories: list[CategoryUsage] = Field(default_factory=list)


class Recommendation(BaseModel):
    """A water conservation tip."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str
    type: str = Field(description="Category the tip addresses, or 'general'")
    priority: int = Field(ge=1, le=5)


class UsageReport(BaseModel):
    """Usage summary together with the tips derived from it."""

    model_config = ConfigDict(frozen=True)

    meter_id: str
    summary: UsageSummary
    recommendations: list[Recommendation] = Field(default_factory=list)
