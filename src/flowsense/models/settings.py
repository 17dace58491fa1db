"""Pydantic models for per-meter user settings."""

from pydantic import BaseModel, ConfigDict, Field

from flowsense.constants import (
    DEFAULT_ALLOW_AI_ANALYSIS,
    DEFAULT_PARTICIPATE_IN_COMMUNITY,
    DEFAULT_RETENTION_DAYS,
    DEFAULT_SHARE_ANONYMIZED_DATA,
    DEFAULT_SHARE_WITH_UTILITY,
    DEFAULT_STORE_RAW_DATA,
)


class UserSettingsModel(BaseModel):
    """Privacy and retention preferences of a meter's owner."""

    model_config = ConfigDict(from_attributes=True)

    data_retention_days: int = Field(
        default=DEFAULT_RETENTION_DAYS,
        ge=1,
        description="Days to keep raw readings",
    )
    store_raw_data: bool = Field(
        default=DEFAULT_STORE_RAW_DATA,
        description="Keep per-event flow profiles past the retention window",
    )
    allow_ai_analysis: bool = Field(
        default=DEFAULT_ALLOW_AI_ANALYSIS,
        description="Send flow profiles to the external classifier service",
    )
    share_anonymized_data: bool = DEFAULT_SHARE_ANONYMIZED_DATA
    share_with_utility: bool = DEFAULT_SHARE_WITH_UTILITY
    participate_in_community: bool = DEFAULT_PARTICIPATE_IN_COMMUNITY


class SettingsUpdate(BaseModel):
    """Partial settings update; unset fields are left unchanged."""

    model_config = ConfigDict(extra="forbid")

    data_retention_days: int | None = Field(default=None, ge=1)
    store_raw_data: bool | None = None
    allow_ai_analysis: bool | None = None
    share_anonymized_data: bool | None = None
    share_with_utility: bool | None = None
    participate_in_community: bool | None = None
