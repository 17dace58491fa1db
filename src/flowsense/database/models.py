"""
SQLAlchemy ORM models for FlowSense database.

Defines the database schema:
- Meters and their raw readings
- Water usage events produced by segmentation and classification
- Per-meter owner settings (privacy and retention)
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from flowsense.constants import (
    DEFAULT_ALLOW_AI_ANALYSIS,
    DEFAULT_PARTICIPATE_IN_COMMUNITY,
    DEFAULT_RETENTION_DAYS,
    DEFAULT_SHARE_ANONYMIZED_DATA,
    DEFAULT_SHARE_WITH_UTILITY,
    DEFAULT_STORE_RAW_DATA,
    UNCLASSIFIED_CATEGORY,
)
from flowsense.database.types import UTCDateTime, ValidatedJSONList


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""

    pass


def utc_now() -> datetime:
    """Return current UTC timestamp for database defaults."""
    return datetime.now(UTC)


class Meter(Base):
    """A household water meter."""

    __tablename__ = "meters"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    meter_id: Mapped[str] = mapped_column(String(100), unique=True)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)

    readings = relationship(
        "Reading", back_populates="meter", cascade="all, delete-orphan"
    )
    events = relationship(
        "WaterEvent", back_populates="meter", cascade="all, delete-orphan"
    )
    settings = relationship(
        "UserSettings",
        back_populates="meter",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (CheckConstraint("length(meter_id) > 0", name="chk_meter_id"),)

    def __repr__(self) -> str:
        return f"<Meter(id={self.id}, meter_id={self.meter_id})>"


class Reading(Base):
    """Raw meter reading: volume in mL accumulated since the previous reading."""

    __tablename__ = "readings"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    meter_pk: Mapped[int] = mapped_column(ForeignKey("meters.id", ondelete="CASCADE"))
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime)
    value: Mapped[int] = mapped_column(Integer)

    meter = relationship("Meter", back_populates="readings")

    __table_args__ = (
        UniqueConstraint("meter_pk", "timestamp", name="uq_reading_meter_time"),
        CheckConstraint("value >= 0", name="chk_reading_value"),
        Index("idx_readings_meter_time", "meter_pk", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<Reading(meter_pk={self.meter_pk}, timestamp={self.timestamp}, value={self.value})>"


class WaterEvent(Base):
    """A closed usage event with its classification."""

    __tablename__ = "water_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    meter_pk: Mapped[int] = mapped_column(ForeignKey("meters.id", ondelete="CASCADE"))
    start_time: Mapped[datetime] = mapped_column(UTCDateTime)
    end_time: Mapped[datetime] = mapped_column(UTCDateTime)
    duration_seconds: Mapped[int] = mapped_column(Integer)
    volume_ml: Mapped[int] = mapped_column(Integer)
    peak_flow_rate: Mapped[int] = mapped_column(Integer)
    avg_flow_rate: Mapped[int] = mapped_column(Integer)
    category: Mapped[str] = mapped_column(String(50), default=UNCLASSIFIED_CATEGORY)
    confidence: Mapped[int] = mapped_column(Integer, default=0)
    anomaly: Mapped[bool] = mapped_column(Boolean, default=False)
    anomaly_description: Mapped[str | None] = mapped_column(Text)
    flow_data: Mapped[list[dict[str, Any]]] = mapped_column(
        ValidatedJSONList, default=list
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)

    meter = relationship("Meter", back_populates="events")

    __table_args__ = (
        CheckConstraint("end_time >= start_time", name="chk_event_time_range"),
        CheckConstraint("volume_ml >= 0", name="chk_event_volume"),
        CheckConstraint(
            "confidence >= 0 AND confidence <= 100", name="chk_event_confidence"
        ),
        Index("idx_events_meter_start", "meter_pk", "start_time"),
    )

    def __repr__(self) -> str:
        return (
            f"<WaterEvent(id={self.id}, start={self.start_time}, "
            f"category={self.category!r}, volume_ml={self.volume_ml})>"
        )


class UserSettings(Base):
    """Privacy and retention settings for a meter's owner."""

    __tablename__ = "user_settings"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    meter_pk: Mapped[int] = mapped_column(
        ForeignKey("meters.id", ondelete="CASCADE"), unique=True
    )
    data_retention_days: Mapped[int] = mapped_column(
        Integer, default=DEFAULT_RETENTION_DAYS
    )
    store_raw_data: Mapped[bool] = mapped_column(Boolean, default=DEFAULT_STORE_RAW_DATA)
    allow_ai_analysis: Mapped[bool] = mapped_column(
        Boolean, default=DEFAULT_ALLOW_AI_ANALYSIS
    )
    share_anonymized_data: Mapped[bool] = mapped_column(
        Boolean, default=DEFAULT_SHARE_ANONYMIZED_DATA
    )
    share_with_utility: Mapped[bool] = mapped_column(
        Boolean, default=DEFAULT_SHARE_WITH_UTILITY
    )
    participate_in_community: Mapped[bool] = mapped_column(
        Boolean, default=DEFAULT_PARTICIPATE_IN_COMMUNITY
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now
    )

    meter = relationship("Meter", back_populates="settings")

    __table_args__ = (
        CheckConstraint("data_retention_days >= 1", name="chk_retention_days"),
    )

    def __repr__(self) -> str:
        return f"<UserSettings(meter_pk={self.meter_pk}, retention={self.data_retention_days})>"
