"""
Repository for meters, readings, events and settings.

All methods open their own transactional scope and return pydantic
models, so callers never hold ORM objects outside a session.
"""

import logging

from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from flowsense.analysis.classifier import normalize_category
from flowsense.analysis.types import ClosedEvent, FlowSample, Reading, ensure_utc
from flowsense.database import models
from flowsense.database.session import session_scope
from flowsense.exceptions import EventNotFound, UnknownMeter
from flowsense.models.event import WaterEventRecord
from flowsense.models.settings import SettingsUpdate, UserSettingsModel

logger = logging.getLogger(__name__)


def serialize_flow_data(flow_data: Iterable[FlowSample]) -> list[dict[str, Any]]:
    """Convert flow samples to the JSON form stored on WaterEvent."""
    return [{"time": s.time.isoformat(), "rate": s.rate} for s in flow_data]


def deserialize_flow_data(raw: list[dict[str, Any]] | None) -> list[FlowSample]:
    if not raw:
        return []
    return [FlowSample(time=datetime.fromisoformat(s["time"]), rate=s["rate"]) for s in raw]


def _to_record(event: models.WaterEvent) -> WaterEventRecord:
    return WaterEventRecord(
        id=event.id,
        meter_id=event.meter.meter_id,
        start_time=event.start_time,
        end_time=event.end_time,
        duration_seconds=event.duration_seconds,
        volume_ml=event.volume_ml,
        peak_flow_rate=event.peak_flow_rate,
        avg_flow_rate=event.avg_flow_rate,
        category=event.category or "",
        confidence=event.confidence,
        anomaly=event.anomaly,
        anomaly_description=event.anomaly_description,
        flow_data=deserialize_flow_data(event.flow_data),
    )


class EventStore:
    """Persistence operations for one FlowSense database."""

    # ------------------------------------------------------------------
    # Meters
    # ------------------------------------------------------------------

    @staticmethod
    def _find_meter(session: Session, meter_id: str) -> models.Meter | None:
        return session.execute(
            select(models.Meter).where(models.Meter.meter_id == meter_id)
        ).scalar_one_or_none()

    def _require_meter(self, session: Session, meter_id: str) -> models.Meter:
        meter = self._find_meter(session, meter_id)
        if meter is None:
            raise UnknownMeter(meter_id)
        return meter

    def get_or_create_meter(self, meter_id: str, description: str | None = None) -> int:
        """
        Return the primary key of a meter, creating it on first use.

        Safe to call concurrently for the same new meter: the insert is a
        no-op when another writer created the row first.

        Args:
            meter_id: External meter identifier
            description: Optional free-text description for new meters

        Returns:
            Meter primary key
        """
        if not meter_id:
            raise ValueError("meter_id must not be empty")

        with session_scope() as session:
            meter = self._find_meter(session, meter_id)
            if meter is not None:
                return meter.id

            inserted = session.execute(
                sqlite_insert(models.Meter)
                .values(meter_id=meter_id, description=description)
                .on_conflict_do_nothing(index_elements=["meter_id"])
            )
            if inserted.rowcount:
                logger.info(f"Registered new meter '{meter_id}'")
            return self._require_meter(session, meter_id).id

    def meter_exists(self, meter_id: str) -> bool:
        with session_scope() as session:
            return self._find_meter(session, meter_id) is not None

    def list_meters(self) -> list[str]:
        with session_scope() as session:
            return list(
                session.execute(
                    select(models.Meter.meter_id).order_by(models.Meter.meter_id)
                ).scalars()
            )

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    def add_reading(self, meter_id: str, reading: Reading) -> bool:
        """
        Store a raw reading.

        Returns:
            False if a reading with the same timestamp already exists
        """
        with session_scope() as session:
            meter = self._require_meter(session, meter_id)
            inserted = session.execute(
                sqlite_insert(models.Reading)
                .values(meter_pk=meter.id, timestamp=reading.timestamp, value=reading.value)
                .on_conflict_do_nothing(index_elements=["meter_pk", "timestamp"])
            )
            return bool(inserted.rowcount)

    def readings_between(
        self, meter_id: str, start: datetime, end: datetime
    ) -> list[Reading]:
        """Readings with start <= timestamp < end, oldest first."""
        with session_scope() as session:
            meter = self._require_meter(session, meter_id)
            rows = session.execute(
                select(models.Reading.timestamp, models.Reading.value)
                .where(
                    models.Reading.meter_pk == meter.id,
                    models.Reading.timestamp >= ensure_utc(start),
                    models.Reading.timestamp < ensure_utc(end),
                )
                .order_by(models.Reading.timestamp)
            ).all()
            return [Reading(timestamp=ts, value=value) for ts, value in rows]

    def readings_after(self, meter_id: str, after: datetime | None) -> list[Reading]:
        """Readings with timestamp > after (all readings if None), oldest first."""
        with session_scope() as session:
            meter = self._require_meter(session, meter_id)
            query = select(models.Reading.timestamp, models.Reading.value).where(
                models.Reading.meter_pk == meter.id
            )
            if after is not None:
                query = query.where(models.Reading.timestamp > ensure_utc(after))
            rows = session.execute(query.order_by(models.Reading.timestamp)).all()
            return [Reading(timestamp=ts, value=value) for ts, value in rows]

    def last_idle_reading_time(
        self, meter_id: str, threshold_ml: int, after: datetime | None = None
    ) -> datetime | None:
        """
        Timestamp of the newest reading at or below the flow threshold.

        Args:
            meter_id: Meter identifier
            threshold_ml: Flow threshold (mL per reading)
            after: Only consider readings later than this instant
        """
        with session_scope() as session:
            meter = self._require_meter(session, meter_id)
            query = select(func.max(models.Reading.timestamp)).where(
                models.Reading.meter_pk == meter.id,
                models.Reading.value <= threshold_ml,
            )
            if after is not None:
                query = query.where(models.Reading.timestamp > ensure_utc(after))
            return session.execute(query).scalar()

    def latest_reading(self, meter_id: str) -> Reading | None:
        with session_scope() as session:
            meter = self._require_meter(session, meter_id)
            row = session.execute(
                select(models.Reading.timestamp, models.Reading.value)
                .where(models.Reading.meter_pk == meter.id)
                .order_by(models.Reading.timestamp.desc())
                .limit(1)
            ).first()
            return Reading(timestamp=row[0], value=row[1]) if row else None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def save_event(
        self,
        event: ClosedEvent,
        category: str = "",
        confidence: int = 0,
        anomaly: bool = False,
        anomaly_description: str | None = None,
    ) -> WaterEventRecord:
        """
        Persist a closed event with its classification.

        Args:
            event: Event produced by the segmenter
            category: Category label ("" while unclassified)
            confidence: Classification confidence (0-100)
            anomaly: Whether the event was flagged anomalous
            anomaly_description: Human-readable anomaly explanation

        Returns:
            The stored event
        """
        with session_scope() as session:
            meter = self._require_meter(session, event.meter_id)
            row = models.WaterEvent(
                meter_pk=meter.id,
                start_time=event.start_time,
                end_time=event.end_time,
                duration_seconds=event.duration_seconds,
                volume_ml=event.volume_ml,
                peak_flow_rate=event.peak_flow_rate,
                avg_flow_rate=event.avg_flow_rate,
                category=category,
                confidence=confidence,
                anomaly=anomaly,
                anomaly_description=anomaly_description,
                flow_data=serialize_flow_data(event.flow_data),
            )
            session.add(row)
            session.flush()
            logger.debug(f"Stored event {row.id} for meter '{event.meter_id}'")
            return _to_record(row)

    def list_events(
        self,
        meter_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        category: str | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[WaterEventRecord]:
        """
        Events of a meter whose start_time lies in [start, end).

        Args:
            meter_id: Meter identifier
            start: Inclusive lower bound on start_time
            end: Exclusive upper bound on start_time
            category: Only events with this category
            limit: Maximum number of events
            newest_first: Order by start_time descending

        Raises:
            UnknownMeter: If the meter does not exist
        """
        with session_scope() as session:
            meter = self._require_meter(session, meter_id)
            query = select(models.WaterEvent).where(models.WaterEvent.meter_pk == meter.id)
            if start is not None:
                query = query.where(models.WaterEvent.start_time >= ensure_utc(start))
            if end is not None:
                query = query.where(models.WaterEvent.start_time < ensure_utc(end))
            if category is not None:
                query = query.where(models.WaterEvent.category == normalize_category(category))

            order = models.WaterEvent.start_time
            query = query.order_by(order.desc() if newest_first else order)
            if limit is not None:
                query = query.limit(limit)

            return [_to_record(e) for e in session.execute(query).scalars()]

    def last_event_end(self, meter_id: str) -> datetime | None:
        with session_scope() as session:
            meter = self._require_meter(session, meter_id)
            return session.execute(
                select(func.max(models.WaterEvent.end_time)).where(
                    models.WaterEvent.meter_pk == meter.id
                )
            ).scalar()

    def _require_event(self, session: Session, event_id: int) -> models.WaterEvent:
        event = session.get(models.WaterEvent, event_id)
        if event is None:
            raise EventNotFound(event_id)
        return event

    def get_event(self, event_id: int) -> WaterEventRecord:
        """
        Raises:
            EventNotFound: If no event has this id
        """
        with session_scope() as session:
            return _to_record(self._require_event(session, event_id))

    def set_category(self, event_id: int, category: str) -> WaterEventRecord:
        """
        Record a user-confirmed category for an event.

        A manual label is taken as certain, so confidence becomes 100.
        """
        label = normalize_category(category)
        if not label:
            raise ValueError("Category must not be empty")

        with session_scope() as session:
            event = self._require_event(session, event_id)
            event.category = label
            event.confidence = 100
            logger.info(f"Event {event_id} categorized as '{label}'")
            return _to_record(event)

    def set_anomaly_flag(
        self, event_id: int, is_anomaly: bool, reason: str | None = None
    ) -> WaterEventRecord:
        """Flag or unflag an event as anomalous."""
        with session_scope() as session:
            event = self._require_event(session, event_id)
            event.anomaly = is_anomaly
            event.anomaly_description = reason if is_anomaly else None
            logger.info(f"Event {event_id} anomaly flag set to {is_anomaly}")
            return _to_record(event)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def _settings_row(self, session: Session, meter_id: str) -> models.UserSettings:
        meter = self._require_meter(session, meter_id)
        if meter.settings is not None:
            return meter.settings

        # Another session may create the defaults between the check and the insert
        session.execute(
            sqlite_insert(models.UserSettings)
            .values(meter_pk=meter.id)
            .on_conflict_do_nothing(index_elements=["meter_pk"])
        )
        return session.execute(
            select(models.UserSettings).where(models.UserSettings.meter_pk == meter.id)
        ).scalar_one()

    def get_settings(self, meter_id: str) -> UserSettingsModel:
        """Settings for a meter, creating defaults on first access."""
        with session_scope() as session:
            return UserSettingsModel.model_validate(self._settings_row(session, meter_id))

    def update_settings(self, meter_id: str, changes: SettingsUpdate) -> UserSettingsModel:
        """Apply the fields set in changes; others are left as they are."""
        with session_scope() as session:
            row = self._settings_row(session, meter_id)
            for name, value in changes.model_dump(exclude_none=True).items():
                setattr(row, name, value)
            session.flush()
            return UserSettingsModel.model_validate(row)

    def reset_settings(self, meter_id: str) -> UserSettingsModel:
        defaults = UserSettingsModel()
        with session_scope() as session:
            row = self._settings_row(session, meter_id)
            for name, value in defaults.model_dump().items():
                setattr(row, name, value)
            session.flush()
            return UserSettingsModel.model_validate(row)

    # ------------------------------------------------------------------
    # Data lifecycle
    # ------------------------------------------------------------------

    def delete_all_data(self, meter_id: str) -> dict[str, int]:
        """
        Delete every reading and event of a meter. Settings are kept.

        Returns:
            Counts of deleted readings and events
        """
        with session_scope() as session:
            meter = self._require_meter(session, meter_id)
            readings = session.execute(
                delete(models.Reading).where(models.Reading.meter_pk == meter.id)
            ).rowcount
            events = session.execute(
                delete(models.WaterEvent).where(models.WaterEvent.meter_pk == meter.id)
            ).rowcount
            logger.warning(
                f"Deleted all data for meter '{meter_id}': "
                f"{readings} readings, {events} events"
            )
            return {"readings": readings, "events": events}

    def purge_expired(self, meter_id: str, now: datetime) -> dict[str, int]:
        """
        Enforce the meter's retention settings.

        Readings older than data_retention_days are deleted. When
        store_raw_data is off, flow profiles of events that ended before
        the cutoff are cleared as well; the event summaries are kept.

        Returns:
            Counts of deleted readings and cleared flow profiles
        """
        with session_scope() as session:
            settings = self._settings_row(session, meter_id)
            meter_pk = settings.meter_pk
            cutoff = ensure_utc(now) - timedelta(days=settings.data_retention_days)

            readings = session.execute(
                delete(models.Reading).where(
                    models.Reading.meter_pk == meter_pk,
                    models.Reading.timestamp < cutoff,
                )
            ).rowcount

            profiles = 0
            if not settings.store_raw_data:
                profiles = session.execute(
                    update(models.WaterEvent)
                    .where(
                        models.WaterEvent.meter_pk == meter_pk,
                        models.WaterEvent.end_time < cutoff,
                    )
                    .values(flow_data=[])
                ).rowcount

            logger.info(
                f"Retention purge for meter '{meter_id}' before {cutoff.isoformat()}: "
                f"{readings} readings deleted, {profiles} flow profiles cleared"
            )
            return {"readings": readings, "flow_profiles": profiles}

    def stats(self) -> dict[str, int]:
        """Row counts per table."""
        with session_scope() as session:
            return {
                "meters": session.scalar(select(func.count(models.Meter.id))) or 0,
                "readings": session.scalar(select(func.count(models.Reading.id))) or 0,
                "events": session.scalar(select(func.count(models.WaterEvent.id))) or 0,
                "anomalies": session.scalar(
                    select(func.count(models.WaterEvent.id)).where(
                        models.WaterEvent.anomaly.is_(True)
                    )
                )
                or 0,
            }
