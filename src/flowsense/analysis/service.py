"""
Ingestion and query services.

IngestionService is the single writer per meter: it serializes readings of
one meter behind a lock, drives the segmenter, classifies closed events and
persists everything. UsageService answers dashboard queries from stored data.
"""

import logging
import threading

from collections.abc import Iterable
from datetime import datetime

from flowsense.analysis.aggregator import (
    aggregate_usage,
    previous_window,
    window_for_range,
)
from flowsense.analysis.classifier import ClassifierAdapter, build_classifier_adapter
from flowsense.analysis.recommendations import generate_recommendations
from flowsense.analysis.segmenter import EventSegmenter, SegmenterStats
from flowsense.analysis.types import ChainAnalysis, ClosedEvent, Reading, ensure_utc
from flowsense.config import ClassifierConfig, FlowSenseConfig
from flowsense.constants import Granularity
from flowsense.database.store import EventStore
from flowsense.exceptions import OutOfOrderReading, UnknownMeter
from flowsense.models.event import WaterEventRecord
from flowsense.models.ingest import ImportSummary, IngestResult
from flowsense.models.usage import UsageReport
from flowsense.utils.validation import (
    validate_chart_size,
    validate_reading_value,
    validate_time_window,
)

logger = logging.getLogger(__name__)


class ClassifierPool:
    """
    Classifier adapters keyed by the owner's AI consent.

    Meters whose owner disabled AI analysis are served by the local rule
    backend regardless of the configured backend.
    """

    def __init__(
        self,
        config: ClassifierConfig,
        remote: ClassifierAdapter | None = None,
        local: ClassifierAdapter | None = None,
    ):
        self.config = config
        self._adapters: dict[bool, ClassifierAdapter] = {}
        if remote is not None:
            self._adapters[True] = remote
        if local is not None:
            self._adapters[False] = local
        self._lock = threading.Lock()

    def get(self, allow_ai_analysis: bool) -> ClassifierAdapter:
        with self._lock:
            adapter = self._adapters.get(allow_ai_analysis)
            if adapter is None:
                adapter = build_classifier_adapter(self.config, allow_ai_analysis)
                self._adapters[allow_ai_analysis] = adapter
            return adapter

    def close(self) -> None:
        with self._lock:
            for adapter in self._adapters.values():
                adapter.close()
            self._adapters.clear()


class IngestionService:
    """
    Accepts meter readings and turns them into classified, stored events.

    Example:
        >>> service = IngestionService(EventStore(), load_settings())
        >>> result = service.ingest_reading("kitchen-main", now, 500)
        >>> if result.event:
        ...     print(result.event.category)
    """

    def __init__(
        self,
        store: EventStore,
        config: FlowSenseConfig | None = None,
        segmenter: EventSegmenter | None = None,
        classifiers: ClassifierPool | None = None,
    ):
        self.config = config or FlowSenseConfig()
        self.store = store
        self.segmenter = segmenter or EventSegmenter.from_config(self.config.segmentation)
        self.classifiers = classifiers or ClassifierPool(self.config.classifier)
        self._meter_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, meter_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._meter_locks.get(meter_id)
            if lock is None:
                lock = threading.Lock()
                self._meter_locks[meter_id] = lock
            return lock

    def _ensure_restored(self, meter_id: str) -> None:
        """
        Rebuild segmenter state from stored readings on first contact.

        Readings up to the end of the last stored event are already part of
        an event. After that, only the flowing run following the newest
        idle reading can still be open, however long it has lasted.
        """
        if self.segmenter.knows(meter_id):
            return

        latest = self.store.latest_reading(meter_id)
        if latest is None:
            self.segmenter.reset(meter_id)
            return

        last_end = self.store.last_event_end(meter_id)
        idle = self.store.last_idle_reading_time(
            meter_id, self.segmenter.flow_threshold_ml, after=last_end
        )
        since = idle or last_end

        readings = self.store.readings_after(meter_id, since)
        self.segmenter.restore(meter_id, readings, last_timestamp=since)
        logger.info(
            f"Meter {meter_id}: restored segmenter from {len(readings)} readings "
            f"after {since.isoformat() if since else 'the first reading'}"
        )

    def ingest_reading(
        self, meter_id: str, timestamp: datetime, value: int
    ) -> IngestResult:
        """
        Process one reading for a meter.

        Out-of-order readings are logged and dropped, never raised.

        Args:
            meter_id: Meter identifier; unknown meters are registered
            timestamp: Reading instant
            value: Volume since the previous reading (mL)

        Returns:
            IngestResult, carrying the stored event if this reading closed one

        Raises:
            ValueError: If value is negative or not an integer
        """
        validate_reading_value(value)
        reading = Reading(timestamp=timestamp, value=value)

        with self._lock_for(meter_id):
            self.store.get_or_create_meter(meter_id)
            self._ensure_restored(meter_id)
            try:
                closed = self.segmenter.process(meter_id, reading)
            except OutOfOrderReading as e:
                logger.warning(f"Dropping reading: {e}")
                return IngestResult(
                    meter_id=meter_id,
                    timestamp=reading.timestamp,
                    accepted=False,
                    reason=str(e),
                )

            if not self.store.add_reading(meter_id, reading):
                logger.warning(
                    f"Meter {meter_id}: reading at {reading.timestamp} already stored"
                )

            record = self._finalize(closed) if closed is not None else None

        return IngestResult(
            meter_id=meter_id, timestamp=reading.timestamp, accepted=True, event=record
        )

    def ingest_many(
        self, meter_id: str, readings: Iterable[Reading], flush: bool = False
    ) -> ImportSummary:
        """
        Process a batch of readings in order.

        Args:
            meter_id: Meter identifier
            readings: Readings, oldest first
            flush: Close an event still open after the last reading
        """
        summary = ImportSummary(meter_id=meter_id)
        for reading in readings:
            summary.readings_read += 1
            result = self.ingest_reading(meter_id, reading.timestamp, reading.value)
            if result.accepted:
                summary.readings_accepted += 1
            else:
                summary.readings_rejected += 1
            if result.event is not None:
                summary.events_created += 1

        if flush and self.flush(meter_id) is not None:
            summary.events_created += 1
        return summary

    def flush(self, meter_id: str) -> WaterEventRecord | None:
        """Close and store the meter's open event, if any."""
        with self._lock_for(meter_id):
            closed = self.segmenter.flush(meter_id)
            return self._finalize(closed) if closed is not None else None

    def _finalize(self, event: ClosedEvent) -> WaterEventRecord:
        """Classify a closed event and persist it."""
        settings = self.store.get_settings(event.meter_id)
        adapter = self.classifiers.get(settings.allow_ai_analysis)

        category = adapter.classify(event.flow_data)
        anomaly = adapter.detect_anomaly(event.flow_data)

        description = None
        if anomaly.is_anomalous:
            description = anomaly.details or anomaly.anomalies[0].type

        record = self.store.save_event(
            event,
            category=category.category,
            confidence=category.confidence,
            anomaly=anomaly.is_anomalous,
            anomaly_description=description,
        )
        logger.info(
            f"Meter {event.meter_id}: event {record.id} classified as "
            f"'{record.category}' ({category.status.value}), anomaly={record.anomaly}"
        )
        return record

    def analyze_chain(self, event_ids: list[int]) -> ChainAnalysis:
        """
        Whether the given events form one activity (e.g. a morning routine).

        Raises:
            EventNotFound: If any id is unknown
        """
        events = sorted(
            (self.store.get_event(event_id) for event_id in event_ids),
            key=lambda e: e.start_time,
        )
        allow_ai = True
        if events:
            allow_ai = self.store.get_settings(events[0].meter_id).allow_ai_analysis
        return self.classifiers.get(allow_ai).analyze_chain(events)

    def stats(self, meter_id: str) -> SegmenterStats:
        return self.segmenter.stats(meter_id)

    def close(self) -> None:
        self.classifiers.close()


class UsageService:
    """Builds usage reports from stored readings and events."""

    def __init__(
        self,
        store: EventStore,
        config: FlowSenseConfig | None = None,
        classifiers: ClassifierPool | None = None,
    ):
        self.config = config or FlowSenseConfig()
        self.store = store
        self.classifiers = classifiers

    def query_usage(
        self,
        meter_id: str,
        start: datetime,
        end: datetime,
        granularity: Granularity,
        include_recommendations: bool = True,
    ) -> UsageReport:
        """
        Usage summary and tips for a meter over [start, end).

        Raises:
            InvalidTimeWindow: If end is before start, or the window is too
                long for the granularity
            UnknownMeter: If the meter does not exist
        """
        start = ensure_utc(start)
        end = ensure_utc(end)
        validate_time_window(start, end)
        validate_chart_size(start, end, granularity)
        if not self.store.meter_exists(meter_id):
            raise UnknownMeter(meter_id)

        prev_start, prev_end = previous_window(start, end)
        summary = aggregate_usage(
            readings=self.store.readings_between(meter_id, start, end),
            events=self.store.list_events(meter_id, start=start, end=end),
            previous_readings=self.store.readings_between(meter_id, prev_start, prev_end),
            start=start,
            end=end,
            granularity=granularity,
            timezone=self.config.display.timezone,
            sampling_interval_seconds=self.config.segmentation.sampling_interval_seconds,
        )

        recommendations = []
        if include_recommendations:
            adapter = None
            if self.classifiers is not None:
                settings = self.store.get_settings(meter_id)
                if settings.allow_ai_analysis:
                    adapter = self.classifiers.get(True)
            recommendations = generate_recommendations(summary, adapter)

        return UsageReport(
            meter_id=meter_id, summary=summary, recommendations=recommendations
        )

    def usage_for_range(
        self,
        meter_id: str,
        granularity: Granularity,
        now: datetime | None = None,
        include_recommendations: bool = True,
    ) -> UsageReport:
        """Usage for the day, week, month or year ending now."""
        start, end = window_for_range(granularity, now)
        return self.query_usage(
            meter_id, start, end, granularity, include_recommendations
        )
