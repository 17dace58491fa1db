"""
Event segmentation algorithm.

Turns a chronological stream of meter readings into bounded usage events.
Each meter has its own state machine:

    Idle --(value > threshold)--> Accumulating
    Accumulating --(value > threshold)--> Accumulating (extend event)
    Accumulating --(value <= threshold)--> Idle (close or discard event)

State is owned by an EventSegmenter instance and keyed by meter id. Readings
for one meter must be fed by a single writer in timestamp order; different
meters are independent.
"""

import logging

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import BaseModel

from flowsense.analysis.flow import interval_seconds, rate_ml_per_min
from flowsense.analysis.types import ClosedEvent, FlowSample, Reading
from flowsense.config import SegmentationConfig
from flowsense.constants import SegmentationConstants as SC
from flowsense.exceptions import OutOfOrderReading

logger = logging.getLogger(__name__)

__all__ = ["EventSegmenter", "OpenEvent", "SegmenterStats"]


@dataclass
class OpenEvent:
    """An event still accumulating readings."""

    start_time: datetime
    end_time: datetime
    volume_ml: int
    peak_flow_rate: int
    flow_data: list[FlowSample] = field(default_factory=list)


@dataclass
class _MeterState:
    last_timestamp: datetime | None = None
    open_event: OpenEvent | None = None
    processed_readings: int = 0
    rejected_readings: int = 0
    closed_events: int = 0
    discarded_events: int = 0


class SegmenterStats(BaseModel):
    """Counters for one meter, for diagnostics."""

    meter_id: str
    processed_readings: int = 0
    rejected_readings: int = 0
    closed_events: int = 0
    discarded_events: int = 0
    has_open_event: bool = False
    last_timestamp: datetime | None = None


class EventSegmenter:
    """
    Partitions reading streams into closed events using a flow threshold.

    A reading is flowing when its value is strictly greater than the
    threshold. Events with fewer than min_event_samples flowing readings are
    discarded as sensor noise.

    Example:
        >>> segmenter = EventSegmenter(flow_threshold_ml=67)
        >>> for reading in readings:
        ...     event = segmenter.process("meter-1", reading)
        ...     if event:
        ...         print(event.volume_ml, event.duration_seconds)
    """

    def __init__(
        self,
        flow_threshold_ml: int = SC.FLOW_THRESHOLD_ML,
        min_event_samples: int = SC.MIN_EVENT_SAMPLES,
        sampling_interval_seconds: float = SC.SAMPLING_INTERVAL_SECONDS,
    ):
        """
        Initialize the segmenter.

        Args:
            flow_threshold_ml: Readings at or below this volume mean no flow (mL)
            min_event_samples: Minimum flowing readings for an event to be kept
            sampling_interval_seconds: Nominal interval used to convert a
                meter's first reading to a rate
        """
        if min_event_samples < 1:
            raise ValueError("min_event_samples must be at least 1")
        if sampling_interval_seconds <= 0:
            raise ValueError("sampling_interval_seconds must be positive")

        self.flow_threshold_ml = flow_threshold_ml
        self.min_event_samples = min_event_samples
        self.sampling_interval_seconds = sampling_interval_seconds
        self._states: dict[str, _MeterState] = {}

    @classmethod
    def from_config(cls, config: SegmentationConfig) -> "EventSegmenter":
        return cls(
            flow_threshold_ml=config.flow_threshold_ml,
            min_event_samples=config.min_event_samples,
            sampling_interval_seconds=config.sampling_interval_seconds,
        )

    def is_flowing(self, value_ml: int) -> bool:
        return value_ml > self.flow_threshold_ml

    def process(self, meter_id: str, reading: Reading) -> ClosedEvent | None:
        """
        Feed one reading into the meter's state machine.

        Args:
            meter_id: Meter identifier
            reading: Next reading for the meter

        Returns:
            The event closed by this reading, or None

        Raises:
            OutOfOrderReading: If the reading is not later than the meter's
                last processed reading. State is left untouched.
        """
        state = self._states.setdefault(meter_id, _MeterState())

        if state.last_timestamp is not None and reading.timestamp <= state.last_timestamp:
            state.rejected_readings += 1
            raise OutOfOrderReading(meter_id, reading.timestamp, state.last_timestamp)

        interval = interval_seconds(
            reading.timestamp, state.last_timestamp, self.sampling_interval_seconds
        )
        state.last_timestamp = reading.timestamp
        state.processed_readings += 1

        if self.is_flowing(reading.value):
            sample = FlowSample(
                time=reading.timestamp, rate=rate_ml_per_min(reading.value, interval)
            )
            if state.open_event is None:
                state.open_event = OpenEvent(
                    start_time=reading.timestamp,
                    end_time=reading.timestamp,
                    volume_ml=reading.value,
                    peak_flow_rate=sample.rate,
                    flow_data=[sample],
                )
                logger.debug(f"Meter {meter_id}: event opened at {reading.timestamp}")
            else:
                event = state.open_event
                event.flow_data.append(sample)
                event.volume_ml += reading.value
                event.end_time = reading.timestamp
                event.peak_flow_rate = max(event.peak_flow_rate, sample.rate)
            return None

        if state.open_event is None:
            return None

        return self._close(meter_id, state, reading.timestamp)

    def process_many(
        self, meter_id: str, readings: Iterable[Reading]
    ) -> list[ClosedEvent]:
        """
        Feed a batch of readings, skipping out-of-order ones.

        Args:
            meter_id: Meter identifier
            readings: Readings in timestamp order

        Returns:
            Events closed while processing the batch
        """
        events = []
        for reading in readings:
            try:
                event = self.process(meter_id, reading)
            except OutOfOrderReading as e:
                logger.warning(f"Dropping reading: {e}")
                continue
            if event is not None:
                events.append(event)
        return events

    def flush(self, meter_id: str) -> ClosedEvent | None:
        """
        Close the meter's open event at its last flowing reading.

        Used when a finite reading source ends mid-event.

        Returns:
            The closed event, or None if nothing was open or it was too short
        """
        state = self._states.get(meter_id)
        if state is None or state.open_event is None:
            return None
        return self._close(meter_id, state, state.open_event.end_time)

    def restore(
        self,
        meter_id: str,
        readings: Iterable[Reading],
        last_timestamp: datetime | None = None,
    ) -> None:
        """
        Rebuild a meter's state by replaying already-handled readings.

        Events that close during the replay are dropped; the caller is
        expected to pass only readings after the last persisted event.
        Counters are reset afterwards so stats reflect live traffic only.

        Args:
            meter_id: Meter identifier
            readings: Readings to replay, oldest first
            last_timestamp: Instant of the last reading already accounted for
                before the replayed ones; later readings must be after it
        """
        self.reset(meter_id)
        self._states[meter_id].last_timestamp = last_timestamp
        replayed = self.process_many(meter_id, readings)
        state = self._states[meter_id]
        state.processed_readings = 0
        state.rejected_readings = 0
        state.closed_events = 0
        state.discarded_events = 0
        logger.debug(
            f"Meter {meter_id}: restored state, open event: "
            f"{state.open_event is not None}, dropped {len(replayed)} replayed events"
        )

    def reset(self, meter_id: str) -> None:
        """Forget all state for a meter."""
        self._states[meter_id] = _MeterState()

    def knows(self, meter_id: str) -> bool:
        """Whether the segmenter holds state for the meter."""
        return meter_id in self._states

    def has_open_event(self, meter_id: str) -> bool:
        state = self._states.get(meter_id)
        return state is not None and state.open_event is not None

    def last_timestamp(self, meter_id: str) -> datetime | None:
        state = self._states.get(meter_id)
        return state.last_timestamp if state else None

    def stats(self, meter_id: str) -> SegmenterStats:
        """Snapshot of the meter's counters."""
        state = self._states.get(meter_id)
        if state is None:
            return SegmenterStats(meter_id=meter_id)
        return SegmenterStats(
            meter_id=meter_id,
            processed_readings=state.processed_readings,
            rejected_readings=state.rejected_readings,
            closed_events=state.closed_events,
            discarded_events=state.discarded_events,
            has_open_event=state.open_event is not None,
            last_timestamp=state.last_timestamp,
        )

    def _close(
        self, meter_id: str, state: _MeterState, end_time: datetime
    ) -> ClosedEvent | None:
        event = state.open_event
        state.open_event = None
        if event is None:
            return None

        if len(event.flow_data) < self.min_event_samples:
            state.discarded_events += 1
            logger.info(
                f"Meter {meter_id}: discarded noisy event at {event.start_time} "
                f"({len(event.flow_data)} samples, {event.volume_ml} mL)"
            )
            return None

        duration_seconds = int(round((end_time - event.start_time).total_seconds()))
        if duration_seconds > 0:
            avg_flow_rate = int(round(event.volume_ml / (duration_seconds / 60)))
        else:
            avg_flow_rate = event.peak_flow_rate

        state.closed_events += 1
        logger.info(
            f"Meter {meter_id}: closed event {event.start_time} -> {end_time} "
            f"({duration_seconds}s, {event.volume_ml} mL)"
        )

        return ClosedEvent(
            meter_id=meter_id,
            start_time=event.start_time,
            end_time=end_time,
            duration_seconds=duration_seconds,
            volume_ml=event.volume_ml,
            peak_flow_rate=event.peak_flow_rate,
            avg_flow_rate=avg_flow_rate,
            flow_data=list(event.flow_data),
        )
