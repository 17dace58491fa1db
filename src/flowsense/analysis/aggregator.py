"""
Usage aggregation.

Builds the dashboard summary for one meter and time window from raw readings
and stored events. Pure: no I/O, no shared state, safe to call concurrently.

Totals are computed from readings, never from events, so the total is
independent of how readings were segmented. Category breakdowns use event
volumes. Values stay in integer milliliters until formatted for display.
"""

import logging

from collections import defaultdict
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import numpy as np

from flowsense.analysis.flow import reading_rates
from flowsense.analysis.types import Reading, ensure_utc
from flowsense.constants import (
    BUCKET_WIDTHS,
    AggregationConstants as AC,
    EventCategory,
    Granularity,
    SegmentationConstants as SC,
)
from flowsense.models.event import WaterEventRecord
from flowsense.models.usage import CategoryUsage, FlowPoint, FormattedEvent, UsageSummary
from flowsense.utils.formatting import (
    format_duration,
    format_flow_rate,
    format_liters,
    format_local,
    format_volume,
    get_zone,
)
from flowsense.utils.validation import chart_bucket_bounds, validate_chart_size

logger = logging.getLogger(__name__)

RANGE_LENGTHS: dict[Granularity, timedelta] = {
    Granularity.DAY: timedelta(days=1),
    Granularity.WEEK: timedelta(days=7),
    Granularity.MONTH: timedelta(days=30),
    Granularity.YEAR: timedelta(days=365),
}


def window_for_range(
    granularity: Granularity, now: datetime | None = None
) -> tuple[datetime, datetime]:
    """
    Window ending now that covers the requested range.

    Args:
        granularity: day, week, month or year
        now: Window end; defaults to the current time

    Returns:
        (start, end) in UTC
    """
    end = ensure_utc(now) if now is not None else datetime.now(UTC)
    return end - RANGE_LENGTHS[granularity], end


def previous_window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """The equal-length window immediately preceding [start, end)."""
    return start - (end - start), start


def merge_duplicate_readings(readings: Sequence[Reading]) -> list[Reading]:
    """Sort readings and sum values of readings that share a timestamp."""
    merged: dict[datetime, int] = defaultdict(int)
    for reading in readings:
        merged[reading.timestamp] += reading.value
    if len(merged) != len(readings):
        logger.debug(f"Merged {len(readings) - len(merged)} duplicate readings")
    return [Reading(timestamp=ts, value=v) for ts, v in sorted(merged.items())]


def usage_comparison(current_ml: int, previous_ml: int) -> int:
    """
    Percentage change against the previous window.

    Returns:
        round((current - previous) / previous * 100), or 0 when there is no
        previous usage
    """
    if previous_ml <= 0:
        return 0
    return int(round((current_ml - previous_ml) / previous_ml * 100))


def category_breakdown(
    events: Sequence[WaterEventRecord], total_usage_ml: int
) -> list[CategoryUsage]:
    """
    Event volume per category, largest first.

    percentage is the share of all event volume, so the entries sum to 100.
    usage_share is the share of metered volume, which also includes water
    that never formed an event, so it sums to at most 100.
    """
    volumes: dict[str, int] = defaultdict(int)
    counts: dict[str, int] = defaultdict(int)
    for event in events:
        name = event.category or EventCategory.OTHER.value
        volumes[name] += event.volume_ml
        counts[name] += 1

    event_total = sum(volumes.values())
    breakdown = [
        CategoryUsage(
            name=name,
            volume=format_volume(volume),
            volume_ml=volume,
            event_count=counts[name],
            percentage=round(volume / event_total * 100, 1) if event_total > 0 else 0.0,
            usage_share=(
                round(volume / total_usage_ml * 100, 1) if total_usage_ml > 0 else 0.0
            ),
        )
        for name, volume in volumes.items()
    ]
    breakdown.sort(key=lambda c: (-c.volume_ml, c.name))
    return breakdown


def flow_series(
    readings: Sequence[Reading],
    start: datetime,
    end: datetime,
    granularity: Granularity,
    rates: np.ndarray,
) -> list[FlowPoint]:
    """
    Bucketed chart series covering [start, end).

    Buckets are aligned to the Unix epoch. Each value is the mean flow rate
    (L/min) of the readings falling in the bucket; buckets without readings
    are 0.

    Args:
        readings: Window readings, oldest first
        start: Window start
        end: Window end
        granularity: Selects the bucket width
        rates: Flow rate of each reading (mL/min)

    Raises:
        InvalidTimeWindow: If the window needs more than MAX_FLOW_POINTS buckets
    """
    validate_chart_size(start, end, granularity)
    width = BUCKET_WIDTHS[granularity].total_seconds()
    first, last = chart_bucket_bounds(start, end, granularity)
    if last <= first:
        return []

    n_buckets = last - first
    sums = np.zeros(n_buckets)
    counts = np.zeros(n_buckets)

    if readings:
        seconds = np.array([r.timestamp.timestamp() for r in readings], dtype=float)
        index = np.floor(seconds / width).astype(np.int64) - first
        valid = (index >= 0) & (index < n_buckets)
        np.add.at(sums, index[valid], rates[valid])
        np.add.at(counts, index[valid], 1)

    means = np.divide(sums, counts, out=np.zeros(n_buckets), where=counts > 0)

    return [
        FlowPoint(
            time=datetime.fromtimestamp((first + i) * width, tz=UTC),
            value=round(float(means[i]) / AC.ML_PER_LITER, 2),
        )
        for i in range(n_buckets)
    ]


def format_event(
    event: WaterEventRecord, zone: ZoneInfo, granularity: Granularity
) -> FormattedEvent:
    if granularity is Granularity.DAY:
        fmt = AC.PEAK_TIME_FORMAT
    elif granularity is Granularity.WEEK:
        fmt = AC.EVENT_TIME_FORMAT_WEEK
    else:
        fmt = AC.EVENT_TIME_FORMAT

    return FormattedEvent(
        id=event.id,
        time=format_local(event.start_time, zone, fmt),
        category=event.category or EventCategory.OTHER.value,
        duration=format_duration(event.duration_seconds),
        volume=format_volume(event.volume_ml),
        flow_rate=format_flow_rate(event.peak_flow_rate, event.avg_flow_rate),
        start_time=event.start_time,
        end_time=event.end_time,
        anomaly=event.anomaly,
    )


def aggregate_usage(
    readings: Sequence[Reading],
    events: Sequence[WaterEventRecord],
    previous_readings: Sequence[Reading],
    start: datetime,
    end: datetime,
    granularity: Granularity,
    timezone: str | None = None,
    sampling_interval_seconds: float = SC.SAMPLING_INTERVAL_SECONDS,
) -> UsageSummary:
    """
    Summarize one meter's usage over [start, end).

    Args:
        readings: Readings inside the window
        events: Events starting inside the window
        previous_readings: Readings of the preceding equal-length window
        start: Window start (inclusive)
        end: Window end (exclusive)
        granularity: Range name; selects chart bucket width and time format
        timezone: IANA zone for display strings
        sampling_interval_seconds: Interval used for a series' first reading

    Returns:
        UsageSummary; a zero-valued summary when the window holds no readings

    Raises:
        InvalidTimeWindow: If the chart series would exceed MAX_FLOW_POINTS
    """
    start = ensure_utc(start)
    end = ensure_utc(end)
    zone = get_zone(timezone)

    current = merge_duplicate_readings(readings)
    previous = merge_duplicate_readings(previous_readings)
    ordered_events = sorted(events, key=lambda e: e.start_time)

    total_ml = sum(r.value for r in current)
    previous_ml = sum(r.value for r in previous)

    # Rate of the first reading depends on the last one before the window
    if current and previous:
        rates = reading_rates([previous[-1], *current], sampling_interval_seconds)[1:]
    else:
        rates = reading_rates(current, sampling_interval_seconds)

    if current:
        values = np.array([r.value for r in current])
        peak = current[int(np.argmax(values))]
        peak_event = next((e for e in ordered_events if e.contains(peak.timestamp)), None)
        peak_flow = format_liters(peak.value)
        peak_flow_time = format_local(peak.timestamp, zone, AC.PEAK_TIME_FORMAT)
        peak_flow_category = peak_event.category if peak_event else ""
    else:
        peak_flow = format_liters(0)
        peak_flow_time = ""
        peak_flow_category = ""

    anomalous = [e for e in ordered_events if e.anomaly]
    anomaly_description = None
    if anomalous:
        anomaly_description = (
            anomalous[0].anomaly_description or AC.DEFAULT_ANOMALY_DESCRIPTION
        )

    categories = category_breakdown(ordered_events, total_ml)

    return UsageSummary(
        granularity=granularity,
        start_date=start,
        end_date=end,
        total_usage=format_liters(total_ml) if current else AC.EMPTY_TOTAL,
        total_usage_ml=total_ml,
        usage_comparison=usage_comparison(total_ml, previous_ml),
        peak_flow=peak_flow,
        peak_flow_time=peak_flow_time,
        peak_flow_category=peak_flow_category,
        event_count=len(ordered_events),
        category_count=len(categories),
        anomaly_count=len(anomalous),
        anomaly_description=anomaly_description,
        flow_data=flow_series(current, start, end, granularity, rates),
        events=[format_event(e, zone, granularity) for e in reversed(ordered_events)],
        categories=categories,
    )
