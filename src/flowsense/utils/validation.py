"""Validation utilities for FlowSense query input."""

import math

from datetime import UTC, datetime

from flowsense.constants import BUCKET_WIDTHS, AggregationConstants, Granularity
from flowsense.exceptions import InvalidTimeWindow


def parse_datetime(value: str) -> datetime:
    """
    Parse an ISO 8601 timestamp or YYYY-MM-DD date.

    Naive values are taken as UTC.

    Args:
        value: Timestamp string

    Returns:
        Aware datetime

    Raises:
        ValueError: If the string is not a valid timestamp
    """
    try:
        parsed = datetime.fromisoformat(value.strip())
    except (AttributeError, ValueError):
        raise ValueError(
            f"Invalid timestamp: '{value}'. Expected ISO 8601 "
            "(e.g., 2025-03-01T07:00:00+00:00) or YYYY-MM-DD"
        ) from None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def validate_time_window(start: datetime, end: datetime) -> None:
    """
    Validate that a query window is well ordered.

    Args:
        start: Window start (inclusive)
        end: Window end (exclusive)

    Raises:
        InvalidTimeWindow: If end is before start
    """
    if end < start:
        raise InvalidTimeWindow(
            f"Invalid time window: end ({end.isoformat()}) "
            f"is before start ({start.isoformat()})"
        )


def validate_granularity(value: str | Granularity) -> Granularity:
    """
    Validate a granularity name.

    Raises:
        ValueError: If the name is unknown
    """
    try:
        return Granularity(value)
    except ValueError:
        valid = ", ".join(g.value for g in Granularity)
        raise ValueError(
            f"Invalid granularity: '{value}'. Valid values are: {valid}"
        ) from None


def validate_reading_value(value: int) -> int:
    """
    Validate a reading volume.

    Raises:
        ValueError: If value is negative or not an integer
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Reading value must be an integer, got {value!r}")
    if value < 0:
        raise ValueError(f"Reading value must be non-negative, got {value}")
    return value


def chart_bucket_bounds(
    start: datetime, end: datetime, granularity: Granularity
) -> tuple[int, int]:
    """
    Epoch-aligned bucket indexes covering [start, end).

    Returns:
        (first, last) with last exclusive, counted in bucket widths since the epoch
    """
    width = BUCKET_WIDTHS[granularity].total_seconds()
    return math.floor(start.timestamp() / width), math.ceil(end.timestamp() / width)


def validate_chart_size(start: datetime, end: datetime, granularity: Granularity) -> None:
    """
    Reject windows whose chart series would be too long for the granularity.

    Raises:
        InvalidTimeWindow: If the window spans more than MAX_FLOW_POINTS buckets
    """
    first, last = chart_bucket_bounds(start, end, granularity)
    if last - first > AggregationConstants.MAX_FLOW_POINTS:
        raise InvalidTimeWindow(
            f"Time window too long for '{granularity.value}' granularity: "
            f"{last - first} chart points, at most "
            f"{AggregationConstants.MAX_FLOW_POINTS} allowed. "
            "Use a coarser granularity or a shorter window."
        )
