"""
Flow rate conversion.

A reading carries the volume accumulated since the previous reading, so its
instantaneous rate depends on the elapsed interval. Intervals are measured from
consecutive timestamps rather than assumed, since meters do not always report
on a fixed schedule.
"""

from collections.abc import Sequence
from datetime import datetime

import numpy as np

from flowsense.analysis.types import Reading


def rate_ml_per_min(value_ml: int, interval_seconds: float) -> int:
    """
    Convert a reading's volume to a flow rate.

    Args:
        value_ml: Volume accumulated over the interval (mL)
        interval_seconds: Elapsed time the volume was accumulated over

    Returns:
        Flow rate in mL/min, rounded to the nearest integer

    Raises:
        ValueError: If interval_seconds is not positive
    """
    if interval_seconds <= 0:
        raise ValueError(f"Interval must be positive, got {interval_seconds}")
    return int(round(value_ml * 60.0 / interval_seconds))


def interval_seconds(
    timestamp: datetime, previous: datetime | None, default_interval: float
) -> float:
    """Seconds since the previous reading, or the nominal interval for the first one."""
    if previous is None:
        return default_interval
    return (timestamp - previous).total_seconds()


def reading_rates(readings: Sequence[Reading], default_interval: float) -> np.ndarray:
    """
    Compute per-reading flow rates for a chronological series.

    The first reading uses the nominal interval. Non-positive intervals
    (duplicate timestamps) also fall back to the nominal interval.

    Args:
        readings: Readings in timestamp order
        default_interval: Nominal sampling interval (seconds)

    Returns:
        Array of flow rates in mL/min (float)
    """
    if not readings:
        return np.zeros(0)

    seconds = np.array([r.timestamp.timestamp() for r in readings], dtype=float)
    values = np.array([r.value for r in readings], dtype=float)

    intervals = np.empty_like(seconds)
    intervals[0] = default_interval
    intervals[1:] = np.diff(seconds)
    intervals[intervals <= 0] = default_interval

    return values * 60.0 / intervals
