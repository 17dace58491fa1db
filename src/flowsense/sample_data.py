"""
Synthetic household reading streams.

Produces plausible meter data for demos and manual testing: toilet flushes
through the day, morning showers, faucet use around meals, an evening
dishwasher run, washing machine cycles on some days and an optional slow
overnight leak.
"""

import csv

from collections.abc import Sequence
from datetime import datetime, timedelta
from pathlib import Path

import numpy as np

from flowsense.analysis.types import Reading, ensure_utc

# (name, hours it may start in, duration minutes, rate range mL/min)
ACTIVITIES: tuple[tuple[str, tuple[int, ...], tuple[int, int], tuple[int, int]], ...] = (
    ("shower", (6, 7, 8, 20, 21), (6, 12), (7000, 11000)),
    ("faucet", (7, 8, 12, 13, 18, 19), (4, 8), (1000, 3000)),
    ("toilet", tuple(range(6, 24)), (3, 3), (2000, 3000)),
    ("dishwasher", (13, 21), (30, 45), (800, 2000)),
    ("washing_machine", (10, 16), (40, 60), (1500, 3500)),
)

DAILY_COUNTS = {
    "shower": 2,
    "faucet": 4,
    "toilet": 6,
    "dishwasher": 1,
    "washing_machine": 1,
}

LEAK_RATE_ML_PER_MIN = 120


def generate_household_readings(
    start: datetime,
    days: int = 1,
    interval_seconds: int = 60,
    seed: int | None = None,
    include_leak: bool = False,
) -> list[Reading]:
    """
    Generate a reading stream for one household meter.

    Args:
        start: First reading instant
        days: Number of days to generate
        interval_seconds: Sampling interval
        seed: Random seed for reproducible output
        include_leak: Add a slow leak between 01:00 and 03:00 each day

    Returns:
        Readings at a fixed interval, oldest first
    """
    if days < 1:
        raise ValueError("days must be at least 1")
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")

    rng = np.random.default_rng(seed)
    start = ensure_utc(start)
    per_day = 86400 // interval_seconds
    per_minute = 60 / interval_seconds
    values = np.zeros(per_day * days, dtype=np.int64)

    for day in range(days):
        day_offset = day * per_day
        for name, hours, (min_minutes, max_minutes), (low, high) in ACTIVITIES:
            count = DAILY_COUNTS[name]
            if name == "washing_machine" and rng.random() < 0.5:
                continue
            for _ in range(count):
                hour = int(rng.choice(hours))
                minute = int(rng.integers(0, 60))
                first = day_offset + int((hour * 60 + minute) * per_minute)
                duration = int(rng.integers(min_minutes, max_minutes + 1) * per_minute)
                rates = rng.uniform(low, high, size=duration)
                end = min(first + duration, len(values))
                values[first:end] += np.round(
                    rates[: end - first] / per_minute
                ).astype(np.int64)

        if include_leak:
            first = day_offset + int(60 * per_minute)
            end = day_offset + int(180 * per_minute)
            values[first:end] += int(round(LEAK_RATE_ML_PER_MIN / per_minute))

    step = timedelta(seconds=interval_seconds)
    return [
        Reading(timestamp=start + i * step, value=int(value))
        for i, value in enumerate(values)
    ]


def write_readings_csv(readings: Sequence[Reading], path: str | Path) -> int:
    """
    Write readings in the import CSV format.

    Returns:
        Number of rows written
    """
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["timestamp", "value"])
        for reading in readings:
            writer.writerow([reading.timestamp.isoformat(), reading.value])
    return len(readings)
