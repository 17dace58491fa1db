"""Formatting utilities for FlowSense display strings."""

import logging

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flowsense.constants import AggregationConstants as AC

logger = logging.getLogger(__name__)


def format_liters(volume_ml: int | float) -> str:
    """
    Format a milliliter volume as liters with one decimal.

    Args:
        volume_ml: Volume in mL

    Returns:
        Formatted string (e.g., "1.7")
    """
    return f"{volume_ml / AC.ML_PER_LITER:.1f}"


def format_volume(volume_ml: int | float) -> str:
    """Format a milliliter volume with unit (e.g., "1.7 L")."""
    return f"{format_liters(volume_ml)} L"


def format_duration(seconds: int | float | None) -> str:
    """
    Format an event duration.

    Args:
        seconds: Duration in seconds

    Returns:
        "Xh Ym" for an hour or more, otherwise "Xm Ys"
    """
    if seconds is None:
        return "N/A"

    total = int(round(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)

    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m {secs}s"


def format_flow_rate(peak_flow_rate: int, avg_flow_rate: int) -> str:
    """
    Format an event's flow rate.

    A single value is shown only when the flow was uniform (peak equals
    average); otherwise "Varied".

    Args:
        peak_flow_rate: Peak rate (mL/min)
        avg_flow_rate: Average rate (mL/min)
    """
    if peak_flow_rate == avg_flow_rate:
        return f"{format_liters(avg_flow_rate)} L/min"
    return AC.VARIED_FLOW


def get_zone(name: str | None) -> ZoneInfo:
    """
    Resolve an IANA timezone name, falling back to UTC.

    Args:
        name: Timezone name (e.g., "Europe/London")
    """
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{name}', using UTC")
        return ZoneInfo("UTC")


def format_local(value: datetime, zone: ZoneInfo, fmt: str) -> str:
    """Format an aware timestamp in the given timezone."""
    return value.astimezone(zone).strftime(fmt)
