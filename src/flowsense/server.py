"""
FlowSense Server

MCP server providing tools for ingesting household water meter readings and
inspecting usage, events and conservation tips.
"""

import json
import logging
import threading

from datetime import datetime

from mcp.server.fastmcp import FastMCP

from flowsense.analysis.service import ClassifierPool, IngestionService, UsageService
from flowsense.analysis.types import ChainAnalysis
from flowsense.config import load_settings
from flowsense.constants import (
    BUCKET_WIDTHS,
    DEFAULT_LIST_EVENTS_LIMIT,
    EventCategory,
    SegmentationConstants,
)
from flowsense.database.store import EventStore
from flowsense.exceptions import EventNotFound, UnknownMeter
from flowsense.models.event import WaterEventRecord
from flowsense.models.ingest import IngestResult
from flowsense.models.settings import SettingsUpdate, UserSettingsModel
from flowsense.models.usage import UsageReport
from flowsense.utils.validation import parse_datetime, validate_granularity

logger = logging.getLogger(__name__)

INSTRUCTIONS = """
FlowSense
Household water usage analysis

You are the FlowSense server. You provide access to water meter readings, the
usage events segmented from them, and conservation tips.

IMPORTANT NOTES:
- Volumes are milliliters (mL) and flow rates mL/min unless a field says L
- Timestamps are ISO 8601; values without an offset are taken as UTC
- A reading's value is the volume used since the meter's previous reading
- Readings must arrive in timestamp order per meter; late readings are dropped

AVAILABLE TOOLS:
- ingest_reading: Submit one meter reading
- get_usage: Usage summary and tips for a day, week, month or year
- list_events: List usage events of a meter
- get_event: Full details of one event, including its flow profile
- set_event_category: Correct an event's category
- flag_event: Mark or unmark an event as anomalous
- analyze_event_chain: Check whether events form one activity
- get_settings / update_settings: Privacy and retention settings

WORKFLOW:
1. Use get_usage for an overview of a meter
2. Use list_events and get_event to inspect individual events
3. Use set_event_category or flag_event to correct classifications
"""

server = FastMCP(name="flowsense", instructions=INSTRUCTIONS)

_services: tuple[IngestionService, UsageService] | None = None
_services_lock = threading.Lock()


def get_services() -> tuple[IngestionService, UsageService]:
    """Create the shared ingestion and usage services on first use."""
    global _services

    with _services_lock:
        if _services is None:
            config = load_settings()
            store = EventStore()
            classifiers = ClassifierPool(config.classifier)
            _services = (
                IngestionService(store, config, classifiers=classifiers),
                UsageService(store, config, classifiers=classifiers),
            )
        return _services


def reset_services() -> None:
    """Drop the shared services (used when the database changes)."""
    global _services

    with _services_lock:
        if _services is not None:
            _services[0].close()
        _services = None


def _parse_optional(value: str | None) -> datetime | None:
    return parse_datetime(value) if value else None


# ============================================================================
# Resources (Documentation)
# ============================================================================


@server.resource("docs://categories")
def get_categories_documentation() -> str:
    """Documentation of event categories and segmentation defaults."""
    return json.dumps(
        {
            "categories": [c.value for c in EventCategory],
            "segmentation": {
                "flow_threshold_ml": SegmentationConstants.FLOW_THRESHOLD_ML,
                "min_event_samples": SegmentationConstants.MIN_EVENT_SAMPLES,
                "note": "A reading is flowing when its value exceeds the threshold",
            },
            "chart_buckets": {
                granularity.value: int(width.total_seconds())
                for granularity, width in BUCKET_WIDTHS.items()
            },
        },
        indent=2,
    )


# ============================================================================
# Tools
# ============================================================================


@server.tool("ingest_reading")
def ingest_reading(*, meter_id: str, timestamp: str, value: int) -> IngestResult:
    """
    Submit one meter reading.

    Args:
        meter_id: Meter identifier (registered on first reading)
        timestamp: Reading instant (ISO 8601)
        value: Volume since the previous reading (mL)

    Returns:
        Whether the reading was accepted, and the event it closed if any
    """
    try:
        ingestion, _ = get_services()
        return ingestion.ingest_reading(meter_id, parse_datetime(timestamp), value)
    except ValueError as e:
        raise e
    except Exception as e:
        logger.error(f"Error ingesting reading: {e}", exc_info=True)
        raise ValueError(f"Error ingesting reading: {e}") from e


@server.tool("get_usage")
def get_usage(
    *,
    meter_id: str,
    time_range: str = "day",
    start: str | None = None,
    end: str | None = None,
) -> UsageReport:
    """
    Get a usage summary with conservation tips.

    Without start/end, covers the range ending now.

    Args:
        meter_id: Meter identifier
        time_range: day, week, month or year
        start: Optional window start (ISO 8601)
        end: Optional window end (ISO 8601), required with start

    Returns:
        Totals, comparison with the previous window, peak flow, category
        breakdown, chart series, formatted events and tips
    """
    try:
        granularity = validate_granularity(time_range)
        _, usage = get_services()

        if start is None and end is None:
            return usage.usage_for_range(meter_id, granularity)
        if start is None or end is None:
            raise ValueError("Both start and end are required for a custom window")
        return usage.query_usage(
            meter_id, parse_datetime(start), parse_datetime(end), granularity
        )
    except ValueError as e:
        raise e
    except UnknownMeter as e:
        raise ValueError(str(e)) from e
    except Exception as e:
        logger.error(f"Error generating usage summary: {e}", exc_info=True)
        raise ValueError(f"Error generating usage summary: {e}") from e


@server.tool("list_events")
def list_events(
    *,
    meter_id: str,
    start: str | None = None,
    end: str | None = None,
    category: str | None = None,
    limit: int = DEFAULT_LIST_EVENTS_LIMIT,
) -> list[WaterEventRecord]:
    """
    List usage events, most recent first.

    Args:
        meter_id: Meter identifier
        start: Only events starting at or after this instant (ISO 8601)
        end: Only events starting before this instant (ISO 8601)
        category: Only events of this category
        limit: Maximum number of events (0 for all)
    """
    try:
        ingestion, _ = get_services()
        return ingestion.store.list_events(
            meter_id,
            start=_parse_optional(start),
            end=_parse_optional(end),
            category=category,
            limit=limit if limit > 0 else None,
            newest_first=True,
        )
    except ValueError as e:
        raise e
    except UnknownMeter as e:
        raise ValueError(str(e)) from e
    except Exception as e:
        logger.error(f"Error listing events: {e}", exc_info=True)
        raise ValueError(f"Error listing events: {e}") from e


@server.tool("get_event")
def get_event(event_id: int) -> WaterEventRecord:
    """
    Get one event with its flow profile.

    Args:
        event_id: Event ID from list_events
    """
    try:
        ingestion, _ = get_services()
        return ingestion.store.get_event(event_id)
    except EventNotFound as e:
        raise ValueError(str(e)) from e
    except Exception as e:
        logger.error(f"Error retrieving event: {e}", exc_info=True)
        raise ValueError(f"Error retrieving event: {e}") from e


@server.tool("set_event_category")
def set_event_category(*, event_id: int, category: str) -> WaterEventRecord:
    """
    Correct an event's category.

    Args:
        event_id: Event ID
        category: shower, faucet, toilet, washing_machine, dishwasher,
            irrigation, bathtub, leak or other
    """
    try:
        ingestion, _ = get_services()
        return ingestion.store.set_category(event_id, category)
    except ValueError as e:
        raise e
    except EventNotFound as e:
        raise ValueError(str(e)) from e
    except Exception as e:
        logger.error(f"Error updating event category: {e}", exc_info=True)
        raise ValueError(f"Error updating event category: {e}") from e


@server.tool("flag_event")
def flag_event(
    *, event_id: int, is_anomaly: bool = True, reason: str | None = None
) -> WaterEventRecord:
    """
    Mark or unmark an event as anomalous.

    Args:
        event_id: Event ID
        is_anomaly: True to flag, False to clear the flag
        reason: Optional explanation shown on the dashboard
    """
    try:
        ingestion, _ = get_services()
        return ingestion.store.set_anomaly_flag(event_id, is_anomaly, reason)
    except EventNotFound as e:
        raise ValueError(str(e)) from e
    except Exception as e:
        logger.error(f"Error flagging event: {e}", exc_info=True)
        raise ValueError(f"Error flagging event: {e}") from e


@server.tool("analyze_event_chain")
def analyze_event_chain(event_ids: list[int]) -> ChainAnalysis:
    """
    Check whether events form one logical activity.

    Examples are a morning routine (toilet then shower) or doing the dishes
    (faucet then dishwasher).

    Args:
        event_ids: Two or more event IDs
    """
    try:
        ingestion, _ = get_services()
        return ingestion.analyze_chain(event_ids)
    except EventNotFound as e:
        raise ValueError(str(e)) from e
    except Exception as e:
        logger.error(f"Error analyzing event chain: {e}", exc_info=True)
        raise ValueError(f"Error analyzing event chain: {e}") from e


@server.tool("get_settings")
def get_settings(meter_id: str) -> UserSettingsModel:
    """
    Get privacy and retention settings of a meter's owner.

    Args:
        meter_id: Meter identifier
    """
    try:
        ingestion, _ = get_services()
        return ingestion.store.get_settings(meter_id)
    except UnknownMeter as e:
        raise ValueError(str(e)) from e
    except Exception as e:
        logger.error(f"Error retrieving settings: {e}", exc_info=True)
        raise ValueError(f"Error retrieving settings: {e}") from e


@server.tool("update_settings")
def update_settings(
    *,
    meter_id: str,
    data_retention_days: int | None = None,
    store_raw_data: bool | None = None,
    allow_ai_analysis: bool | None = None,
    share_anonymized_data: bool | None = None,
    share_with_utility: bool | None = None,
    participate_in_community: bool | None = None,
) -> UserSettingsModel:
    """
    Update privacy and retention settings; omitted values are unchanged.

    Args:
        meter_id: Meter identifier
        data_retention_days: Days to keep raw readings (at least 1)
        store_raw_data: Keep per-event flow profiles past retention
        allow_ai_analysis: Allow the external classifier service
        share_anonymized_data: Share anonymized usage statistics
        share_with_utility: Share usage with the water utility
        participate_in_community: Join community comparisons
    """
    try:
        changes = SettingsUpdate(
            data_retention_days=data_retention_days,
            store_raw_data=store_raw_data,
            allow_ai_analysis=allow_ai_analysis,
            share_anonymized_data=share_anonymized_data,
            share_with_utility=share_with_utility,
            participate_in_community=participate_in_community,
        )
        ingestion, _ = get_services()
        return ingestion.store.update_settings(meter_id, changes)
    except ValueError as e:
        raise e
    except UnknownMeter as e:
        raise ValueError(str(e)) from e
    except Exception as e:
        logger.error(f"Error updating settings: {e}", exc_info=True)
        raise ValueError(f"Error updating settings: {e}") from e
