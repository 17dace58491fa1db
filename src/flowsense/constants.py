"""
Constants and mappings for household water meter analysis.

Units follow one convention throughout: volumes in milliliters (int), flow rates
in milliliters per minute (int), timestamps as UTC instants. Liters only appear
when values are formatted for display.
"""

from datetime import timedelta
from enum import Enum
from pathlib import Path

# ============================================================================
# Usage Categories
# ============================================================================


class EventCategory(str, Enum):
    """Fixture categories a water usage event can be attributed to."""

    SHOWER = "shower"
    FAUCET = "faucet"
    TOILET = "toilet"
    WASHING_MACHINE = "washing_machine"
    DISHWASHER = "dishwasher"
    IRRIGATION = "irrigation"
    BATHTUB = "bathtub"
    LEAK = "leak"
    OTHER = "other"


UNCLASSIFIED_CATEGORY = ""

# Spellings the classifier service has been seen to return
CATEGORY_ALIASES = {
    "tap": EventCategory.FAUCET,
    "sink": EventCategory.FAUCET,
    "kitchen_sink": EventCategory.FAUCET,
    "bathroom_sink": EventCategory.FAUCET,
    "washer": EventCategory.WASHING_MACHINE,
    "clothes_washer": EventCategory.WASHING_MACHINE,
    "laundry": EventCategory.WASHING_MACHINE,
    "bath": EventCategory.BATHTUB,
    "garden": EventCategory.IRRIGATION,
    "sprinkler": EventCategory.IRRIGATION,
    "flush": EventCategory.TOILET,
}


class AnomalyType(str, Enum):
    """Anomaly types reported by heuristics and the classifier service."""

    POSSIBLE_LEAK = "possible_leak"
    HIGH_FLOW = "high_flow"
    IRREGULAR_PATTERN = "irregular_pattern"
    UNUSUAL_TIMING = "unusual_timing"


class Granularity(str, Enum):
    """Requested time range, which determines chart bucket width."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


BUCKET_WIDTHS: dict[Granularity, timedelta] = {
    Granularity.DAY: timedelta(minutes=5),
    Granularity.WEEK: timedelta(hours=1),
    Granularity.MONTH: timedelta(hours=12),
    Granularity.YEAR: timedelta(days=1),
}


# ============================================================================
# Algorithm Constants
# ============================================================================


class SegmentationConstants:
    """Constants for event segmentation (segmenter.py)."""

    FLOW_THRESHOLD_ML = 67  # per sampling interval; equal counts as no flow
    MIN_EVENT_SAMPLES = 3
    SAMPLING_INTERVAL_SECONDS = 60.0


class AnomalyHeuristicConstants:
    """Constants for the local anomaly heuristics (classifier.py)."""

    LOW_FLOW_MAX_RATE_ML_PER_MIN = 200  # 0.2 L/min, exclusive
    LOW_FLOW_MIN_CONSECUTIVE = 10
    HIGH_FLOW_MIN_RATE_ML_PER_MIN = 15000  # 15 L/min, exclusive
    HIGH_FLOW_MIN_SAMPLES = 3

    LEAK_DETAILS = "Continuous low flow detected, possibly indicating a leak."
    HIGH_FLOW_DETAILS = (
        "Unusually high water flow detected, possibly indicating a burst pipe "
        "or open tap."
    )


class ClassifierConstants:
    """Constants for the classifier adapter and its backends."""

    FALLBACK_CATEGORY = EventCategory.OTHER.value
    FALLBACK_CONFIDENCE = 50
    FALLBACK_REASONING = "Unable to categorize event."
    DEFAULT_TIMEOUT_SECONDS = 20.0
    MAX_WORKERS = 4

    DEFAULT_BACKEND = "llm"
    DEFAULT_API_BASE = "https://api.openai.com/v1"
    DEFAULT_MODEL = "gpt-4o"
    DEFAULT_API_KEY_ENV = "OPENAI_API_KEY"

    CATEGORIZE_TEMPERATURE = 0.2
    ANOMALY_TEMPERATURE = 0.3
    RECOMMENDATION_TEMPERATURE = 0.4
    CHAIN_TEMPERATURE = 0.2


class AggregationConstants:
    """Constants for usage aggregation (aggregator.py)."""

    ML_PER_LITER = 1000
    DEFAULT_ANOMALY_DESCRIPTION = "Possible leak detected"
    EMPTY_TOTAL = "0"
    VARIED_FLOW = "Varied"
    PEAK_TIME_FORMAT = "%H:%M"
    EVENT_TIME_FORMAT = "%d/%m %H:%M"
    EVENT_TIME_FORMAT_WEEK = "%a %d/%m %H:%M"
    MAX_FLOW_POINTS = 2000


class RecommendationConstants:
    """Constants for the tip generator (recommendations.py)."""

    MAX_TIPS = 5
    MAX_GENERAL_TIPS = 2


# ============================================================================
# Settings Defaults
# ============================================================================

DEFAULT_RETENTION_DAYS = 90
DEFAULT_STORE_RAW_DATA = True
DEFAULT_ALLOW_AI_ANALYSIS = True
DEFAULT_SHARE_ANONYMIZED_DATA = True
DEFAULT_SHARE_WITH_UTILITY = False
DEFAULT_PARTICIPATE_IN_COMMUNITY = False

# ============================================================================
# Application Defaults
# ============================================================================

DEFAULT_DATA_DIR = Path.home() / ".flowsense"
DEFAULT_DATABASE_PATH = str(DEFAULT_DATA_DIR / "flowsense.db")
DEFAULT_TIMEZONE = "UTC"

# Logging
DEFAULT_LOG_DIR = DEFAULT_DATA_DIR / "logs"
DEFAULT_LOG_FILE = "flowsense.log"
DEFAULT_LOG_MAX_SIZE_MB = 10
DEFAULT_LOG_BACKUP_COUNT = 5

# CLI
DEFAULT_LIST_EVENTS_LIMIT = 20
