"""Configuration management for FlowSense."""

import logging
import os
import tomllib

from pathlib import Path
from typing import Any, Literal

import tomli_w

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from flowsense.constants import (
    DEFAULT_DATA_DIR,
    DEFAULT_LOG_BACKUP_COUNT,
    DEFAULT_LOG_MAX_SIZE_MB,
    DEFAULT_TIMEZONE,
    ClassifierConstants,
    SegmentationConstants,
)

logger = logging.getLogger(__name__)


class SegmentationConfig(BaseModel):
    """Tunable segmentation parameters."""

    model_config = ConfigDict(frozen=True)

    flow_threshold_ml: int = Field(
        default=SegmentationConstants.FLOW_THRESHOLD_ML,
        ge=0,
        description="Readings at or below this volume count as no flow (mL)",
    )
    min_event_samples: int = Field(
        default=SegmentationConstants.MIN_EVENT_SAMPLES,
        ge=1,
        description="Shorter events are discarded as sensor noise",
    )
    sampling_interval_seconds: float = Field(
        default=SegmentationConstants.SAMPLING_INTERVAL_SECONDS,
        gt=0,
        description="Nominal meter sampling interval, used for a meter's first reading",
    )


class ClassifierConfig(BaseModel):
    """Classifier backend selection and connection settings."""

    model_config = ConfigDict(frozen=True)

    backend: Literal["llm", "rules"] = ClassifierConstants.DEFAULT_BACKEND
    api_base: str = ClassifierConstants.DEFAULT_API_BASE
    model: str = ClassifierConstants.DEFAULT_MODEL
    api_key_env: str = ClassifierConstants.DEFAULT_API_KEY_ENV
    timeout_seconds: float = Field(
        default=ClassifierConstants.DEFAULT_TIMEOUT_SECONDS, gt=0
    )

    def get_api_key(self) -> str | None:
        """Read the API key from the configured environment variable."""
        return os.environ.get(self.api_key_env) or None


class DisplayConfig(BaseModel):
    """Presentation settings for formatted output."""

    model_config = ConfigDict(frozen=True)

    timezone: str = DEFAULT_TIMEZONE


class LoggingConfig(BaseModel):
    """Log file settings; the console handler is always on."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "DEBUG"
    max_size_mb: float = Field(default=DEFAULT_LOG_MAX_SIZE_MB, gt=0)
    backup_count: int = Field(default=DEFAULT_LOG_BACKUP_COUNT, ge=0)

    @field_validator("level", mode="before")
    @classmethod
    def _upper_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @property
    def max_bytes(self) -> int:
        return int(self.max_size_mb * 1024 * 1024)


class FlowSenseConfig(BaseModel):
    """Typed view of the configuration file."""

    model_config = ConfigDict(frozen=True)

    segmentation: SegmentationConfig = Field(default_factory=SegmentationConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def get_config_path() -> Path:
    """
    Get the path to the configuration file.

    Returns:
        Path to ~/.flowsense/config.toml
    """
    return DEFAULT_DATA_DIR / "config.toml"


def load_config() -> dict[str, Any]:
    """
    Load configuration from TOML file.

    Returns:
        Configuration dictionary. Returns empty dict if file doesn't exist
        or is corrupted.
    """
    config_path = get_config_path()

    if not config_path.exists():
        return {}

    try:
        with open(config_path, "rb") as f:
            return tomllib.load(f)
    except Exception as e:
        logger.warning(f"Failed to load config from {config_path}: {e}")
        logger.warning("Treating config as empty. Fix or delete the file to resolve.")
        return {}


def load_settings() -> FlowSenseConfig:
    """
    Load the typed application configuration.

    The [meter] section is read separately by get_default_meter. Invalid
    values fall back to defaults with a warning.

    Returns:
        FlowSenseConfig built from the config file
    """
    raw = load_config()
    sections = {
        key: raw[key]
        for key in ("segmentation", "classifier", "display", "logging")
        if isinstance(raw.get(key), dict)
    }
    try:
        return FlowSenseConfig.model_validate(sections)
    except ValidationError as e:
        logger.warning(f"Invalid configuration values, using defaults: {e}")
        return FlowSenseConfig()


def save_config(config: dict[str, Any]) -> None:
    """
    Save configuration to TOML file using atomic write.

    Creates the parent directory if it doesn't exist.
    Uses temp file + rename for atomic operation.

    Args:
        config: Configuration dictionary to save

    Raises:
        PermissionError: If directory cannot be created or file cannot be written
    """
    config_path = get_config_path()

    config_dir = config_path.parent
    try:
        os.makedirs(config_dir, exist_ok=True)
    except PermissionError as e:
        raise PermissionError(
            f"Cannot create config directory {config_dir}: {e}"
        ) from e

    temp_path = config_path.with_suffix(".toml.tmp")

    try:
        with open(temp_path, "wb") as f:
            tomli_w.dump(config, f)

        os.replace(temp_path, config_path)

    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


def get_default_meter() -> str | None:
    """
    Get the default meter id from config.

    Returns:
        Default meter id, or None if not set
    """
    config = load_config()
    default: str | None = config.get("meter", {}).get("default")
    return default


def set_default_meter(meter_id: str) -> None:
    """
    Set the default meter id in config.

    Args:
        meter_id: Meter identifier to use when --meter is omitted
    """
    config = load_config()

    if "meter" not in config:
        config["meter"] = {}

    config["meter"]["default"] = meter_id
    save_config(config)


def unset_default_meter() -> None:
    """
    Remove the default meter setting from config.

    If this was the only setting in the meter section, removes the section.
    If config becomes empty, deletes the config file.
    """
    config = load_config()

    if "meter" in config and "default" in config["meter"]:
        del config["meter"]["default"]

        if not config["meter"]:
            del config["meter"]

        if not config:
            config_path = get_config_path()
            if config_path.exists():
                config_path.unlink()
        else:
            save_config(config)
