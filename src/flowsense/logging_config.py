"""
Logging setup for the CLI and the MCP server.

Console output goes to stderr (stdout carries MCP traffic and JSON output).
The rotating log file is controlled by the [logging] section of config.toml,
validated as LoggingConfig.
"""

import logging
import logging.config
import os
import sys

from pathlib import Path
from typing import Any

from flowsense.config import LoggingConfig, load_settings
from flowsense.constants import DEFAULT_LOG_DIR, DEFAULT_LOG_FILE

_logging_configured = False

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_log_path() -> Path:
    """Path of the active log file, creating its directory if needed."""
    os.makedirs(DEFAULT_LOG_DIR, mode=0o700, exist_ok=True)
    return Path(DEFAULT_LOG_DIR) / DEFAULT_LOG_FILE


def build_logging_config(
    settings: LoggingConfig,
    verbose: bool = False,
    console_format: str | None = None,
) -> dict[str, Any]:
    """
    Build the dictConfig dictionary.

    Args:
        settings: Log file settings
        verbose: Console at DEBUG instead of INFO
        console_format: Console format string; defaults to LOG_FORMAT
    """
    handlers: dict[str, dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": "DEBUG" if verbose else "INFO",
            "formatter": "console",
            "stream": "ext://sys.stderr",
        },
    }
    if settings.enabled:
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": settings.level,
            "formatter": "file",
            "filename": str(get_log_path()),
            "maxBytes": settings.max_bytes,
            "backupCount": settings.backup_count,
            "encoding": "utf-8",
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {"format": console_format or LOG_FORMAT},
            "file": {"format": LOG_FORMAT},
        },
        "handlers": handlers,
        "root": {"level": "DEBUG", "handlers": list(handlers)},
    }


def setup_logging(
    *,
    verbose: bool = False,
    console_format: str | None = None,
    settings: LoggingConfig | None = None,
) -> None:
    """
    Configure logging once per process; later calls are no-ops.

    If the log file cannot be opened, logging continues on the console only.
    """
    global _logging_configured

    if _logging_configured:
        return

    if settings is None:
        settings = load_settings().logging

    try:
        logging.config.dictConfig(
            build_logging_config(settings, verbose=verbose, console_format=console_format)
        )
    except (OSError, ValueError) as e:
        sys.stderr.write(f"WARNING: Failed to configure file logging: {e}\n")
        logging.config.dictConfig(
            build_logging_config(
                settings.model_copy(update={"enabled": False}),
                verbose=verbose,
                console_format=console_format,
            )
        )

    _logging_configured = True
