"""Entry point for FlowSense server."""

import argparse
import logging

from importlib.metadata import PackageNotFoundError, version

from flowsense.constants import DEFAULT_DATABASE_PATH
from flowsense.database.session import init_database
from flowsense.logging_config import setup_logging
from flowsense.server import server

logger = logging.getLogger("flowsense")


def main() -> int:
    """Main entry point for FlowSense server."""
    setup_logging()

    parser = argparse.ArgumentParser(
        description="FlowSense: MCP server for household water usage analysis"
    )
    parser.add_argument(
        "--database",
        default=DEFAULT_DATABASE_PATH,
        help=f"Path to database file (default: {DEFAULT_DATABASE_PATH})",
    )
    args = parser.parse_args()

    try:
        current_version = version("flowsense")
    except PackageNotFoundError:
        current_version = "dev"

    logger.info(f"Starting FlowSense v{current_version}...")
    logger.info(f"Using database: {args.database}")

    try:
        init_database(args.database)
        logger.info("Database initialized successfully")

        logger.info("Starting MCP server...")
        server.run()
        return 0

    except Exception as e:
        logger.error(f"Server failed to start: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    exit(main())
