"""
Command-line interface for FlowSense.

Provides commands for importing meter readings, inspecting usage and events,
managing privacy settings, and database management.
"""

import logging
import os
import sys

from datetime import UTC, datetime
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_version
from pathlib import Path

import click

from flowsense.analysis.service import ClassifierPool, IngestionService, UsageService
from flowsense.config import (
    FlowSenseConfig,
    get_config_path,
    get_default_meter,
    load_settings,
    set_default_meter,
    unset_default_meter,
)
from flowsense.constants import (
    DEFAULT_DATABASE_PATH,
    DEFAULT_LIST_EVENTS_LIMIT,
    EventCategory,
    Granularity,
)
from flowsense.database.importers import ReadingImporter
from flowsense.database.session import init_database
from flowsense.database.store import EventStore
from flowsense.exceptions import EventNotFound, FlowSenseError, UnknownMeter
from flowsense.logging_config import setup_logging
from flowsense.models.settings import SettingsUpdate, UserSettingsModel
from flowsense.models.usage import UsageReport
from flowsense.sample_data import generate_household_readings, write_readings_csv
from flowsense.utils.formatting import (
    format_duration,
    format_flow_rate,
    format_local,
    format_volume,
    get_zone,
)
from flowsense.utils.validation import parse_datetime

logger = logging.getLogger(__name__)

try:
    __version__ = get_version("flowsense")
except PackageNotFoundError:
    __version__ = "dev"


def open_store(db: str | None) -> EventStore:
    """Initialize the database and return a store for it."""
    init_database(str(Path(db)) if db else None)
    return EventStore()


def build_config(offline: bool = False) -> FlowSenseConfig:
    """Load configuration, forcing the local rule classifier when offline."""
    config = load_settings()
    if offline:
        classifier = config.classifier.model_copy(update={"backend": "rules"})
        config = config.model_copy(update={"classifier": classifier})
    return config


def resolve_meter(explicit_meter: str | None, store: EventStore) -> str:
    """
    Resolve meter using precedence: CLI > config > only meter in database.

    Raises:
        click.ClickException: If meter cannot be resolved
    """
    if explicit_meter:
        return explicit_meter

    config_meter = get_default_meter()
    if config_meter:
        if store.meter_exists(config_meter):
            return config_meter
        click.echo(
            f"Warning: Default meter '{config_meter}' not found in database.", err=True
        )
        click.echo("Update with: flowsense config set-default-meter <id>", err=True)

    meters = store.list_meters()
    if len(meters) == 1:
        return meters[0]

    if not meters:
        raise click.ClickException(
            "No meters found. Import data first: flowsense import-readings <file> --meter <id>"
        )
    raise click.ClickException(
        f"Multiple meters found ({', '.join(meters)}). "
        "Specify --meter <id> or set default: flowsense config set-default-meter <id>"
    )


def _parse_cli_datetime(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return parse_datetime(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


meter_option = click.option(
    "--meter", "-m", help="Meter identifier (optional if a default is set)"
)
db_option = click.option(
    "--db", type=click.Path(), help=f"Database path (default: {DEFAULT_DATABASE_PATH})"
)


@click.group()
@click.version_option(__version__, prog_name="flowsense")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def cli(verbose: bool) -> None:
    """FlowSense: Household Water Usage Analysis"""
    setup_logging(verbose=verbose, console_format="%(levelname)s: %(message)s")


# ============================================================================
# Data import
# ============================================================================


@cli.command("import-readings")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--meter", "-m", required=True, help="Meter the readings belong to")
@click.option(
    "--no-flush",
    is_flag=True,
    help="Leave an event that is still open at the end of the file open",
)
@click.option(
    "--offline", is_flag=True, help="Classify with local rules instead of the LLM service"
)
@db_option
def import_readings(
    path: str, meter: str, no_flush: bool, offline: bool, db: str | None
) -> None:
    """Import meter readings from a CSV file (columns: timestamp,value)."""
    store = open_store(db)
    service = IngestionService(store, build_config(offline))

    try:
        summary = ReadingImporter(service, meter).import_file(path, flush=not no_flush)
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    finally:
        service.close()

    click.echo(f"\n✓ Imported readings for meter '{meter}'")
    click.echo(f"  Rows read:        {summary.readings_read}")
    click.echo(f"  Accepted:         {summary.readings_accepted}")
    click.echo(f"  Out of order:     {summary.readings_rejected}")
    click.echo(f"  Invalid rows:     {summary.invalid_rows}")
    click.echo(f"  Events created:   {summary.events_created}")


@cli.command("generate-sample")
@click.argument("output", type=click.Path(dir_okay=False))
@click.option("--days", type=int, default=1, show_default=True, help="Days of data")
@click.option(
    "--start",
    help="First reading timestamp (ISO 8601, default: midnight UTC today)",
)
@click.option(
    "--interval", type=int, default=60, show_default=True, help="Seconds between readings"
)
@click.option("--seed", type=int, help="Random seed for reproducible output")
@click.option("--leak", is_flag=True, help="Add a slow overnight leak")
def generate_sample(
    output: str,
    days: int,
    start: str | None,
    interval: int,
    seed: int | None,
    leak: bool,
) -> None:
    """Write a synthetic household reading CSV."""
    start_dt = _parse_cli_datetime(start) or datetime.now(UTC).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    try:
        readings = generate_household_readings(
            start_dt, days=days, interval_seconds=interval, seed=seed, include_leak=leak
        )
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    count = write_readings_csv(readings, output)
    click.echo(f"✓ Wrote {count} readings to {output}")


# ============================================================================
# Usage and events
# ============================================================================


def _display_usage(report: UsageReport, timezone: str) -> None:
    summary = report.summary
    zone = get_zone(timezone)

    click.echo(f"\nWater Usage: {report.meter_id} ({summary.granularity.value})")
    click.echo("=" * 60)
    click.echo(
        f"Window: {format_local(summary.start_date, zone, '%Y-%m-%d %H:%M')} to "
        f"{format_local(summary.end_date, zone, '%Y-%m-%d %H:%M')}"
    )
    click.echo(f"Total usage:   {summary.total_usage} L ({summary.usage_comparison:+d}%)")
    if summary.peak_flow_time:
        category = f", {summary.peak_flow_category}" if summary.peak_flow_category else ""
        click.echo(
            f"Peak reading:  {summary.peak_flow} L at {summary.peak_flow_time}{category}"
        )
    click.echo(f"Events:        {summary.event_count}")

    if summary.anomaly_count:
        click.echo(f"\n⚠ Anomalies: {summary.anomaly_count} ({summary.anomaly_description})")

    if summary.categories:
        click.echo(f"\n{'Category':<18} {'Volume':>10} {'Events':>7} {'Share':>7}")
        click.echo("-" * 45)
        for category in summary.categories:
            click.echo(
                f"{category.name:<18} {category.volume:>10} "
                f"{category.event_count:>7} {category.percentage:>6.1f}%"
            )

    if report.recommendations:
        click.echo("\nTips:")
        for tip in report.recommendations:
            click.echo(f"  • {tip.title}: {tip.description}")

    click.echo("=" * 60 + "\n")


@cli.command()
@meter_option
@click.option(
    "--range",
    "time_range",
    type=click.Choice([g.value for g in Granularity]),
    default=Granularity.DAY.value,
    show_default=True,
    help="Time range ending now (or at --end)",
)
@click.option("--start", help="Window start (ISO 8601); requires --end")
@click.option("--end", help="Window end (ISO 8601)")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.option("--offline", is_flag=True, help="Use rule-based tips only")
@db_option
def usage(
    meter: str | None,
    time_range: str,
    start: str | None,
    end: str | None,
    as_json: bool,
    offline: bool,
    db: str | None,
) -> None:
    """Show a usage summary with conservation tips."""
    store = open_store(db)
    meter_id = resolve_meter(meter, store)
    config = build_config(offline)
    granularity = Granularity(time_range)
    classifiers = ClassifierPool(config.classifier)
    service = UsageService(store, config, classifiers=classifiers)

    start_dt = _parse_cli_datetime(start)
    end_dt = _parse_cli_datetime(end)

    try:
        if start_dt is not None:
            if end_dt is None:
                raise click.BadParameter("--start requires --end")
            report = service.query_usage(meter_id, start_dt, end_dt, granularity)
        else:
            report = service.usage_for_range(meter_id, granularity, now=end_dt)
    except FlowSenseError as e:
        raise click.ClickException(str(e)) from e
    finally:
        classifiers.close()

    if as_json:
        click.echo(report.model_dump_json(indent=2))
    else:
        _display_usage(report, config.display.timezone)


@cli.command("list-events")
@meter_option
@click.option("--from", "from_date", help="Events starting at or after (ISO 8601)")
@click.option("--to", "to_date", help="Events starting before (ISO 8601)")
@click.option(
    "--category",
    type=click.Choice([c.value for c in EventCategory]),
    help="Only events of this category",
)
@click.option(
    "--limit",
    type=int,
    default=DEFAULT_LIST_EVENTS_LIMIT,
    help="Max events to show (use 0 for all)",
)
@db_option
def list_events(
    meter: str | None,
    from_date: str | None,
    to_date: str | None,
    category: str | None,
    limit: int,
    db: str | None,
) -> None:
    """List usage events, most recent first."""
    store = open_store(db)
    meter_id = resolve_meter(meter, store)
    zone = get_zone(load_settings().display.timezone)

    events = store.list_events(
        meter_id,
        start=_parse_cli_datetime(from_date),
        end=_parse_cli_datetime(to_date),
        category=category,
        limit=limit if limit > 0 else None,
        newest_first=True,
    )

    if not events:
        click.echo("No events found")
        return

    click.echo(
        f"\n{'ID':<6} {'Start':<17} {'Category':<16} {'Duration':<9} "
        f"{'Volume':>9} {'Flow':>12}"
    )
    click.echo("=" * 74)
    for event in events:
        marker = " ⚠" if event.anomaly else ""
        click.echo(
            f"{event.id:<6} {format_local(event.start_time, zone, '%Y-%m-%d %H:%M'):<17} "
            f"{(event.category or 'unclassified'):<16} "
            f"{format_duration(event.duration_seconds):<9} "
            f"{format_volume(event.volume_ml):>9} "
            f"{format_flow_rate(event.peak_flow_rate, event.avg_flow_rate):>12}{marker}"
        )

    if limit > 0 and len(events) == limit:
        click.echo(f"\nShowing {limit} most recent events")
        click.echo("💡 Tip: Use --limit 0 to see all events")


@cli.command("show-event")
@click.argument("event_id", type=int)
@db_option
def show_event(event_id: int, db: str | None) -> None:
    """Show one event with its flow profile."""
    store = open_store(db)
    zone = get_zone(load_settings().display.timezone)

    try:
        event = store.get_event(event_id)
    except EventNotFound as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"\nEvent {event.id} ({event.meter_id})")
    click.echo("=" * 50)
    click.echo(f"Start:      {format_local(event.start_time, zone, '%Y-%m-%d %H:%M:%S')}")
    click.echo(f"End:        {format_local(event.end_time, zone, '%Y-%m-%d %H:%M:%S')}")
    click.echo(f"Duration:   {format_duration(event.duration_seconds)}")
    click.echo(f"Volume:     {format_volume(event.volume_ml)}")
    click.echo(f"Peak flow:  {event.peak_flow_rate / 1000:.1f} L/min")
    click.echo(f"Avg flow:   {event.avg_flow_rate / 1000:.1f} L/min")
    click.echo(
        f"Category:   {event.category or 'unclassified'} "
        f"(confidence {event.confidence}%)"
    )
    if event.anomaly:
        click.echo(f"Anomaly:    {event.anomaly_description or 'yes'}")

    if event.flow_data:
        click.echo("\nFlow profile:")
        for sample in event.flow_data:
            click.echo(
                f"  {format_local(sample.time, zone, '%H:%M:%S')}  "
                f"{sample.rate_l_per_min:6.2f} L/min"
            )
    click.echo()


@cli.command("set-category")
@click.argument("event_id", type=int)
@click.argument("category", type=click.Choice([c.value for c in EventCategory]))
@db_option
def set_category(event_id: int, category: str, db: str | None) -> None:
    """Correct the category of an event."""
    store = open_store(db)
    try:
        event = store.set_category(event_id, category)
    except EventNotFound as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"✓ Event {event.id} categorized as {event.category}")


@cli.command("flag-event")
@click.argument("event_id", type=int)
@click.option("--reason", help="Why the event is anomalous")
@click.option("--clear", is_flag=True, help="Remove the anomaly flag")
@db_option
def flag_event(event_id: int, reason: str | None, clear: bool, db: str | None) -> None:
    """Flag an event as anomalous (or clear the flag)."""
    store = open_store(db)
    try:
        event = store.set_anomaly_flag(event_id, not clear, reason)
    except EventNotFound as e:
        raise click.ClickException(str(e)) from e
    if event.anomaly:
        click.echo(f"✓ Event {event.id} flagged as anomalous")
    else:
        click.echo(f"✓ Anomaly flag cleared for event {event.id}")


# ============================================================================
# Settings and data lifecycle
# ============================================================================


def _display_settings(meter_id: str, settings: UserSettingsModel) -> None:
    click.echo(f"\nSettings for meter '{meter_id}':")
    for name, value in settings.model_dump().items():
        click.echo(f"  {name:<26} {value}")
    click.echo()


@cli.group()
def settings() -> None:
    """Privacy and retention settings."""
    pass


@settings.command("show")
@meter_option
@db_option
def settings_show(meter: str | None, db: str | None) -> None:
    """Show settings for a meter."""
    store = open_store(db)
    meter_id = resolve_meter(meter, store)
    _display_settings(meter_id, store.get_settings(meter_id))


@settings.command("set")
@meter_option
@click.option("--retention-days", type=click.IntRange(min=1), help="Days to keep readings")
@click.option("--store-raw-data/--no-store-raw-data", default=None)
@click.option("--allow-ai-analysis/--no-allow-ai-analysis", default=None)
@click.option("--share-anonymized-data/--no-share-anonymized-data", default=None)
@click.option("--share-with-utility/--no-share-with-utility", default=None)
@click.option("--participate-in-community/--no-participate-in-community", default=None)
@db_option
def settings_set(
    meter: str | None,
    retention_days: int | None,
    store_raw_data: bool | None,
    allow_ai_analysis: bool | None,
    share_anonymized_data: bool | None,
    share_with_utility: bool | None,
    participate_in_community: bool | None,
    db: str | None,
) -> None:
    """Change settings; options not given are left unchanged."""
    store = open_store(db)
    meter_id = resolve_meter(meter, store)
    changes = SettingsUpdate(
        data_retention_days=retention_days,
        store_raw_data=store_raw_data,
        allow_ai_analysis=allow_ai_analysis,
        share_anonymized_data=share_anonymized_data,
        share_with_utility=share_with_utility,
        participate_in_community=participate_in_community,
    )
    if not changes.model_dump(exclude_none=True):
        raise click.UsageError("No settings given. See: flowsense settings set --help")

    updated = store.update_settings(meter_id, changes)
    click.echo("✓ Settings updated")
    _display_settings(meter_id, updated)


@settings.command("reset")
@meter_option
@db_option
@click.confirmation_option(prompt="Reset settings to defaults?")
def settings_reset(meter: str | None, db: str | None) -> None:
    """Restore default settings."""
    store = open_store(db)
    meter_id = resolve_meter(meter, store)
    _display_settings(meter_id, store.reset_settings(meter_id))


@cli.command("delete-data")
@click.option("--meter", "-m", required=True, help="Meter whose data to delete")
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
@db_option
def delete_data(meter: str, force: bool, db: str | None) -> None:
    """Delete all readings and events of a meter."""
    store = open_store(db)
    if not store.meter_exists(meter):
        raise click.ClickException(str(UnknownMeter(meter)))

    if not force:
        click.confirm(
            f"Delete ALL readings and events of meter '{meter}'? This cannot be undone",
            abort=True,
        )

    counts = store.delete_all_data(meter)
    click.echo(
        f"✓ Deleted {counts['readings']} readings and {counts['events']} events"
    )


@cli.command()
@meter_option
@click.option("--now", "now_str", help="Reference time (ISO 8601, default: now)")
@db_option
def purge(meter: str | None, now_str: str | None, db: str | None) -> None:
    """Apply the retention settings: drop expired readings and flow profiles."""
    store = open_store(db)
    meter_id = resolve_meter(meter, store)
    now = _parse_cli_datetime(now_str) or datetime.now(UTC)

    counts = store.purge_expired(meter_id, now)
    click.echo(
        f"✓ Purged {counts['readings']} readings, "
        f"cleared {counts['flow_profiles']} flow profiles"
    )


# ============================================================================
# Database
# ============================================================================


@cli.group()
def db() -> None:
    """Database management commands."""
    pass


@db.command()
@click.option("--db", type=click.Path(), help="Database path")
def init(db: str | None) -> None:
    """Initialize database (creates tables if needed)."""
    db_path = str(Path(db)) if db else DEFAULT_DATABASE_PATH
    init_database(db_path)
    click.echo(f"✓ Database initialized at {db_path}")


@db.command()
@click.option("--db", type=click.Path(), help="Database path")
def stats(db: str | None) -> None:
    """Show database statistics."""
    db_path = Path(db) if db else Path(DEFAULT_DATABASE_PATH)
    store = open_store(str(db_path))
    counts = store.stats()

    size_bytes = os.path.getsize(db_path) if db_path.exists() else 0
    size_mb = size_bytes / (1024 * 1024)

    click.echo("\n📊 Database Statistics")
    click.echo(f"{'=' * 50}")
    click.echo(f"Database: {db_path}")
    click.echo(f"Size: {size_mb:.1f} MB")
    click.echo(f"\nMeters: {counts['meters']}")
    click.echo(f"Readings: {counts['readings']}")
    click.echo(f"Events: {counts['events']}")
    click.echo(f"Anomalies: {counts['anomalies']}")
    click.echo(f"{'=' * 50}\n")


# ============================================================================
# Configuration
# ============================================================================


@cli.group()
def config() -> None:
    """Configuration management commands."""
    pass


@config.command("set-default-meter")
@click.argument("meter_id")
@db_option
def set_default_meter_cmd(meter_id: str, db: str | None) -> None:
    """Set default meter for CLI commands (must exist in database)."""
    store = open_store(db)
    if not store.meter_exists(meter_id):
        meters = store.list_meters()
        if meters:
            click.echo(f"Error: Meter '{meter_id}' not found.", err=True)
            click.echo(f"Available meters: {', '.join(meters)}", err=True)
        else:
            click.echo("Error: No meters in database.", err=True)
            click.echo(
                "Import data first: flowsense import-readings <file> --meter <id>",
                err=True,
            )
        sys.exit(1)

    set_default_meter(meter_id)
    click.echo(f"✓ Default meter: {meter_id}")
    click.echo(f"  Config: {get_config_path()}")


@config.command("unset-default-meter")
def unset_default_meter_cmd() -> None:
    """Remove default meter setting."""
    default = get_default_meter()
    if default:
        unset_default_meter()
        click.echo(f"✓ Removed default meter: {default}")
    else:
        click.echo("No default meter was configured.")


@config.command("show")
def show_config_cmd() -> None:
    """Show all configuration settings."""
    from flowsense.config import load_config

    config_path = get_config_path()
    if not config_path.exists():
        click.echo(f"No config file: {config_path}")
        return

    click.echo(f"Config file: {config_path}\n")
    config_data = load_config()
    if not config_data:
        click.echo("Configuration is empty.")
        return

    click.echo("Settings:")
    for section, values in config_data.items():
        if not isinstance(values, dict):
            continue
        click.echo(f"  [{section}]")
        for key, value in values.items():
            rendered = f'"{value}"' if isinstance(value, str) else value
            click.echo(f"    {key} = {rendered}")


def main() -> None:
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
