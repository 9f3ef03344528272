"""Command-line interface for the care records migration and backup tooling."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple

import click

from care_migration import __version__
from care_migration.cli import commands
from care_migration.cli.config import config
from care_migration.cli.error_handler import install_exception_handler, safe_execute
from care_migration.lib.logging_config import setup_logging

LOG_LEVELS = ["WARNING", "INFO", "DEBUG"]


def _configure_logging(verbose: int, quiet: bool) -> None:
    if verbose:
        level = LOG_LEVELS[min(verbose, len(LOG_LEVELS) - 1)]
    else:
        level = config.log_level
    if quiet:
        level = "ERROR"
    setup_logging(
        level=level,
        log_to_file=config.log_to_file,
        log_directory=Path(config.log_directory),
        json_format=config.log_json,
    )


def _app(ctx: click.Context) -> commands.Application:
    return ctx.obj["app"]


@click.group()
@click.version_option(__version__, prog_name="care-migrate")
@click.option("--verbose", "-v", count=True, help="Increase verbosity (use up to -vv)")
@click.option("--quiet", "-q", is_flag=True, help="Only show errors")
@click.option("--debug", is_flag=True, help="Show full tracebacks on errors")
@click.option("--env-file", type=click.Path(dir_okay=False), help="Load configuration from this .env file")
@click.pass_context
def cli(ctx: click.Context, verbose: int, quiet: bool, debug: bool, env_file: Optional[str]) -> None:
    """Migrate care records into per-service databases, back them up and roll them back."""
    if env_file:
        config.load(env_file)
    if debug:
        config.set("DEBUG", "true")
    _configure_logging(verbose, quiet)

    try:
        config.validate()
    except ValueError as e:
        raise click.UsageError(str(e))

    app = commands.Application(config)
    ctx.obj = {"verbose": verbose, "quiet": quiet, "app": app}
    ctx.call_on_close(app.close)


@cli.command()
@click.option("--dry-run/--no-dry-run", default=None, help="Read, transform and validate without writing")
@click.option("--batch-size", type=click.IntRange(min=1), help="Records per batch")
@click.option("--max-workers", type=click.IntRange(min=1), help="Services migrated concurrently per phase")
@click.option("--lenient", is_flag=True, help="Write records that fail validation, recording the errors")
@click.option("--backup-before", metavar="PIPELINE", help="Back up this pipeline before migrating")
@click.option("--report-dir", type=click.Path(file_okay=False, path_type=Path), help="Where to write the run report")
@click.pass_context
@safe_execute
def migrate(ctx: click.Context, dry_run: Optional[bool], batch_size: Optional[int], max_workers: Optional[int],
            lenient: bool, backup_before: Optional[str], report_dir: Optional[Path]) -> None:
    """Run the phased migration plan."""
    commands.run_migration(_app(ctx), dry_run, batch_size, max_workers, lenient, backup_before, report_dir)


@cli.command(name="rollback-service")
@click.argument("service_name")
@click.confirmation_option(prompt="Drop every migrated table of this service?")
@click.pass_context
@safe_execute
def rollback_service(ctx: click.Context, service_name: str) -> None:
    """Drop a service's migrated tables."""
    commands.rollback_service(_app(ctx), service_name)


@cli.command()
@click.argument("pipeline_id")
@click.option("--type", "backup_type", type=click.Choice(["full", "differential"]), default="full")
@click.option("--description", help="Free-text description stored with the backup")
@click.option("--tag", "tags", multiple=True, help="Tag to attach (repeatable)")
@click.option("--compress/--no-compress", default=None, help="Override BACKUP_COMPRESSION_ENABLED")
@click.option("--encrypt/--no-encrypt", default=None, help="Override BACKUP_ENCRYPTION_ENABLED")
@click.option("--verify/--no-verify", default=None, help="Override BACKUP_VERIFICATION_ENABLED")
@click.option("--retention-days", type=click.IntRange(min=1), help="Override the retention period")
@click.pass_context
@safe_execute
def backup(ctx: click.Context, pipeline_id: str, backup_type: str, description: Optional[str],
           tags: Tuple[str, ...], compress: Optional[bool], encrypt: Optional[bool],
           verify: Optional[bool], retention_days: Optional[int]) -> None:
    """Create a full or differential backup of a pipeline."""
    commands.create_backup(_app(ctx), pipeline_id, backup_type, description, list(tags),
                           compress, encrypt, verify, retention_days)


@cli.command(name="incremental-backup")
@click.argument("pipeline_id")
@click.option("--since", "since", metavar="BACKUP_ID", help="Base backup (default: latest verified)")
@click.pass_context
@safe_execute
def incremental_backup(ctx: click.Context, pipeline_id: str, since: Optional[str]) -> None:
    """Back up only what changed since a previous backup."""
    commands.create_incremental_backup(_app(ctx), pipeline_id, since)


@cli.command()
@click.argument("pipeline_id")
@click.option("--backup-id", help="Restore this backup instead of the latest verified one")
@click.option("--test", is_flag=True, help="Decode and check the backup without touching live data")
@click.option("--verify/--no-verify", default=True, help="Run integrity checks")
@click.option("--rollback-on-failure/--no-rollback-on-failure", default=True,
              help="Return to the pre-restore snapshot if the restore fails")
@click.option("--preserve-current", is_flag=True, help="Snapshot current data before restoring")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
@safe_execute
def restore(ctx: click.Context, pipeline_id: str, backup_id: Optional[str], test: bool, verify: bool,
            rollback_on_failure: bool, preserve_current: bool, yes: bool) -> None:
    """Roll a pipeline back to a verified backup."""
    if not (test or yes):
        click.confirm(f"Replace all data in {pipeline_id}?", abort=True)
    commands.restore(_app(ctx), pipeline_id, backup_id, test, verify, rollback_on_failure, preserve_current)


@cli.command(name="list-backups")
@click.argument("pipeline_id", required=False)
@click.pass_context
@safe_execute
def list_backups(ctx: click.Context, pipeline_id: Optional[str]) -> None:
    """List backups, newest first."""
    commands.list_backups(_app(ctx), pipeline_id)


@cli.command()
@click.pass_context
@safe_execute
def cleanup(ctx: click.Context) -> None:
    """Delete backups past their retention period."""
    commands.cleanup(_app(ctx))


@cli.command()
@click.pass_context
@safe_execute
def stats(ctx: click.Context) -> None:
    """Show backup statistics and storage health."""
    commands.show_statistics(_app(ctx))


@cli.command()
@click.argument("pipeline_id")
@click.pass_context
@safe_execute
def drill(ctx: click.Context, pipeline_id: str) -> None:
    """Create a test backup and restore it without touching live data."""
    commands.run_drill(_app(ctx), pipeline_id)


@cli.command()
@click.argument("pipeline_id")
@click.option("--frequency", type=click.Choice(["hourly", "daily", "weekly"]), default="daily")
@click.option("--retention-days", type=click.IntRange(min=1), default=30)
@click.pass_context
@safe_execute
def schedule(ctx: click.Context, pipeline_id: str, frequency: str, retention_days: int) -> None:
    """Record a recurring automated backup schedule."""
    commands.schedule_backups(_app(ctx), pipeline_id, frequency, retention_days)


@cli.command(name="import-file")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--table", help="Source table to load into (default: derived from the file name)")
@click.option("--sheet", help="Excel worksheet to read (default: the first)")
@click.option("--delimiter", default=",", show_default=True, help="CSV field delimiter")
@click.option("--skip-rows", type=click.IntRange(min=0), default=0, help="Data rows to skip")
@click.option("--max-rows", type=click.IntRange(min=1), help="Import at most this many rows")
@click.option("--if-exists", type=click.Choice(["append", "replace", "fail"]), default="append",
              show_default=True)
@click.option("--strict", is_flag=True, help="Skip records that fail any check")
@click.option("--no-validate", is_flag=True, help="Skip the resident record checks")
@click.option("--dry-run", is_flag=True, help="Parse and check without writing")
@click.pass_context
@safe_execute
def import_file(ctx: click.Context, path: Path, table: Optional[str], sheet: Optional[str], delimiter: str,
                skip_rows: int, max_rows: Optional[int], if_exists: str, strict: bool, no_validate: bool,
                dry_run: bool) -> None:
    """Load a CSV, TSV, Excel, JSON or XML file into the source database."""
    commands.import_data_file(_app(ctx), path, table, sheet, delimiter, skip_rows, max_rows, if_exists,
                              strict, not no_validate, dry_run)


@cli.command(name="show-config")
def show_config() -> None:
    """Print the effective configuration (secrets hidden)."""
    for key, value in config.to_dict().items():
        click.echo(f"{key}: {value}")


def main() -> None:  # pragma: no cover - console entry point
    install_exception_handler()
    cli(prog_name="care-migrate")


if __name__ == "__main__":  # pragma: no cover - script entrypoint
    main()
