"""
Command-line interface for crm_reconcile.

Provides CLI commands for reconciliation runs, single-record sync, fan-out
redrive, list audits and inspection of the local store.

Usage:
    # Show help
    crm-reconcile --help

    # Run reconciliation
    crm-reconcile sync
    crm-reconcile sync --dry-run
    crm-reconcile sync --profile leads --report-json report.json

    # Sync one record (webhook or gap recovery)
    crm-reconcile sync-record 1234

    # Resend failed fan-out pushes
    crm-reconcile redrive
"""

import json
import os
import signal
import sys
import threading
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import click

from crm_reconcile import __version__
from crm_reconcile.api.base import AuthenticationError
from crm_reconcile.cli.formatters import (
    show_fanout_report,
    show_investigations,
    show_list_audits,
    show_quarantine,
    show_record_result,
    show_run_report,
    style_status,
)
from crm_reconcile.config.generator import save_config_file
from crm_reconcile.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from crm_reconcile.config.sync_config import SyncConfigError
from crm_reconcile.config.sync_config import load_config as load_sync_config
from crm_reconcile.storage.db import ContactStore, StoreError
from crm_reconcile.utils.logging import (
    cleanup_old_logs,
    get_logger,
    setup_investigation_logger,
    setup_logging,
)
from crm_reconcile.utils.paths import (
    DEFAULT_DB_FILENAME,
    DEFAULT_PID_FILENAME,
    resolve_config_dir,
    resolve_data_path,
)

# Defaults documented in the generated config.yaml
DEFAULT_SOURCE_API_URL = "https://api.hubapi.com"
DEFAULT_SOURCE_TOKEN_ENV = "CRM_RECONCILE_SOURCE_TOKEN"
DEFAULT_LIST_API_ID_ENV = "CRM_RECONCILE_LIST_API_ID"
DEFAULT_LIST_API_KEY_ENV = "CRM_RECONCILE_LIST_API_KEY"
DEFAULT_SOURCE_MIN_INTERVAL = 0.1
DEFAULT_LIST_MIN_INTERVAL = 0.2
DEFAULT_DAEMON_INTERVAL = "1h"

# Exit code of a run stopped by SIGINT/SIGTERM
EXIT_CANCELLED = 130


def get_config_dir(config_dir: str | None) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_file: str | None, config_dir: Path) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file).expanduser()
    return config_dir / DEFAULT_CONFIG_FILE


def get_db_path(ctx: click.Context) -> Path:
    """Store location: db_path from config, else <config dir>/contacts.db."""
    config = ctx.obj.get("config", {})
    return resolve_data_path(
        config.get("db_path"), ctx.obj["config_dir"], DEFAULT_DB_FILENAME
    )


def get_pid_file(ctx: click.Context) -> Path:
    config = ctx.obj.get("config", {})
    return resolve_data_path(
        config.get("daemon_pid_file"), ctx.obj["config_dir"], DEFAULT_PID_FILENAME
    )


def open_store(ctx: click.Context) -> ContactStore:
    """Open (and create if needed) the local contact store."""
    db_path = get_db_path(ctx)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = ContactStore(str(db_path))
    store.initialize()
    return store


def build_source_api(ctx: click.Context, retry_policy: Any = None) -> Any:
    """Build the source CRM client; the token comes from the environment."""
    from crm_reconcile.api.source_api import SourceCRMAPI

    config = ctx.obj.get("config", {})
    token_env = config.get("source_token_env", DEFAULT_SOURCE_TOKEN_ENV)
    token = os.environ.get(token_env)
    if not token:
        get_logger(__name__).warning(f"Source token variable {token_env} is not set")

    return SourceCRMAPI(
        config.get("source_api_url", DEFAULT_SOURCE_API_URL),
        token,
        timeout=config.get("api_timeout", 30),
        min_interval=config.get("source_min_interval", DEFAULT_SOURCE_MIN_INTERVAL),
        retry_policy=retry_policy,
    )


def build_engine(
    ctx: click.Context, profile_name: str | None = None, store: Any = None
) -> Any:
    """
    Build a ReconciliationEngine from config.yaml and sync_config.json.

    The source token and list service credentials are read from the
    environment variables named in config.yaml, never from the file.

    Raises:
        SyncConfigError: If sync_config.json is invalid or the profile is unknown
    """
    from crm_reconcile.api.list_api import ListServiceAPI
    from crm_reconcile.sync.engine import EngineSettings, ReconciliationEngine

    logger = get_logger(__name__)
    config = ctx.obj.get("config", {})
    config_dir = ctx.obj["config_dir"]

    sync_config = load_sync_config(config_dir)
    profile = sync_config.get_profile(profile_name)
    settings = EngineSettings.from_config(config)
    retry_policy = settings.retry_policy()
    timeout = config.get("api_timeout", 30)

    source_api = build_source_api(ctx, retry_policy)

    list_api = None
    if config.get("list_api_url"):
        list_api = ListServiceAPI(
            config["list_api_url"],
            os.environ.get(config.get("list_api_id_env", DEFAULT_LIST_API_ID_ENV)),
            os.environ.get(config.get("list_api_key_env", DEFAULT_LIST_API_KEY_ENV)),
            timeout=timeout,
            min_interval=config.get("list_min_interval", DEFAULT_LIST_MIN_INTERVAL),
            retry_policy=retry_policy,
        )
    else:
        logger.debug("list_api_url not configured; fan-out disabled")

    return ReconciliationEngine(
        store if store is not None else open_store(ctx),
        source_api,
        profile,
        list_api=list_api,
        channels=sync_config.channels_for(profile),
        settings=settings,
    )


@contextmanager
def cancel_on_signals() -> Generator[threading.Event, None, None]:
    """
    Set the yielded event on SIGINT/SIGTERM instead of raising.

    The engine checks the event between pages and write batches, so a
    signal stops the run at the next batch boundary.
    """
    cancel_event = threading.Event()
    logger = get_logger(__name__)

    def handler(signum: int, _frame: object) -> None:
        logger.warning(f"Received {signal.Signals(signum).name}, cancelling run")
        cancel_event.set()

    previous = {
        signum: signal.signal(signum, handler)
        for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield cancel_event
    finally:
        for signum, original in previous.items():
            signal.signal(signum, original)


def fail(message: str) -> None:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="crm-reconcile")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="CRM_RECONCILE_CONFIG_DIR",
    help="Configuration directory path (default: ~/.crm-reconcile).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="CRM_RECONCILE_CONFIG_FILE",
    help="Configuration file path (default: <config dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: str | None,
    config_file: str | None,
) -> None:
    """
    CRM contact reconciliation.

    Mirrors contacts from the source CRM into a local store, soft-deletes
    what the source no longer has (after quarantine), and pushes compliance
    flags to downstream marketing lists.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(config_file, resolved_config_dir)

    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config: dict[str, Any] = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        # Commands still work on defaults
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    ctx.obj["config"] = config
    ctx.obj["verbose"] = verbose

    log_dir = Path(config["log_dir"]).expanduser() if config.get("log_dir") else None
    setup_logging(verbose=verbose, log_dir=log_dir, enable_file_logging=True)

    log_retention = config.get("log_retention_count", 10)
    if log_retention > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=log_retention)


# =============================================================================
# Sync Commands
# =============================================================================


@cli.command("sync")
@click.option(
    "--dry-run", "-n", is_flag=True, help="Fetch and evaluate without writing."
)
@click.option("--profile", "-p", default=None, help="Run profile (default: first).")
@click.option(
    "--report-json",
    type=click.Path(dir_okay=False, writable=True),
    default=None,
    help="Also write the run report as JSON to this file.",
)
@click.pass_context
def sync_command(
    ctx: click.Context,
    dry_run: bool,
    profile: str | None,
    report_json: str | None,
) -> None:
    """
    Reconcile the source CRM with the local store.

    Fetches every record, upserts what changed, soft-deletes records the
    source no longer returns once their quarantine has passed, and fans
    compliance flags out to the downstream lists. Ctrl+C stops the run at
    the next batch boundary; a cancelled run never deletes.

    Examples:

        # Preview a run without writing anything
        crm-reconcile sync --dry-run

        # Run the 'leads' profile and keep the report
        crm-reconcile sync --profile leads --report-json report.json
    """
    logger = get_logger(__name__)
    verbose = ctx.obj["verbose"]

    try:
        engine = build_engine(ctx, profile)
    except (SyncConfigError, StoreError) as e:
        fail(str(e))
        return

    if not dry_run:
        setup_investigation_logger()

    click.echo(
        f"Running profile '{engine.profile.name}'"
        f"{' (dry run)' if dry_run else ''}..."
    )

    try:
        with cancel_on_signals() as cancel_event:
            report = engine.run(cancel_event=cancel_event, dry_run=dry_run)
    except StoreError as e:
        logger.exception(f"Run failed: {e}")
        fail(f"Run failed: {e}")
        return

    show_run_report(report, verbose=verbose)

    if report_json:
        Path(report_json).write_text(
            json.dumps(report.to_dict(), indent=2, sort_keys=True, default=str),
            encoding="utf-8",
        )
        click.echo(f"\nReport written to {report_json}")

    if report.status.value == "aborted":
        sys.exit(1)
    if report.status.value == "cancelled":
        sys.exit(EXIT_CANCELLED)


@cli.command("sync-record")
@click.argument("natural_key")
@click.option("--profile", "-p", default=None, help="Run profile (default: first).")
@click.pass_context
def sync_record_command(
    ctx: click.Context, natural_key: str, profile: str | None
) -> None:
    """
    Fetch one record from the source and apply it.

    The same revision rule applies as in a full run. A record the source
    no longer has is reported, not deleted.

    Example:

        crm-reconcile sync-record 1234
    """
    logger = get_logger(__name__)
    try:
        engine = build_engine(ctx, profile)
        result = engine.sync_record(natural_key)
    except (SyncConfigError, AuthenticationError, StoreError) as e:
        logger.error(f"Single-record sync failed: {e}")
        fail(str(e))
        return

    show_record_result(result)
    if result.outcome in ("failed", "invalid"):
        sys.exit(1)


@cli.command("redrive")
@click.option("--profile", "-p", default=None, help="Run profile (default: first).")
@click.pass_context
def redrive_command(ctx: click.Context, profile: str | None) -> None:
    """
    Resend fan-out pushes whose last attempt failed.

    Example:

        crm-reconcile redrive
    """
    from crm_reconcile.sync.engine import EngineError

    try:
        engine = build_engine(ctx, profile)
        with cancel_on_signals() as cancel_event:
            report = engine.redrive_fanout(cancel_event)
    except (SyncConfigError, EngineError, StoreError) as e:
        fail(str(e))
        return

    show_fanout_report(report)
    if report.total_failures:
        sys.exit(1)


@cli.command("audit-lists")
@click.option("--profile", "-p", default=None, help="Run profile (default: first).")
@click.pass_context
def audit_lists_command(ctx: click.Context, profile: str | None) -> None:
    """
    Compare downstream list sizes with local flagged counts.

    Example:

        crm-reconcile audit-lists
    """
    from crm_reconcile.sync.engine import EngineError

    try:
        engine = build_engine(ctx, profile)
        audits = engine.audit_lists()
    except (SyncConfigError, EngineError, StoreError) as e:
        fail(str(e))
        return

    show_list_audits(audits)


# =============================================================================
# Inspection Commands
# =============================================================================


@cli.command("status")
@click.option("--limit", "-l", default=5, show_default=True, help="Runs to show.")
@click.pass_context
def status_command(ctx: click.Context, limit: int) -> None:
    """
    Show store contents and recent runs.

    Example:

        crm-reconcile status
    """
    db_path = get_db_path(ctx)

    click.echo("=== CRM Reconcile Status ===\n")
    click.echo(f"Configuration directory: {ctx.obj['config_dir']}")
    click.echo(f"Contact store: {db_path}")

    if not db_path.exists():
        click.echo(
            click.style("\nNo contact store yet. Run 'crm-reconcile sync'.", fg="cyan")
        )
        return

    try:
        store = open_store(ctx)
        click.echo(f"Active contacts: {store.count_contacts()}")
        click.echo(f"Soft-deleted contacts: {store.count_deleted()}")
        click.echo(f"Open investigations: {len(store.get_investigations())}")
        failed = store.get_fanout_outcomes(status="failed")
        click.echo(f"Failed fan-out pushes: {len(failed)}")

        runs = store.get_runs(limit=limit)
    except StoreError as e:
        fail(str(e))
        return

    if not runs:
        click.echo("\nNo runs recorded yet.")
        return

    click.echo("\nRecent runs:")
    for run in runs:
        report = run.get("report") or {}
        flags = []
        if run.get("dry_run"):
            flags.append("dry run")
        if run.get("gapped"):
            flags.append("gaps")
        suffix = f" ({', '.join(flags)})" if flags else ""
        click.echo(
            f"  #{run['id']} [{run['profile']}] {style_status(run['status'])}"
            f"{suffix}  {run['started_at']}  "
            f"applied={report.get('upserts_applied', 0)} "
            f"deleted={report.get('soft_deletes_applied', 0)}"
        )


@cli.command("quarantine")
@click.option("--profile", "-p", default=None, help="Run profile (default: first).")
@click.option("--all", "show_all", is_flag=True, help="List every tracked key.")
@click.pass_context
def quarantine_command(ctx: click.Context, profile: str | None, show_all: bool) -> None:
    """
    Show keys held back from soft deletion.

    Example:

        crm-reconcile quarantine --all
    """
    from crm_reconcile.sync.engine import EngineSettings
    from crm_reconcile.sync.reconciler import QuarantineLedger

    try:
        sync_config = load_sync_config(ctx.obj["config_dir"])
        selected = sync_config.get_profile(profile)
        settings = EngineSettings.from_config(ctx.obj.get("config", {}))
        store = open_store(ctx)
        ledger = QuarantineLedger.load(
            store,
            selected.source,
            window=settings.quarantine_window,
            quarantine_runs=settings.quarantine_runs,
        )
        next_run = ledger.next_run_number
    except (SyncConfigError, StoreError, ValueError) as e:
        fail(str(e))
        return

    show_quarantine(ledger, next_run, show_all=show_all)


@cli.command("investigations")
@click.option(
    "--status",
    "-s",
    type=click.Choice(["open", "dismissed", "confirmed", "all"]),
    default="open",
    show_default=True,
    help="Filter by review status.",
)
@click.option(
    "--resolve",
    nargs=2,
    type=(int, click.Choice(["dismissed", "confirmed"])),
    default=None,
    help="Set the status of one investigation: ID STATUS.",
)
@click.pass_context
def investigations_command(
    ctx: click.Context, status: str, resolve: tuple[int, str] | None
) -> None:
    """
    List or resolve cross-source identity matches.

    Matches are never merged automatically; they wait here for review.

    Examples:

        crm-reconcile investigations

        crm-reconcile investigations --resolve 12 dismissed
    """
    try:
        store = open_store(ctx)
        if resolve:
            investigation_id, new_status = resolve
            if not store.resolve_investigation(investigation_id, new_status):
                fail(f"No investigation #{investigation_id}")
                return
            click.echo(f"Investigation #{investigation_id} marked {new_status}.")
            return
        rows = store.get_investigations(None if status == "all" else status)
    except StoreError as e:
        fail(str(e))
        return

    show_investigations(rows)


@cli.command("reset")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def reset_command(ctx: click.Context, yes: bool) -> None:
    """
    Clear the quarantine ledger and run history.

    Restarts quarantine bookkeeping from scratch. Contacts, fan-out
    outcomes and investigations are kept.

    Example:

        crm-reconcile reset
    """
    logger = get_logger(__name__)
    db_path = get_db_path(ctx)

    if not db_path.exists():
        click.echo("No contact store found. Nothing to reset.")
        return

    if not yes:
        click.confirm(
            "This will clear the quarantine ledger and run history.\nContinue?",
            abort=True,
        )

    try:
        store = open_store(ctx)
        entries = store.clear_ledger()
        runs = store.clear_run_history()
        store.vacuum()
    except StoreError as e:
        logger.exception(f"Reset failed: {e}")
        fail(str(e))
        return

    click.echo(
        click.style(
            f"Cleared {entries} ledger entries and {runs} runs.", fg="green"
        )
    )
    logger.info("Reconciliation state reset")


@cli.command("init-config")
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing configuration file if it exists.",
)
@click.pass_context
def init_config_command(ctx: click.Context, force: bool) -> None:
    """
    Generate a default configuration file.

    Creates a configuration file with all available options documented
    and commented out.

    Examples:

        crm-reconcile init-config

        crm-reconcile init-config --force
    """
    logger = get_logger(__name__)
    config_file = ctx.obj["config_file"]

    click.echo(f"Creating configuration file: {config_file}")

    success, error = save_config_file(config_file, overwrite=force)

    if success:
        click.echo(click.style("Configuration file created successfully!", fg="green"))
        click.echo("\nNext steps:")
        click.echo(f"1. Export the source token ({DEFAULT_SOURCE_TOKEN_ENV})")
        click.echo("2. Set list ids for the channels you use (CRM_RECONCILE_LIST_*)")
        click.echo("3. Run 'crm-reconcile sync --dry-run'")
        logger.info(f"Created configuration file: {config_file}")
    else:
        logger.error(f"Failed to create configuration file: {error}")
        fail(str(error))


@cli.command("health")
@click.option(
    "--check-source",
    is_flag=True,
    help="Also fetch one record id to confirm the source CRM accepts the token.",
)
@click.pass_context
def health_command(ctx: click.Context, check_source: bool) -> None:
    """
    Check application health status.

    Useful for container health checks.
    """
    if check_source and not build_source_api(ctx).test_connection():
        fail("Source CRM is unreachable or rejected the token")
        return
    click.echo("healthy")


# =============================================================================
# Daemon Commands
# =============================================================================


@cli.group("daemon")
@click.pass_context
def daemon_group(ctx: click.Context) -> None:
    """
    Run reconciliation on a schedule.

    Examples:

        crm-reconcile daemon start --interval 30m

        crm-reconcile daemon status

        crm-reconcile daemon stop
    """
    pass


@daemon_group.command("start")
@click.option(
    "--interval",
    "-i",
    default=None,
    help="Run interval (e.g. '30m', '1h'). Defaults to config value or '1h'.",
)
@click.option("--profile", "-p", default=None, help="Run profile (default: first).")
@click.option(
    "--no-initial-sync",
    is_flag=True,
    help="Wait one interval before the first run.",
)
@click.pass_context
def daemon_start_command(
    ctx: click.Context,
    interval: str | None,
    profile: str | None,
    no_initial_sync: bool,
) -> None:
    """
    Start the scheduler in the foreground.

    SIGTERM/SIGINT cancel an in-flight run at the next batch boundary and
    stop the scheduler.

    Example:

        crm-reconcile -v daemon start --interval 15m
    """
    from crm_reconcile.daemon import (
        DaemonAlreadyRunningError,
        DaemonError,
        DaemonScheduler,
        parse_interval,
    )
    from crm_reconcile.sync.engine import RunStatus

    logger = get_logger(__name__)
    config = ctx.obj.get("config", {})

    interval_text = interval or config.get("daemon_interval", DEFAULT_DAEMON_INTERVAL)
    try:
        interval_seconds = parse_interval(interval_text)
    except ValueError as e:
        fail(str(e))
        return

    try:
        engine = build_engine(ctx, profile)
    except (SyncConfigError, StoreError) as e:
        fail(str(e))
        return
    setup_investigation_logger()

    def run_callback(cancel_event: threading.Event) -> bool:
        report = engine.run(cancel_event=cancel_event)
        logger.info(report.summary())
        return report.status == RunStatus.COMPLETED and not report.gapped

    scheduler = DaemonScheduler(
        interval=interval_seconds,
        pid_file=get_pid_file(ctx),
        run_immediately=not no_initial_sync,
    )
    scheduler.set_run_callback(run_callback)

    click.echo(f"Starting daemon with {interval_text} interval (Ctrl+C to stop)")
    try:
        scheduler.run()
    except DaemonAlreadyRunningError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        click.echo("Use 'crm-reconcile daemon stop' to stop the running daemon.")
        sys.exit(1)
    except DaemonError as e:
        logger.error(f"Daemon error: {e}")
        fail(f"Daemon error: {e}")
        return

    click.echo(click.style("\nDaemon stopped gracefully.", fg="green"))


@daemon_group.command("stop")
@click.pass_context
def daemon_stop_command(ctx: click.Context) -> None:
    """
    Stop the running daemon.

    The daemon cancels any in-flight run at the next batch boundary.
    """
    from crm_reconcile.daemon import DaemonScheduler

    pid_file = get_pid_file(ctx)
    pid = DaemonScheduler.get_running_pid(pid_file)

    if pid is None:
        click.echo("No daemon is currently running.")
        return

    click.echo(f"Stopping daemon (PID: {pid})...")
    if DaemonScheduler.stop_running_daemon(pid_file):
        click.echo(click.style("Stop signal sent successfully.", fg="green"))
    else:
        fail("Failed to send stop signal to daemon.")


@daemon_group.command("status")
@click.pass_context
def daemon_status_command(ctx: click.Context) -> None:
    """Show whether the daemon is running."""
    from crm_reconcile.daemon import DaemonScheduler, PIDFileManager

    pid_file = get_pid_file(ctx)
    pid = DaemonScheduler.get_running_pid(pid_file)

    click.echo("=== Daemon Status ===\n")
    if pid is not None:
        click.echo(f"Status: {click.style('Running', fg='green')}")
        click.echo(f"Process ID: {pid}")
    else:
        click.echo(f"Status: {click.style('Stopped', fg='yellow')}")
        stale_pid = PIDFileManager(pid_file).read()
        if stale_pid is not None:
            click.echo(f"Stale PID file exists (PID: {stale_pid})")

    if ctx.obj.get("verbose"):
        click.echo(f"\nPID file: {pid_file}")


if __name__ == "__main__":
    cli()
