"""CLI output formatting functions.

This module contains functions for displaying run reports, single-record
results, fan-out outcomes, list audits and the quarantine ledger on the
command line.
"""

from typing import TYPE_CHECKING, Any

import click

if TYPE_CHECKING:
    from crm_reconcile.sync.engine import RecordSyncResult, RunReport
    from crm_reconcile.sync.fanout import FanOutReport, ListAudit
    from crm_reconcile.sync.reconciler import QuarantineLedger

# Maximum per-record lines shown for any list before "... and N more"
DISPLAY_LIMIT = 10

_STATUS_COLORS = {
    "completed": "green",
    "cancelled": "yellow",
    "aborted": "red",
    "running": "cyan",
}


def _echo_limited(items: list[Any], render: Any) -> None:
    for item in items[:DISPLAY_LIMIT]:
        click.echo(render(item))
    if len(items) > DISPLAY_LIMIT:
        click.echo(f"  ... and {len(items) - DISPLAY_LIMIT} more")


def style_status(status: str) -> str:
    return click.style(status, fg=_STATUS_COLORS.get(status, "white"))


def show_run_report(report: "RunReport", verbose: bool = False) -> None:
    """
    Display a run report.

    The summary is always shown; with verbose, per-record gaps, failures
    and fan-out errors follow it.

    Args:
        report: The RunReport to display
        verbose: Also show per-record details
    """
    click.echo()
    click.echo(report.summary())
    click.echo(f"\nStatus: {style_status(report.status.value)}")

    if report.gapped:
        click.echo(
            click.style(
                f"Warning: {len(report.gaps)} page(s) could not be fetched; "
                "absences were not treated as deletions.",
                fg="yellow",
            )
        )

    if not verbose:
        return

    if report.gaps:
        click.echo("\n--- Gaps ---")
        _echo_limited(
            report.gaps,
            lambda gap: f"  cursor={gap.get('cursor')} "
            f"~{gap.get('estimated_records')} records: {gap.get('reason')}",
        )

    if report.normalization_errors:
        click.echo("\n--- Normalization Errors ---")
        _echo_limited(
            report.normalization_errors,
            lambda err: f"  {err.get('key') or '<no key>'}: "
            f"{'; '.join(err.get('errors', []))}",
        )

    if report.upsert_failures:
        click.echo("\n--- Write Failures ---")
        _echo_limited(
            report.upsert_failures,
            lambda failure: f"  {failure.get('key')}: {failure.get('error')}",
        )

    if report.quarantined_keys:
        click.echo("\n--- Newly Quarantined ---")
        _echo_limited(report.quarantined_keys, lambda key: f"  ? {key}")

    if report.flapping_keys:
        click.echo("\n--- Flapping ---")
        _echo_limited(report.flapping_keys, lambda key: f"  ~ {key}")

    if report.fanout_failures:
        click.echo("\n--- Fan-Out Failures ---")
        _echo_limited(
            report.fanout_failures,
            lambda failure: f"  {failure.get('key')} -> {failure.get('channel')}: "
            f"{failure.get('error')}",
        )


def show_record_result(result: "RecordSyncResult") -> None:
    """Display the outcome of a single-record sync."""
    color = {
        "applied": "green",
        "unchanged": "green",
        "stale": "yellow",
        "not_found": "yellow",
    }.get(result.outcome, "red")
    click.echo(f"{result.key}: {click.style(result.outcome, fg=color)}")
    for error in result.errors:
        click.echo(f"  error: {error}")
    for pushed in result.fanout:
        suffix = " (via create)" if pushed.get("used_fallback") else ""
        line = f"  {pushed['channel']}: {pushed['status']}{suffix}"
        if pushed.get("error"):
            line += f" - {pushed['error']}"
        click.echo(line)


def show_fanout_report(report: "FanOutReport") -> None:
    """Display per-channel counters of a fan-out pass."""
    if not report.channels:
        click.echo("Nothing to push.")
        return

    click.echo(f"\n{'Channel':<14} {'OK':>6} {'Failed':>7} {'Create':>7} {'Skip':>6}")
    for name, stats in sorted(report.channels.items()):
        click.echo(
            f"{name:<14} {stats.successes:>6} {stats.failures:>7} "
            f"{stats.fallbacks:>7} {stats.skipped:>6}"
        )

    if report.failures:
        click.echo("\n--- Failures ---")
        _echo_limited(
            report.failures,
            lambda r: f"  {r.key} -> {r.channel}: {r.error}",
        )
    if report.cancelled:
        click.echo(click.style("\nCancelled before all pushes were sent.", fg="yellow"))


def show_list_audits(audits: list["ListAudit"]) -> None:
    """Display downstream list sizes against local flagged counts."""
    header = f"{'Channel':<14} {'List':<20} {'Local':>7} {'Remote':>7}"
    click.echo(f"\n{header} {'Drift':>7}")
    for audit in audits:
        if audit.error:
            remote = drift = click.style("error", fg="red")
        else:
            remote = str(audit.remote_count)
            drift = f"{audit.drift:+d}" if audit.drift else "0"
        list_id = audit.list_id or "-"
        click.echo(
            f"{audit.channel:<14} {list_id:<20} {audit.local_count:>7} "
            f"{remote:>7} {drift:>7}"
        )


def show_quarantine(
    ledger: "QuarantineLedger", run_number: int, show_all: bool = False
) -> None:
    """
    Display quarantined and flapping keys of a ledger.

    Args:
        ledger: Loaded QuarantineLedger
        run_number: The next run's number (quarantine is relative to it)
        show_all: Also list every tracked key with its history
    """
    held = sorted(ledger.quarantined(run_number), key=str)
    flapping = ledger.flapping()

    click.echo(f"Tracked keys: {len(ledger)}")
    click.echo(f"Quarantined for run {run_number}: {len(held)}")
    click.echo(f"Flapping: {len(flapping)}")

    if held:
        click.echo("\n--- Quarantined ---")
        for key in held:
            entry = ledger.entries[key.natural_key]
            marker = " (flapping)" if key in flapping else ""
            click.echo(
                f"  {key}  until run {entry.quarantined_until_run}  "
                f"history={entry.history}{marker}"
            )

    if show_all:
        click.echo("\n--- All Tracked Keys ---")
        for natural_key, entry in sorted(ledger.entries.items()):
            click.echo(f"  {natural_key}: {entry.history}")


def show_investigations(rows: list[dict[str, Any]]) -> None:
    """Display cross-source identity matches awaiting review."""
    if not rows:
        click.echo("No identity matches awaiting review.")
        return

    click.echo(f"{len(rows)} identity match(es):\n")
    for row in rows:
        click.echo(
            f"  #{row['id']} {row['key_a']} <-> {row['key_b']}  "
            f"rule={row['rule']} score={row['score']:.2f} [{row['status']}]"
        )
