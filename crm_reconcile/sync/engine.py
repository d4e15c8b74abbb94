"""
Reconciliation engine for CRM contact synchronization.

Orchestrates one run for one profile:

    Paginator -> Normalizer -> key accumulator (duplicates collapse)
        -> Bulk Writer -> reconcile() + quarantine -> soft deletes
        -> identity investigations -> Fan-Out Driver

and produces a RunReport that accounts for every record the source
reported. Also exposes single-record sync (webhooks, gap recovery),
fan-out redrive and list drift audits.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from crm_reconcile.api.base import APIError, AuthenticationError, NotFoundError
from crm_reconcile.api.list_api import ListServiceAPI
from crm_reconcile.api.source_api import SourceCRMAPI
from crm_reconcile.config.sync_config import ChannelConfig, ProfileConfig
from crm_reconcile.storage.db import ContactStore, StoreError
from crm_reconcile.sync.contact import (
    CanonicalContact,
    ContactKey,
    ContactSource,
    format_timestamp,
    utcnow,
)
from crm_reconcile.sync.fanout import FanOutDriver, FanOutReport, ListAudit
from crm_reconcile.sync.matcher import IdentityMatcher, MatchConfig
from crm_reconcile.sync.normalizer import normalize, requested_properties
from crm_reconcile.sync.paginator import (
    CursorPaginator,
    PaginationAbortedError,
    PaginationStats,
)
from crm_reconcile.sync.reconciler import QuarantineLedger, reconcile
from crm_reconcile.sync.revision import compare_revisions
from crm_reconcile.sync.writer import BulkWriter
from crm_reconcile.utils.backoff import BackoffPolicy

# Per-record details kept in a report; counts are always complete
MAX_REPORTED_ERRORS = 100

logger = logging.getLogger(__name__)


class EngineError(Exception):
    """Raised when the engine is asked for something it is not set up for."""

    pass


class RunStatus(str, Enum):
    """Final state of a run."""

    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ABORTED = "aborted"


@dataclass
class EngineSettings:
    """
    Tunables of the engine, read from config.yaml.

    Defaults match the documented defaults of the generated config file.
    """

    page_size: int = 100
    min_page_size: int = 1
    recover_by_id: bool = True
    max_retries: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0
    page_fetch_concurrency: int = 4
    write_concurrency: int = 2
    fanout_concurrency: int = 4
    write_batch_size: int = 200
    quarantine_window: int = 10
    quarantine_runs: int = 2
    soft_delete_on_gapped_runs: bool = False
    name_similarity_threshold: float = 0.85

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> EngineSettings:
        """Pick the engine settings out of a validated config dictionary."""
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in config.items() if k in known})

    def retry_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_attempts=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )


@dataclass
class RunReport:
    """
    Everything a run did, and why the applied total differs from the
    source total.
    """

    profile: str
    source: str
    dry_run: bool = False
    run_id: Optional[int] = None
    status: RunStatus = RunStatus.RUNNING
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    # Pagination
    source_total: Optional[int] = None
    records_fetched: int = 0
    pages_fetched: int = 0
    pages_recovered: int = 0
    pages_recovered_by_id: int = 0
    retries: int = 0
    gaps: list[dict[str, Any]] = field(default_factory=list)
    gap_records: int = 0
    checkpoint: Optional[str] = None

    # Normalization and accumulation
    duplicates_collapsed: int = 0
    normalization_errors: list[dict[str, Any]] = field(default_factory=list)
    records_excluded: int = 0
    normalization_warnings: int = 0
    filtered_out: int = 0

    # Writes
    upserts_applied: int = 0
    upserts_unchanged: int = 0
    upserts_stale: int = 0
    upserts_failed: int = 0
    upsert_failures: list[dict[str, Any]] = field(default_factory=list)
    writes_skipped: int = 0

    # Reconciliation
    new_contacts: int = 0
    soft_deletes_applied: int = 0
    soft_deletes_held: int = 0
    soft_deletes_refused: int = 0
    soft_delete_note: Optional[str] = None
    quarantined_keys: list[str] = field(default_factory=list)
    flapping_keys: list[str] = field(default_factory=list)
    investigations_found: int = 0
    investigations_new: int = 0

    # Fan-out
    fanout: dict[str, dict[str, int]] = field(default_factory=dict)
    fanout_failures: list[dict[str, Any]] = field(default_factory=list)
    fanout_note: Optional[str] = None

    @property
    def gapped(self) -> bool:
        return bool(self.gaps)

    @property
    def applied_total(self) -> int:
        """Records the store now agrees with (written or already current)."""
        return self.upserts_applied + self.upserts_unchanged

    def discrepancies(self) -> dict[str, int]:
        """
        Attribute every record between the source total and the applied
        total to a cause.

        ``unexplained`` is what no cause accounts for (nonzero usually
        means the source total moved during the run); it is omitted when
        the source did not report a total. ``quarantine_held`` is a
        store-side difference: records kept locally although the source
        no longer returns them.
        """
        causes = {
            "gap": self.gap_records,
            "duplicate": self.duplicates_collapsed,
            "normalization_error": self.records_excluded,
            "filtered": self.filtered_out,
            "stale_revision": self.upserts_stale,
            "write_failure": self.upserts_failed,
            "not_written": self.writes_skipped,
        }
        if self.source_total is not None:
            causes["unexplained"] = (
                self.source_total - self.applied_total - sum(causes.values())
            )
        causes["quarantine_held"] = self.soft_deletes_held
        return causes

    def summary(self) -> str:
        """Human-readable summary of the run."""
        mode = " (dry run)" if self.dry_run else ""
        total = self.source_total if self.source_total is not None else "unknown"
        lines = [
            f"Run {self.run_id or '-'} [{self.profile}] {self.status.value}{mode}",
            f"  Source total: {total}",
            f"  Fetched: {self.records_fetched} records in {self.pages_fetched} "
            f"pages ({self.pages_recovered} recovered, {len(self.gaps)} gaps)",
            f"  Upserts: {self.upserts_applied} applied, "
            f"{self.upserts_unchanged} unchanged, {self.upserts_stale} stale, "
            f"{self.upserts_failed} failed",
            f"  Soft deletes: {self.soft_deletes_applied} applied, "
            f"{self.soft_deletes_held} held",
        ]
        if self.error:
            lines.append(f"  Error: {self.error}")
        if self.soft_delete_note:
            lines.append(f"  Note: {self.soft_delete_note}")
        if self.flapping_keys:
            lines.append(f"  Flapping records: {len(self.flapping_keys)}")
        if self.investigations_found:
            lines.append(
                f"  Identity matches: {self.investigations_found} "
                f"({self.investigations_new} new)"
            )
        if self.fanout:
            lines.append("  Fan-out:")
            for channel, stats in sorted(self.fanout.items()):
                lines.append(
                    f"    {channel}: {stats.get('successes', 0)} ok, "
                    f"{stats.get('failures', 0)} failed, "
                    f"{stats.get('fallbacks', 0)} via create"
                )
        elif self.fanout_note:
            lines.append(f"  Fan-out: {self.fanout_note}")

        causes = {k: v for k, v in self.discrepancies().items() if v}
        if causes:
            lines.append("  Discrepancies:")
            for cause, count in causes.items():
                lines.append(f"    {cause}: {count}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe dictionary, as persisted in run history."""
        data: dict[str, Any] = {}
        for name in self.__dataclass_fields__:
            value = getattr(self, name)
            if isinstance(value, datetime):
                value = format_timestamp(value)
            elif isinstance(value, Enum):
                value = value.value
            data[name] = value
        data["gapped"] = self.gapped
        data["discrepancies"] = self.discrepancies()
        return data


@dataclass
class RecordSyncResult:
    """Outcome of sync_record()."""

    key: ContactKey
    outcome: str  # applied, unchanged, stale, failed, invalid, not_found
    errors: list[str] = field(default_factory=list)
    fanout: list[dict[str, Any]] = field(default_factory=list)


class KeyAccumulator:
    """
    Collects canonical contacts by key while pages stream in.

    Duplicate keys collapse to the contact with the highest revision
    (equal revisions: the one seen last).
    """

    def __init__(self) -> None:
        self._contacts: dict[ContactKey, CanonicalContact] = {}
        self._lock = threading.Lock()
        self.duplicates = 0

    def add(self, contact: CanonicalContact) -> bool:
        """Add a contact; returns True if it collapsed onto a duplicate."""
        with self._lock:
            existing = self._contacts.get(contact.key)
            if existing is None:
                self._contacts[contact.key] = contact
                return False
            self.duplicates += 1
            if compare_revisions(contact.revision, existing.revision).applies:
                self._contacts[contact.key] = contact
            return True

    def keys(self) -> set[ContactKey]:
        with self._lock:
            return set(self._contacts)

    def contacts(self) -> list[CanonicalContact]:
        with self._lock:
            return list(self._contacts.values())

    def __len__(self) -> int:
        return len(self._contacts)


class ReconciliationEngine:
    """
    Runs reconciliation for one profile.

    Usage:
        engine = ReconciliationEngine(
            store, source_api, profile,
            list_api=list_api, channels=sync_config.channels_for(profile),
            settings=EngineSettings.from_config(config),
        )
        report = engine.run(cancel_event=event)
        print(report.summary())
    """

    def __init__(
        self,
        store: ContactStore,
        source_api: SourceCRMAPI,
        profile: Optional[ProfileConfig] = None,
        list_api: Optional[ListServiceAPI] = None,
        channels: Optional[list[ChannelConfig]] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.source_api = source_api
        self.profile = profile or ProfileConfig()
        self.list_api = list_api
        self.channels = list(channels or [])
        self.settings = settings or EngineSettings()
        self.matcher = IdentityMatcher(
            MatchConfig(
                name_similarity_threshold=self.settings.name_similarity_threshold
            )
        )
        self._clock = clock
        self._sleep = sleep

    @property
    def source(self) -> ContactSource:
        return self.profile.source

    def _properties(self) -> list[str]:
        return requested_properties(self.source, self.profile.properties)

    def _writer(self, dry_run: bool = False) -> BulkWriter:
        return BulkWriter(
            self.store,
            batch_size=self.settings.write_batch_size,
            write_concurrency=self.settings.write_concurrency,
            dry_run=dry_run,
            clock=self._clock,
            sleep=self._sleep,
        )

    def _driver(self, run_id: Optional[int] = None) -> FanOutDriver:
        if self.list_api is None:
            raise EngineError("No list service configured (list_api_url is unset)")
        return FanOutDriver(
            self.list_api,
            self.store,
            self.channels,
            concurrency=self.settings.fanout_concurrency,
            run_id=run_id,
        )

    # =========================================================================
    # Full run
    # =========================================================================

    def run(
        self,
        cancel_event: Optional[threading.Event] = None,
        dry_run: bool = False,
    ) -> RunReport:
        """
        Reconcile the profile's source with the local store.

        Per-record and per-page problems are contained in the report.
        Authentication failures and permanent pagination failures end the
        run as aborted. Cancelled and aborted runs never soft-delete.

        Args:
            cancel_event: Checked between pages and between write batches
            dry_run: Fetch and evaluate everything, write nothing

        Returns:
            RunReport (also persisted in the store's run history)

        Raises:
            StoreError: If the store cannot even record the run
        """
        report = RunReport(
            profile=self.profile.name,
            source=self.source.value,
            dry_run=dry_run,
            started_at=self._clock(),
        )
        report.run_id = self.store.start_run(
            self.profile.name,
            self.source,
            dry_run=dry_run,
            started_at=report.started_at,
        )
        logger.info(
            f"Starting run {report.run_id} for profile '{self.profile.name}'"
            f"{' (dry run)' if dry_run else ''}"
        )

        try:
            self._execute(report, cancel_event, dry_run)
            if report.status == RunStatus.RUNNING:
                report.status = RunStatus.COMPLETED
        except PaginationAbortedError as e:
            report.status = RunStatus.ABORTED
            report.error = str(e)
        except AuthenticationError as e:
            logger.error(f"Authentication failed, aborting run: {e}")
            report.status = RunStatus.ABORTED
            report.error = str(e)
        except StoreError as e:
            logger.error(f"Contact store failed, aborting run: {e}")
            report.status = RunStatus.ABORTED
            report.error = str(e)

        report.finished_at = self._clock()
        try:
            self.store.finish_run(
                report.run_id,
                report.status.value,
                report.to_dict(),
                gapped=report.gapped,
                finished_at=report.finished_at,
            )
        except StoreError as e:
            logger.error(f"Could not record the end of run {report.run_id}: {e}")

        logger.info(f"Run {report.run_id} {report.status.value}")
        return report

    def _execute(
        self,
        report: RunReport,
        cancel_event: Optional[threading.Event],
        dry_run: bool,
    ) -> None:
        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        report.source_total = self.source_api.get_total_count()
        store_keys = self.store.list_keys(self.source)

        accumulator = KeyAccumulator()
        paginator = CursorPaginator(
            self.source_api,
            page_size=self.settings.page_size,
            min_page_size=self.settings.min_page_size,
            properties=self._properties(),
            retry_policy=self.settings.retry_policy(),
            recover_by_id=self.settings.recover_by_id,
            page_fetch_concurrency=self.settings.page_fetch_concurrency,
            cancel_event=cancel_event,
            sleep=self._sleep,
        )

        try:
            for page in paginator.pages():
                fetched_at = self._clock()
                for raw in page.records:
                    self._ingest(raw, accumulator, report, fetched_at)
        finally:
            self._fill_pagination(report, paginator.stats, paginator.checkpoint)
            report.duplicates_collapsed = accumulator.duplicates

        if paginator.stats.cancelled:
            report.status = RunStatus.CANCELLED

        # Writes
        writer = self._writer(dry_run)
        written = writer.apply(accumulator.contacts(), cancel_event)
        report.upserts_applied = len(written.applied)
        report.upserts_unchanged = len(written.unchanged)
        report.upserts_stale = len(written.stale)
        report.upserts_failed = len(written.failed)
        report.writes_skipped = written.skipped
        report.upsert_failures = [
            {"key": str(contact.key), "error": error}
            for contact, error in written.failed[:MAX_REPORTED_ERRORS]
        ]

        if written.cancelled or cancelled():
            report.status = RunStatus.CANCELLED
        if report.status == RunStatus.CANCELLED:
            report.soft_delete_note = "run cancelled; no soft deletes"
            report.fanout_note = "run cancelled"
            logger.info("Run cancelled; skipping reconciliation and fan-out")
            return

        self._reconcile(report, accumulator.keys(), store_keys, writer, dry_run)

        if cancelled():
            report.status = RunStatus.CANCELLED
            report.fanout_note = "run cancelled"
            return
        self._fan_out(report, accumulator.keys(), cancel_event, dry_run)

    def _ingest(
        self,
        raw: Any,
        accumulator: KeyAccumulator,
        report: RunReport,
        fetched_at: datetime,
    ) -> None:
        result = normalize(
            raw, self.source, fetched_at=fetched_at, run_id=report.run_id
        )
        report.normalization_warnings += len(result.warnings)

        if not result.ok:
            report.records_excluded += 1
            if len(report.normalization_errors) < MAX_REPORTED_ERRORS:
                report.normalization_errors.append(
                    {
                        "key": result.contact.natural_key or None,
                        "errors": [str(e) for e in result.blocking_errors],
                    }
                )
            logger.warning(
                f"Excluding record {result.contact.natural_key or '<no key>'}: "
                f"{'; '.join(str(e) for e in result.blocking_errors)}"
            )
            return

        if self.profile.has_filter() and not self.profile.matches(result.contact):
            report.filtered_out += 1
            return

        accumulator.add(result.contact)

    @staticmethod
    def _fill_pagination(
        report: RunReport, stats: PaginationStats, checkpoint: Optional[str]
    ) -> None:
        report.records_fetched = stats.records_fetched
        report.pages_fetched = stats.pages_fetched
        report.pages_recovered = stats.pages_recovered
        report.pages_recovered_by_id = stats.pages_recovered_by_id
        report.retries = stats.retries
        report.gaps = [gap.to_dict() for gap in stats.gaps]
        report.gap_records = stats.gap_records
        report.checkpoint = checkpoint

    def _reconcile(
        self,
        report: RunReport,
        source_keys: set[ContactKey],
        store_keys: set[ContactKey],
        writer: BulkWriter,
        dry_run: bool,
    ) -> None:
        """Soft deletes, quarantine bookkeeping and identity investigations."""
        quarantined: set[ContactKey] = set()
        ledger: Optional[QuarantineLedger] = None

        if not self.profile.has_filter():
            ledger = QuarantineLedger.load(
                self.store,
                self.source,
                window=self.settings.quarantine_window,
                quarantine_runs=self.settings.quarantine_runs,
            )
            run_number = ledger.next_run_number
            ledger.observe(run_number, source_keys, store_keys, gapped=report.gapped)
            quarantined = ledger.quarantined(run_number)
            if report.gapped:
                quarantined |= ledger.unconfirmed_absences(store_keys - source_keys)
            report.flapping_keys = sorted(str(k) for k in ledger.flapping())

        matches = self.matcher.find_cross_source_matches(
            self.store.identity_index(), only_keys=source_keys
        )
        result = reconcile(source_keys, store_keys, self.source, quarantined, matches)

        report.new_contacts = len(result.new_keys)
        report.quarantined_keys = sorted(str(k) for k in result.held)
        report.soft_deletes_held = len(result.held)
        report.investigations_found = len(result.to_investigate)

        to_delete = result.to_soft_delete
        if not self.profile.deletes_allowed:
            report.soft_delete_note = (
                "profile is filtered; soft deletes disabled"
                if self.profile.has_filter()
                else "soft deletes disabled for this profile"
            )
            report.soft_deletes_held += len(to_delete)
            to_delete = set()
        elif report.gapped and not self.settings.soft_delete_on_gapped_runs:
            report.soft_delete_note = "run had page gaps; soft deletes skipped"
            report.soft_deletes_held += len(to_delete)
            to_delete = set()

        if to_delete:
            deleted = writer.apply_soft_deletes(to_delete, self.source)
            report.soft_deletes_applied = len(deleted.applied)
            report.soft_deletes_refused = len(deleted.refused)
            if ledger is not None:
                ledger.forget(deleted.applied)

        if dry_run:
            return

        report.investigations_new = self.store.record_investigations(
            result.to_investigate, run_id=report.run_id
        )
        if ledger is not None:
            ledger.save(self.store)

    def _fan_out(
        self,
        report: RunReport,
        source_keys: set[ContactKey],
        cancel_event: Optional[threading.Event],
        dry_run: bool,
    ) -> None:
        if self.list_api is None or not self.channels:
            report.fanout_note = "no channels configured"
            return
        if dry_run:
            report.fanout_note = "skipped in dry run"
            return

        contacts = [
            c for c in self.store.iter_contacts(self.source) if c.key in source_keys
        ]
        fanned = self._driver(report.run_id).run(contacts, cancel_event)
        self._fill_fanout(report, fanned)
        if fanned.cancelled:
            report.status = RunStatus.CANCELLED

    @staticmethod
    def _fill_fanout(report: RunReport, fanned: FanOutReport) -> None:
        report.fanout = {
            name: stats.to_dict() for name, stats in fanned.channels.items()
        }
        report.fanout_failures = [
            {"key": str(r.key), "channel": r.channel, "error": r.error}
            for r in fanned.failures[:MAX_REPORTED_ERRORS]
        ]

    # =========================================================================
    # Single record, redrive, audit
    # =========================================================================

    def sync_record(self, natural_key: str) -> RecordSyncResult:
        """
        Fetch one record from the source and apply it.

        Used by webhook receivers and to recover records lost in a gap.
        The revision rule applies exactly as in a full run. A record the
        source no longer has is reported, not deleted; deletions only
        happen through reconciliation and its quarantine.

        Raises:
            AuthenticationError: If the source rejects the credentials
            StoreError: If the store is unreachable
        """
        key = ContactKey(self.source, str(natural_key))
        try:
            raw = self.source_api.get_record(str(natural_key), self._properties())
        except NotFoundError:
            logger.info(f"Source has no record {key}")
            return RecordSyncResult(key, "not_found")
        except AuthenticationError:
            raise
        except APIError as e:
            logger.error(f"Could not fetch {key}: {e}")
            return RecordSyncResult(key, "failed", errors=[str(e)])

        result = normalize(raw, self.source, fetched_at=self._clock())
        if not result.ok:
            return RecordSyncResult(
                key, "invalid", errors=[str(e) for e in result.blocking_errors]
            )

        written = self._writer().apply([result.contact])
        if written.applied:
            outcome = "applied"
        elif written.unchanged:
            outcome = "unchanged"
        elif written.stale:
            outcome = "stale"
        else:
            outcome = "failed"
        sync_result = RecordSyncResult(
            result.contact.key,
            outcome,
            errors=[error for _, error in written.failed],
        )

        if outcome in ("applied", "unchanged") and self.list_api and self.channels:
            stored = self.store.get_contact(result.contact.key)
            if stored is not None:
                for pushed in self._driver().sync_contact(stored):
                    sync_result.fanout.append(
                        {
                            "channel": pushed.channel,
                            "status": pushed.status.value,
                            "used_fallback": pushed.used_fallback,
                            "error": pushed.error,
                        }
                    )

        logger.info(f"Single-record sync of {sync_result.key}: {outcome}")
        return sync_result

    def redrive_fanout(
        self, cancel_event: Optional[threading.Event] = None
    ) -> FanOutReport:
        """Resend fan-out pairs whose last outcome was a failure."""
        return self._driver().redrive_failures(cancel_event)

    def audit_lists(self) -> list[ListAudit]:
        """Compare downstream list sizes with local flagged counts."""
        return self._driver().audit_lists()
