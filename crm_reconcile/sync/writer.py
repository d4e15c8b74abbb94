"""
Idempotent bulk writes into the local contact store.

BulkWriter upserts canonical contacts keyed by (source, natural_key):
- Each record runs in its own savepoint, so one bad record never rolls
  back the rest of its batch
- Revision and key invariants are checked before anything is written
- A record whose merged content hash is unchanged is not rewritten, so
  resending a batch is a no-op
- A locked database retries the whole batch with backoff; records still
  failing on lock contention are retried one by one afterwards
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from crm_reconcile.storage.db import ContactStore, StoreBusyError
from crm_reconcile.sync.contact import (
    CanonicalContact,
    ContactKey,
    ContactSource,
    utcnow,
)
from crm_reconcile.sync.revision import (
    InvariantViolation,
    StaleRevisionError,
    check_soft_delete_target,
    compare_revisions,
    validate_for_write,
)
from crm_reconcile.utils.backoff import BackoffPolicy

DEFAULT_WRITE_BATCH_SIZE = 200
MAX_WRITE_BATCH_SIZE = 1000
DEFAULT_WRITE_CONCURRENCY = 2

APPLIED = "applied"
UNCHANGED = "unchanged"

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """
    Outcome of writing one or more batches.

    Attributes:
        applied: Keys inserted or changed
        unchanged: Keys whose merged content was already stored
        stale: Keys rejected because the stored revision is newer
        failed: (contact, error message) for records that could not be written
        skipped: Records never attempted because the run was cancelled
        cancelled: Cancellation stopped the writer before all batches ran
    """

    applied: list[ContactKey] = field(default_factory=list)
    unchanged: list[ContactKey] = field(default_factory=list)
    stale: list[ContactKey] = field(default_factory=list)
    failed: list[tuple[CanonicalContact, str]] = field(default_factory=list)
    skipped: int = 0
    cancelled: bool = False

    @property
    def attempted(self) -> int:
        return (
            len(self.applied)
            + len(self.unchanged)
            + len(self.stale)
            + len(self.failed)
        )

    def merge(self, other: BatchResult) -> None:
        self.applied.extend(other.applied)
        self.unchanged.extend(other.unchanged)
        self.stale.extend(other.stale)
        self.failed.extend(other.failed)
        self.skipped += other.skipped
        self.cancelled = self.cancelled or other.cancelled


@dataclass
class SoftDeleteResult:
    """Outcome of apply_soft_deletes()."""

    applied: list[ContactKey] = field(default_factory=list)
    already_deleted: list[ContactKey] = field(default_factory=list)
    refused: list[tuple[ContactKey, str]] = field(default_factory=list)


class BulkWriter:
    """
    Writes canonical contacts into a ContactStore.

    Usage:
        writer = BulkWriter(store, batch_size=200, write_concurrency=2)
        result = writer.apply(contacts, cancel_event=event)
        print(len(result.applied), len(result.failed))

    Attributes:
        dry_run: Evaluate every record but write nothing
    """

    def __init__(
        self,
        store: ContactStore,
        batch_size: int = DEFAULT_WRITE_BATCH_SIZE,
        write_concurrency: int = DEFAULT_WRITE_CONCURRENCY,
        busy_policy: Optional[BackoffPolicy] = None,
        record_retry_policy: Optional[BackoffPolicy] = None,
        dry_run: bool = False,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the writer.

        Args:
            store: Target store
            batch_size: Records per transaction (clamped to 1..1000)
            write_concurrency: Batches written in parallel
            busy_policy: Backoff for retrying a whole batch on a locked store
            record_retry_policy: Backoff for retrying single records afterwards
            dry_run: Evaluate without writing
            clock: Source of last_synced_at timestamps
            sleep: Sleep function (injectable for tests)
        """
        self.store = store
        self.batch_size = max(1, min(batch_size, MAX_WRITE_BATCH_SIZE))
        self.write_concurrency = max(1, write_concurrency)
        self.busy_policy = busy_policy or BackoffPolicy(
            max_attempts=5, base_delay=0.5, max_delay=10.0
        )
        self.record_retry_policy = record_retry_policy or BackoffPolicy(
            max_attempts=3, base_delay=1.0, max_delay=10.0
        )
        self.dry_run = dry_run
        self._clock = clock
        self._sleep = sleep

    # =========================================================================
    # Single batch
    # =========================================================================

    def _write_one(
        self, conn: sqlite3.Connection, contact: CanonicalContact, now: datetime
    ) -> str:
        validate_for_write(contact)

        found = self.store.fetch_contact(conn, contact.key)
        stored, stored_hash = found if found else (None, None)
        revision = compare_revisions(
            contact.revision,
            stored.revision if stored else None,
            stored_exists=stored is not None,
        )
        if not revision.applies:
            raise StaleRevisionError(f"{contact.key}: {revision.reason}")

        merged = contact.merged_onto(stored)
        content_hash = merged.content_hash()
        if stored is not None and content_hash == stored_hash:
            return UNCHANGED

        if not self.dry_run:
            merged.sync_state.last_synced_at = now
            merged.sync_state.last_sync_error = None
            self.store.write_contact(conn, merged, content_hash)
        return APPLIED

    def _write_batch(self, batch: Sequence[CanonicalContact]) -> BatchResult:
        """
        Write one batch in a single transaction, one savepoint per record.

        Raises:
            StoreBusyError: If the store stayed locked
            StoreError: If the store is unusable
        """
        result = BatchResult()
        now = self._clock()

        with self.store.transaction() as conn:
            for index, contact in enumerate(batch):
                try:
                    with self.store.savepoint(conn, f"record_{index}"):
                        outcome = self._write_one(conn, contact, now)
                except StaleRevisionError as e:
                    logger.info(f"Rejected stale write: {e}")
                    result.stale.append(contact.key)
                    continue
                except (InvariantViolation, sqlite3.IntegrityError) as e:
                    logger.warning(f"Rejected contact {contact.key}: {e}")
                    result.failed.append((contact, str(e)))
                    continue

                if outcome == APPLIED:
                    result.applied.append(contact.key)
                else:
                    result.unchanged.append(contact.key)

        return result

    def apply_batch(self, batch: Sequence[CanonicalContact]) -> BatchResult:
        """
        Upsert one batch of contacts.

        Safe to resend: records already stored with the same content are
        reported as unchanged. Lock contention retries the whole batch
        with backoff, then the remaining records one by one.

        Args:
            batch: Contacts to upsert

        Returns:
            BatchResult with every record in exactly one bucket

        Raises:
            StoreError: If the store is unreachable
        """
        if not batch:
            return BatchResult()

        attempts = max(self.busy_policy.max_attempts, 1)
        last_error: Optional[StoreBusyError] = None
        for attempt in range(attempts):
            try:
                return self._write_batch(batch)
            except StoreBusyError as e:
                last_error = e
                if attempt < attempts - 1:
                    delay = self.busy_policy.delay(attempt)
                    logger.warning(
                        f"Store busy writing {len(batch)} records, retrying in "
                        f"{delay:.1f}s (attempt {attempt + 1}/{attempts})"
                    )
                    self._sleep(delay)

        logger.warning(
            f"Batch of {len(batch)} records failed after {attempts} attempts "
            f"({last_error}); retrying records individually"
        )
        return self._retry_individually(batch)

    def _retry_individually(self, batch: Sequence[CanonicalContact]) -> BatchResult:
        result = BatchResult()
        attempts = max(self.record_retry_policy.max_attempts, 1)

        for contact in batch:
            error: Optional[StoreBusyError] = None
            for attempt in range(attempts):
                try:
                    result.merge(self._write_batch([contact]))
                    error = None
                    break
                except StoreBusyError as e:
                    error = e
                    if attempt < attempts - 1:
                        self._sleep(self.record_retry_policy.delay(attempt))
            if error is not None:
                logger.error(f"Giving up on {contact.key}: {error}")
                result.failed.append((contact, str(error)))

        return result

    # =========================================================================
    # Many batches
    # =========================================================================

    def chunks(
        self, records: Sequence[CanonicalContact]
    ) -> list[Sequence[CanonicalContact]]:
        return [
            records[i : i + self.batch_size]
            for i in range(0, len(records), self.batch_size)
        ]

    def apply(
        self,
        records: Iterable[CanonicalContact],
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchResult:
        """
        Upsert any number of contacts in batches on a bounded pool.

        The cancel event is checked before each batch is started; batches
        already running always finish.

        Returns:
            Combined BatchResult; ``skipped`` counts records never attempted
        """
        records = list(records)
        batches = self.chunks(records)
        total = BatchResult()
        submitted = 0

        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        with ThreadPoolExecutor(max_workers=self.write_concurrency) as pool:
            pending: set[Future] = set()
            remaining = iter(batches)
            while True:
                while len(pending) < self.write_concurrency and not cancelled():
                    batch = next(remaining, None)
                    if batch is None:
                        break
                    submitted += len(batch)
                    pending.add(pool.submit(self.apply_batch, batch))
                if not pending:
                    break
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    total.merge(future.result())

        total.skipped = len(records) - submitted
        if total.skipped:
            total.cancelled = True
            logger.info(f"Write cancelled; {total.skipped} records not attempted")

        logger.info(
            f"Wrote {len(records) - total.skipped} records: "
            f"{len(total.applied)} applied, {len(total.unchanged)} unchanged, "
            f"{len(total.stale)} stale, {len(total.failed)} failed"
        )
        self._record_failures(total.failed)
        return total

    def _record_failures(self, failed: list[tuple[CanonicalContact, str]]) -> None:
        if self.dry_run:
            return
        for contact, error in failed:
            if contact.natural_key and isinstance(contact.source, ContactSource):
                self.store.set_sync_error(contact.key, error)

    # =========================================================================
    # Soft deletes
    # =========================================================================

    def apply_soft_deletes(
        self,
        keys: Iterable[ContactKey],
        run_source: ContactSource,
        deleted_at: Optional[datetime] = None,
    ) -> SoftDeleteResult:
        """
        Mark contacts as no longer returned by their source.

        Keys owned by another source are refused, never deleted.

        Args:
            keys: Keys to soft-delete
            run_source: Source namespace of the current run
            deleted_at: Deletion timestamp (defaults to now)
        """
        result = SoftDeleteResult()
        deleted_at = deleted_at or self._clock()

        with self.store.transaction() as conn:
            for index, key in enumerate(sorted(keys, key=str)):
                try:
                    check_soft_delete_target(key, run_source)
                except InvariantViolation as e:
                    logger.error(str(e))
                    result.refused.append((key, str(e)))
                    continue

                if self.dry_run:
                    result.applied.append(key)
                    continue

                with self.store.savepoint(conn, f"delete_{index}"):
                    changed = self.store.soft_delete(conn, key, deleted_at)
                if changed:
                    result.applied.append(key)
                else:
                    result.already_deleted.append(key)

        if result.applied:
            logger.info(f"Soft-deleted {len(result.applied)} contacts")
        return result
