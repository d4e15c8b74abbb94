"""
Drift resolution between the source's key set and the local store's.

reconcile() is pure set algebra over contact keys. The QuarantineLedger
remembers, per key, whether it was present in each of the last runs so
that a record which briefly disappears from the source (a flapping
listing, a filter glitch) is held back from soft delete for a few runs
instead of being deleted and recreated.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Optional

from crm_reconcile.sync.contact import ContactKey, ContactSource
from crm_reconcile.sync.matcher import IdentityMatch

# Runs of presence history kept per key
DEFAULT_QUARANTINE_WINDOW = 10

# Extra runs an absent key is held before it may be soft-deleted
DEFAULT_QUARANTINE_RUNS = 2

# Transitions within the window that make a key "flapping"
FLAPPING_TRANSITIONS = 2

PRESENT = "P"
ABSENT = "A"

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """
    Actions for one run.

    Attributes:
        to_upsert: Every key the source returned
        to_soft_delete: Run-source keys stored locally but no longer returned
        to_investigate: Cross-source identity matches for human review
        held: Keys that would be soft-deleted but are quarantined
        new_keys: Upserts that are not stored yet
    """

    to_upsert: set[ContactKey] = field(default_factory=set)
    to_soft_delete: set[ContactKey] = field(default_factory=set)
    to_investigate: list[IdentityMatch] = field(default_factory=list)
    held: set[ContactKey] = field(default_factory=set)
    new_keys: set[ContactKey] = field(default_factory=set)


def reconcile(
    source_keys: Iterable[ContactKey],
    store_keys: Iterable[ContactKey],
    run_source: ContactSource,
    quarantined: Iterable[ContactKey] = (),
    identity_matches: Iterable[IdentityMatch] = (),
) -> ReconcileResult:
    """
    Compute the upserts, soft deletes and investigations for one run.

    Only keys in the run's own source namespace are ever soft-deleted;
    a key the source returned is never soft-deleted. Identity matches are
    passed through when they pair different sources with different
    natural keys.

    Args:
        source_keys: Keys the source returned this run
        store_keys: Active keys in the local store
        run_source: Source namespace this run is authoritative for
        quarantined: Keys currently held by the quarantine ledger
        identity_matches: Candidate cross-source pairs

    Returns:
        ReconcileResult
    """
    source_set = set(source_keys)
    store_set = set(store_keys)
    quarantined_set = set(quarantined)

    absent = {
        key for key in store_set - source_set if key.source == run_source
    }
    held = absent & quarantined_set

    investigate = [
        match
        for match in identity_matches
        if match.key_a.source != match.key_b.source
        and match.key_a.natural_key != match.key_b.natural_key
    ]

    return ReconcileResult(
        to_upsert=source_set,
        to_soft_delete=absent - held,
        to_investigate=investigate,
        held=held,
        new_keys=source_set - store_set,
    )


@dataclass
class LedgerEntry:
    """Presence history of one key, oldest observation first."""

    history: str = ""
    quarantined_until_run: Optional[int] = None
    last_run_number: Optional[int] = None

    @property
    def transitions(self) -> int:
        return sum(
            1 for before, after in zip(self.history, self.history[1:])
            if before != after
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "history": self.history,
            "quarantined_until_run": self.quarantined_until_run,
            "last_run_number": self.last_run_number,
        }


class QuarantineLedger:
    """
    Per-key presence history for one source namespace.

    A key moving from present (or from stored-without-history) to absent
    is quarantined until ``run_number + quarantine_runs``; it can only be
    soft-deleted in a later run where it is still absent. Reappearing
    lifts the quarantine. Runs with page gaps do not record absences,
    since an absence there may only mean the page was skipped.

    Run numbers come from the ledger itself, so every profile reconciling
    the same source advances one sequence. The ledger is only mutated by
    the orchestrating thread.

    Usage:
        ledger = QuarantineLedger.load(store, ContactSource.EXTERNAL_CRM)
        run = ledger.next_run_number
        ledger.observe(run, source_keys, store_keys, gapped=False)
        held = ledger.quarantined(run)
        ledger.save(store)
    """

    def __init__(
        self,
        source: ContactSource,
        window: int = DEFAULT_QUARANTINE_WINDOW,
        quarantine_runs: int = DEFAULT_QUARANTINE_RUNS,
        entries: Optional[dict[str, LedgerEntry]] = None,
        last_run: int = 0,
    ):
        if window < 2:
            raise ValueError("quarantine window must cover at least 2 runs")
        if quarantine_runs < 0:
            raise ValueError("quarantine_runs must be >= 0")
        self.source = source
        self.window = window
        self.quarantine_runs = quarantine_runs
        self.entries: dict[str, LedgerEntry] = entries or {}
        self.last_run = last_run

    @property
    def next_run_number(self) -> int:
        return self.last_run + 1

    @classmethod
    def load(
        cls,
        store: Any,
        source: ContactSource,
        window: int = DEFAULT_QUARANTINE_WINDOW,
        quarantine_runs: int = DEFAULT_QUARANTINE_RUNS,
    ) -> QuarantineLedger:
        """Load the persisted ledger for ``source`` from a ContactStore."""
        entries = {
            natural_key: LedgerEntry(
                history=data.get("history") or "",
                quarantined_until_run=data.get("quarantined_until_run"),
                last_run_number=data.get("last_run_number"),
            )
            for natural_key, data in store.load_ledger(source).items()
        }
        last_run = max(
            [store.load_ledger_run(source)]
            + [e.last_run_number for e in entries.values() if e.last_run_number]
        )
        return cls(source, window, quarantine_runs, entries, last_run=last_run)

    def save(self, store: Any) -> None:
        store.save_ledger(
            self.source,
            {key: entry.to_dict() for key, entry in self.entries.items()},
            run_number=self.last_run,
        )

    def _record(self, entry: LedgerEntry, mark: str, run_number: int) -> None:
        entry.history = (entry.history + mark)[-self.window :]
        entry.last_run_number = run_number

    def observe(
        self,
        run_number: int,
        present_keys: Iterable[ContactKey],
        stored_keys: Iterable[ContactKey],
        gapped: bool = False,
    ) -> list[ContactKey]:
        """
        Record this run's presence for every present or stored key.

        Args:
            run_number: Monotonic run counter for the source
            present_keys: Keys the source returned
            stored_keys: Active keys in the store
            gapped: The run skipped pages, so absences are unreliable

        Returns:
            Keys newly quarantined by this observation
        """
        present = {k.natural_key for k in present_keys if k.source == self.source}
        stored = {k.natural_key for k in stored_keys if k.source == self.source}
        newly_quarantined: list[ContactKey] = []
        self.last_run = max(self.last_run, run_number)

        for natural_key in present:
            entry = self.entries.setdefault(natural_key, LedgerEntry())
            if entry.last_run_number == run_number:
                continue
            self._record(entry, PRESENT, run_number)
            entry.quarantined_until_run = None

        if gapped:
            if stored - present:
                logger.info(
                    f"Run {run_number} had gaps; not recording "
                    f"{len(stored - present)} absences"
                )
            return newly_quarantined

        for natural_key in stored - present:
            entry = self.entries.setdefault(natural_key, LedgerEntry())
            if entry.last_run_number == run_number:
                continue
            previous = entry.history[-1:] or None
            if previous in (None, PRESENT):
                entry.quarantined_until_run = run_number + self.quarantine_runs
                newly_quarantined.append(ContactKey(self.source, natural_key))
            self._record(entry, ABSENT, run_number)

        if newly_quarantined:
            logger.info(
                f"Quarantined {len(newly_quarantined)} absent keys until run "
                f"{run_number + self.quarantine_runs}"
            )
        return newly_quarantined

    def quarantined(self, run_number: int) -> set[ContactKey]:
        """Keys that must not be soft-deleted in ``run_number``."""
        return {
            ContactKey(self.source, natural_key)
            for natural_key, entry in self.entries.items()
            if entry.quarantined_until_run is not None
            and run_number <= entry.quarantined_until_run
        }

    def unconfirmed_absences(
        self, candidates: Iterable[ContactKey]
    ) -> set[ContactKey]:
        """
        Candidates whose last recorded observation was not an absence.

        Used on gapped runs, where absences are not recorded, to hold
        every key the ledger has not already seen missing.
        """
        held = set()
        for key in candidates:
            entry = self.entries.get(key.natural_key)
            if entry is None or entry.history[-1:] != ABSENT:
                held.add(key)
        return held

    def flapping(self) -> set[ContactKey]:
        """Keys with at least FLAPPING_TRANSITIONS transitions in the window."""
        return {
            ContactKey(self.source, natural_key)
            for natural_key, entry in self.entries.items()
            if entry.transitions >= FLAPPING_TRANSITIONS
        }

    def forget(self, keys: Iterable[ContactKey]) -> None:
        for key in keys:
            if key.source == self.source:
                self.entries.pop(key.natural_key, None)

    def __len__(self) -> int:
        return len(self.entries)
