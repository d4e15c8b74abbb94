"""
Revision ordering and write invariants.

Source timestamps, not arrival order, decide whether an incoming contact
may overwrite the stored one. Records that would break a store invariant
are rejected here, before any write is attempted.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from crm_reconcile.sync.contact import CanonicalContact, ContactKey, ContactSource


class InvariantViolation(Exception):
    """Raised when a write would break a store invariant."""

    pass


class StaleRevisionError(InvariantViolation):
    """Raised when a write would replace newer stored data with older data."""

    pass


class InvalidContactError(InvariantViolation):
    """Raised when a contact cannot be stored at all (e.g. empty key)."""

    pass


class CrossSourceDeleteError(InvariantViolation):
    """Raised when a soft delete targets a key owned by another source."""

    pass


class RevisionDecision(Enum):
    """Outcome of comparing an incoming revision against the stored one."""

    NEW = "new"  # nothing stored yet
    NEWER = "newer"
    EQUAL = "equal"
    STALE = "stale"
    UNDATED = "undated"  # incoming has no revision, stored does

    @property
    def applies(self) -> bool:
        return self in (
            RevisionDecision.NEW,
            RevisionDecision.NEWER,
            RevisionDecision.EQUAL,
        )


@dataclass
class RevisionResult:
    """
    Result of a revision comparison.

    Attributes:
        decision: How the incoming revision relates to the stored one
        reason: Human-readable explanation for logs and failure reports
    """

    decision: RevisionDecision
    reason: str

    @property
    def applies(self) -> bool:
        return self.decision.applies


def _as_utc(value: datetime) -> datetime:
    # Mixed naive/aware values are compared as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compare_revisions(
    incoming: Optional[datetime],
    stored: Optional[datetime],
    stored_exists: bool = True,
) -> RevisionResult:
    """
    Decide whether an incoming revision may overwrite the stored one.

    Last-writer-wins by source timestamp. Equal revisions apply so that
    resending a batch is idempotent. An undated incoming record never
    overwrites a dated stored record; when both are undated the incoming
    one applies.

    Args:
        incoming: Revision of the incoming contact
        stored: Revision of the stored contact
        stored_exists: False if nothing is stored under the key

    Returns:
        RevisionResult describing the decision
    """
    if not stored_exists:
        return RevisionResult(RevisionDecision.NEW, "No stored record")

    if incoming is None:
        if stored is None:
            return RevisionResult(RevisionDecision.EQUAL, "Both revisions undated")
        return RevisionResult(
            RevisionDecision.UNDATED,
            f"Undated update cannot replace stored revision {stored.isoformat()}",
        )

    if stored is None:
        return RevisionResult(RevisionDecision.NEWER, "Stored record is undated")

    incoming_utc = _as_utc(incoming)
    stored_utc = _as_utc(stored)
    if incoming_utc > stored_utc:
        return RevisionResult(
            RevisionDecision.NEWER,
            f"Incoming revision is newer ({incoming_utc} > {stored_utc})",
        )
    if incoming_utc == stored_utc:
        return RevisionResult(RevisionDecision.EQUAL, f"Equal revisions ({stored_utc})")
    return RevisionResult(
        RevisionDecision.STALE,
        f"Incoming revision {incoming_utc} is older than stored {stored_utc}",
    )


def validate_for_write(contact: CanonicalContact) -> None:
    """
    Check the invariants a contact must satisfy before it is written.

    Raises:
        InvalidContactError: If the natural key is empty or the source is
            not a ContactSource
    """
    if not isinstance(contact.source, ContactSource):
        raise InvalidContactError(f"Unknown source {contact.source!r}")
    if not contact.natural_key or not str(contact.natural_key).strip():
        raise InvalidContactError(
            f"Empty natural key for a {contact.source.value} contact"
        )


def check_soft_delete_target(key: ContactKey, run_source: ContactSource) -> None:
    """
    Refuse soft deletes that cross source namespaces.

    Raises:
        CrossSourceDeleteError: If the key belongs to another source
    """
    if key.source != run_source:
        raise CrossSourceDeleteError(
            f"Refusing to soft-delete {key}: run source is {run_source.value}"
        )
