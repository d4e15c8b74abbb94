"""
Canonical contact data model for CRM reconciliation.

Provides the CanonicalContact representation with methods for:
- Identifying a contact by (source, natural key)
- Field-level merging of a partial update onto a stored contact
- Computing content hashes for change detection
- Converting to and from JSON-safe dictionaries for storage
"""

from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple, Optional, Union

# Attribute values are opaque scalars
Scalar = Union[str, int, float, bool, None]


class ContactSource(Enum):
    """Where a contact record originated."""

    EXTERNAL_CRM = "external_crm"
    SPREADSHEET_IMPORT = "spreadsheet_import"
    FILE_IMPORT = "file_import"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: Union[str, "ContactSource"]) -> "ContactSource":
        """
        Parse a source name.

        Raises:
            ValueError: If the value is not a known source
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValueError(
                f"Unknown contact source '{value}'. Valid sources: {valid}"
            ) from None


class ContactKey(NamedTuple):
    """Identity of a contact: the natural key within its source namespace."""

    source: ContactSource
    natural_key: str

    def __str__(self) -> str:
        return f"{self.source.value}:{self.natural_key}"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a source timestamp into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (with or without a trailing 'Z')
    and epoch milliseconds. Naive values are assumed to be UTC.

    Returns:
        The parsed datetime, or None when the value is empty

    Raises:
        ValueError: If the value is present but unparseable
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.isdigit():
            parsed = datetime.fromtimestamp(int(text) / 1000.0, tz=timezone.utc)
        else:
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime as ISO-8601, passing None through."""
    return value.isoformat() if value is not None else None


@dataclass
class IdentityFields:
    """
    Fields used for best-effort cross-source matching.

    Email is trimmed and lower-cased, phone is digits only (leading '+'
    kept). None means the source did not report the field.
    """

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def merged_with(self, incoming: IdentityFields) -> IdentityFields:
        """Fields reported by ``incoming`` win; unreported fields are kept."""
        return IdentityFields(
            first_name=_pick(incoming.first_name, self.first_name),
            last_name=_pick(incoming.last_name, self.last_name),
            email=_pick(incoming.email, self.email),
            phone=_pick(incoming.phone, self.phone),
        )


@dataclass
class ComplianceFlags:
    """
    Named outreach flags plus a reason and the time they last changed.

    Only flags the source actually reported are present in ``flags``; an
    absent flag means "unknown", not False.
    """

    flags: dict[str, bool] = field(default_factory=dict)
    reason: Optional[str] = None
    updated_at: Optional[datetime] = None

    def is_set(self, flag: str) -> bool:
        return self.flags.get(flag) is True

    def true_flags(self) -> list[str]:
        return sorted(name for name, value in self.flags.items() if value)

    def merged_with(self, incoming: ComplianceFlags) -> ComplianceFlags:
        """Flags present in ``incoming`` overwrite; omitted flags survive."""
        merged = dict(self.flags)
        merged.update(incoming.flags)
        return ComplianceFlags(
            flags=merged,
            reason=_pick(incoming.reason, self.reason),
            updated_at=_pick(incoming.updated_at, self.updated_at),
        )


@dataclass
class SyncState:
    """When the contact was last written locally, and the last error."""

    last_synced_at: Optional[datetime] = None
    last_sync_error: Optional[str] = None


@dataclass
class Provenance:
    """Where and when a contact's current data was fetched."""

    source: ContactSource
    fetched_at: datetime
    schema_version: int
    run_id: Optional[int] = None


@dataclass
class CanonicalContact:
    """
    The unit of synchronization.

    Attributes:
        natural_key: Source-assigned id, unique within ``source``
        source: Origin namespace of the natural key
        identity: Normalized identity fields for cross-source matching
        compliance: Outreach flags fanned out to downstream lists
        attributes: Opaque source property bag, preserved verbatim
        revision: Source last-modified timestamp
        lifecycle_stage: Mapped lifecycle stage ("unmapped" if unknown)
        campaign_types: Mapped campaign types, None if not reported
        sync_state: Local write bookkeeping
        source_deleted: True once the source stopped returning the record
        source_deleted_at: When the soft delete was applied
        provenance: Fetch stamp of the current data
        full_record: Replace wholesale on merge instead of field-level merge

    Usage:
        result = normalize(raw, ContactSource.EXTERNAL_CRM)
        contact = result.contact

        merged = contact.merged_onto(stored)
        if merged.content_hash() != stored.content_hash():
            ...
    """

    natural_key: str
    source: ContactSource
    identity: IdentityFields = field(default_factory=IdentityFields)
    compliance: ComplianceFlags = field(default_factory=ComplianceFlags)
    attributes: dict[str, Scalar] = field(default_factory=dict)
    revision: Optional[datetime] = None
    lifecycle_stage: Optional[str] = None
    campaign_types: Optional[list[str]] = None
    sync_state: SyncState = field(default_factory=SyncState)
    source_deleted: bool = False
    source_deleted_at: Optional[datetime] = None
    provenance: Optional[Provenance] = None
    full_record: bool = False

    @property
    def key(self) -> ContactKey:
        return ContactKey(self.source, self.natural_key)

    def merged_onto(self, stored: Optional[CanonicalContact]) -> CanonicalContact:
        """
        Apply this (incoming) contact onto the stored version.

        Field-level merge: values this contact does not report keep their
        stored value, flags and attributes are merged key by key. With
        ``full_record`` set, this contact replaces the stored one. Either
        way the result is no longer soft-deleted and keeps the stored
        sync bookkeeping.

        Args:
            stored: The currently stored contact, or None if new

        Returns:
            A new CanonicalContact; neither input is modified
        """
        if stored is None or self.full_record:
            merged = copy.deepcopy(self)
            if stored is not None:
                merged.sync_state = copy.deepcopy(stored.sync_state)
            merged.source_deleted = False
            merged.source_deleted_at = None
            return merged

        attributes = dict(stored.attributes)
        attributes.update(self.attributes)

        return CanonicalContact(
            natural_key=stored.natural_key,
            source=stored.source,
            identity=stored.identity.merged_with(self.identity),
            compliance=stored.compliance.merged_with(self.compliance),
            attributes=attributes,
            revision=_pick(self.revision, stored.revision),
            lifecycle_stage=_pick(self.lifecycle_stage, stored.lifecycle_stage),
            campaign_types=(
                list(self.campaign_types)
                if self.campaign_types is not None
                else copy.copy(stored.campaign_types)
            ),
            sync_state=copy.deepcopy(stored.sync_state),
            source_deleted=False,
            source_deleted_at=None,
            provenance=copy.deepcopy(self.provenance or stored.provenance),
            full_record=False,
        )

    def content_hash(self) -> str:
        """
        SHA-256 of the synchronized content.

        Excludes bookkeeping (sync_state, provenance) so that re-applying
        the same source data hashes identically. Soft-delete state is
        included so that a reappearing record counts as a change.
        """
        content = {
            "identity": self.identity.__dict__,
            "flags": self.compliance.flags,
            "reason": self.compliance.reason,
            "flags_updated_at": format_timestamp(self.compliance.updated_at),
            "attributes": self.attributes,
            "revision": format_timestamp(self.revision),
            "lifecycle_stage": self.lifecycle_stage,
            "campaign_types": self.campaign_types,
            "source_deleted": self.source_deleted,
        }
        encoded = json.dumps(content, sort_keys=True, default=str)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary."""
        provenance = None
        if self.provenance is not None:
            provenance = {
                "source": self.provenance.source.value,
                "fetched_at": format_timestamp(self.provenance.fetched_at),
                "schema_version": self.provenance.schema_version,
                "run_id": self.provenance.run_id,
            }
        return {
            "natural_key": self.natural_key,
            "source": self.source.value,
            "identity": dict(self.identity.__dict__),
            "compliance": {
                "flags": dict(self.compliance.flags),
                "reason": self.compliance.reason,
                "updated_at": format_timestamp(self.compliance.updated_at),
            },
            "attributes": dict(self.attributes),
            "revision": format_timestamp(self.revision),
            "lifecycle_stage": self.lifecycle_stage,
            "campaign_types": self.campaign_types,
            "sync_state": {
                "last_synced_at": format_timestamp(self.sync_state.last_synced_at),
                "last_sync_error": self.sync_state.last_sync_error,
            },
            "source_deleted": self.source_deleted,
            "source_deleted_at": format_timestamp(self.source_deleted_at),
            "provenance": provenance,
            "full_record": self.full_record,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CanonicalContact:
        """Create a CanonicalContact from a to_dict() dictionary."""
        compliance = data.get("compliance") or {}
        sync_state = data.get("sync_state") or {}
        provenance_data = data.get("provenance")
        provenance = None
        if provenance_data:
            provenance = Provenance(
                source=ContactSource.parse(provenance_data["source"]),
                fetched_at=parse_timestamp(provenance_data["fetched_at"]) or utcnow(),
                schema_version=int(provenance_data.get("schema_version", 0)),
                run_id=provenance_data.get("run_id"),
            )

        return cls(
            natural_key=str(data["natural_key"]),
            source=ContactSource.parse(data["source"]),
            identity=IdentityFields(**(data.get("identity") or {})),
            compliance=ComplianceFlags(
                flags={k: bool(v) for k, v in (compliance.get("flags") or {}).items()},
                reason=compliance.get("reason"),
                updated_at=parse_timestamp(compliance.get("updated_at")),
            ),
            attributes=dict(data.get("attributes") or {}),
            revision=parse_timestamp(data.get("revision")),
            lifecycle_stage=data.get("lifecycle_stage"),
            campaign_types=data.get("campaign_types"),
            sync_state=SyncState(
                last_synced_at=parse_timestamp(sync_state.get("last_synced_at")),
                last_sync_error=sync_state.get("last_sync_error"),
            ),
            source_deleted=bool(data.get("source_deleted", False)),
            source_deleted_at=parse_timestamp(data.get("source_deleted_at")),
            provenance=provenance,
            full_record=bool(data.get("full_record", False)),
        )

    def __repr__(self) -> str:
        return (
            f"CanonicalContact(key={str(self.key)!r}, "
            f"email={self.identity.email!r}, revision={self.revision})"
        )


def _pick(preferred: Any, fallback: Any) -> Any:
    return preferred if preferred is not None else fallback
