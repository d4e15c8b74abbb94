"""
Record normalization for CRM reconciliation.

Maps raw source records (a wide, source-defined property bag) into
CanonicalContact values. Normalization is pure and total: it never raises,
malformed input yields a best-effort partial contact plus a list of
NormalizationError values describing what was wrong.

Interpreted fields are declared per source in FIELD_SCHEMAS and versioned
by FIELD_MAP_VERSION. Every property a schema does not interpret passes
through into ``attributes`` unchanged.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

from crm_reconcile.sync.contact import (
    CanonicalContact,
    ComplianceFlags,
    ContactSource,
    IdentityFields,
    Provenance,
    parse_timestamp,
    utcnow,
)
from crm_reconcile.utils.normalization import normalize_email, normalize_phone

logger = logging.getLogger(__name__)

# Bump whenever the set of interpreted keys or a lookup table changes
FIELD_MAP_VERSION = 3

# Default for lifecycle stages missing from LIFECYCLE_STAGE_MAP
UNMAPPED = "unmapped"

LIFECYCLE_STAGE_MAP = {
    "subscriber": "lead",
    "lead": "lead",
    "marketingqualifiedlead": "prospect",
    "salesqualifiedlead": "prospect",
    "opportunity": "prospect",
    "customer": "customer",
    "evangelist": "evangelist",
    "other": "other",
}

# contact_type values mapped to campaign types; a contact can be in several
CONTACT_TYPE_MAP: dict[str, list[str]] = {
    "Buyer": ["Buyer"],
    "Buyer & Seller": ["Buyer", "Seller"],
    "Seller": ["Seller"],
    "Secondary Seller": ["Seller"],
    "CRE Buyer": ["CRE"],
    "CRE Corporate Services": ["CRE"],
    "CRE Franchise Services": ["CRE"],
    "CRE Investor": ["CRE"],
    "CRE Landlord": ["CRE"],
    "CRE Power Partner": ["CRE"],
    "CRE Referral": ["CRE"],
    "CRE Seller": ["CRE"],
    "CRE Tenant": ["CRE"],
    "EXF Client": ["Exit Factor"],
    "EXF Franchisees": ["Exit Factor"],
    # Known types with no campaign
    "Corporate Partner": [],
    "Other": [],
    "Referral Partner": [],
}

# Canonical compliance flag names
COMPLIANCE_FLAGS = (
    "seller_outreach_suppressed",
    "buyer_outreach_suppressed",
    "cre_outreach_suppressed",
    "exf_outreach_suppressed",
    "seller_cold_lead",
    "buyer_cold_lead",
    "cre_cold_lead",
    "exf_cold_lead",
)

TRUE_VALUES = frozenset({"true", "1", "yes", "y"})
FALSE_VALUES = frozenset({"false", "0", "no", "n", ""})


class NormalizationError(Exception):
    """
    A problem found while normalizing one record.

    Returned (not raised) by normalize(). A blocking error means the record
    cannot be stored at all (e.g. no natural key); non-blocking errors mean
    one field was dropped or defaulted.
    """

    def __init__(
        self,
        field_name: str,
        message: str,
        value: Any = None,
        blocking: bool = False,
    ):
        super().__init__(f"{field_name}: {message}")
        self.field_name = field_name
        self.message = message
        self.value = value
        self.blocking = blocking

    def __repr__(self) -> str:
        return (
            f"NormalizationError(field={self.field_name!r}, "
            f"message={self.message!r}, blocking={self.blocking})"
        )


@dataclass
class FieldSchema:
    """
    Which raw keys a source uses for each interpreted field.

    Attributes:
        id_fields: Keys holding the natural key, first non-empty wins
        properties_key: Key of the nested property bag, None for flat rows
        revision_fields: Keys holding the last-modified timestamp
        first_name/last_name/email/phone: Identity keys (first non-empty wins)
        lifecycle_field: Key of the lifecycle stage
        contact_type_field: Key of the contact type
        flag_fields: Raw key -> canonical compliance flag name
        reason_field: Key of the compliance reason
        flags_updated_field: Key of the compliance timestamp
        full_record: Records from this source replace stored records
    """

    id_fields: tuple[str, ...]
    properties_key: Optional[str] = None
    revision_fields: tuple[str, ...] = ()
    first_name: tuple[str, ...] = ()
    last_name: tuple[str, ...] = ()
    email: tuple[str, ...] = ()
    phone: tuple[str, ...] = ()
    lifecycle_field: Optional[str] = None
    contact_type_field: Optional[str] = None
    flag_fields: dict[str, str] = field(default_factory=dict)
    reason_field: Optional[str] = None
    flags_updated_field: Optional[str] = None
    full_record: bool = False

    def interpreted_keys(self) -> set[str]:
        """Property keys this schema reads (everything else passes through)."""
        keys = set(self.revision_fields)
        keys.update(self.first_name, self.last_name, self.email, self.phone)
        keys.update(self.flag_fields)
        for optional in (
            self.lifecycle_field,
            self.contact_type_field,
            self.reason_field,
            self.flags_updated_field,
        ):
            if optional:
                keys.add(optional)
        if self.properties_key is None:
            keys.update(self.id_fields)
        return keys


_CRM_FLAG_FIELDS = {
    "dnc___seller_outreach": "seller_outreach_suppressed",
    "dnc___buyer_outreach": "buyer_outreach_suppressed",
    "dnc___cre_outreach": "cre_outreach_suppressed",
    "dnc___exf_outreach": "exf_outreach_suppressed",
    "seller_cold_lead": "seller_cold_lead",
    "buyer_cold_lead": "buyer_cold_lead",
    "cre_cold_lead": "cre_cold_lead",
    "exf_cold_lead": "exf_cold_lead",
}

_FLAT_SCHEMA = FieldSchema(
    id_fields=("natural_key", "id", "row_id"),
    revision_fields=("updated_at", "last_modified"),
    first_name=("first_name", "firstname"),
    last_name=("last_name", "lastname"),
    email=("email",),
    phone=("phone", "mobile_phone"),
    lifecycle_field="lifecycle_stage",
    contact_type_field="contact_type",
    flag_fields={name: name for name in COMPLIANCE_FLAGS},
    reason_field="compliance_reason",
    flags_updated_field="compliance_updated_at",
)

FIELD_SCHEMAS: dict[ContactSource, FieldSchema] = {
    ContactSource.EXTERNAL_CRM: FieldSchema(
        id_fields=("id",),
        properties_key="properties",
        revision_fields=("lastmodifieddate", "hs_lastmodifieddate"),
        first_name=("firstname",),
        last_name=("lastname",),
        email=("email",),
        phone=("phone", "mobilephone"),
        lifecycle_field="lifecyclestage",
        contact_type_field="contact_type",
        flag_fields=_CRM_FLAG_FIELDS,
        reason_field="dnc_reason",
        flags_updated_field="dnc_date",
    ),
    ContactSource.SPREADSHEET_IMPORT: _FLAT_SCHEMA,
    ContactSource.FILE_IMPORT: _FLAT_SCHEMA,
    # Manual entries are always complete records
    ContactSource.MANUAL: replace(_FLAT_SCHEMA, full_record=True),
}


@dataclass
class NormalizationResult:
    """
    Output of normalize().

    Attributes:
        contact: Best-effort contact (may be partial when errors are blocking)
        errors: Problems found, blocking and non-blocking
    """

    contact: CanonicalContact
    errors: list[NormalizationError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True when the contact may be written."""
        return not any(e.blocking for e in self.errors)

    @property
    def blocking_errors(self) -> list[NormalizationError]:
        return [e for e in self.errors if e.blocking]

    @property
    def warnings(self) -> list[NormalizationError]:
        return [e for e in self.errors if not e.blocking]


def coerce_bool(value: Any) -> Optional[bool]:
    """
    Coerce a source truthy/falsy representation to a bool.

    None means "not reported" and is returned as None.

    Raises:
        ValueError: For values that are neither recognizably true nor false
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"Not a boolean: {value!r}")
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ValueError(f"Not a boolean: {value!r}")


def map_lifecycle_stage(value: Any) -> Optional[str]:
    """
    Map a raw lifecycle stage to the canonical vocabulary.

    Returns:
        The mapped stage, UNMAPPED for unknown values, or None if empty
    """
    if value is None or str(value).strip() == "":
        return None
    return LIFECYCLE_STAGE_MAP.get(str(value).strip().lower(), UNMAPPED)


def map_contact_type(value: Any) -> tuple[list[str], list[str]]:
    """
    Map a raw contact type (possibly ';'-separated) to campaign types.

    Returns:
        Tuple of (campaign types in table order, unmapped raw values)
    """
    if value is None:
        return [], []

    campaign_types: list[str] = []
    unmapped: list[str] = []
    for part in str(value).split(";"):
        part = part.strip()
        if not part:
            continue
        mapped = CONTACT_TYPE_MAP.get(part)
        if mapped is None:
            unmapped.append(part)
            continue
        for campaign_type in mapped:
            if campaign_type not in campaign_types:
                campaign_types.append(campaign_type)
    return campaign_types, unmapped


def requested_properties(
    source: ContactSource, extra: Optional[list[str]] = None
) -> list[str]:
    """
    Property projection to request from a source listing endpoint.

    Only meaningful for sources with a nested property bag; extra names
    are requested so they pass through into attributes.
    """
    schema = FIELD_SCHEMAS[source]
    names = schema.interpreted_keys()
    if extra:
        names.update(extra)
    return sorted(names)


def _first(bag: dict[str, Any], keys: tuple[str, ...]) -> tuple[Optional[str], Any]:
    for key in keys:
        value = bag.get(key)
        if value is not None and str(value).strip() != "":
            return key, value
    return None, None


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_scalar(key: str, value: Any, errors: list[NormalizationError]) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    errors.append(
        NormalizationError(key, "Non-scalar attribute stored as JSON text", value)
    )
    try:
        return json.dumps(value, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return str(value)


def normalize(
    raw: Any,
    source: ContactSource,
    fetched_at: Optional[datetime] = None,
    run_id: Optional[int] = None,
) -> NormalizationResult:
    """
    Normalize one raw record into a CanonicalContact.

    Never raises for any input: a record without a natural key comes back
    with a blocking error and an empty key, unreadable fields are dropped
    with a non-blocking error.

    Args:
        raw: Raw record as returned by the source
        source: Namespace the record belongs to
        fetched_at: Fetch time for the provenance stamp (default now)
        run_id: Run that fetched the record, for provenance

    Returns:
        NormalizationResult with the contact and any errors
    """
    provenance = Provenance(
        source=source,
        fetched_at=fetched_at or utcnow(),
        schema_version=FIELD_MAP_VERSION,
        run_id=run_id,
    )
    try:
        return _normalize(raw, source, provenance)
    except Exception as e:
        logger.error(f"Unexpected error normalizing {source.value} record: {e}")
        return NormalizationResult(
            CanonicalContact(natural_key="", source=source, provenance=provenance),
            [NormalizationError("record", f"Unreadable record: {e}", blocking=True)],
        )


def _normalize(
    raw: Any, source: ContactSource, provenance: Provenance
) -> NormalizationResult:
    errors: list[NormalizationError] = []
    schema = FIELD_SCHEMAS[source]

    def problem(field_name: str, message: str, value: Any = None) -> None:
        errors.append(NormalizationError(field_name, message, value))

    if not isinstance(raw, dict):
        errors.append(
            NormalizationError("record", "Record is not an object", raw, blocking=True)
        )
        return NormalizationResult(
            CanonicalContact(natural_key="", source=source, provenance=provenance),
            errors,
        )

    bag: Any = raw
    if schema.properties_key is not None:
        bag = raw.get(schema.properties_key)
        if bag is None:
            bag = {}
        elif not isinstance(bag, dict):
            problem(schema.properties_key, "Property bag is not an object", bag)
            bag = {}

    # Natural key lives on the record itself, not in the property bag
    _, key_value = _first(raw, schema.id_fields)
    natural_key = _clean_text(key_value) or ""
    if not natural_key:
        errors.append(
            NormalizationError(
                "natural_key",
                f"Missing natural key (looked in {', '.join(schema.id_fields)})",
                blocking=True,
            )
        )

    attributes: dict[str, Any] = {}
    interpreted = schema.interpreted_keys()
    for key, value in bag.items():
        if key not in interpreted:
            attributes[key] = _as_scalar(key, value, errors)

    # Identity
    _, raw_email = _first(bag, schema.email)
    email = normalize_email(raw_email)
    if email is not None:
        display = str(raw_email).strip()
        if "@" not in email:
            problem("email", "Not an email address", raw_email)
            email = None
        if display != email:
            attributes["email_display"] = display

    _, raw_phone = _first(bag, schema.phone)
    phone = normalize_phone(raw_phone)
    if raw_phone is not None:
        display = str(raw_phone).strip()
        if phone is None:
            problem("phone", "Too few digits", raw_phone)
        if display != phone:
            attributes["phone_display"] = display

    identity = IdentityFields(
        first_name=_clean_text(_first(bag, schema.first_name)[1]),
        last_name=_clean_text(_first(bag, schema.last_name)[1]),
        email=email,
        phone=phone,
    )

    # Revision: property first, then the record-level updatedAt
    revision = None
    revision_key, raw_revision = _first(bag, schema.revision_fields)
    if raw_revision is None and schema.properties_key is not None:
        revision_key, raw_revision = "updatedAt", raw.get("updatedAt")
    if raw_revision is not None:
        try:
            revision = parse_timestamp(raw_revision)
        except (TypeError, ValueError, OverflowError, OSError):
            problem(revision_key or "revision", "Unparseable timestamp", raw_revision)

    # Compliance flags come only from explicit source fields
    flags: dict[str, bool] = {}
    for raw_key, flag_name in schema.flag_fields.items():
        if raw_key not in bag:
            continue
        try:
            coerced = coerce_bool(bag[raw_key])
        except ValueError:
            problem(raw_key, "Unrecognized boolean, flag omitted", bag[raw_key])
            continue
        if coerced is not None:
            flags[flag_name] = coerced

    flags_updated_at = None
    raw_flags_updated = (
        bag.get(schema.flags_updated_field) if schema.flags_updated_field else None
    )
    if raw_flags_updated:
        try:
            flags_updated_at = parse_timestamp(raw_flags_updated)
        except (TypeError, ValueError, OverflowError, OSError):
            problem(
                schema.flags_updated_field or "dnc_date",
                "Unparseable timestamp",
                raw_flags_updated,
            )

    reason = None
    if schema.reason_field:
        reason = _clean_text(bag.get(schema.reason_field))
    compliance = ComplianceFlags(
        flags=flags, reason=reason, updated_at=flags_updated_at
    )

    # Closed vocabularies
    lifecycle_stage = None
    if schema.lifecycle_field:
        raw_stage = bag.get(schema.lifecycle_field)
        lifecycle_stage = map_lifecycle_stage(raw_stage)
        if lifecycle_stage == UNMAPPED:
            logger.warning(
                f"Unmapped lifecycle stage {raw_stage!r} "
                f"for {source.value}:{natural_key}"
            )
            problem(schema.lifecycle_field, "Unmapped lifecycle stage", raw_stage)
        if raw_stage is not None:
            attributes[schema.lifecycle_field] = _as_scalar(
                schema.lifecycle_field, raw_stage, errors
            )

    campaign_types = None
    if schema.contact_type_field and schema.contact_type_field in bag:
        raw_type = bag.get(schema.contact_type_field)
        campaign_types, unmapped = map_contact_type(raw_type)
        for value in unmapped:
            logger.warning(
                f"Unmapped contact type {value!r} for {source.value}:{natural_key}"
            )
            problem(schema.contact_type_field, "Unmapped contact type", value)
        if raw_type is not None:
            attributes[schema.contact_type_field] = _as_scalar(
                schema.contact_type_field, raw_type, errors
            )

    contact = CanonicalContact(
        natural_key=natural_key,
        source=source,
        identity=identity,
        compliance=compliance,
        attributes=attributes,
        revision=revision,
        lifecycle_stage=lifecycle_stage,
        campaign_types=campaign_types,
        provenance=provenance,
        full_record=schema.full_record,
    )

    for error in errors:
        logger.debug(f"Normalization issue for {source.value}:{natural_key}: {error}")

    return NormalizationResult(contact, errors)
