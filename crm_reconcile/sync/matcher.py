"""
Cross-source identity matching for reconciliation.

Finds contacts in different source namespaces that probably describe the
same person:
- Exact match: same normalized email, or same normalized phone
- Fuzzy match: similar name (rapidfuzz) + phone numbers that agree on
  their trailing digits (same number written with and without a country
  code)

Matches are surfaced for human review as investigations. They are never
used to merge contacts; the natural key stays the only join key.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import NamedTuple, Optional

from rapidfuzz import fuzz

from crm_reconcile.sync.contact import ContactKey, IdentityFields
from crm_reconcile.utils.logging import get_investigation_logger
from crm_reconcile.utils.normalization import MIN_PHONE_DIGITS, normalize_string

logger = logging.getLogger(__name__)


class MatchRule(Enum):
    """Which rule identified a pair."""

    EXACT_EMAIL = "exact_email"  # Same email address
    EXACT_PHONE = "exact_phone"  # Same phone number
    FUZZY_NAME_PHONE = "fuzzy_name_phone"  # Similar name + phone suffix
    NO_MATCH = "no_match"


class MatchConfidence(Enum):
    """Confidence level of a match."""

    HIGH = "high"  # Exact identifier
    MEDIUM = "medium"  # Fuzzy name backed by an identifier
    LOW = "low"


@dataclass
class MatchResult:
    """Result of comparing two identities."""

    is_match: bool
    rule: MatchRule
    confidence: MatchConfidence
    score: float  # 0.0 to 1.0 similarity score
    reason: str  # Human-readable explanation
    matched_on: list[str] = field(default_factory=list)


class IdentityMatch(NamedTuple):
    """A cross-source pair to investigate."""

    key_a: ContactKey
    key_b: ContactKey
    rule: str
    score: float


# Default threshold values
DEFAULT_NAME_SIMILARITY_THRESHOLD = 0.85

# Trailing digits two phone numbers must share for a fuzzy match
PHONE_SUFFIX_LENGTH = 10


@dataclass
class MatchConfig:
    """Configuration for the identity matcher."""

    # Fuzzy name matching threshold (0.0 to 1.0)
    name_similarity_threshold: float = DEFAULT_NAME_SIMILARITY_THRESHOLD

    # Digits compared from the end of each phone number
    phone_suffix_length: int = PHONE_SUFFIX_LENGTH


def _phone_suffix(phone: Optional[str], length: int) -> Optional[str]:
    if not phone:
        return None
    digits = phone.lstrip("+")
    if len(digits) < MIN_PHONE_DIGITS:
        return None
    return digits[-length:]


class IdentityMatcher:
    """
    Finds likely duplicates across source namespaces.

    Two contacts are only compared when they come from different sources
    and share a blocking key (email, phone or phone suffix), so the cost
    stays linear in the number of contacts for realistic data.

    Usage:
        matcher = IdentityMatcher(MatchConfig(name_similarity_threshold=0.9))
        for match in matcher.find_cross_source_matches(store.identity_index()):
            print(match.key_a, match.key_b, match.rule)
    """

    def __init__(self, config: Optional[MatchConfig] = None):
        self.config = config or MatchConfig()
        self.investigation_log = get_investigation_logger()

    def match(self, first: IdentityFields, second: IdentityFields) -> MatchResult:
        """
        Decide whether two identities describe the same person.

        Exact identifiers are checked first, then similar names backed by
        a phone number that agrees on its trailing digits.
        """
        if first.email and first.email == second.email:
            return MatchResult(
                is_match=True,
                rule=MatchRule.EXACT_EMAIL,
                confidence=MatchConfidence.HIGH,
                score=1.0,
                reason=f"Exact email match: {first.email}",
                matched_on=[first.email],
            )

        if first.phone and first.phone == second.phone:
            return MatchResult(
                is_match=True,
                rule=MatchRule.EXACT_PHONE,
                confidence=MatchConfidence.HIGH,
                score=1.0,
                reason=f"Exact phone match: {first.phone}",
                matched_on=[first.phone],
            )

        name1 = normalize_string(first.display_name, remove_spaces=False)
        name2 = normalize_string(second.display_name, remove_spaces=False)
        if not name1 or not name2:
            return MatchResult(
                is_match=False,
                rule=MatchRule.NO_MATCH,
                confidence=MatchConfidence.LOW,
                score=0.0,
                reason="One or both contacts have no name",
            )

        # WRatio tolerates reordered and partial names, ratio catches typos
        similarity = max(fuzz.ratio(name1, name2), fuzz.WRatio(name1, name2)) / 100.0

        length = self.config.phone_suffix_length
        suffix1 = _phone_suffix(first.phone, length)
        suffix2 = _phone_suffix(second.phone, length)
        if (
            similarity >= self.config.name_similarity_threshold
            and suffix1
            and suffix1 == suffix2
        ):
            return MatchResult(
                is_match=True,
                rule=MatchRule.FUZZY_NAME_PHONE,
                confidence=MatchConfidence.MEDIUM,
                score=similarity,
                reason=(
                    f"Similar name ({similarity:.0%}) + "
                    f"phone ending in {suffix1[-4:]}"
                ),
                matched_on=["name", suffix1],
            )

        return MatchResult(
            is_match=False,
            rule=MatchRule.NO_MATCH,
            confidence=MatchConfidence.LOW,
            score=similarity,
            reason=f"Name similarity {similarity:.0%} without a shared identifier",
        )

    def _blocking_keys(self, identity: IdentityFields) -> list[str]:
        keys = []
        if identity.email:
            keys.append(f"email:{identity.email}")
        if identity.phone:
            keys.append(f"phone:{identity.phone}")
        suffix = _phone_suffix(identity.phone, self.config.phone_suffix_length)
        if suffix:
            keys.append(f"suffix:{suffix}")
        return keys

    def find_cross_source_matches(
        self,
        index: dict[ContactKey, IdentityFields],
        only_keys: Optional[Iterable[ContactKey]] = None,
    ) -> list[IdentityMatch]:
        """
        Find candidate pairs between contacts of different sources.

        Args:
            index: Identity fields by contact key (all sources)
            only_keys: When given, only pairs involving one of these keys
                are reported (e.g. the keys touched by the current run)

        Returns:
            Pairs sorted by key, each reported once
        """
        focus = set(only_keys) if only_keys is not None else None

        blocks: dict[str, list[ContactKey]] = defaultdict(list)
        for key, identity in index.items():
            for block in self._blocking_keys(identity):
                blocks[block].append(key)

        seen: set[tuple[ContactKey, ContactKey]] = set()
        matches: list[IdentityMatch] = []

        for block, members in blocks.items():
            if len(members) < 2:
                continue
            for i, key_a in enumerate(members):
                for key_b in members[i + 1 :]:
                    if key_a.source == key_b.source:
                        continue
                    if focus is not None and key_a not in focus and key_b not in focus:
                        continue
                    pair = tuple(sorted((key_a, key_b), key=str))
                    if pair in seen:
                        continue
                    seen.add(pair)

                    result = self.match(index[pair[0]], index[pair[1]])
                    if not result.is_match:
                        continue
                    matches.append(
                        IdentityMatch(pair[0], pair[1], result.rule.value, result.score)
                    )
                    self.investigation_log.info(
                        f"{pair[0]} <-> {pair[1]}: {result.rule.value} "
                        f"({result.confidence.value}, {result.score:.2f}) "
                        f"{result.reason}"
                    )

        matches.sort(key=lambda m: (str(m.key_a), str(m.key_b)))
        if matches:
            logger.info(f"Found {len(matches)} cross-source identity matches")
        return matches
