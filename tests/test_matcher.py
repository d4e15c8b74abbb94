"""
Unit tests for cross-source identity matching.

Tests the IdentityMatcher class for exact identifier rules, fuzzy names
backed by a phone suffix, and pair discovery across source namespaces.
"""

import pytest

from crm_reconcile.sync.contact import ContactKey, ContactSource, IdentityFields
from crm_reconcile.sync.matcher import (
    IdentityMatcher,
    MatchConfidence,
    MatchConfig,
    MatchRule,
)

CRM = ContactSource.EXTERNAL_CRM
SHEET = ContactSource.SPREADSHEET_IMPORT
FILE = ContactSource.FILE_IMPORT


@pytest.fixture
def matcher():
    return IdentityMatcher()


class TestMatchRule:
    """Tests for MatchRule enum."""

    def test_rule_values(self):
        assert MatchRule.EXACT_EMAIL.value == "exact_email"
        assert MatchRule.EXACT_PHONE.value == "exact_phone"
        assert MatchRule.FUZZY_NAME_PHONE.value == "fuzzy_name_phone"


class TestExactRules:
    """Tests for identifier-based matching."""

    def test_exact_email_match(self, matcher):
        result = matcher.match(
            IdentityFields(first_name="Jane", email="jane@example.com"),
            IdentityFields(first_name="J", email="jane@example.com"),
        )

        assert result.is_match
        assert result.rule == MatchRule.EXACT_EMAIL
        assert result.confidence == MatchConfidence.HIGH
        assert result.score == 1.0

    def test_exact_phone_match(self, matcher):
        result = matcher.match(
            IdentityFields(phone="5551234567"),
            IdentityFields(phone="5551234567"),
        )

        assert result.is_match
        assert result.rule == MatchRule.EXACT_PHONE

    def test_email_takes_precedence_over_phone(self, matcher):
        identity = IdentityFields(email="a@example.com", phone="5551234567")
        assert matcher.match(identity, identity).rule == MatchRule.EXACT_EMAIL

    def test_missing_email_never_matches(self, matcher):
        result = matcher.match(IdentityFields(), IdentityFields())
        assert not result.is_match


class TestFuzzyRule:
    """Tests for similar names backed by a phone suffix."""

    def test_similar_name_with_country_code_difference(self, matcher):
        result = matcher.match(
            IdentityFields(first_name="Jane", last_name="Smith", phone="+15551234567"),
            IdentityFields(first_name="Jayne", last_name="Smith", phone="5551234567"),
        )

        assert result.is_match
        assert result.rule == MatchRule.FUZZY_NAME_PHONE
        assert result.confidence == MatchConfidence.MEDIUM
        assert 0.85 <= result.score < 1.0

    def test_similar_name_without_phone(self, matcher):
        result = matcher.match(
            IdentityFields(first_name="Jane", last_name="Smith"),
            IdentityFields(first_name="Jane", last_name="Smith"),
        )

        assert not result.is_match
        assert result.score == 1.0

    def test_different_names_same_suffix(self, matcher):
        result = matcher.match(
            IdentityFields(first_name="Jane", last_name="Smith", phone="+15551234567"),
            IdentityFields(first_name="Robert", last_name="Jones", phone="5551234567"),
        )

        assert not result.is_match

    def test_no_name(self, matcher):
        result = matcher.match(
            IdentityFields(phone="+15551234567"), IdentityFields(phone="5551234567")
        )
        assert not result.is_match
        assert result.reason == "One or both contacts have no name"

    def test_threshold_is_configurable(self):
        strict = IdentityMatcher(MatchConfig(name_similarity_threshold=1.0))
        result = strict.match(
            IdentityFields(first_name="Jane", last_name="Smith", phone="+15551234567"),
            IdentityFields(first_name="Jayne", last_name="Smith", phone="5551234567"),
        )
        assert not result.is_match


class TestFindCrossSourceMatches:
    """Tests for pair discovery over an identity index."""

    def test_pairs_only_across_sources(self, matcher):
        index = {
            ContactKey(CRM, "1"): IdentityFields(email="a@example.com"),
            ContactKey(CRM, "2"): IdentityFields(email="a@example.com"),
            ContactKey(SHEET, "r1"): IdentityFields(email="a@example.com"),
        }

        matches = matcher.find_cross_source_matches(index)

        assert [(str(m.key_a), str(m.key_b)) for m in matches] == [
            ("external_crm:1", "spreadsheet_import:r1"),
            ("external_crm:2", "spreadsheet_import:r1"),
        ]
        assert all(m.rule == "exact_email" for m in matches)

    def test_pair_reported_once_when_several_blocks_agree(self, matcher):
        identity = IdentityFields(email="a@example.com", phone="5551234567")
        index = {ContactKey(CRM, "1"): identity, ContactKey(FILE, "f1"): identity}

        assert len(matcher.find_cross_source_matches(index)) == 1

    def test_only_keys_limits_pairs(self, matcher):
        index = {
            ContactKey(CRM, "1"): IdentityFields(email="a@example.com"),
            ContactKey(SHEET, "r1"): IdentityFields(email="a@example.com"),
            ContactKey(CRM, "2"): IdentityFields(phone="5559876543"),
            ContactKey(FILE, "f1"): IdentityFields(phone="5559876543"),
        }

        matches = matcher.find_cross_source_matches(
            index, only_keys=[ContactKey(CRM, "2")]
        )

        assert len(matches) == 1
        assert matches[0].key_b == ContactKey(FILE, "f1")
        assert matches[0].rule == "exact_phone"

    def test_unrelated_contacts(self, matcher):
        index = {
            ContactKey(CRM, "1"): IdentityFields(email="a@example.com"),
            ContactKey(SHEET, "r1"): IdentityFields(email="b@example.com"),
        }
        assert matcher.find_cross_source_matches(index) == []
