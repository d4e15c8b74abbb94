"""
Tests for the reconciliation engine.

Runs whole reconciliations against a fake CRM listing and an in-memory
store, checking the report accounts for every record the source reported.
"""

import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from crm_reconcile.api.base import (
    AuthenticationError,
    NotFoundError,
    TransientAPIError,
)
from crm_reconcile.api.source_api import Page, SourceCRMAPI
from crm_reconcile.config.sync_config import ChannelConfig, ProfileConfig
from crm_reconcile.storage.db import ContactStore
from crm_reconcile.sync.contact import (
    CanonicalContact,
    ContactKey,
    ContactSource,
    IdentityFields,
)
from crm_reconcile.sync.engine import (
    EngineError,
    EngineSettings,
    ReconciliationEngine,
    RunReport,
    RunStatus,
)

CRM = ContactSource.EXTERNAL_CRM
NOW = datetime(2024, 3, 2, 8, 0, tzinfo=timezone.utc)

DNC = ChannelConfig(name="dnc_seller", flag="seller_outreach_suppressed", list_id="L1")


def _raw(record_id, email=None, modified="2024-03-01T12:00:00Z", **properties):
    properties.setdefault("firstname", f"Person{record_id}")
    properties["email"] = email or f"p{record_id}@example.com"
    properties["lastmodifieddate"] = modified
    return {"id": record_id, "properties": properties}


class FakeCRM:
    """Offset-cursor listing over a mutable list of raw records."""

    def __init__(self, records):
        self.records = list(records)
        self.broken_cursors = set()
        self.failures = {}
        self.auth_broken = False

    def get_total_count(self):
        return len(self.records)

    def fetch_page(self, cursor, page_size, properties=None):
        if self.auth_broken:
            raise AuthenticationError("401 Unauthorized", 401)
        if cursor in self.broken_cursors:
            raise TransientAPIError("500 Internal Server Error", 500)
        if self.failures.get((cursor, page_size), 0) > 0:
            self.failures[(cursor, page_size)] -= 1
            raise TransientAPIError("500 Internal Server Error", 500)
        offset = int(cursor or 0)
        end = offset + page_size
        return Page(
            records=self.records[offset:end],
            next_cursor=str(end) if end < len(self.records) else None,
        )

    def get_record(self, record_id, properties=None):
        for record in self.records:
            if record.get("id") == record_id:
                return record
        raise NotFoundError(f"Contact {record_id} not found", 404)

    advance_cursor = staticmethod(SourceCRMAPI.advance_cursor)


@pytest.fixture
def store():
    store = ContactStore(":memory:")
    store.initialize()
    return store


@pytest.fixture
def settings():
    return EngineSettings(
        page_size=2,
        max_retries=1,
        recover_by_id=False,
        quarantine_runs=1,
        write_batch_size=2,
    )


def _engine(store, source, settings, **kwargs):
    return ReconciliationEngine(
        store,
        source,
        settings=settings,
        clock=lambda: NOW,
        sleep=lambda seconds: None,
        **kwargs,
    )


class TestEngineSettings:
    """Tests for reading settings from config."""

    def test_from_config_ignores_other_keys(self):
        settings = EngineSettings.from_config(
            {"page_size": 50, "log_level": "DEBUG", "quarantine_runs": 4}
        )
        assert settings.page_size == 50
        assert settings.quarantine_runs == 4

    def test_retry_policy(self):
        policy = EngineSettings(max_retries=3, retry_base_delay=2.0).retry_policy()
        assert policy.max_attempts == 3
        assert policy.base_delay == 2.0


class TestFullRun:
    """Tests for complete runs."""

    def test_first_run_applies_everything(self, store, settings):
        source = FakeCRM([_raw("1"), _raw("2"), _raw("3")])

        report = _engine(store, source, settings).run()

        assert report.status == RunStatus.COMPLETED
        assert report.upserts_applied == 3
        assert report.new_contacts == 3
        assert report.pages_fetched == 2
        assert report.discrepancies()["unexplained"] == 0
        assert store.count_contacts() == 3
        assert store.get_runs()[0]["status"] == "completed"

    def test_failing_page_recovered_by_narrowing(self, store):
        """The middle page fails twice at full width and loads at half width."""
        source = FakeCRM([_raw(str(i)) for i in range(1, 251)])
        source.failures[("100", 100)] = 2
        settings = EngineSettings(page_size=100, max_retries=2, recover_by_id=False)

        report = _engine(store, source, settings).run()

        assert report.status == RunStatus.COMPLETED
        assert report.records_fetched == 250
        assert report.upserts_applied == 250
        assert report.pages_recovered == 1
        assert report.gaps == []
        assert report.discrepancies()["unexplained"] == 0
        assert store.count_contacts() == 250

    def test_second_run_is_unchanged(self, store, settings):
        source = FakeCRM([_raw("1"), _raw("2"), _raw("3")])
        _engine(store, source, settings).run()

        report = _engine(store, source, settings).run()

        assert report.upserts_applied == 0
        assert report.upserts_unchanged == 3
        assert report.applied_total == 3

    def test_duplicates_collapse_to_newest(self, store, settings):
        source = FakeCRM(
            [
                _raw("1", email="new@example.com", modified="2024-03-02T00:00:00Z"),
                _raw("1", email="old@example.com", modified="2024-03-01T00:00:00Z"),
                _raw("2"),
            ]
        )

        report = _engine(store, source, settings).run()

        assert report.duplicates_collapsed == 1
        assert report.discrepancies()["duplicate"] == 1
        assert report.discrepancies()["unexplained"] == 0
        stored = store.get_contact(ContactKey(CRM, "1"))
        assert stored.identity.email == "new@example.com"

    def test_invalid_record_excluded_and_reported(self, store, settings):
        source = FakeCRM([_raw("1"), {"properties": {"email": "x@example.com"}}])

        report = _engine(store, source, settings).run()

        assert report.status == RunStatus.COMPLETED
        assert report.upserts_applied == 1
        assert report.records_excluded == 1
        assert report.normalization_errors[0]["key"] is None
        assert report.discrepancies()["unexplained"] == 0

    def test_absent_record_quarantined_before_delete(self, store, settings):
        source = FakeCRM([_raw("1"), _raw("2")])
        _engine(store, source, settings).run()
        source.records = [_raw("1")]

        held = [_engine(store, source, settings).run() for _ in range(2)]
        final = _engine(store, source, settings).run()

        assert [r.soft_deletes_held for r in held] == [1, 1]
        assert held[0].quarantined_keys == ["external_crm:2"]
        assert final.soft_deletes_applied == 1
        assert store.list_keys(CRM) == {ContactKey(CRM, "1")}

    def test_returning_record_never_deleted(self, store, settings):
        source = FakeCRM([_raw("1"), _raw("2")])
        engine = _engine(store, source, settings)
        engine.run()
        source.records = [_raw("1")]
        engine.run()
        source.records = [_raw("1"), _raw("2")]
        engine.run()
        source.records = [_raw("1")]

        report = engine.run()

        assert report.soft_deletes_applied == 0
        assert store.list_keys(CRM) == {ContactKey(CRM, "1"), ContactKey(CRM, "2")}
        assert report.flapping_keys == ["external_crm:2"]

    def test_profiles_sharing_a_source_share_the_quarantine(self, store, settings):
        """Alternating profiles still quarantine a missing record first."""
        first = ProfileConfig(name="sellers")
        second = ProfileConfig(name="buyers")
        source = FakeCRM([_raw("1"), _raw("2")])
        _engine(store, source, settings, profile=first).run()
        source.records = [_raw("1")]

        held = [
            _engine(store, source, settings, profile=profile).run()
            for profile in (second, first)
        ]
        final = _engine(store, source, settings, profile=second).run()

        assert [r.soft_deletes_applied for r in held] == [0, 0]
        assert [r.soft_deletes_held for r in held] == [1, 1]
        assert held[0].quarantined_keys == ["external_crm:2"]
        assert final.soft_deletes_applied == 1
        assert store.load_ledger_run(CRM) == 4

    def test_gapped_run_skips_soft_deletes(self, store, settings):
        source = FakeCRM([_raw(str(i)) for i in range(1, 7)])
        _engine(store, source, settings).run()
        source.broken_cursors.add("2")

        report = _engine(store, source, settings).run()

        assert report.status == RunStatus.COMPLETED
        assert report.gapped
        assert report.gap_records == 2
        assert report.soft_deletes_applied == 0
        assert report.soft_deletes_held == 2
        assert report.soft_delete_note == "run had page gaps; soft deletes skipped"
        assert report.discrepancies()["gap"] == 2
        assert report.discrepancies()["unexplained"] == 0
        assert store.count_contacts() == 6
        assert store.get_runs()[0]["gapped"]

    def test_permanent_failure_aborts_without_writes(self, store, settings):
        source = FakeCRM([_raw("1")])
        source.auth_broken = True

        report = _engine(store, source, settings).run()

        assert report.status == RunStatus.ABORTED
        assert "401" in report.error
        assert store.count_contacts() == 0
        assert store.get_runs()[0]["status"] == "aborted"

    def test_cancelled_run_writes_and_deletes_nothing(self, store, settings):
        source = FakeCRM([_raw("1"), _raw("2")])
        _engine(store, source, settings).run()
        source.records = []
        event = threading.Event()
        event.set()

        report = _engine(store, source, settings).run(cancel_event=event)

        assert report.status == RunStatus.CANCELLED
        assert report.soft_deletes_applied == 0
        assert report.soft_delete_note == "run cancelled; no soft deletes"
        assert len(store.list_keys(CRM)) == 2

    def test_dry_run_writes_nothing(self, store, settings):
        source = FakeCRM([_raw("1"), _raw("2")])

        report = _engine(store, source, settings).run(dry_run=True)

        assert report.dry_run
        assert report.upserts_applied == 2
        assert store.count_contacts() == 0
        assert store.load_ledger(CRM) == {}
        assert store.load_ledger_run(CRM) == 0

    def test_filtered_profile_never_soft_deletes(self, store, settings):
        source = FakeCRM([_raw("1", lifecyclestage="lead"), _raw("2")])
        _engine(store, source, settings).run()
        profile = ProfileConfig(name="leads", filter={"lifecycle_stage": ["lead"]})

        report = _engine(store, source, settings, profile=profile).run()

        assert report.filtered_out == 1
        assert report.soft_deletes_applied == 0
        assert report.soft_delete_note == "profile is filtered; soft deletes disabled"
        assert store.count_contacts() == 2
        assert store.load_ledger_run(CRM) == 1

    def test_identity_matches_recorded(self, store, settings):
        sheet = CanonicalContact(
            natural_key="r1",
            source=ContactSource.SPREADSHEET_IMPORT,
            identity=IdentityFields(email="p1@example.com"),
        )
        with store.transaction() as conn:
            store.write_contact(conn, sheet, sheet.content_hash())

        report = _engine(store, FakeCRM([_raw("1")]), settings).run()

        assert report.investigations_found == 1
        assert report.investigations_new == 1
        assert store.get_investigations()[0]["rule"] == "exact_email"

    def test_fan_out_after_writes(self, store, settings):
        list_api = MagicMock()
        source = FakeCRM([_raw("1", dnc___seller_outreach="true"), _raw("2")])

        report = _engine(
            store, source, settings, list_api=list_api, channels=[DNC]
        ).run()

        assert report.fanout["dnc_seller"]["successes"] == 1
        list_api.ensure_subscribed.assert_called_once()

    def test_no_channels_note(self, store, settings):
        report = _engine(store, FakeCRM([_raw("1")]), settings).run()
        assert report.fanout_note == "no channels configured"


class TestRunReport:
    """Tests for report rendering."""

    def test_summary_and_dict(self):
        report = RunReport(profile="default", source="external_crm", run_id=7)
        report.status = RunStatus.COMPLETED
        report.source_total = 10
        report.upserts_applied = 8
        report.gap_records = 2
        report.gaps = [{"cursor": "4", "estimated_records": 2}]

        summary = report.summary()
        data = report.to_dict()

        assert "Run 7 [default] completed" in summary
        assert "gap: 2" in summary
        assert data["status"] == "completed"
        assert data["gapped"] is True
        assert data["discrepancies"]["unexplained"] == 0


class TestSyncRecord:
    """Tests for single-record sync."""

    def test_applies_record(self, store, settings):
        source = FakeCRM([_raw("1")])

        result = _engine(store, source, settings).sync_record("1")

        assert result.outcome == "applied"
        assert store.get_contact(ContactKey(CRM, "1")) is not None

    def test_unchanged_then_stale(self, store, settings):
        source = FakeCRM([_raw("1", modified="2024-03-02T00:00:00Z")])
        engine = _engine(store, source, settings)
        engine.sync_record("1")

        assert engine.sync_record("1").outcome == "unchanged"
        source.records = [_raw("1", modified="2024-03-01T00:00:00Z")]
        assert engine.sync_record("1").outcome == "stale"

    def test_not_found_never_deletes(self, store, settings):
        source = FakeCRM([_raw("1")])
        engine = _engine(store, source, settings)
        engine.sync_record("1")
        source.records = []

        result = engine.sync_record("1")

        assert result.outcome == "not_found"
        assert store.list_keys(CRM) == {ContactKey(CRM, "1")}

    def test_invalid_record(self, store, settings):
        source = MagicMock()
        source.get_record.return_value = {"properties": {}}

        result = _engine(store, source, settings).sync_record("9")

        assert result.outcome == "invalid"
        assert result.errors

    def test_fetch_failure(self, store, settings):
        source = MagicMock()
        source.get_record.side_effect = TransientAPIError("timeout")

        result = _engine(store, source, settings).sync_record("9")

        assert result.outcome == "failed"
        assert result.errors == ["timeout"]

    def test_fans_out_flagged_record(self, store, settings):
        list_api = MagicMock()
        source = FakeCRM([_raw("1", dnc___seller_outreach="true")])
        engine = _engine(store, source, settings, list_api=list_api, channels=[DNC])

        result = engine.sync_record("1")

        assert result.fanout == [
            {
                "channel": "dnc_seller",
                "status": "subscribed",
                "used_fallback": False,
                "error": None,
            }
        ]


class TestListOperations:
    """Tests for operations needing the list service."""

    def test_requires_list_api(self, store, settings):
        engine = _engine(store, FakeCRM([]), settings)
        with pytest.raises(EngineError):
            engine.redrive_fanout()
        with pytest.raises(EngineError):
            engine.audit_lists()

    def test_audit_lists(self, store, settings):
        list_api = MagicMock()
        list_api.get_list_size.return_value = 0
        engine = _engine(
            store, FakeCRM([]), settings, list_api=list_api, channels=[DNC]
        )

        audits = engine.audit_lists()

        assert audits[0].channel == "dnc_seller"
        assert audits[0].drift == 0
