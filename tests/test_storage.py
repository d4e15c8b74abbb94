"""
Unit tests for the storage module.

Tests the ContactStore class for contact, ledger, run history, fan-out
outcome and investigation operations.
"""

from datetime import datetime, timezone

import pytest

from crm_reconcile.storage.db import ContactStore, StoreError
from crm_reconcile.sync.contact import (
    CanonicalContact,
    ContactKey,
    ContactSource,
    IdentityFields,
)

CRM = ContactSource.EXTERNAL_CRM
SHEET = ContactSource.SPREADSHEET_IMPORT
T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    store = ContactStore(":memory:")
    store.initialize()
    return store


def _put(store, natural_key, source=CRM, **identity):
    contact = CanonicalContact(
        natural_key=natural_key,
        source=source,
        identity=IdentityFields(**identity),
        revision=T0,
    )
    with store.transaction() as conn:
        store.write_contact(conn, contact, contact.content_hash())
    return contact


class TestContactStoreInitialization:
    """Tests for database initialization."""

    def test_create_in_memory_database(self):
        store = ContactStore(":memory:")
        assert store.is_memory

    def test_initialize_creates_tables(self, store):
        with store.connection() as conn:
            names = {
                row["name"]
                for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                )
            }
        assert {
            "contacts",
            "quarantine_ledger",
            "sync_runs",
            "fanout_outcomes",
            "investigations",
        } <= names

    def test_initialize_is_idempotent(self, store):
        store.initialize()

    def test_file_database(self, tmp_path):
        store = ContactStore(str(tmp_path / "contacts.db"))
        store.initialize()
        _put(store, "1")
        assert ContactStore(str(tmp_path / "contacts.db")).count_contacts() == 1


class TestContactOperations:
    """Tests for contact reads and writes."""

    def test_write_and_get(self, store):
        _put(store, "1", email="a@example.com")
        contact = store.get_contact(ContactKey(CRM, "1"))
        assert contact.identity.email == "a@example.com"
        assert contact.revision == T0

    def test_get_missing(self, store):
        assert store.get_contact(ContactKey(CRM, "nope")) is None

    def test_upsert_keeps_one_row(self, store):
        _put(store, "1", email="a@example.com")
        _put(store, "1", email="b@example.com")
        assert store.count_contacts() == 1
        assert store.get_contact(ContactKey(CRM, "1")).identity.email == "b@example.com"

    def test_same_natural_key_in_two_sources(self, store):
        _put(store, "1")
        _put(store, "1", source=SHEET)
        assert store.count_contacts() == 2
        assert store.list_keys(CRM) == {ContactKey(CRM, "1")}

    def test_empty_key_violates_check_constraint(self, store):
        contact = CanonicalContact(natural_key=" ", source=CRM)
        with pytest.raises(StoreError, match="CHECK constraint"):
            with store.transaction() as conn:
                store.write_contact(conn, contact, contact.content_hash())
        assert store.count_contacts() == 0

    def test_soft_delete(self, store):
        _put(store, "1")
        with store.transaction() as conn:
            assert store.soft_delete(conn, ContactKey(CRM, "1"), T0) is True
        with store.transaction() as conn:
            assert store.soft_delete(conn, ContactKey(CRM, "1"), T0) is False

        assert store.list_keys(CRM) == set()
        assert store.list_keys(CRM, include_deleted=True) == {ContactKey(CRM, "1")}
        assert store.count_deleted() == 1
        deleted = store.get_contact(ContactKey(CRM, "1"))
        assert deleted.source_deleted_at == T0

    def test_savepoint_rolls_back_only_inner_writes(self, store):
        with store.transaction() as conn:
            first = CanonicalContact(natural_key="1", source=CRM)
            store.write_contact(conn, first, first.content_hash())
            with pytest.raises(RuntimeError):
                with store.savepoint(conn, "inner"):
                    second = CanonicalContact(natural_key="2", source=CRM)
                    store.write_contact(conn, second, second.content_hash())
                    raise RuntimeError("boom")
        assert store.list_keys(CRM) == {ContactKey(CRM, "1")}

    def test_set_sync_error(self, store):
        _put(store, "1")
        assert store.set_sync_error(ContactKey(CRM, "1"), "bad phone") is True
        assert store.set_sync_error(ContactKey(CRM, "2"), "x") is False
        contact = store.get_contact(ContactKey(CRM, "1"))
        assert contact.sync_state.last_sync_error == "bad phone"

    def test_identity_index_spans_sources(self, store):
        _put(store, "1", email="a@example.com")
        _put(store, "r1", source=SHEET, phone="5551234567")
        index = store.identity_index()
        assert index[ContactKey(CRM, "1")].email == "a@example.com"
        assert index[ContactKey(SHEET, "r1")].phone == "5551234567"

    def test_iter_contacts_filters_source(self, store):
        _put(store, "1")
        _put(store, "r1", source=SHEET)
        assert [c.natural_key for c in store.iter_contacts(SHEET)] == ["r1"]

    def test_sql_errors_become_store_errors(self, store):
        with pytest.raises(StoreError):
            with store.connection() as conn:
                conn.execute("SELECT * FROM no_such_table")


class TestLedgerOperations:
    """Tests for quarantine ledger persistence."""

    def test_save_and_load(self, store):
        store.save_ledger(
            CRM,
            {"1": {"history": "PA", "quarantined_until_run": 4, "last_run_number": 2}},
        )
        assert store.load_ledger(CRM) == {
            "1": {"history": "PA", "quarantined_until_run": 4, "last_run_number": 2}
        }
        assert store.load_ledger(SHEET) == {}

    def test_save_replaces_entries(self, store):
        store.save_ledger(CRM, {"1": {"history": "P"}, "2": {"history": "P"}})
        store.save_ledger(CRM, {"2": {"history": "PP"}})
        assert set(store.load_ledger(CRM)) == {"2"}

    def test_run_number_saved_with_entries(self, store):
        assert store.load_ledger_run(CRM) == 0

        store.save_ledger(CRM, {"1": {"history": "P"}}, run_number=3)
        store.save_ledger(CRM, {"1": {"history": "PP"}})

        assert store.load_ledger_run(CRM) == 3
        assert store.load_ledger_run(SHEET) == 0

    def test_clear(self, store):
        store.save_ledger(CRM, {"1": {"history": "P"}})
        store.save_ledger(SHEET, {"r": {"history": "P"}})
        assert store.clear_ledger(CRM) == 1
        assert store.clear_ledger() == 1
        assert store.load_ledger_run(CRM) == 0

    def test_clear_one_source_keeps_other_run_numbers(self, store):
        store.save_ledger(CRM, {}, run_number=2)
        store.save_ledger(SHEET, {}, run_number=5)

        store.clear_ledger(CRM)

        assert store.load_ledger_run(CRM) == 0
        assert store.load_ledger_run(SHEET) == 5


class TestRunHistory:
    """Tests for run bookkeeping."""

    def test_start_and_finish(self, store):
        run_id = store.start_run("default", CRM, started_at=T0)
        store.finish_run(run_id, "completed", {"upserts_applied": 3}, finished_at=T0)

        runs = store.get_runs()
        assert runs[0]["id"] == run_id
        assert runs[0]["status"] == "completed"
        assert runs[0]["report"] == {"upserts_applied": 3}

    def test_runs_of_each_profile_are_kept(self, store):
        store.finish_run(store.start_run("default", CRM), "completed", {})
        store.finish_run(store.start_run("other", CRM), "aborted", {})

        assert [r["profile"] for r in store.get_runs(profile="other")] == ["other"]
        assert len(store.get_runs()) == 2

    def test_clear_run_history(self, store):
        store.start_run("default", CRM)
        assert store.clear_run_history() == 1
        assert store.get_runs() == []


class TestFanOutOutcomes:
    """Tests for fan-out outcome persistence."""

    def test_record_and_update(self, store):
        key = ContactKey(CRM, "1")
        store.record_fanout_outcome(key, "dnc_seller", "L1", "failed", T0, error="x")
        store.record_fanout_outcome(
            key, "dnc_seller", "L1", "subscribed", T0, used_fallback=True
        )

        outcomes = store.get_fanout_outcomes()
        row = outcomes[(key, "dnc_seller")]
        assert row["status"] == "subscribed"
        assert row["attempts"] == 2
        assert row["used_fallback"] == 1
        assert row["error"] is None

    def test_filter_by_status(self, store):
        store.record_fanout_outcome(ContactKey(CRM, "1"), "a", "L", "failed", T0)
        store.record_fanout_outcome(ContactKey(CRM, "2"), "a", "L", "subscribed", T0)
        assert list(store.get_fanout_outcomes(status="failed")) == [
            (ContactKey(CRM, "1"), "a")
        ]


class TestInvestigations:
    """Tests for identity match bookkeeping."""

    def test_pairs_collapse_regardless_of_order(self, store):
        a, b = ContactKey(CRM, "1"), ContactKey(SHEET, "r1")
        assert store.record_investigations([(a, b, "exact_email", 1.0)]) == 1
        assert store.record_investigations([(b, a, "exact_email", 1.0)]) == 0
        assert len(store.get_investigations()) == 1

    def test_resolve(self, store):
        a, b = ContactKey(CRM, "1"), ContactKey(SHEET, "r1")
        store.record_investigations([(a, b, "exact_phone", 1.0)])
        investigation_id = store.get_investigations()[0]["id"]

        assert store.resolve_investigation(investigation_id, "dismissed") is True
        assert store.get_investigations() == []
        assert store.get_investigations(status=None)[0]["status"] == "dismissed"
