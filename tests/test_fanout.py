"""
Tests for compliance flag fan-out.

The list service is a MagicMock; outcomes are persisted to an in-memory
ContactStore.
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from crm_reconcile.api.base import AuthenticationError, TransientAPIError
from crm_reconcile.api.list_api import UnknownSubscriberError
from crm_reconcile.config.sync_config import ChannelConfig
from crm_reconcile.storage.db import ContactStore
from crm_reconcile.sync.contact import (
    CanonicalContact,
    ComplianceFlags,
    ContactSource,
    IdentityFields,
)
from crm_reconcile.sync.fanout import FanOutDriver, FanOutStatus

CRM = ContactSource.EXTERNAL_CRM
T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

DNC = ChannelConfig(name="dnc_seller", flag="seller_outreach_suppressed", list_id="L1")
COLD = ChannelConfig(name="cold_buyer", flag="buyer_cold_lead", list_id="L2")


@pytest.fixture
def store():
    store = ContactStore(":memory:")
    store.initialize()
    return store


@pytest.fixture
def list_api():
    return MagicMock()


def _put(store, natural_key, flags, email="x@example.com", revision=T0):
    contact = CanonicalContact(
        natural_key=natural_key,
        source=CRM,
        identity=IdentityFields(first_name="Pat", email=email),
        compliance=ComplianceFlags(flags={f: True for f in flags}),
        revision=revision,
    )
    with store.transaction() as conn:
        store.write_contact(conn, contact, contact.content_hash())
    return contact


class TestSyncFlag:
    """Tests for pushing one contact to one channel."""

    def test_subscribes_known_subscriber(self, store, list_api):
        contact = _put(store, "1", ["seller_outreach_suppressed"])
        driver = FanOutDriver(list_api, store, [DNC])

        result = driver.sync_flag(contact, DNC)

        assert result.status == FanOutStatus.SUBSCRIBED
        assert not result.used_fallback
        list_api.ensure_subscribed.assert_called_once_with(
            "L1",
            "x@example.com",
            {"first_name": "Pat", "last_name": None, "phone": None},
        )
        list_api.create_and_subscribe.assert_not_called()

    def test_unknown_subscriber_falls_back_once(self, store, list_api):
        contact = _put(store, "1", ["seller_outreach_suppressed"])
        list_api.ensure_subscribed.side_effect = UnknownSubscriberError("unknown", 404)
        driver = FanOutDriver(list_api, store, [DNC])

        result = driver.sync_flag(contact, DNC)

        assert result.status == FanOutStatus.SUBSCRIBED
        assert result.used_fallback
        assert list_api.create_and_subscribe.call_count == 1
        outcome = store.get_fanout_outcomes()[(contact.key, "dnc_seller")]
        assert outcome["used_fallback"] == 1

    def test_second_unknown_is_terminal(self, store, list_api):
        contact = _put(store, "1", ["seller_outreach_suppressed"])
        list_api.ensure_subscribed.side_effect = UnknownSubscriberError("unknown", 404)
        list_api.create_and_subscribe.side_effect = UnknownSubscriberError(
            "still unknown", 404
        )
        driver = FanOutDriver(list_api, store, [DNC])

        result = driver.sync_flag(contact, DNC)

        assert result.status == FanOutStatus.FAILED
        assert "still unknown after create" in result.error
        assert list_api.create_and_subscribe.call_count == 1
        assert list_api.ensure_subscribed.call_count == 1

    def test_api_error_is_failure(self, store, list_api):
        contact = _put(store, "1", ["seller_outreach_suppressed"])
        list_api.ensure_subscribed.side_effect = TransientAPIError("timeout")
        driver = FanOutDriver(list_api, store, [DNC])

        result = driver.sync_flag(contact, DNC)

        assert result.status == FanOutStatus.FAILED
        assert store.get_fanout_outcomes(status="failed")

    def test_authentication_error_is_failure(self, store, list_api):
        contact = _put(store, "1", ["seller_outreach_suppressed"])
        list_api.ensure_subscribed.side_effect = AuthenticationError("401", 401)

        result = FanOutDriver(list_api, store, [DNC]).sync_flag(contact, DNC)

        assert result.status == FanOutStatus.FAILED

    def test_not_flagged(self, store, list_api):
        contact = _put(store, "1", [])

        result = FanOutDriver(list_api, store, [DNC]).sync_flag(contact, DNC)

        assert result.status == FanOutStatus.NOT_FLAGGED
        list_api.ensure_subscribed.assert_not_called()
        assert store.get_fanout_outcomes() == {}

    def test_no_list_id_skipped_and_not_persisted(self, store, list_api, monkeypatch):
        monkeypatch.delenv("CRM_RECONCILE_TEST_UNSET_LIST", raising=False)
        contact = _put(store, "1", ["seller_outreach_suppressed"])
        unconfigured = ChannelConfig(
            name="dnc_seller",
            flag="seller_outreach_suppressed",
            list_id_env="CRM_RECONCILE_TEST_UNSET_LIST",
        )

        result = FanOutDriver(list_api, store, [unconfigured]).sync_flag(
            contact, unconfigured
        )

        assert result.status == FanOutStatus.SKIPPED
        list_api.ensure_subscribed.assert_not_called()
        assert store.get_fanout_outcomes() == {}

    def test_no_email_skipped(self, store, list_api):
        contact = _put(store, "1", ["seller_outreach_suppressed"], email=None)

        result = FanOutDriver(list_api, store, [DNC]).sync_flag(contact, DNC)

        assert result.status == FanOutStatus.SKIPPED
        assert result.error == "no email"
        assert store.get_fanout_outcomes(status="skipped")


class TestRun:
    """Tests for a full fan-out pass."""

    def test_pushes_each_flagged_pair(self, store, list_api):
        _put(store, "1", ["seller_outreach_suppressed", "buyer_cold_lead"])
        _put(store, "2", ["buyer_cold_lead"])
        _put(store, "3", [])

        report = FanOutDriver(list_api, store, [DNC, COLD]).run()

        assert report.channels["dnc_seller"].successes == 1
        assert report.channels["cold_buyer"].successes == 2
        assert report.total_failures == 0
        assert list_api.ensure_subscribed.call_count == 3

    def test_second_run_skips_pushed_pairs(self, store, list_api):
        _put(store, "1", ["seller_outreach_suppressed"])
        driver = FanOutDriver(list_api, store, [DNC])
        driver.run()

        report = driver.run()

        assert report.channels["dnc_seller"].already_synced == 1
        assert list_api.ensure_subscribed.call_count == 1

    def test_new_revision_pushed_again(self, store, list_api):
        _put(store, "1", ["seller_outreach_suppressed"])
        driver = FanOutDriver(list_api, store, [DNC])
        driver.run()
        _put(store, "1", ["seller_outreach_suppressed"], revision=T0 + timedelta(1))

        driver.run()

        assert list_api.ensure_subscribed.call_count == 2

    def test_soft_deleted_contacts_not_pushed(self, store, list_api):
        contact = _put(store, "1", ["seller_outreach_suppressed"])
        with store.transaction() as conn:
            store.soft_delete(conn, contact.key, T0)
        deleted = store.get_contact(contact.key)

        report = FanOutDriver(list_api, store, [DNC]).run(contacts=[deleted])

        assert report.total_successes == 0
        list_api.ensure_subscribed.assert_not_called()

    def test_no_channels(self, store, list_api):
        _put(store, "1", ["seller_outreach_suppressed"])
        report = FanOutDriver(list_api, store, []).run()
        assert report.channels == {}

    def test_cancelled_before_start(self, store, list_api):
        _put(store, "1", ["seller_outreach_suppressed"])
        event = threading.Event()
        event.set()

        report = FanOutDriver(list_api, store, [DNC]).run(cancel_event=event)

        assert report.cancelled
        list_api.ensure_subscribed.assert_not_called()

    def test_failures_listed_in_report(self, store, list_api):
        _put(store, "1", ["seller_outreach_suppressed"])
        list_api.ensure_subscribed.side_effect = TransientAPIError("boom")

        report = FanOutDriver(list_api, store, [DNC]).run()

        assert report.total_failures == 1
        assert report.to_dict()["failures"] == [
            {"key": "external_crm:1", "channel": "dnc_seller", "error": "boom"}
        ]


class TestRedrive:
    """Tests for resending failed pairs."""

    def test_redrives_only_failures(self, store, list_api):
        _put(store, "1", ["seller_outreach_suppressed"])
        _put(store, "2", ["seller_outreach_suppressed"])
        list_api.ensure_subscribed.side_effect = [None, TransientAPIError("boom")]
        driver = FanOutDriver(list_api, store, [DNC], concurrency=1)
        driver.run()
        list_api.ensure_subscribed.reset_mock(side_effect=True)

        report = driver.redrive_failures()

        assert report.total_successes == 1
        list_api.ensure_subscribed.assert_called_once()
        assert store.get_fanout_outcomes(status="failed") == {}

    def test_unflagged_contacts_dropped(self, store, list_api):
        _put(store, "1", ["seller_outreach_suppressed"])
        list_api.ensure_subscribed.side_effect = TransientAPIError("boom")
        driver = FanOutDriver(list_api, store, [DNC])
        driver.run()
        _put(store, "1", [])
        list_api.ensure_subscribed.reset_mock(side_effect=True)

        report = driver.redrive_failures()

        assert report.channels == {}
        list_api.ensure_subscribed.assert_not_called()

    def test_outcome_attempts_counted(self, store, list_api):
        contact = _put(store, "1", ["seller_outreach_suppressed"])
        list_api.ensure_subscribed.side_effect = TransientAPIError("boom")
        driver = FanOutDriver(list_api, store, [DNC])
        driver.run()
        driver.redrive_failures()

        outcome = store.get_fanout_outcomes()[(contact.key, "dnc_seller")]
        assert outcome["attempts"] == 2
        assert outcome["status"] == "failed"


class TestAuditLists:
    """Tests for list size audits."""

    def test_drift_per_channel(self, store, list_api):
        _put(store, "1", ["seller_outreach_suppressed"])
        _put(store, "2", ["seller_outreach_suppressed"], email=None)
        list_api.get_list_size.side_effect = lambda list_id: {"L1": 3, "L2": 0}[list_id]

        audits = FanOutDriver(list_api, store, [DNC, COLD]).audit_lists()

        by_channel = {a.channel: a for a in audits}
        assert by_channel["dnc_seller"].local_count == 1
        assert by_channel["dnc_seller"].drift == 2
        assert by_channel["cold_buyer"].drift == 0

    def test_unreadable_list(self, store, list_api):
        list_api.get_list_size.side_effect = TransientAPIError("timeout")

        audits = FanOutDriver(list_api, store, [DNC]).audit_lists()

        assert audits[0].drift is None
        assert audits[0].error == "timeout"

    def test_channel_without_list_id(self, store, list_api):
        unconfigured = ChannelConfig(name="dnc_buyer", flag="buyer_outreach_suppressed")

        audits = FanOutDriver(list_api, store, [unconfigured]).audit_lists()

        assert audits[0].error == "channel has no list id"
        list_api.get_list_size.assert_not_called()

    def test_key_in_outcomes(self, store, list_api):
        contact = _put(store, "1", ["seller_outreach_suppressed"])
        FanOutDriver(list_api, store, [DNC]).run()
        assert list(store.get_fanout_outcomes()) == [(contact.key, "dnc_seller")]
