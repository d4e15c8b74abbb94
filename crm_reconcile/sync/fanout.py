"""
Fan-out of compliance flags to downstream marketing lists.

For every (contact, channel) pair where the channel's flag is set, the
contact's email is opted into the channel's list. The list service only
subscribes emails it already knows, so an unknown subscriber is retried
exactly once through create_and_subscribe(). Every outcome is persisted,
which lets later runs skip pairs already pushed at the contact's current
revision and lets redrive_failures() resend only what failed.

Delivery is at-least-once; subscribing twice is harmless downstream.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from crm_reconcile.api.base import APIError, AuthenticationError
from crm_reconcile.api.list_api import ListServiceAPI, UnknownSubscriberError
from crm_reconcile.config.sync_config import ChannelConfig
from crm_reconcile.storage.db import ContactStore
from crm_reconcile.sync.contact import CanonicalContact, ContactKey, format_timestamp

DEFAULT_FANOUT_CONCURRENCY = 4

logger = logging.getLogger(__name__)


class FanOutStatus(str, Enum):
    """Persisted outcome of one (contact, channel) push."""

    SUBSCRIBED = "subscribed"
    FAILED = "failed"
    SKIPPED = "skipped"  # e.g. no email address
    NOT_FLAGGED = "not_flagged"  # flag not set, nothing to push


@dataclass
class FanOutResult:
    """Outcome of pushing one contact to one channel."""

    key: ContactKey
    channel: str
    list_id: Optional[str]
    status: FanOutStatus
    used_fallback: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == FanOutStatus.SUBSCRIBED


@dataclass
class ChannelStats:
    """Per-channel counters for a fan-out pass."""

    successes: int = 0
    failures: int = 0
    fallbacks: int = 0
    skipped: int = 0
    already_synced: int = 0

    def add(self, result: FanOutResult) -> None:
        if result.status == FanOutStatus.SUBSCRIBED:
            self.successes += 1
        elif result.status == FanOutStatus.FAILED:
            self.failures += 1
        elif result.status == FanOutStatus.SKIPPED:
            self.skipped += 1
        if result.used_fallback:
            self.fallbacks += 1

    def to_dict(self) -> dict[str, int]:
        return dict(self.__dict__)


@dataclass
class FanOutReport:
    """Aggregated outcome of a fan-out pass."""

    channels: dict[str, ChannelStats] = field(default_factory=dict)
    failures: list[FanOutResult] = field(default_factory=list)
    cancelled: bool = False

    def stats(self, channel: str) -> ChannelStats:
        return self.channels.setdefault(channel, ChannelStats())

    def add(self, result: FanOutResult) -> None:
        self.stats(result.channel).add(result)
        if result.status == FanOutStatus.FAILED:
            self.failures.append(result)

    @property
    def total_successes(self) -> int:
        return sum(s.successes for s in self.channels.values())

    @property
    def total_failures(self) -> int:
        return sum(s.failures for s in self.channels.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "channels": {name: s.to_dict() for name, s in self.channels.items()},
            "failures": [
                {"key": str(r.key), "channel": r.channel, "error": r.error}
                for r in self.failures
            ],
            "cancelled": self.cancelled,
        }


@dataclass
class ListAudit:
    """Downstream list size against the local count of flagged contacts."""

    channel: str
    list_id: str
    local_count: int
    remote_count: Optional[int] = None
    error: Optional[str] = None

    @property
    def drift(self) -> Optional[int]:
        if self.remote_count is None:
            return None
        return self.remote_count - self.local_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "list_id": self.list_id,
            "local_count": self.local_count,
            "remote_count": self.remote_count,
            "drift": self.drift,
            "error": self.error,
        }


def _subscriber_attrs(contact: CanonicalContact) -> dict[str, Any]:
    phone = contact.attributes.get("phone_display") or contact.identity.phone
    return {
        "first_name": contact.identity.first_name,
        "last_name": contact.identity.last_name,
        "phone": phone,
    }


class FanOutDriver:
    """
    Pushes flagged contacts to downstream lists.

    Usage:
        driver = FanOutDriver(list_api, store, config.channels_for(profile))
        report = driver.run(cancel_event=event)
        for name, stats in report.channels.items():
            print(name, stats.successes, stats.failures)
    """

    def __init__(
        self,
        list_api: ListServiceAPI,
        store: ContactStore,
        channels: Sequence[ChannelConfig],
        concurrency: int = DEFAULT_FANOUT_CONCURRENCY,
        run_id: Optional[int] = None,
    ):
        self.list_api = list_api
        self.store = store
        self.channels = {c.name: c for c in channels}
        self.concurrency = max(1, concurrency)
        self.run_id = run_id

    def sync_flag(
        self, contact: CanonicalContact, channel: ChannelConfig
    ) -> FanOutResult:
        """
        Push one contact to one channel's list.

        Calls ensure_subscribed(); on an unknown subscriber, retries once
        with create_and_subscribe(). A second unknown-subscriber answer is
        a terminal failure for this pair. The outcome is persisted unless
        the contact's flag is not set.
        """
        list_id = channel.resolve_list_id()
        key = contact.key

        if not contact.compliance.is_set(channel.flag):
            return FanOutResult(key, channel.name, list_id, FanOutStatus.NOT_FLAGGED)

        if not list_id:
            return FanOutResult(
                key,
                channel.name,
                list_id,
                FanOutStatus.SKIPPED,
                error="channel has no list id",
            )

        email = contact.identity.email
        if not email:
            result = FanOutResult(
                key, channel.name, list_id, FanOutStatus.SKIPPED, error="no email"
            )
            self._persist(contact, result)
            return result

        attrs = _subscriber_attrs(contact)
        used_fallback = False
        try:
            try:
                self.list_api.ensure_subscribed(list_id, email, attrs)
            except UnknownSubscriberError:
                used_fallback = True
                logger.info(
                    f"{email} unknown to list {list_id}, creating subscriber"
                )
                self.list_api.create_and_subscribe(list_id, email, attrs)
        except UnknownSubscriberError as e:
            result = FanOutResult(
                key,
                channel.name,
                list_id,
                FanOutStatus.FAILED,
                used_fallback=True,
                error=f"subscriber still unknown after create: {e}",
            )
        except AuthenticationError as e:
            logger.error(f"List service rejected credentials: {e}")
            result = FanOutResult(
                key,
                channel.name,
                list_id,
                FanOutStatus.FAILED,
                used_fallback=used_fallback,
                error=str(e),
            )
        except APIError as e:
            result = FanOutResult(
                key,
                channel.name,
                list_id,
                FanOutStatus.FAILED,
                used_fallback=used_fallback,
                error=str(e),
            )
        else:
            result = FanOutResult(
                key,
                channel.name,
                list_id,
                FanOutStatus.SUBSCRIBED,
                used_fallback=used_fallback,
            )

        if result.status == FanOutStatus.FAILED:
            logger.warning(
                f"Fan-out of {key} to {channel.name} failed: {result.error}"
            )
        self._persist(contact, result)
        return result

    def sync_contact(self, contact: CanonicalContact) -> list[FanOutResult]:
        """Push one contact to every channel whose flag it has set."""
        return [
            self.sync_flag(contact, channel)
            for channel in self.channels.values()
            if contact.compliance.is_set(channel.flag)
        ]

    def _persist(self, contact: CanonicalContact, result: FanOutResult) -> None:
        self.store.record_fanout_outcome(
            result.key,
            result.channel,
            result.list_id or "",
            result.status.value,
            contact.revision,
            error=result.error,
            used_fallback=result.used_fallback,
            run_id=self.run_id,
        )

    def _push_all(
        self,
        pairs: list[tuple[CanonicalContact, ChannelConfig]],
        report: FanOutReport,
        cancel_event: Optional[threading.Event],
    ) -> None:
        def push(
            pair: tuple[CanonicalContact, ChannelConfig],
        ) -> Optional[FanOutResult]:
            if cancel_event is not None and cancel_event.is_set():
                return None
            return self.sync_flag(*pair)

        with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
            for result in pool.map(push, pairs):
                if result is None:
                    report.cancelled = True
                    continue
                report.add(result)

    def run(
        self,
        contacts: Optional[Iterable[CanonicalContact]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> FanOutReport:
        """
        Push every flagged (contact, channel) pair not yet pushed.

        Pairs with a successful outcome at the contact's current revision
        are skipped. Soft-deleted contacts are never pushed.

        Args:
            contacts: Contacts to consider (default: every active contact)
            cancel_event: Stops starting new pushes once set
        """
        report = FanOutReport()
        if not self.channels:
            return report

        if contacts is None:
            contacts = self.store.iter_contacts()
        outcomes = self.store.get_fanout_outcomes(
            status=FanOutStatus.SUBSCRIBED.value
        )

        pairs: list[tuple[CanonicalContact, ChannelConfig]] = []
        for contact in contacts:
            if contact.source_deleted:
                continue
            for channel in self.channels.values():
                if not contact.compliance.is_set(channel.flag):
                    continue
                previous = outcomes.get((contact.key, channel.name))
                if previous and previous["revision"] == format_timestamp(
                    contact.revision
                ):
                    report.stats(channel.name).already_synced += 1
                    continue
                pairs.append((contact, channel))

        logger.info(f"Fanning out {len(pairs)} contact/channel pairs")
        self._push_all(pairs, report, cancel_event)
        return report

    def redrive_failures(
        self, cancel_event: Optional[threading.Event] = None
    ) -> FanOutReport:
        """
        Resend only the pairs whose last outcome was a failure.

        Pairs whose contact is gone, soft-deleted or no longer flagged are
        dropped; channels no longer configured are ignored.
        """
        report = FanOutReport()
        failed = self.store.get_fanout_outcomes(status=FanOutStatus.FAILED.value)

        pairs: list[tuple[CanonicalContact, ChannelConfig]] = []
        for key, channel_name in sorted(failed, key=lambda k: (str(k[0]), k[1])):
            channel = self.channels.get(channel_name)
            if channel is None:
                continue
            contact = self.store.get_contact(key)
            if contact is None or contact.source_deleted:
                continue
            if not contact.compliance.is_set(channel.flag):
                continue
            pairs.append((contact, channel))

        logger.info(f"Redriving {len(pairs)} failed fan-out pairs")
        self._push_all(pairs, report, cancel_event)
        return report

    def audit_lists(self) -> list[ListAudit]:
        """
        Compare each list's reported size with the local flagged count.

        A positive drift means the list holds more subscribers than
        contacts flagged locally (the list is also fed from elsewhere, or
        flags were cleared); a negative drift means pushes are missing.
        """
        counts = {name: 0 for name in self.channels}
        for contact in self.store.iter_contacts():
            if not contact.identity.email:
                continue
            for name, channel in self.channels.items():
                if contact.compliance.is_set(channel.flag):
                    counts[name] += 1

        audits = []
        for name, channel in self.channels.items():
            list_id = channel.resolve_list_id() or ""
            audit = ListAudit(name, list_id, counts[name])
            if not list_id:
                audit.error = "channel has no list id"
                audits.append(audit)
                continue
            try:
                audit.remote_count = self.list_api.get_list_size(list_id)
            except APIError as e:
                logger.warning(f"Could not read size of list {list_id}: {e}")
                audit.error = str(e)
            audits.append(audit)
        return audits
