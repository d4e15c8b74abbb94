"""
Tests for cursor pagination.

A fake source serves numbered records behind a numeric offset cursor and
fails selected (cursor, page size) requests so that each rung of the
failure ladder can be exercised.
"""

import threading
from collections import defaultdict

import pytest

from crm_reconcile.api.base import (
    AuthenticationError,
    NotFoundError,
    TransientAPIError,
)
from crm_reconcile.api.source_api import Page, SourceCRMAPI
from crm_reconcile.sync.paginator import (
    CursorPaginator,
    PaginationAbortedError,
)
from crm_reconcile.utils.backoff import BackoffPolicy


class FakeSource:
    """In-memory listing with scripted failures."""

    def __init__(self, total):
        self.records = [{"id": str(i), "properties": {}} for i in range(1, total + 1)]
        # (cursor, size) -> number of failures left; -1 fails forever
        self.failures = {}
        self.failing_sizes_at = {}
        self.bad_ids = set()
        self.permanent_at = None
        self.calls = defaultdict(int)

    def fetch_page(self, cursor, page_size, properties=None):
        self.calls[(cursor, page_size)] += 1
        if self.permanent_at is not None and cursor == self.permanent_at:
            raise AuthenticationError("401 Unauthorized", 401)
        max_size = self.failing_sizes_at.get(cursor)
        if max_size is not None and page_size > max_size:
            raise TransientAPIError("502 Bad Gateway", 502)
        remaining = self.failures.get((cursor, page_size), 0)
        if remaining:
            if remaining > 0:
                self.failures[(cursor, page_size)] = remaining - 1
            raise TransientAPIError("500 Internal Server Error", 500)
        return self._slice(cursor, page_size)

    def fetch_page_ids(self, cursor, page_size):
        page = self._slice(cursor, page_size)
        page.records = [{"id": r["id"]} for r in page.records]
        return page

    def get_record(self, record_id, properties=None):
        if record_id in self.bad_ids:
            raise NotFoundError(f"Contact {record_id} not found", 404)
        return self.records[int(record_id) - 1]

    advance_cursor = staticmethod(SourceCRMAPI.advance_cursor)

    def _slice(self, cursor, page_size):
        offset = int(cursor or 0)
        chunk = self.records[offset : offset + page_size]
        end = offset + page_size
        next_cursor = str(end) if end < len(self.records) else None
        return Page(records=list(chunk), next_cursor=next_cursor)


def _paginator(api, **kwargs):
    kwargs.setdefault("retry_policy", BackoffPolicy(max_attempts=2, jitter=False))
    kwargs.setdefault("sleep", lambda seconds: None)
    return CursorPaginator(api, **kwargs)


def _ids(records):
    return [r["id"] for r in records]


class TestHappyPath:
    """Tests for walks without failures."""

    def test_walks_every_page(self):
        api = FakeSource(250)
        paginator = _paginator(api, page_size=100)

        records = list(paginator.records())

        assert _ids(records) == [str(i) for i in range(1, 251)]
        assert paginator.stats.pages_fetched == 3
        assert not paginator.stats.gapped
        assert paginator.checkpoint is None

    def test_empty_source(self):
        paginator = _paginator(FakeSource(0))
        assert list(paginator.records()) == []
        assert paginator.stats.pages_fetched == 1

    def test_resume_from_cursor(self):
        paginator = _paginator(FakeSource(250), page_size=100, start_cursor="200")
        assert _ids(paginator.records())[0] == "201"

    def test_page_size_validated(self):
        with pytest.raises(ValueError):
            CursorPaginator(FakeSource(1), page_size=0)


class TestFailureLadder:
    """Tests for retry, narrowing, id recovery and skipping."""

    def test_narrowing_recovers_page_without_gap(self):
        """Page two fails at full width twice, then succeeds at half width."""
        api = FakeSource(250)
        api.failures[("100", 100)] = 2
        paginator = _paginator(api, page_size=100)

        records = list(paginator.records())

        assert _ids(records) == [str(i) for i in range(1, 251)]
        assert len(set(_ids(records))) == 250
        assert paginator.stats.pages_recovered == 1
        assert paginator.stats.narrowings == 1
        assert paginator.stats.gaps == []
        assert api.calls[("100", 100)] == 2
        assert api.calls[("100", 50)] == 1

    def test_retry_on_same_cursor_counts_as_recovered(self):
        api = FakeSource(150)
        api.failures[("100", 100)] = 1
        sleeps = []
        paginator = _paginator(api, page_size=100, sleep=sleeps.append)

        assert len(list(paginator.records())) == 150
        assert paginator.stats.pages_recovered == 1
        assert paginator.stats.narrowings == 0
        assert sleeps == [1.0]

    def test_narrows_repeatedly(self):
        api = FakeSource(120)
        api.failing_sizes_at["100"] = 10
        paginator = _paginator(api, page_size=100, min_page_size=5)

        records = list(paginator.records())

        assert len(records) == 120
        # 100 -> 50 -> 25 -> 12 -> 6
        assert paginator.stats.narrowings == 4
        assert not paginator.stats.gapped

    def test_id_recovery_with_unfetchable_record(self):
        api = FakeSource(30)
        api.failing_sizes_at["10"] = 0
        api.bad_ids = {"13"}
        paginator = _paginator(api, page_size=10, min_page_size=5)

        records = list(paginator.records())

        assert len(records) == 29
        assert "13" not in _ids(records)
        assert paginator.stats.pages_recovered_by_id == 1
        gap = paginator.stats.gaps[0]
        assert gap.record_ids == ["13"]
        assert gap.estimated_records == 1
        assert not gap.terminal

    def test_skip_records_gap_and_continues(self):
        api = FakeSource(30)
        api.failing_sizes_at["10"] = 0
        paginator = _paginator(api, page_size=10, min_page_size=5, recover_by_id=False)

        records = list(paginator.records())

        assert _ids(records) == [str(i) for i in range(1, 11)] + [
            str(i) for i in range(21, 31)
        ]
        gap = paginator.stats.gaps[0]
        assert gap.cursor == "10"
        assert gap.estimated_records == 10
        assert not gap.terminal
        assert paginator.stats.gap_records == 10
        assert not paginator.stats.terminated_early

    def test_unadvanceable_cursor_is_terminal(self):
        api = FakeSource(30)
        api.advance_cursor = lambda cursor, offset: None
        api.failing_sizes_at["10"] = 0
        paginator = _paginator(api, page_size=10, min_page_size=10, recover_by_id=False)

        records = list(paginator.records())

        assert len(records) == 10
        assert paginator.stats.gaps[0].terminal
        assert paginator.stats.terminated_early

    def test_permanent_error_aborts(self):
        api = FakeSource(30)
        api.permanent_at = "10"
        paginator = _paginator(api, page_size=10)

        with pytest.raises(PaginationAbortedError) as excinfo:
            list(paginator.records())

        assert excinfo.value.gap.fatal
        assert paginator.stats.gaps[0].fatal
        assert api.calls[("10", 10)] == 1


class TestWalkControl:
    """Tests for cancellation and cursor loops."""

    def test_cancel_stops_with_checkpoint(self):
        event = threading.Event()
        paginator = _paginator(FakeSource(250), page_size=100, cancel_event=event)

        pages = paginator.pages()
        first = next(pages)
        event.set()
        rest = list(pages)

        assert len(first.records) == 100
        assert rest == []
        assert paginator.stats.cancelled
        assert paginator.checkpoint == "100"

    def test_repeated_cursor_stops_walk(self):
        class LoopingSource(FakeSource):
            def _slice(self, cursor, page_size):
                page = super()._slice(cursor, page_size)
                page.next_cursor = "0"
                return page

        paginator = _paginator(LoopingSource(50), page_size=10, start_cursor="0")

        records = list(paginator.records())

        assert len(records) == 10
        assert paginator.stats.gaps[0].reason == "Cursor did not advance"
        assert paginator.stats.gaps[0].terminal
