"""
Cursor pagination over the source CRM listing endpoint.

CursorPaginator turns the source's page-at-a-time listing into a lazy,
restartable stream of raw records. A failing page is never allowed to stop
the whole walk unless the failure is permanent:

1. transient failures are retried on the same cursor with backoff
2. then the page size is halved down to ``min_page_size``
3. then the page is re-listed with an id-only projection and its records
   are fetched one by one
4. then the cursor is advanced by one page width and a gap is recorded

Permanent failures (4xx, authentication) abort with PaginationAbortedError.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Optional

from crm_reconcile.api.base import (
    APIError,
    AuthenticationError,
    PermanentAPIError,
    TransientAPIError,
)
from crm_reconcile.api.source_api import DEFAULT_PAGE_SIZE, Page
from crm_reconcile.utils.backoff import BackoffPolicy

DEFAULT_MIN_PAGE_SIZE = 1
DEFAULT_PAGE_FETCH_CONCURRENCY = 4

logger = logging.getLogger(__name__)


@dataclass
class PageGap:
    """
    A range of records the paginator could not fetch.

    Attributes:
        cursor: Cursor of the failing page
        page_size: Page width that was skipped
        estimated_records: Best estimate of records lost
        reason: Last error seen
        fatal: The run was aborted at this gap
        terminal: Pagination could not continue past this gap
        record_ids: Ids of individually unfetchable records, if known
    """

    cursor: Optional[str]
    page_size: int
    estimated_records: int
    reason: str
    fatal: bool = False
    terminal: bool = False
    record_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cursor": self.cursor,
            "page_size": self.page_size,
            "estimated_records": self.estimated_records,
            "reason": self.reason,
            "fatal": self.fatal,
            "terminal": self.terminal,
            "record_ids": list(self.record_ids),
        }


@dataclass
class PaginationStats:
    """Counters for one pagination walk."""

    pages_fetched: int = 0
    pages_recovered: int = 0
    pages_recovered_by_id: int = 0
    records_fetched: int = 0
    retries: int = 0
    narrowings: int = 0
    gaps: list[PageGap] = field(default_factory=list)
    cancelled: bool = False

    @property
    def gapped(self) -> bool:
        return bool(self.gaps)

    @property
    def gap_records(self) -> int:
        return sum(g.estimated_records for g in self.gaps)

    @property
    def terminated_early(self) -> bool:
        return any(g.terminal or g.fatal for g in self.gaps)


class PaginationAbortedError(Exception):
    """Raised when a permanent failure makes further pagination pointless."""

    def __init__(self, message: str, gap: PageGap):
        super().__init__(message)
        self.gap = gap


class _PageFailed(Exception):
    """Internal: every attempt on one (cursor, size) failed transiently."""

    def __init__(self, last_error: APIError):
        super().__init__(str(last_error))
        self.last_error = last_error


class CursorPaginator:
    """
    Lazy, restartable walk over a cursor-paginated listing.

    The source API must provide ``fetch_page(cursor, page_size, properties)``
    and ``advance_cursor(cursor, offset)``; ``fetch_page_ids`` and
    ``get_record`` enable id-based recovery of a failing page.

    Usage:
        paginator = CursorPaginator(api, page_size=100, properties=props)
        for record in paginator.records():
            ...
        if paginator.stats.gapped:
            ...
        resume_from = paginator.checkpoint

    Attributes:
        stats: Counters and gaps for the walk so far
        checkpoint: Cursor of the next page to fetch (None once finished)
    """

    def __init__(
        self,
        api: Any,
        page_size: int = DEFAULT_PAGE_SIZE,
        min_page_size: int = DEFAULT_MIN_PAGE_SIZE,
        properties: Optional[list[str]] = None,
        retry_policy: Optional[BackoffPolicy] = None,
        recover_by_id: bool = True,
        page_fetch_concurrency: int = DEFAULT_PAGE_FETCH_CONCURRENCY,
        start_cursor: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.api = api
        self.page_size = page_size
        self.min_page_size = max(1, min(min_page_size, page_size))
        self.properties = list(properties or [])
        self.retry_policy = retry_policy or BackoffPolicy()
        self.recover_by_id = recover_by_id
        self.page_fetch_concurrency = max(1, page_fetch_concurrency)
        self.start_cursor = start_cursor
        self.cancel_event = cancel_event
        self.stats = PaginationStats()
        self.checkpoint: Optional[str] = start_cursor
        self._sleep = sleep

    @property
    def last_cursor(self) -> Optional[str]:
        """Cursor to pass as ``start_cursor`` to resume this walk."""
        return self.checkpoint

    # -------------------------------------------------------------------------
    # Single page with the failure ladder
    # -------------------------------------------------------------------------

    def _attempt(
        self,
        fetch: Callable[[], Page],
        description: str,
    ) -> tuple[Page, int]:
        """
        Run one fetch with retries on transient failures.

        Returns:
            Tuple of (page, attempts used)

        Raises:
            _PageFailed: When every attempt failed transiently
            PermanentAPIError: Immediately, without retrying
        """
        attempts = max(self.retry_policy.max_attempts, 1)
        last_error: Optional[APIError] = None

        for attempt in range(attempts):
            if last_error is not None:
                delay = self.retry_policy.delay(attempt - 1)
                self.stats.retries += 1
                logger.warning(
                    f"{description} failed ({last_error}), retrying in "
                    f"{delay:.1f}s (attempt {attempt + 1}/{attempts})"
                )
                self._sleep(delay)
            try:
                return fetch(), attempt + 1
            except TransientAPIError as e:
                last_error = e

        raise _PageFailed(last_error or TransientAPIError(f"{description} failed"))

    def _abort(self, cursor: Optional[str], page_size: int, error: APIError) -> None:
        gap = PageGap(
            cursor=cursor,
            page_size=page_size,
            estimated_records=0,
            reason=str(error),
            fatal=True,
            terminal=True,
        )
        self.stats.gaps.append(gap)
        logger.error(f"Pagination aborted at cursor {cursor!r}: {error}")
        raise PaginationAbortedError(
            f"Permanent failure at cursor {cursor!r}: {error}", gap
        ) from error

    def _fetch_sized(self, cursor: Optional[str], size: int) -> tuple[Page, int]:
        return self._attempt(
            lambda: self.api.fetch_page(cursor, size, self.properties),
            f"Page at cursor {cursor!r} (size {size})",
        )

    def fetch_page(
        self, cursor: Optional[str], page_size: Optional[int] = None
    ) -> Page:
        """
        Fetch the page at ``cursor``, escalating through the failure ladder.

        A page that needed retries, narrowing or id recovery counts as
        recovered.

        Returns:
            The page. A skipped page comes back with no records and the
            advanced cursor; if the cursor cannot be advanced the page has
            ``next_cursor`` None and a terminal gap is recorded.

        Raises:
            PaginationAbortedError: On a permanent (non-transient) failure
        """
        size = page_size or self.page_size
        last_error: Optional[APIError] = None

        try:
            # Same cursor, full size
            try:
                page, attempts = self._fetch_sized(cursor, size)
                if attempts > 1:
                    self.stats.pages_recovered += 1
                    logger.info(
                        f"Recovered page at cursor {cursor!r} after {attempts} attempts"
                    )
                return self._accept(page, cursor, size)
            except _PageFailed as failed:
                last_error = failed.last_error

            # Narrower pages route around records that fault the server
            narrowed = size
            while narrowed > self.min_page_size:
                narrowed = max(narrowed // 2, self.min_page_size)
                self.stats.narrowings += 1
                logger.warning(
                    f"Narrowing page at cursor {cursor!r} to {narrowed} records"
                )
                try:
                    page, _ = self._fetch_sized(cursor, narrowed)
                except _PageFailed as failed:
                    last_error = failed.last_error
                    continue
                self.stats.pages_recovered += 1
                logger.info(
                    f"Recovered page at cursor {cursor!r} with page size {narrowed}"
                )
                return self._accept(page, cursor, narrowed)

            if self.recover_by_id and hasattr(self.api, "fetch_page_ids"):
                recovered = self._recover_by_id(cursor, size)
                if recovered is not None:
                    return recovered

        except PermanentAPIError as e:
            self._abort(cursor, size, e)

        return self._skip(cursor, size, last_error)

    def _accept(self, page: Page, cursor: Optional[str], size: int) -> Page:
        page.cursor = cursor
        page.page_size = size
        self.stats.pages_fetched += 1
        self.stats.records_fetched += len(page.records)
        return page

    def _recover_by_id(self, cursor: Optional[str], size: int) -> Optional[Page]:
        try:
            id_page, _ = self._attempt(
                lambda: self.api.fetch_page_ids(cursor, size),
                f"Id-only page at cursor {cursor!r}",
            )
        except _PageFailed as failed:
            logger.warning(
                f"Id-only listing at cursor {cursor!r} also failed: "
                f"{failed.last_error}"
            )
            return None

        ids = [str(r.get("id")) for r in id_page.records if r.get("id") is not None]
        logger.info(
            f"Recovering {len(ids)} records at cursor {cursor!r} one by one"
        )

        records: dict[str, dict[str, Any]] = {}
        failed_ids: list[str] = []
        errors: dict[str, str] = {}

        def fetch_one(record_id: str) -> dict[str, Any]:
            return self.api.get_record(record_id, self.properties)

        with ThreadPoolExecutor(max_workers=self.page_fetch_concurrency) as pool:
            futures = {
                record_id: pool.submit(fetch_one, record_id) for record_id in ids
            }
            for record_id, future in futures.items():
                try:
                    records[record_id] = future.result()
                except AuthenticationError:
                    raise
                except APIError as e:
                    failed_ids.append(record_id)
                    errors[record_id] = str(e)

        if failed_ids:
            gap = PageGap(
                cursor=cursor,
                page_size=size,
                estimated_records=len(failed_ids),
                reason=f"{len(failed_ids)} records unfetchable: "
                f"{next(iter(errors.values()))}",
                record_ids=failed_ids,
            )
            self.stats.gaps.append(gap)
            logger.warning(
                f"Gap at cursor {cursor!r}: {len(failed_ids)} records could not "
                "be fetched individually"
            )

        page = Page(
            records=[records[i] for i in ids if i in records],
            next_cursor=id_page.next_cursor,
        )
        self.stats.pages_recovered += 1
        self.stats.pages_recovered_by_id += 1
        return self._accept(page, cursor, size)

    def _skip(
        self, cursor: Optional[str], size: int, last_error: Optional[APIError]
    ) -> Page:
        reason = str(last_error) if last_error else "page unfetchable"
        next_cursor = self.api.advance_cursor(cursor, size)
        terminal = next_cursor is None
        gap = PageGap(
            cursor=cursor,
            page_size=size,
            estimated_records=size,
            reason=reason,
            terminal=terminal,
        )
        self.stats.gaps.append(gap)
        if terminal:
            logger.error(
                f"Page at cursor {cursor!r} unfetchable and the cursor cannot be "
                f"advanced; stopping pagination: {reason}"
            )
        else:
            logger.error(
                f"Skipping page at cursor {cursor!r} ({size} records) to "
                f"{next_cursor!r}: {reason}"
            )
        return Page(records=[], next_cursor=next_cursor, cursor=cursor, page_size=size)

    # -------------------------------------------------------------------------
    # Streams
    # -------------------------------------------------------------------------

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def pages(self) -> Iterator[Page]:
        """
        Yield pages from ``start_cursor`` until the source is exhausted.

        Checks the cancel event before every page; a cancelled walk stops
        with ``stats.cancelled`` set and ``checkpoint`` at the next cursor.

        Raises:
            PaginationAbortedError: On a permanent failure
        """
        cursor = self.checkpoint
        seen: set[Optional[str]] = set()

        while True:
            if self._cancelled():
                self.stats.cancelled = True
                logger.info(f"Pagination cancelled before cursor {cursor!r}")
                return

            seen.add(cursor)
            page = self.fetch_page(cursor)
            next_cursor = page.next_cursor

            if next_cursor is not None and next_cursor in seen:
                self.stats.gaps.append(
                    PageGap(
                        cursor=next_cursor,
                        page_size=self.page_size,
                        estimated_records=0,
                        reason="Cursor did not advance",
                        terminal=True,
                    )
                )
                logger.error(f"Source returned repeated cursor {next_cursor!r}")
                next_cursor = None

            self.checkpoint = next_cursor
            yield page

            if next_cursor is None:
                return
            cursor = next_cursor

    def records(self) -> Iterator[dict[str, Any]]:
        """Yield raw records across all pages."""
        for page in self.pages():
            yield from page.records
