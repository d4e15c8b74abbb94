"""
Source CRM API client.

Wraps the CRM-of-record's contacts endpoints:
- Cursor-paginated listing with a property projection
- An id-only listing used to recover records from a failing page
- Single-record fetch by id
- The reported total, for auditing fetched counts
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from crm_reconcile.api.base import (
    DEFAULT_TIMEOUT,
    APIError,
    AuthenticationError,
    HTTPClient,
)
from crm_reconcile.utils.backoff import BackoffPolicy

# Records per page when listing; the API maximum is 100
DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 100

CONTACTS_PATH = "/crm/v3/objects/contacts"

# Property requested for id-only listings
ID_ONLY_PROPERTY = "hs_object_id"

logger = logging.getLogger(__name__)


@dataclass
class Page:
    """
    One page of raw records.

    Attributes:
        records: Raw records in source order
        next_cursor: Cursor of the next page, None when this is the last page
        cursor: Cursor this page was requested with
        page_size: Page size this page was requested with
    """

    records: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None
    cursor: Optional[str] = None
    page_size: int = 0

    @property
    def done(self) -> bool:
        return self.next_cursor is None


class SourceCRMAPI:
    """
    Client for the source CRM contacts API.

    fetch_page() and fetch_page_ids() are single attempts; retrying and
    narrowing belong to the paginator. get_record() retries transient
    failures itself since it is used outside pagination as well.

    Usage:
        api = SourceCRMAPI("https://api.hubapi.com", token)
        page = api.fetch_page(None, 100, ["email", "firstname"])
        while not page.done:
            page = api.fetch_page(page.next_cursor, 100, ["email"])
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str],
        timeout: float = DEFAULT_TIMEOUT,
        min_interval: float = 0.0,
        retry_policy: Optional[BackoffPolicy] = None,
        client: Optional[HTTPClient] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: API root (e.g. https://api.hubapi.com)
            token: Private app / bearer token
            timeout: Per-call timeout in seconds
            min_interval: Minimum seconds between calls
            retry_policy: Backoff for get_record()
            client: Preconfigured HTTPClient (tests)
        """
        self.token = token
        self.client = client or HTTPClient(
            base_url,
            timeout=timeout,
            min_interval=min_interval,
            retry_policy=retry_policy,
        )

    def _headers(self) -> dict[str, str]:
        if not self.token:
            raise AuthenticationError("No source CRM API token configured")
        return {"Authorization": f"Bearer {self.token}"}

    def _list(
        self, cursor: Optional[str], page_size: int, properties: list[str]
    ) -> Page:
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        params: dict[str, Any] = {"limit": page_size, "archived": "false"}
        if cursor:
            params["after"] = cursor
        if properties:
            params["properties"] = ",".join(properties)

        data = self.client.request(
            "GET", CONTACTS_PATH, params=params, headers=self._headers()
        ) or {}

        next_cursor = ((data.get("paging") or {}).get("next") or {}).get("after")
        return Page(
            records=list(data.get("results") or []),
            next_cursor=str(next_cursor) if next_cursor is not None else None,
            cursor=cursor,
            page_size=page_size,
        )

    def fetch_page(
        self,
        cursor: Optional[str],
        page_size: int = DEFAULT_PAGE_SIZE,
        properties: Optional[list[str]] = None,
    ) -> Page:
        """
        Fetch one page of contacts.

        Args:
            cursor: Opaque cursor from the previous page (None for the first)
            page_size: Records per page (clamped to 1..MAX_PAGE_SIZE)
            properties: Property projection

        Raises:
            APIError subclasses, see HTTPClient.request
        """
        return self._list(cursor, page_size, properties or [])

    def fetch_page_ids(self, cursor: Optional[str], page_size: int) -> Page:
        """
        Fetch one page requesting only record ids.

        A wide page can fail server-side because of one bad property value;
        the id-only projection usually still succeeds and tells us which
        records to fetch one by one.
        """
        return self._list(cursor, page_size, [ID_ONLY_PROPERTY])

    def get_record(
        self, record_id: str, properties: Optional[list[str]] = None
    ) -> dict[str, Any]:
        """
        Fetch a single contact by id, retrying transient failures.

        Raises:
            NotFoundError: If the contact does not exist
            APIError: If the fetch fails
        """
        params: dict[str, Any] = {}
        if properties:
            params["properties"] = ",".join(properties)

        def execute_get() -> Any:
            return self.client.request(
                "GET",
                f"{CONTACTS_PATH}/{record_id}",
                params=params,
                headers=self._headers(),
            )

        return self.client.call_with_retry(execute_get, f"get_record({record_id})")

    def get_total_count(self) -> Optional[int]:
        """
        Total number of contacts the source reports.

        Returns:
            The total, or None if the source does not report one
        """

        def execute_search() -> Any:
            return self.client.request(
                "POST",
                f"{CONTACTS_PATH}/search",
                json_body={"limit": 1, "properties": [ID_ONLY_PROPERTY]},
                headers=self._headers(),
            )

        try:
            data = self.client.call_with_retry(execute_search, "get_total_count")
        except AuthenticationError:
            raise
        except APIError as e:
            logger.warning(f"Could not read source total count: {e}")
            return None

        total = (data or {}).get("total")
        return int(total) if total is not None else None

    @staticmethod
    def advance_cursor(cursor: Optional[str], offset: int) -> Optional[str]:
        """
        Skip forward ``offset`` records past ``cursor``.

        The listing cursor is a numeric record offset, so a skip is plain
        addition. Returns None for cursors that are not numeric.
        """
        if cursor is None or cursor == "":
            return str(offset)
        if str(cursor).isdigit():
            return str(int(cursor) + offset)
        return None

    def test_connection(self) -> bool:
        """Check that the API answers and accepts the token."""
        try:
            self.fetch_page(None, 1, [ID_ONLY_PROPERTY])
            return True
        except APIError as e:
            logger.error(f"Source CRM connection test failed: {e}")
            return False
