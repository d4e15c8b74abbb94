"""
Downstream marketing-list service client.

Consumes the list service's thin contract:
- ensure_subscribed: opt an email into a list (subscriber must exist)
- create_and_subscribe: import the subscriber, then opt it in
- get_list_size: list size for drift auditing

Authentication is an api_id / api_key pair sent as query parameters.
"""

import logging
from typing import Any, Optional

from crm_reconcile.api.base import (
    DEFAULT_TIMEOUT,
    AuthenticationError,
    HTTPClient,
    NotFoundError,
    PermanentAPIError,
)
from crm_reconcile.utils.backoff import BackoffPolicy

SUBSCRIBE_PATH = "/lists/subscribe_user"
IMPORT_PATH = "/lists/import_optin"
LIST_SIZE_PATH = "/lists/get_list_size"

# Error codes the service uses when the email has never been imported
UNKNOWN_SUBSCRIBER_CODES = frozenset(
    {"unknown_subscriber", "subscriber_not_found", "user_not_found"}
)

logger = logging.getLogger(__name__)


class UnknownSubscriberError(PermanentAPIError):
    """Raised when the list service does not know the subscriber yet."""

    pass


def _error_code(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    if str(data.get("status", "")).lower() not in ("error", "failed", "failure"):
        return None
    return str(data.get("code") or data.get("error") or "error").lower()


class ListServiceAPI:
    """
    Client for the downstream list service.

    All calls retry transient failures with backoff. An unknown subscriber
    (HTTP 404 or an explicit error code) is raised as
    UnknownSubscriberError so the fan-out driver can fall back to
    create_and_subscribe().

    Usage:
        api = ListServiceAPI("https://control.example.com/rest", api_id, api_key)
        try:
            api.ensure_subscribed("buyer_dnc", "jane@example.com", {})
        except UnknownSubscriberError:
            api.create_and_subscribe("buyer_dnc", "jane@example.com", {})
    """

    def __init__(
        self,
        base_url: str,
        api_id: Optional[str],
        api_key: Optional[str],
        timeout: float = DEFAULT_TIMEOUT,
        min_interval: float = 0.0,
        retry_policy: Optional[BackoffPolicy] = None,
        client: Optional[HTTPClient] = None,
    ):
        self.api_id = api_id
        self.api_key = api_key
        self.client = client or HTTPClient(
            base_url,
            timeout=timeout,
            min_interval=min_interval,
            retry_policy=retry_policy,
        )

    def _auth_params(self) -> dict[str, str]:
        if not self.api_id or not self.api_key:
            raise AuthenticationError("No list service api_id/api_key configured")
        return {"api_id": self.api_id, "api_key": self.api_key}

    @staticmethod
    def _subscriber_params(email: str, attrs: dict[str, Any]) -> dict[str, Any]:
        return {
            "email_address": email,
            "first_name": attrs.get("first_name") or "",
            "last_name": attrs.get("last_name") or "",
            "phone": attrs.get("phone") or "",
        }

    def _subscribe(
        self, list_id: str, email: str, attrs: dict[str, Any], force: bool
    ) -> Any:
        params = self._auth_params()
        params.update(self._subscriber_params(email, attrs))
        params["list_api_identifier"] = list_id
        params["list_preference"] = "optin"
        if force:
            params["force_subscribe"] = "Y"

        def execute_subscribe() -> Any:
            try:
                data = self.client.request("GET", SUBSCRIBE_PATH, params=params)
            except NotFoundError as e:
                raise UnknownSubscriberError(
                    f"Subscriber {email} unknown to list {list_id}", e.status_code
                ) from e
            code = _error_code(data)
            if code in UNKNOWN_SUBSCRIBER_CODES:
                raise UnknownSubscriberError(
                    f"Subscriber {email} unknown to list {list_id} ({code})"
                )
            if code is not None:
                raise PermanentAPIError(
                    f"subscribe_user({list_id}) rejected {email}: {code}"
                )
            return data

        return self.client.call_with_retry(
            execute_subscribe, f"subscribe_user({list_id})"
        )

    def ensure_subscribed(
        self, list_id: str, email: str, attrs: Optional[dict[str, Any]] = None
    ) -> Any:
        """
        Opt an existing subscriber into a list.

        Raises:
            UnknownSubscriberError: If the service has never seen the email
            APIError: For other failures
        """
        return self._subscribe(list_id, email, attrs or {}, force=False)

    def create_and_subscribe(
        self, list_id: str, email: str, attrs: Optional[dict[str, Any]] = None
    ) -> Any:
        """
        Import the subscriber into the list, then opt it in explicitly.

        Raises:
            UnknownSubscriberError: If the service still does not know the
                subscriber after the import
            APIError: For other failures
        """
        attrs = attrs or {}
        subscriber = self._subscriber_params(email, attrs)
        subscriber["email"] = subscriber.pop("email_address")
        body = {"list_api_identifier": list_id, "contacts": [subscriber]}

        def execute_import() -> Any:
            data = self.client.request(
                "POST", IMPORT_PATH, params=self._auth_params(), json_body=body
            )
            code = _error_code(data)
            if code is not None:
                raise PermanentAPIError(f"import_optin({list_id}) failed: {code}")
            return data

        self.client.call_with_retry(execute_import, f"import_optin({list_id})")
        logger.debug(f"Imported {email} into list {list_id}")
        return self._subscribe(list_id, email, attrs, force=True)

    def get_list_size(self, list_id: str) -> int:
        """Number of subscribers the service reports for a list."""
        params = self._auth_params()
        params["list_api_identifier"] = list_id

        def execute_size() -> Any:
            return self.client.request("GET", LIST_SIZE_PATH, params=params)

        data = self.client.call_with_retry(execute_size, f"get_list_size({list_id})")
        data = data or {}
        for key in ("list_size", "size", "count"):
            if key in data:
                return int(data[key])
        raise PermanentAPIError(f"get_list_size({list_id}) returned no size")
