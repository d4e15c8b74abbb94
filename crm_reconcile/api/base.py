"""
HTTP client base for the external APIs.

Provides the error taxonomy shared by every remote call:
- TransientAPIError (5xx, timeouts, connection failures) and RateLimitError
  are worth retrying
- PermanentAPIError (other 4xx) and AuthenticationError are not

plus a requests-based client with a per-call timeout, a per-endpoint
throttle and exponential backoff.
"""

import logging
import time
from collections.abc import Callable
from typing import Any, Optional

import requests
from requests.exceptions import RequestException

from crm_reconcile import __version__
from crm_reconcile.utils.backoff import BackoffPolicy
from crm_reconcile.utils.throttle import Throttle

# Per-call timeout; a run as a whole has no deadline
DEFAULT_TIMEOUT = 30.0  # seconds

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Raised when a remote API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientAPIError(APIError):
    """Raised for failures that may succeed on retry (5xx, timeouts)."""

    pass


class RateLimitError(TransientAPIError):
    """Raised when the API answered 429 Too Many Requests."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = 429,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class PermanentAPIError(APIError):
    """Raised for failures that will not change on retry (4xx)."""

    pass


class AuthenticationError(PermanentAPIError):
    """Raised when credentials are missing or rejected (401/403)."""

    pass


class NotFoundError(PermanentAPIError):
    """Raised when the requested resource does not exist (404)."""

    pass


def classify_status(
    status_code: int, message: str, retry_after: Any = None
) -> APIError:
    """
    Map an HTTP error status to the error taxonomy.

    Args:
        status_code: HTTP status of the failed response
        message: Error message for the exception
        retry_after: Value of the Retry-After header, if any
    """
    if status_code == 429:
        delay = None
        if retry_after is not None:
            try:
                delay = float(retry_after)
            except (TypeError, ValueError):
                delay = None
        return RateLimitError(message, status_code, retry_after=delay)
    if status_code >= 500:
        return TransientAPIError(message, status_code)
    if status_code in (401, 403):
        return AuthenticationError(message, status_code)
    if status_code == 404:
        return NotFoundError(message, status_code)
    return PermanentAPIError(message, status_code)


class HTTPClient:
    """
    Thin requests wrapper shared by the source and list API clients.

    Every call waits on the endpoint throttle, carries a timeout and is
    translated into the APIError taxonomy. ``request`` is a single
    attempt; ``call_with_retry`` adds backoff for transient failures.

    Attributes:
        base_url: API root, without trailing slash
        timeout: Per-call timeout in seconds
        throttle: Minimum spacing between calls to this endpoint
        retry_policy: Backoff for call_with_retry
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        min_interval: float = 0.0,
        retry_policy: Optional[BackoffPolicy] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.throttle = Throttle(min_interval)
        self.retry_policy = retry_policy or BackoffPolicy()
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", f"crm-reconcile/{__version__}")
        self._sleep = sleep

    def request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json_body: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        """
        Issue one HTTP call and decode its JSON body.

        Returns:
            Decoded JSON (or None for an empty body)

        Raises:
            TransientAPIError: Timeouts, connection errors, 5xx
            RateLimitError: 429
            AuthenticationError: 401/403
            NotFoundError: 404
            PermanentAPIError: Other 4xx or an undecodable body
        """
        url = f"{self.base_url}{path}"
        self.throttle.wait()

        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise TransientAPIError(f"{method} {path} timed out: {e}") from e
        except requests.ConnectionError as e:
            raise TransientAPIError(f"{method} {path} connection failed: {e}") from e
        except RequestException as e:
            raise PermanentAPIError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            body = (response.text or "")[:500]
            raise classify_status(
                response.status_code,
                f"{method} {path} returned {response.status_code}: {body}",
                retry_after=response.headers.get("Retry-After"),
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise PermanentAPIError(
                f"{method} {path} returned invalid JSON: {e}", response.status_code
            ) from e

    def call_with_retry(
        self,
        operation: Callable[[], Any],
        operation_name: str,
        policy: Optional[BackoffPolicy] = None,
    ) -> Any:
        """
        Execute an operation with exponential backoff retry.

        Only transient errors are retried; a Retry-After hint from a 429
        is honored when it is longer than the computed delay.

        Args:
            operation: Callable to execute
            operation_name: Name for logging purposes
            policy: Override for the client's retry policy

        Raises:
            The last TransientAPIError when attempts are exhausted, or any
            PermanentAPIError immediately
        """
        policy = policy or self.retry_policy
        attempts = max(policy.max_attempts, 1)

        for attempt in range(attempts):
            try:
                return operation()
            except TransientAPIError as e:
                if attempt >= attempts - 1:
                    logger.error(
                        f"{operation_name} failed after {attempts} attempts: {e}"
                    )
                    raise
                delay = policy.delay(attempt)
                if isinstance(e, RateLimitError) and e.retry_after:
                    delay = max(delay, min(e.retry_after, policy.max_delay))
                logger.warning(
                    f"{operation_name} failed ({e.status_code or 'no status'}), "
                    f"retrying in {delay:.1f}s (attempt {attempt + 1}/{attempts})"
                )
                self._sleep(delay)

        # Unreachable: the loop either returns or raises
        raise TransientAPIError(f"{operation_name} failed after all retries")
