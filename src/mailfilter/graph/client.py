"""Blocking Microsoft Graph client used by the mailbox adapter.

Each call takes a token from the shared ``ms_graph`` bucket, asks Graph for
immutable ids (a message keeps its id when it is moved to another folder)
and retries transient failures: 5xx, 429, timeouts and dropped connections.
Retries back off through ``retry_delays`` with jitter; a 429 Retry-After
header overrides the table.

    client = GraphClient(auth)
    me = client.get("/me")
    raw = client.get_bytes(f"/me/messages/{message_id}/$value")
"""

import random
import time
from typing import Any

import requests

from mailfilter.auth.msal_auth import GraphAuth
from mailfilter.core.errors import (
    AuthenticationError,
    ConflictError,
    GraphAPIError,
    RateLimitExceeded,
    SyncExpiredError,
)
from mailfilter.core.logging import get_logger
from mailfilter.core.rate_limiter import get_bucket

logger = get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]

# Graph throttles at 10,000 requests per 10 minutes per mailbox
MS_GRAPH_RATE = 10.0
MS_GRAPH_CAPACITY = 10

# Status -> (summary, remedy) for failures that are never retried
_FATAL_STATUS_HINTS: dict[int, tuple[str, str]] = {
    401: ("access token rejected", "Run 'mailfilter login' to sign in again."),
    403: (
        "permission denied",
        "Grant Mail.ReadWrite and MailboxSettings.ReadWrite to the app registration.",
    ),
    404: ("not found", "Another client may have deleted or moved it."),
}

_TRANSIENT_EXCEPTIONS = (requests.exceptions.Timeout, requests.exceptions.ConnectionError)


def _error_details(response: requests.Response) -> tuple[str, str]:
    """Pull (code, message) out of a Graph error body, tolerating non-JSON."""
    try:
        error = response.json().get("error", {})
    except ValueError:
        return "unknown", response.text or f"HTTP {response.status_code}"
    return error.get("code", "unknown"), error.get("message", response.text)


class GraphClient:
    """Thin requests wrapper around the Graph REST API.

    Calls block; GraphMailbox runs them through asyncio.to_thread, which is
    why the bucket is drained with consume_sync().
    """

    # Hard stop for a delta stream that never produces a deltaLink
    DELTA_MAX_PAGES = 100

    def __init__(
        self,
        auth: GraphAuth,
        base_url: str = GRAPH_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
    ):
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.session = requests.Session()
        self._rate_bucket = get_bucket("ms_graph", rate=MS_GRAPH_RATE, capacity=MS_GRAPH_CAPACITY)

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    def _bearer_token(self) -> str:
        try:
            return self.auth.get_access_token()
        except AuthenticationError:
            raise
        except Exception as e:
            logger.error("access_token_failed", error=str(e))
            raise AuthenticationError(
                f"No usable Microsoft Graph token ({e}). Run 'mailfilter login'."
            ) from e

    def _headers(self, accept: str, extra: dict[str, str] | None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._bearer_token()}",
            "Content-Type": "application/json",
            "Accept": accept,
            "Prefer": 'IdType="ImmutableId"',
        }
        headers.update(extra or {})
        return headers

    def _url(self, endpoint: str) -> str:
        # nextLink and deltaLink values arrive absolute
        if endpoint.startswith("http"):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _raise_for_response(self, response: requests.Response, method: str, endpoint: str):
        status = response.status_code
        code, detail = _error_details(response)
        logger.error(
            "graph_api_error",
            method=method,
            endpoint=endpoint[:120],
            status_code=status,
            error_code=code,
            error_message=detail[:200],
        )

        if status == 410:
            raise SyncExpiredError(f"Graph discarded the sync state ({detail}); full sync needed")
        if status == 429:
            wait = response.headers.get("Retry-After", "unknown")
            raise RateLimitExceeded(
                f"Graph kept throttling {method} {endpoint} (Retry-After: {wait}s)"
            )
        if status in _FATAL_STATUS_HINTS:
            summary, remedy = _FATAL_STATUS_HINTS[status]
            raise GraphAPIError(
                f"{method} {endpoint}: {summary} ({status}): {detail}. {remedy}",
                status_code=status,
                error_code=code,
            )
        raise GraphAPIError(
            f"{method} {endpoint} failed with HTTP {status}: {detail}",
            status_code=status,
            error_code=code,
        )

    def _backoff(self, attempt: int) -> float:
        return self.retry_delays[min(attempt, len(self.retry_delays) - 1)]

    def _get_retry_delay(self, response: requests.Response, attempt: int) -> float:
        """Seconds to wait before retrying, jittered by up to 20% either way."""
        delay = self._backoff(attempt)
        retry_after = response.headers.get("Retry-After") if response.status_code == 429 else None
        if retry_after:
            try:
                delay = float(retry_after)
            except ValueError:
                logger.debug("retry_after_unparseable", value=retry_after)
        return delay * random.uniform(0.8, 1.2)

    @staticmethod
    def _is_transient(response: requests.Response) -> bool:
        return response.status_code == 429 or response.status_code >= 500

    def _send(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        timeout: float = 30.0,
        extra_headers: dict[str, str] | None = None,
        accept: str = "application/json",
    ) -> requests.Response:
        """Issue one logical request, retrying transient failures.

        Returns the first response below 400.
        """
        url = self._url(endpoint)
        attempts = self.max_retries + 1

        for attempt in range(attempts):
            final = attempt == attempts - 1
            self._rate_bucket.consume_sync()
            headers = self._headers(accept, extra_headers)
            logger.debug("graph_request", method=method, endpoint=endpoint[:120], attempt=attempt)

            try:
                response = self.session.request(
                    method=method,
                    url=url,
                    headers=headers,
                    params=params,
                    json=json,
                    timeout=timeout,
                )
            except _TRANSIENT_EXCEPTIONS as e:
                if final:
                    if isinstance(e, requests.exceptions.Timeout):
                        raise GraphAPIError(
                            f"{method} {endpoint} timed out ({timeout}s) on every attempt; "
                            "Graph may be degraded"
                        ) from e
                    raise GraphAPIError(
                        f"Could not reach Microsoft Graph ({e}); check network connectivity"
                    ) from e
                delay = self._backoff(attempt)
                logger.warning(
                    "graph_transport_retry",
                    error_type=type(e).__name__,
                    attempt=attempt,
                    delay=delay,
                )
                time.sleep(delay)
                continue

            if response.status_code < 400:
                return response
            if response.status_code == 412:
                raise ConflictError(
                    f"ETag mismatch on {endpoint}; re-read the resource and retry",
                    resource_id=endpoint,
                )
            if final or not self._is_transient(response):
                self._raise_for_response(response, method, endpoint)

            delay = self._get_retry_delay(response, attempt)
            logger.warning(
                "graph_request_retry",
                method=method,
                status_code=response.status_code,
                attempt=attempt,
                delay=round(delay, 2),
            )
            time.sleep(delay)

        raise GraphAPIError(f"{method} {endpoint} exhausted {attempts} attempts")

    # ------------------------------------------------------------------
    # Verbs
    # ------------------------------------------------------------------

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        timeout: float = 30.0,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Send a JSON request; an empty body (204) comes back as ``{}``.

        Raises:
            AuthenticationError: No token could be acquired silently
            ConflictError: 412, the If-Match ETag is stale
            SyncExpiredError: 410, the delta token was discarded
            RateLimitExceeded: 429 on every attempt
            GraphAPIError: Any other failure
        """
        response = self._send(
            method,
            endpoint,
            params=params,
            json=json,
            timeout=timeout,
            extra_headers=extra_headers,
        )
        return response.json() if response.content else {}

    def get(
        self, endpoint: str, params: dict[str, Any] | None = None, timeout: float = 30.0
    ) -> dict[str, Any]:
        return self.request("GET", endpoint, params=params, timeout=timeout)

    def get_bytes(self, endpoint: str, timeout: float = 60.0) -> bytes:
        """Fetch a raw resource, e.g. ``/me/messages/{id}/$value`` for MIME."""
        return self._send("GET", endpoint, timeout=timeout, accept="*/*").content

    def post(
        self,
        endpoint: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        return self.request("POST", endpoint, params=params, json=json, timeout=timeout)

    def patch(
        self,
        endpoint: str,
        json: dict[str, Any] | None = None,
        timeout: float = 30.0,
        if_match: str | None = None,
    ) -> dict[str, Any]:
        """PATCH with an optional If-Match ETag; a stale ETag raises ConflictError."""
        headers = {"If-Match": if_match} if if_match else None
        return self.request("PATCH", endpoint, json=json, timeout=timeout, extra_headers=headers)

    def delete(self, endpoint: str, timeout: float = 30.0) -> dict[str, Any]:
        return self.request("DELETE", endpoint, timeout=timeout)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def get_user_email(self) -> str:
        me = self.get("/me", params={"$select": "mail,userPrincipalName"})
        address = me.get("mail") or me.get("userPrincipalName")
        if not address:
            raise GraphAPIError("/me has no mail or userPrincipalName; is User.Read granted?")
        return address

    def paginate(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        page_size: int = 50,
        max_items: int | None = None,
    ) -> list[dict[str, Any]]:
        """Collect ``value`` items across @odata.nextLink pages, up to ``max_items``."""
        query = {"$top": min(page_size, 50), **(params or {})}
        collected: list[dict[str, Any]] = []
        page = self.get(endpoint, params=query)

        while True:
            collected.extend(page.get("value", []))
            if max_items is not None and len(collected) >= max_items:
                return collected[:max_items]
            next_link = page.get("@odata.nextLink")
            if not next_link:
                return collected
            page = self.get(next_link)

    def get_delta_messages(
        self,
        folder_id: str,
        cursor: str | None,
        params: dict[str, Any] | None = None,
        max_items: int = 500,
        max_pages: int | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Run (or resume) a message delta round on one folder.

        Without a cursor a new round starts at the folder's ``messages/delta``
        endpoint with ``params``; a cursor is an absolute link and is used
        verbatim. The round ends at the first @odata.deltaLink. When the page
        or item cap is hit first, the pending @odata.nextLink is returned so
        the next call picks up from there.

        Returns:
            (changed entries in delivery order, cursor for the next call)

        Raises:
            SyncExpiredError: Graph rejected the cursor with 410
        """
        page_cap = min(max_pages or self.DELTA_MAX_PAGES, self.DELTA_MAX_PAGES)
        url = cursor or f"/me/mailFolders/{folder_id}/messages/delta"
        query = None if cursor else params
        entries: list[dict[str, Any]] = []
        pages = 0
        next_cursor = cursor

        while True:
            try:
                page = self.get(url, params=query)
            except SyncExpiredError as e:
                e.folder = folder_id
                raise
            query = None
            pages += 1
            entries.extend(page.get("value", []))

            if "@odata.deltaLink" in page:
                next_cursor = page["@odata.deltaLink"]
                break
            url = page.get("@odata.nextLink")
            if not url:
                # no link at all; stay on the cursor we started from
                break
            next_cursor = url
            if pages >= page_cap or len(entries) >= max_items:
                logger.warning(
                    "delta_query_truncated", folder_id=folder_id, pages=pages, entries=len(entries)
                )
                break

        logger.info(
            "delta_query_complete",
            folder_id=folder_id,
            pages=pages,
            entries=len(entries),
            incremental=cursor is not None,
        )
        return entries, next_cursor
