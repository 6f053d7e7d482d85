"""
Microsoft Graph API client with pagination, throttling, retry, and
change-guardian enforcement. Synchronous: every call blocks until Graph
answers.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Iterator, Optional

import httpx

from ..config import (
    GRAPH_BASE_URL,
    GRAPH_API_VERSION,
    GRAPH_BETA_VERSION,
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    DEFAULT_PAGE_SIZE,
    MAX_PAGES_PER_ENDPOINT,
    REQUEST_TIMEOUT_SECONDS,
)
from ..safety.guardian import ChangeGuardian

logger = logging.getLogger("m365_tenant_automation.graph")


class GraphAPIError(Exception):
    """Raised when Graph API returns a non-recoverable error."""
    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Graph API Error {status_code} for {url}: {message}")


class GraphClient:
    """
    Microsoft Graph API client.
    Features:
      - Guardian-validated writes (allow-list, audit, dry-run)
      - Automatic pagination with @odata.nextLink
      - Exponential backoff on 429/503/504
      - v1.0 and beta endpoint support
    """

    def __init__(
        self,
        access_token: str,
        guardian: ChangeGuardian,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.access_token = access_token
        self.guardian = guardian
        self._transport = transport
        self._request_count = 0
        self._throttle_count = 0
        self._client: Optional[httpx.Client] = None

    def __enter__(self):
        self._client = httpx.Client(
            timeout=httpx.Timeout(REQUEST_TIMEOUT_SECONDS, connect=30.0),
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
                "ConsistencyLevel": "eventual",  # Required for $count, $search
            },
        )
        return self

    def __exit__(self, *args):
        if self._client:
            self._client.close()
            self._client = None

    def _build_url(self, endpoint: str, beta: bool = False) -> str:
        """Build full Graph URL from relative endpoint."""
        if endpoint.startswith("http"):
            return endpoint
        version = GRAPH_BETA_VERSION if beta else GRAPH_API_VERSION
        endpoint = endpoint.lstrip("/")
        return f"{GRAPH_BASE_URL}/{version}/{endpoint}"

    # ── Reads ────────────────────────────────────────────────────────────────

    def get(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
    ) -> dict:
        """
        Execute a single GET request with retry/throttle handling.
        A 404 yields {"value": [], "_not_found": True} rather than an error.
        """
        url = self._build_url(endpoint, beta=beta)
        self.guardian.validate_request("GET", url)
        return self._execute_with_retry("GET", url, params=params)

    def get_all_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        top: Optional[int] = None,
        skip_top: bool = False,
    ) -> list[dict]:
        """
        Fetch all pages of a paginated endpoint into a list.
        Set skip_top=True for endpoints that reject $top.
        """
        return list(self.get_all_pages_stream(endpoint, params, beta, top, skip_top=skip_top))

    def get_all_pages_stream(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        top: Optional[int] = None,
        skip_top: bool = False,
    ) -> Iterator[dict]:
        """
        Stream all pages of a paginated endpoint, one item at a time.
        Set skip_top=True for endpoints that reject $top.
        """
        params = dict(params or {})
        if not skip_top and "$top" not in params:
            params["$top"] = str(min(top, DEFAULT_PAGE_SIZE) if top else DEFAULT_PAGE_SIZE)

        url = self._build_url(endpoint, beta=beta)
        pages = 0

        while url and pages < MAX_PAGES_PER_ENDPOINT:
            self.guardian.validate_request("GET", url)
            data = self._execute_with_retry("GET", url, params=params)

            if data.get("_not_found"):
                raise GraphAPIError(404, "Resource not found", url)

            for item in data.get("value", []):
                yield item

            # Follow nextLink for pagination
            url = data.get("@odata.nextLink")
            params = None  # nextLink contains all params
            pages += 1

        if pages >= MAX_PAGES_PER_ENDPOINT:
            logger.warning(
                f"Pagination safety cap reached ({MAX_PAGES_PER_ENDPOINT} pages) "
                f"for endpoint: {endpoint}"
            )

    # ── Writes ───────────────────────────────────────────────────────────────

    def post(self, endpoint: str, json_body: Optional[dict] = None, beta: bool = False) -> dict:
        return self._write("POST", endpoint, json_body, beta)

    def patch(self, endpoint: str, json_body: dict, beta: bool = False) -> dict:
        return self._write("PATCH", endpoint, json_body, beta)

    def delete(self, endpoint: str, beta: bool = False) -> dict:
        return self._write("DELETE", endpoint, None, beta)

    def _write(self, method: str, endpoint: str, json_body: Optional[dict], beta: bool) -> dict:
        url = self._build_url(endpoint, beta=beta)
        if not self.guardian.validate_request(method, url, json_body):
            return {}
        return self._execute_with_retry(method, url, json_body=json_body)

    # ── Transport ────────────────────────────────────────────────────────────

    def _execute_with_retry(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict:
        """Execute request with exponential backoff on throttling."""
        backoff = INITIAL_BACKOFF_SECONDS

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = self._execute_raw(
                    method, url, params=params, json_body=json_body
                )
                self._request_count += 1

                if response.status_code in (200, 201):
                    if not response.content or not response.content.strip():
                        return {}
                    return response.json()

                if response.status_code in (202, 204):
                    return {}

                if response.status_code == 404 and method == "GET":
                    logger.debug(f"404 Not Found: {url}")
                    return {"value": [], "_not_found": True}

                if response.status_code in (429, 503, 504) and attempt < MAX_RETRIES:
                    self._throttle_count += 1
                    wait_time = max(retry_after_seconds(response, backoff), backoff)
                    logger.warning(
                        f"Throttled ({response.status_code}) on {url}. "
                        f"Retry {attempt + 1}/{MAX_RETRIES} in {wait_time:.1f}s"
                    )
                    time.sleep(wait_time)
                    backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                    continue

                raise GraphAPIError(response.status_code, _error_message(response), url)

            except httpx.TimeoutException as e:
                logger.warning(
                    f"{type(e).__name__} on {method} {url}, attempt {attempt + 1}/{MAX_RETRIES}"
                )
                # A write that timed out after sending may already be applied
                if attempt == MAX_RETRIES or not (method == "GET" or request_never_sent(e)):
                    raise
                time.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

            except httpx.ConnectError as e:
                logger.warning(f"Connection error on {url}: {e}")
                if attempt == MAX_RETRIES:
                    raise
                time.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

        raise GraphAPIError(0, "Maximum retries exceeded", url)

    def _execute_raw(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> httpx.Response:
        """Execute raw HTTP request."""
        if not self._client:
            raise RuntimeError("GraphClient not initialized. Use 'with' context.")
        return self._client.request(method, url, params=params, json=json_body)

    def get_stats(self) -> dict:
        """Return client statistics."""
        return {
            "total_requests": self._request_count,
            "throttle_events": self._throttle_count,
        }


def retry_after_seconds(response: httpx.Response, default: float) -> float:
    """Numeric Retry-After value; the HTTP-date form and junk fall back to default."""
    try:
        return float(response.headers.get("Retry-After", default))
    except ValueError:
        return default


def request_never_sent(error: httpx.TimeoutException) -> bool:
    return isinstance(error, (httpx.ConnectTimeout, httpx.PoolTimeout))


def _error_message(response: httpx.Response) -> str:
    try:
        body: Any = response.json() if response.content else {}
    except ValueError:
        body = {}
    if isinstance(body, dict):
        return body.get("error", {}).get("message", response.text[:200])
    return response.text[:200]
