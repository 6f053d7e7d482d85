"""
Exchange Online admin API client.

Runs Exchange cmdlets through the REST InvokeCommand endpoint used by the
ExchangeOnlineManagement v3 module:

    POST {EXCHANGE_BASE_URL}/{tenant_id}/InvokeCommand
    {"CmdletInput": {"CmdletName": "Get-Place", "Parameters": {"Identity": ...}}}

Results come back in "value" and page with "@odata.nextLink" (re-POSTed
with the same body). Throttling is handled like the Graph client.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

import httpx

from ..config import (
    EXCHANGE_BASE_URL,
    EXCHANGE_ANCHOR_MAILBOX,
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    MAX_PAGES_PER_ENDPOINT,
    REQUEST_TIMEOUT_SECONDS,
)
from ..graph.client import request_never_sent, retry_after_seconds
from ..safety.guardian import READ_CMDLETS, ChangeGuardian

logger = logging.getLogger("m365_tenant_automation.exchange")


class ExchangeAdminError(Exception):
    """Raised when a cmdlet fails on the Exchange side."""
    def __init__(self, status_code: int, message: str, cmdlet: str):
        self.status_code = status_code
        self.cmdlet = cmdlet
        super().__init__(f"Exchange Error {status_code} in {cmdlet}: {message}")


class ExchangeAdminClient:
    """Synchronous Exchange Online admin API client."""

    def __init__(
        self,
        access_token: str,
        tenant_id: str,
        organization: str,
        guardian: ChangeGuardian,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.access_token = access_token
        self.tenant_id = tenant_id
        self.organization = organization
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
                "X-AnchorMailbox": f"UPN:{EXCHANGE_ANCHOR_MAILBOX}@{self.organization}",
            },
        )
        return self

    def __exit__(self, *args):
        if self._client:
            self._client.close()
            self._client = None

    @property
    def endpoint(self) -> str:
        return f"{EXCHANGE_BASE_URL}/{self.tenant_id}/InvokeCommand"

    def invoke(self, cmdlet: str, parameters: Optional[dict] = None) -> list[dict]:
        """
        Run a cmdlet and return every result object across all pages.
        Writes suppressed by dry-run return an empty list.
        """
        parameters = {k: v for k, v in (parameters or {}).items() if v is not None}
        if not self.guardian.validate_cmdlet(cmdlet, parameters):
            return []

        body = {"CmdletInput": {"CmdletName": cmdlet, "Parameters": parameters}}
        url: Optional[str] = self.endpoint
        results: list[dict] = []
        pages = 0

        while url and pages < MAX_PAGES_PER_ENDPOINT:
            data = self._execute_with_retry(cmdlet, url, body)
            results.extend(data.get("value", []))
            url = data.get("@odata.nextLink")
            pages += 1

        logger.debug(f"{cmdlet} returned {len(results)} objects")
        return results

    def _execute_with_retry(self, cmdlet: str, url: str, body: dict) -> dict:
        """Execute request with exponential backoff on throttling."""
        if not self._client:
            raise RuntimeError("ExchangeAdminClient not initialized. Use 'with' context.")
        backoff = INITIAL_BACKOFF_SECONDS

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = self._client.post(url, json=body)
                self._request_count += 1

                if response.status_code in (200, 201):
                    if not response.content or not response.content.strip():
                        return {}
                    return response.json()

                if response.status_code in (202, 204):
                    return {}

                if response.status_code in (429, 503, 504) and attempt < MAX_RETRIES:
                    self._throttle_count += 1
                    wait_time = max(retry_after_seconds(response, backoff), backoff)
                    logger.warning(
                        f"Throttled ({response.status_code}) on {cmdlet}. "
                        f"Retry {attempt + 1}/{MAX_RETRIES} in {wait_time:.1f}s"
                    )
                    time.sleep(wait_time)
                    backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                    continue

                raise ExchangeAdminError(
                    response.status_code, _error_message(response), cmdlet
                )

            except (httpx.TimeoutException, httpx.ConnectError) as e:
                logger.warning(
                    f"{type(e).__name__} on {cmdlet}, attempt {attempt + 1}/{MAX_RETRIES}"
                )
                if attempt == MAX_RETRIES:
                    raise
                # Only reads, or requests that never left, are safe to resend
                if not (cmdlet in READ_CMDLETS or isinstance(e, httpx.ConnectError)
                        or request_never_sent(e)):
                    raise
                time.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

        raise ExchangeAdminError(0, "Maximum retries exceeded", cmdlet)

    def get_stats(self) -> dict:
        return {
            "total_requests": self._request_count,
            "throttle_events": self._throttle_count,
        }


def _error_message(response: httpx.Response) -> str:
    """Exchange wraps the cmdlet error as 'code|type|message'; keep the message."""
    try:
        body: Any = response.json() if response.content else {}
    except ValueError:
        body = {}
    message = ""
    if isinstance(body, dict):
        message = body.get("error", {}).get("message", "")
    if not message:
        return response.text[:200]
    return message.split("|")[-1].strip()
