"""
Async Graph API client with pagination, throttling, retry, and change-guard enforcement.
Write requests (POST/PATCH/DELETE) are only sent when the guard allows it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncGenerator, Optional

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
)
from ..safety.guardian import ChangeGuard

logger = logging.getLogger("m365_admin_toolkit.graph")

PLANNED = {"_planned": True}


class GraphAPIError(Exception):
    """Raised when Graph API returns a non-recoverable error."""
    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Graph API Error {status_code} for {url}: {message}")


class GraphClient:
    """
    Async Microsoft Graph API client.
    Features:
      - Guarded write requests (dry-run by default)
      - Automatic pagination with @odata.nextLink
      - Exponential backoff on 429/503/504
      - Streaming generators for large result sets
      - v1.0 and beta endpoint support

    Requests are issued one at a time; callers iterate sequentially.
    """

    def __init__(
        self,
        access_token: str,
        guardian: ChangeGuard,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = MAX_PAGES_PER_ENDPOINT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.guardian = guardian
        self.page_size = page_size
        self.max_pages = max_pages
        self._transport = transport
        self._request_count = 0
        self._throttle_count = 0
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=30.0),
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
                "ConsistencyLevel": "eventual",  # Required for $count, $search
            },
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _build_url(self, endpoint: str, beta: bool = False) -> str:
        """Build full Graph URL from relative endpoint."""
        if endpoint.startswith("http"):
            return endpoint
        version = GRAPH_BETA_VERSION if beta else GRAPH_API_VERSION
        endpoint = endpoint.lstrip("/")
        return f"{GRAPH_BASE_URL}/{version}/{endpoint}"

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
    ) -> dict:
        """
        Execute a single GET request with retry/throttle handling.
        """
        url = self._build_url(endpoint, beta=beta)
        self.guardian.validate_request("GET", url)
        return await self._execute_with_retry("GET", url, params=params)

    async def get_all_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        skip_top: bool = False,
    ) -> list[dict]:
        """
        Fetch all pages of a paginated endpoint into a list.
        Use get_all_pages_stream() for very large datasets.
        """
        items = []
        async for item in self.get_all_pages_stream(endpoint, params, beta, skip_top=skip_top):
            items.append(item)
        return items

    async def get_all_pages_stream(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        skip_top: bool = False,
    ) -> AsyncGenerator[dict, None]:
        """
        Stream all pages of a paginated endpoint as an async generator.
        Set skip_top=True for endpoints that don't support $top.
        """
        params = dict(params or {})
        if not skip_top and "$top" not in params:
            params["$top"] = str(self.page_size)

        url: Optional[str] = self._build_url(endpoint, beta=beta)
        pages = 0

        while url and pages < self.max_pages:
            self.guardian.validate_request("GET", url)
            data = await self._execute_with_retry("GET", url, params=params)

            # Surface 403 Forbidden instead of silently returning empty
            if data.get("_forbidden"):
                raise GraphAPIError(
                    403,
                    data.get("_error_message", "Forbidden — missing API permission"),
                    url,
                )

            for item in data.get("value", []):
                yield item

            # nextLink carries all query params
            url = data.get("@odata.nextLink")
            params = None
            pages += 1

        if url and pages >= self.max_pages:
            logger.warning(
                f"Pagination safety cap reached ({self.max_pages} pages) "
                f"for endpoint: {endpoint}"
            )

    # ── Writes ──────────────────────────────────────────────────────────────

    async def post(self, endpoint: str, json_body: Optional[dict] = None, beta: bool = False) -> dict:
        """POST, unless the change guard records it as planned."""
        return await self._write("POST", endpoint, json_body, beta)

    async def patch(self, endpoint: str, json_body: dict, beta: bool = False) -> dict:
        """PATCH, unless the change guard records it as planned."""
        return await self._write("PATCH", endpoint, json_body, beta)

    async def delete(self, endpoint: str, beta: bool = False) -> dict:
        """DELETE, unless the change guard records it as planned."""
        return await self._write("DELETE", endpoint, None, beta)

    async def _write(self, method: str, endpoint: str, json_body: Optional[dict], beta: bool) -> dict:
        url = self._build_url(endpoint, beta=beta)
        if not self.guardian.validate_request(method, url, json_body):
            return dict(PLANNED)
        data = await self._execute_with_retry(method, url, json_body=json_body)
        if data.get("_forbidden"):
            raise GraphAPIError(403, data.get("_error_message", "Forbidden"), url)
        if data.get("_not_found"):
            raise GraphAPIError(404, "Resource not found", url)
        return data

    # ── Transport ───────────────────────────────────────────────────────────

    async def _execute_with_retry(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict:
        """Execute request with exponential backoff on throttling."""
        backoff = INITIAL_BACKOFF_SECONDS
        # A write that may have reached Graph is never replayed
        replayable = method == "GET"

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self._execute_raw(
                    method, url, params=params, json_body=json_body
                )
                self._request_count += 1

                if response.status_code in (200, 201):
                    if not response.content or not response.content.strip():
                        return {"value": []}
                    try:
                        return response.json()
                    except ValueError:
                        logger.debug(f"{response.status_code} response with non-JSON body from {url}")
                        return {"value": []}

                if response.status_code == 204:
                    return {}

                if response.status_code == 404:
                    logger.debug(f"404 Not Found: {url}")
                    return {"value": [], "_not_found": True}

                if response.status_code in (429, 503) or (replayable and response.status_code == 504):
                    self._throttle_count += 1
                    retry_after = float(
                        response.headers.get("Retry-After", backoff)
                    )
                    wait_time = max(retry_after, backoff)
                    logger.warning(
                        f"Throttled ({response.status_code}) on {url}. "
                        f"Retry {attempt + 1}/{MAX_RETRIES} in {wait_time:.1f}s"
                    )
                    await asyncio.sleep(wait_time)
                    backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                    continue

                error_msg = _error_message(response)

                if response.status_code == 403:
                    logger.warning(f"403 Forbidden: {url} — {error_msg}")
                    return {"value": [], "_forbidden": True, "_error_message": error_msg}

                raise GraphAPIError(response.status_code, error_msg, url)

            except httpx.TimeoutException as e:
                logger.warning(f"Timeout on {method} {url}, attempt {attempt + 1}/{MAX_RETRIES}")
                if attempt == MAX_RETRIES or not (replayable or isinstance(e, httpx.ConnectTimeout)):
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

            except httpx.ConnectError as e:
                logger.warning(f"Connection error on {url}: {e}")
                if attempt == MAX_RETRIES:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

        raise GraphAPIError(429, f"Still throttled after {MAX_RETRIES} retries", url)

    async def _execute_raw(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> httpx.Response:
        """Execute raw HTTP request."""
        if not self._client:
            raise RuntimeError("GraphClient not initialized. Use 'async with' context.")
        return await self._client.request(method, url, params=params, json=json_body)

    def get_stats(self) -> dict:
        """Return client statistics."""
        return {
            "total_requests": self._request_count,
            "throttle_events": self._throttle_count,
        }


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json() if response.content else {}
    except ValueError:
        return response.text[:200]
    if not isinstance(body, dict):
        return response.text[:200]
    return body.get("error", {}).get("message", response.text[:200])
