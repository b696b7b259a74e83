"""
Remote report service client.

Fetches paginated account and market data over the service's JSON-RPC
endpoint:
- One request per page: ``{"auth": ..., "method": ..., "params": ...}``
- Rate limiting and retry logic (429 and 5xx responses, transport errors)
- Error handling with service error codes

The sync engine only depends on the ``DataSource`` protocol, so tests and
alternative transports can provide their own ``fetch``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Protocol

import httpx

from report_sync.config import Settings


logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Base exception for remote API errors."""

    def __init__(
        self,
        message: str,
        code: int | str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


class ApiRateLimitError(ApiError):
    """Raised when rate limit is exceeded."""

    def __init__(self, retry_after: float = 60) -> None:
        super().__init__(
            f"Rate limit exceeded. Retry after {retry_after}s", status=429
        )
        self.retry_after = retry_after


class DataSource(Protocol):
    """
    Anything able to fetch one page of a collection.

    The result is either a plain list of rows or a mapping with ``res``
    (the rows) and ``nextPage`` (cursor for the next, older page or None).
    """

    async def fetch(
        self,
        method: str,
        *,
        auth: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> Any: ...


class ApiClient:
    """
    Report service JSON-RPC client.

    Example:
        async with ApiClient("https://report.bitfinex.com/api") as client:
            page = await client.fetch(
                "getLedgers",
                auth={"apiKey": key, "apiSecret": secret},
                params={"start": 0, "end": now, "limit": 500},
            )
    """

    RPC_PATH = "/json-rpc"

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: Service base URL
            timeout_seconds: Read timeout per request
            max_retries: Attempts per request before giving up
            retry_delay_seconds: Base delay between retries (grows linearly)
            transport: Optional httpx transport (e.g. httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, max_retries)
        self.retry_delay_seconds = retry_delay_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ApiClient":
        return cls(
            base_url=settings.api.base_url,
            timeout_seconds=settings.api.timeout_seconds,
            max_retries=settings.api.max_retries,
            retry_delay_seconds=settings.api.retry_delay_seconds,
        )

    @property
    def rpc_url(self) -> str:
        return f"{self.base_url}{self.RPC_PATH}"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"Content-Type": "application/json"},
                timeout=httpx.Timeout(
                    connect=10.0,
                    read=self.timeout_seconds,
                    write=30.0,
                    pool=10.0,
                ),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _request(self, payload: dict[str, Any]) -> Any:
        """
        Post one RPC call with error handling and retry logic.

        Handles:
        - Rate limiting, honouring Retry-After
        - Transient errors (transport, 5xx) with linear backoff
        - Service errors, which are not retried
        """
        client = await self._get_client()

        for attempt in range(self.max_retries):
            is_last = attempt == self.max_retries - 1
            backoff = self.retry_delay_seconds * (attempt + 1)

            try:
                response = await client.post(self.rpc_url, json=payload)
            except httpx.TransportError as e:
                if not is_last:
                    logger.debug("Transport error on %s, retrying: %s", payload["method"], e)
                    await asyncio.sleep(backoff)
                    continue
                raise ApiError(f"Connection error: {e}") from e

            if response.status_code == 429:
                retry_after = _parse_retry_after(
                    response.headers.get("Retry-After"), backoff
                )
                if not is_last:
                    await asyncio.sleep(retry_after)
                    continue
                raise ApiRateLimitError(retry_after)

            if response.status_code >= 500:
                if not is_last:
                    await asyncio.sleep(backoff)
                    continue
                raise ApiError(
                    f"Server error {response.status_code}",
                    status=response.status_code,
                )

            try:
                data = response.json()
            except ValueError as e:
                raise ApiError(
                    "Invalid JSON response", status=response.status_code
                ) from e

            error = data.get("error") if isinstance(data, dict) else None
            if error:
                if not isinstance(error, dict):
                    error = {"message": str(error)}
                raise ApiError(
                    error.get("message", "Unknown error"),
                    code=error.get("code"),
                    status=response.status_code,
                )
            if response.status_code >= 400:
                raise ApiError(
                    f"Request failed with status {response.status_code}",
                    status=response.status_code,
                )

            return data.get("result") if isinstance(data, dict) else data

        raise ApiError("Max retries exceeded")

    async def fetch(
        self,
        method: str,
        *,
        auth: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """
        Fetch one page of a collection.

        Args:
            method: Service method name (e.g. "getLedgers")
            auth: Credentials of the user; None for public data
            params: Method params (start, end, limit, symbol, timeframe ...)

        Returns:
            A list of rows or a ``{"res": [...], "nextPage": ...}`` mapping
        """
        payload: dict[str, Any] = {
            "method": method,
            "params": dict(params or {}),
        }
        if auth:
            payload["auth"] = dict(auth)

        return await self._request(payload)


def _parse_retry_after(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return max(0.0, float(value))
    except ValueError:
        return default
