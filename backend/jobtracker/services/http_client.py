"""
Resilient HTTP client used by every platform scraper.

Wraps a shared ``httpx.AsyncClient`` with:
    - A hard per-attempt timeout (the whole request is cancelled)
    - Retries on network errors, 429 and 5xx responses
    - Exponential backoff: the delay doubles each attempt, capped at max_delay

4xx responses other than 429 are returned immediately. When retries are
exhausted the last response is returned, or the last error re-raised.

Usage:
    client = HttpClient(user_agent="...")
    data = await client.get("https://boards-api.greenhouse.io/v1/boards/acme/jobs")
    await client.aclose()
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30000
DEFAULT_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 16000


class HttpError(Exception):
    """Non-2xx response surfaced by ``get``/``post``."""

    def __init__(self, status: int, message: str, url: str):
        super().__init__(message)
        self.status = status
        self.url = url

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status < 500

    @property
    def is_server_error(self) -> bool:
        return self.status >= 500


def _is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


class HttpClient:
    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        retries: int = DEFAULT_RETRIES,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout_ms = timeout_ms
        self.retries = retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.user_agent = user_agent
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"User-Agent": self.user_agent} if self.user_agent else None
            self._client = httpx.AsyncClient(
                headers=headers,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        timeout_ms: Optional[int] = None,
        retries: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
        max_delay_ms: Optional[int] = None,
    ) -> httpx.Response:
        """
        Execute a request with retry/backoff.

        Returns:
            The first successful response, a non-retryable 4xx response,
            or the last response once retries are exhausted.

        Raises:
            httpx.HTTPError / TimeoutError: when the final attempt fails
            without producing a response.
        """
        timeout = (timeout_ms if timeout_ms is not None else self.timeout_ms) / 1000
        remaining = retries if retries is not None else self.retries
        delay = base_delay_ms if base_delay_ms is not None else self.base_delay_ms
        max_delay = max_delay_ms if max_delay_ms is not None else self.max_delay_ms
        client = self._get_client()

        while True:
            try:
                response = await asyncio.wait_for(
                    client.request(
                        method,
                        url,
                        headers=headers,
                        params=params,
                        json=json,
                        timeout=timeout,
                    ),
                    timeout=timeout,
                )
            except (httpx.TransportError, asyncio.TimeoutError) as e:
                if remaining <= 0:
                    raise
                logger.debug(f"Request to {url} failed ({type(e).__name__}), retrying in {delay}ms")
            else:
                if response.is_success or not _is_retryable_status(response.status_code):
                    return response
                if remaining <= 0:
                    return response
                logger.debug(f"Request to {url} returned {response.status_code}, retrying in {delay}ms")

            await asyncio.sleep(delay / 1000)
            remaining -= 1
            delay = min(max_delay, delay * 2)

    async def get(self, url: str, **kwargs) -> Any:
        response = await self.fetch(url, method="GET", **kwargs)
        if not response.is_success:
            raise HttpError(
                response.status_code,
                f"HTTP {response.status_code}: {response.reason_phrase}",
                url,
            )
        return response.json()

    async def post(self, url: str, body: Any, **kwargs) -> Any:
        response = await self.fetch(url, method="POST", json=body, **kwargs)
        if not response.is_success:
            raise HttpError(
                response.status_code,
                f"HTTP {response.status_code}: {response.reason_phrase}",
                url,
            )
        return response.json()

    async def get_text(self, url: str, **kwargs) -> str:
        response = await self.fetch(url, method="GET", **kwargs)
        if not response.is_success:
            raise HttpError(
                response.status_code,
                f"HTTP {response.status_code}: {response.reason_phrase}",
                url,
            )
        return response.text
