import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import httpx
from pydantic import BaseModel

from jobtracker.config import get_settings
from jobtracker.schemas import (
    EarlyFilterStats,
    ScrapeOptions,
    ScraperError,
    ScraperErrorCode,
    ScraperResult,
)
from jobtracker.services.browser_client import BrowserClient, BrowserSession
from jobtracker.services.filters import apply_early_filters
from jobtracker.services.http_client import HttpClient, HttpError
from jobtracker.services.scrapers.utils import generate_external_id, normalize_location

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ScraperConfig(BaseModel):
    timeout_ms: int = 30000
    retries: int = 3
    base_delay_ms: int = 1000


class BrowserScraperConfig(ScraperConfig):
    headless: bool = True
    session_timeout_ms: int = 60000


def _error_code_for(exc: Exception) -> ScraperErrorCode:
    if isinstance(exc, ScraperError):
        return exc.code
    if isinstance(exc, HttpError):
        if exc.is_rate_limited:
            return ScraperErrorCode.RATE_LIMITED
        if exc.status == 404:
            return ScraperErrorCode.BOARD_NOT_FOUND
        if exc.is_server_error:
            return ScraperErrorCode.NETWORK_ERROR
        return ScraperErrorCode.UNKNOWN
    if isinstance(exc, asyncio.TimeoutError):
        return ScraperErrorCode.TIMEOUT
    if isinstance(exc, httpx.TransportError):
        return ScraperErrorCode.NETWORK_ERROR
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return ScraperErrorCode.PARSE_ERROR
    return ScraperErrorCode.UNKNOWN


class BaseScraper(ABC):
    """Base class for platform scrapers"""

    platform: str = "unknown"
    config_class = ScraperConfig

    def __init__(self, http_client: HttpClient, config: Optional[ScraperConfig] = None):
        self.http_client = http_client
        self.config = config or self.config_class()

    @abstractmethod
    def validate(self, url: str) -> bool:
        """Return True if this scraper can handle the careers URL"""
        pass

    @abstractmethod
    def extract_identifier(self, url: str) -> Optional[str]:
        """Pull the board token / tenant out of the URL"""
        pass

    @abstractmethod
    async def _scrape(self, url: str, options: ScrapeOptions) -> ScraperResult:
        pass

    async def scrape(self, url: str, options: Optional[ScrapeOptions] = None) -> ScraperResult:
        """
        Scrape every open posting from the careers page.

        Never raises: any error is converted into a failed ScraperResult
        carrying an error code.
        """
        options = options or ScrapeOptions()
        try:
            return await self._scrape(url, options)
        except Exception as e:
            code = _error_code_for(e)
            message = str(e) or type(e).__name__
            logger.warning(f"{self.platform} scrape failed for {url} ({code.value}): {message}")
            return ScraperResult.failure(message, code)

    # Request helpers

    def _headers(self, accept: str = "application/json", **extra: str) -> Dict[str, str]:
        headers = {"Accept": accept, "User-Agent": get_settings().scraper_user_agent}
        headers.update(extra)
        return headers

    def _request_options(self) -> Dict[str, Any]:
        return {
            "timeout_ms": self.config.timeout_ms,
            "retries": self.config.retries,
            "base_delay_ms": self.config.base_delay_ms,
        }

    async def _fetch(self, url: str, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        return await self.http_client.fetch(url, headers=headers or self._headers(), **self._request_options())

    async def _get_json(self, url: str, headers: Optional[Dict[str, str]] = None) -> Any:
        return await self.http_client.get(url, headers=headers or self._headers(), **self._request_options())

    async def _post_json(self, url: str, body: Any, headers: Optional[Dict[str, str]] = None) -> Any:
        return await self.http_client.post(url, body, headers=headers or self._headers(), **self._request_options())

    @staticmethod
    async def _delay(ms: float):
        if ms > 0:
            await asyncio.sleep(ms / 1000)

    normalize_location = staticmethod(normalize_location)

    def generate_external_id(self, *parts) -> str:
        return generate_external_id(self.platform, *parts)

    # Shared pagination / pre-detail selection

    async def _fetch_remaining_pages(
        self,
        offsets: List[int],
        fetch_page: Callable[[int], Awaitable[Optional[List[T]]]],
        parallel: int,
        stagger_ms: Callable[[int], float],
        batch_delay_ms: Callable[[], float],
    ) -> Tuple[List[T], int]:
        """
        Fetch list pages at ``offsets`` with at most ``parallel`` requests in flight.

        ``fetch_page`` returns None for a failed page. Requests inside a batch
        are staggered by ``stagger_ms(index)``; batches are separated by
        ``batch_delay_ms()``.

        Returns:
            (items from every successful page, number of failed pages)
        """
        items: List[T] = []
        failed = 0

        async def staggered(offset: int, index: int):
            await self._delay(stagger_ms(index))
            return await fetch_page(offset)

        for start in range(0, len(offsets), parallel):
            batch = offsets[start:start + parallel]
            results = await asyncio.gather(*(staggered(offset, i) for i, offset in enumerate(batch)))
            for result in results:
                if result is None:
                    failed += 1
                else:
                    items.extend(result)

            if start + parallel < len(offsets):
                await self._delay(batch_delay_ms())

        return items, failed

    def _select_for_detail(
        self,
        items: List[T],
        options: ScrapeOptions,
        get_title: Callable[[T], Optional[str]],
        get_location: Callable[[T], Optional[str]],
        get_external_id: Callable[[T], Optional[str]],
    ) -> Tuple[List[T], Optional[EarlyFilterStats]]:
        """
        Drop list entries that fail the filters or are already stored
        before any detail request is made.
        """
        early = apply_early_filters(items, options.filters, get_title, get_location)

        selected = []
        for item in early.filtered:
            external_id = get_external_id(item)
            if not external_id or external_id in options.existing_external_ids:
                continue
            selected.append(item)

        skipped = len(early.filtered) - len(selected)
        if early.filtered_out or skipped:
            logger.info(
                f"{self.platform}: {len(items)} listed, {early.filtered_out} filtered early, "
                f"{skipped} already known, {len(selected)} to hydrate"
            )
        return selected, early.to_stats()


class BrowserScraper(BaseScraper):
    """Scraper whose API calls need a bootstrapped browser session"""

    config_class = BrowserScraperConfig

    def __init__(
        self,
        http_client: HttpClient,
        browser_client: BrowserClient,
        config: Optional[BrowserScraperConfig] = None,
    ):
        super().__init__(http_client, config)
        self.browser_client = browser_client

    async def _bootstrap_session(self, url: str) -> Optional[BrowserSession]:
        return await self.browser_client.bootstrap(url)
