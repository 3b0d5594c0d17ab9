import logging
from typing import Dict, List, Optional

from jobtracker.config import get_settings
from jobtracker.schemas import ScrapeOptions, ScraperErrorCode, ScraperResult
from jobtracker.services.browser_client import BrowserClient
from jobtracker.services.http_client import HttpClient
from jobtracker.services.scrapers.ashby import AshbyScraper
from jobtracker.services.scrapers.base import BaseScraper
from jobtracker.services.scrapers.eightfold import EightfoldScraper
from jobtracker.services.scrapers.greenhouse import GreenhouseScraper
from jobtracker.services.scrapers.lever import LeverScraper
from jobtracker.services.scrapers.workday import WorkdayScraper

logger = logging.getLogger(__name__)


class ScraperRegistry:
    """Routes a careers URL to the scraper for its platform"""

    def __init__(self, http_client: Optional[HttpClient] = None):
        self._scrapers: Dict[str, BaseScraper] = {}
        self.http_client = http_client

    def register(self, scraper: BaseScraper):
        self._scrapers[scraper.platform] = scraper

    def get_scraper_for_url(self, url: str) -> Optional[BaseScraper]:
        for scraper in self._scrapers.values():
            if scraper.validate(url):
                return scraper
        return None

    def get_scraper_by_platform(self, platform: str) -> Optional[BaseScraper]:
        return self._scrapers.get(platform)

    def get_supported_platforms(self) -> List[str]:
        return list(self._scrapers.keys())

    async def scrape(
        self,
        url: str,
        platform: Optional[str] = None,
        options: Optional[ScrapeOptions] = None,
    ) -> ScraperResult:
        if platform:
            scraper = self.get_scraper_by_platform(platform)
            if scraper is None:
                return ScraperResult.failure(
                    f"No scraper found for platform: {platform}", ScraperErrorCode.INVALID_URL
                )
        else:
            scraper = self.get_scraper_for_url(url)
            if scraper is None:
                supported = ", ".join(self.get_supported_platforms())
                return ScraperResult.failure(
                    f"No scraper found for this URL. Supported platforms: {supported}",
                    ScraperErrorCode.INVALID_URL,
                )

        logger.debug(f"Dispatching {url} to {scraper.platform} scraper")
        return await scraper.scrape(url, options)

    async def aclose(self):
        if self.http_client is not None:
            await self.http_client.aclose()


def create_scraper_registry(
    http_client: Optional[HttpClient] = None,
    browser_client: Optional[BrowserClient] = None,
) -> ScraperRegistry:
    settings = get_settings()
    http_client = http_client or HttpClient(user_agent=settings.scraper_user_agent)
    browser_client = browser_client or BrowserClient(headless=settings.browser_headless)

    registry = ScraperRegistry(http_client)
    registry.register(GreenhouseScraper(http_client))
    registry.register(LeverScraper(http_client))
    registry.register(AshbyScraper(http_client))
    registry.register(EightfoldScraper(http_client, browser_client))
    registry.register(WorkdayScraper(http_client, browser_client))
    return registry
