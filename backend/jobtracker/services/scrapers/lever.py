import logging
import re
from typing import Optional

from jobtracker.schemas import ScrapeOptions, ScrapedJob, ScraperError, ScraperErrorCode, ScraperResult
from jobtracker.services.scrapers.base import BaseScraper
from jobtracker.services.scrapers.utils import from_timestamp, parse_employment_type

logger = logging.getLogger(__name__)

SLUG_PATTERNS = [
    re.compile(r"jobs\.lever\.co/([^/?#]+)", re.IGNORECASE),
    re.compile(r"([^./]+)\.lever\.co", re.IGNORECASE),
]


class LeverScraper(BaseScraper):
    platform = "lever"
    api_base_url = "https://api.lever.co"

    def validate(self, url: str) -> bool:
        url_lower = url.lower()
        return "lever.co" in url_lower or "jobs.lever" in url_lower

    def extract_identifier(self, url: str) -> Optional[str]:
        for pattern in SLUG_PATTERNS:
            match = pattern.search(url)
            if match and match.group(1) != "jobs":
                return match.group(1)
        return None

    async def _scrape(self, url: str, options: ScrapeOptions) -> ScraperResult:
        slug = options.board_token or self.extract_identifier(url)
        if not slug:
            raise ScraperError(
                "Could not extract company slug from URL. Please provide the board token manually.",
                ScraperErrorCode.INVALID_URL,
            )

        data = await self._get_json(f"{self.api_base_url}/v0/postings/{slug}?mode=json")
        jobs = [self._parse_job(posting, slug) for posting in data]
        logger.info(f"Lever company {slug}: {len(jobs)} jobs")

        return ScraperResult(
            success=True,
            jobs=jobs,
            detected_board_token=None if options.board_token else slug,
            open_external_ids=[job.external_id for job in jobs],
            open_external_ids_complete=True,
        )

    def _parse_job(self, data: dict, slug: str) -> ScrapedJob:
        categories = data.get("categories") or {}
        location, location_type = self.normalize_location(categories.get("location"))

        return ScrapedJob(
            external_id=self.generate_external_id(slug, data["id"]),
            title=data["text"],
            url=data["hostedUrl"],
            location=location,
            location_type=location_type,
            department=categories.get("team") or categories.get("department"),
            employment_type=parse_employment_type(categories.get("commitment")),
            description=data.get("descriptionPlain") or None,
            description_format="plain",
            posted_date=from_timestamp(data.get("createdAt"), millis=True),
        )
