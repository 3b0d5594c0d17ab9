import logging
from typing import Optional
from urllib.parse import quote, urlparse

from jobtracker.schemas import ScrapeOptions, ScrapedJob, ScraperError, ScraperErrorCode, ScraperResult
from jobtracker.services.description import process_description
from jobtracker.services.scrapers.base import BaseScraper
from jobtracker.services.scrapers.utils import parse_employment_type, parse_iso_datetime

logger = logging.getLogger(__name__)

ASHBY_EMPLOYMENT_TYPES = {
    "FullTime": "full-time",
    "PartTime": "part-time",
    "Intern": "intern",
    "Contract": "contract",
    "Temporary": "temporary",
}


class AshbyScraper(BaseScraper):
    platform = "ashby"
    api_base_url = "https://api.ashbyhq.com"

    def validate(self, url: str) -> bool:
        return "jobs.ashbyhq.com" in url.lower()

    def extract_identifier(self, url: str) -> Optional[str]:
        segments = [s for s in urlparse(url).path.split("/") if s]
        return segments[0] if segments else None

    async def _scrape(self, url: str, options: ScrapeOptions) -> ScraperResult:
        board_name = options.board_token or self.extract_identifier(url)
        if not board_name:
            raise ScraperError(
                "Could not determine Ashby job board name from URL. "
                "Please provide the board token (jobs page name) manually.",
                ScraperErrorCode.INVALID_URL,
            )

        response = await self._fetch(
            f"{self.api_base_url}/posting-api/job-board/{quote(board_name, safe='')}?includeCompensation=true"
        )
        if not response.is_success:
            code = ScraperErrorCode.BOARD_NOT_FOUND if response.status_code == 404 else ScraperErrorCode.NETWORK_ERROR
            raise ScraperError(f"Failed to fetch Ashby jobs: {response.status_code}", code)

        postings = response.json().get("jobs", [])
        jobs = [self._parse_job(posting, board_name, index) for index, posting in enumerate(postings)]
        logger.info(f"Ashby board {board_name}: {len(jobs)} jobs")

        return ScraperResult(
            success=True,
            jobs=jobs,
            detected_board_token=None if options.board_token else board_name,
            open_external_ids=[job.external_id for job in jobs],
            open_external_ids_complete=True,
        )

    def _parse_job(self, data: dict, board_name: str, index: int) -> ScrapedJob:
        secondary = data.get("secondaryLocations") or []
        primary_location = (
            data.get("location")
            or (secondary[0].get("location") if secondary else None)
            or ("Remote" if data.get("isRemote") else None)
        )
        location, location_type = self.normalize_location(primary_location)

        description = None
        description_format = "plain"
        if data.get("descriptionHtml"):
            description, description_format = process_description(data["descriptionHtml"], "html")
        elif data.get("descriptionPlain"):
            description = data["descriptionPlain"]

        raw_type = data.get("employmentType")
        employment_type = parse_employment_type(ASHBY_EMPLOYMENT_TYPES.get(raw_type, raw_type))

        job_url = data.get("jobUrl") or data.get("applyUrl")
        return ScrapedJob(
            external_id=self.generate_external_id(board_name, job_url or index),
            title=data["title"],
            url=job_url or "",
            location=location,
            location_type=location_type,
            department=data.get("team") or data.get("department"),
            description=description,
            description_format=description_format,
            employment_type=employment_type,
            posted_date=parse_iso_datetime(data.get("publishedAt")),
        )
