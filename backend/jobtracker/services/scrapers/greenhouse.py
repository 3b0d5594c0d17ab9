import logging
import re
from typing import List, Optional

from jobtracker.schemas import ScrapeOptions, ScrapedJob, ScraperError, ScraperErrorCode, ScraperResult
from jobtracker.services.description import contains_html, decode_html_entities, process_description
from jobtracker.services.scrapers.base import BaseScraper
from jobtracker.services.scrapers.utils import parse_iso_datetime

logger = logging.getLogger(__name__)

TOKEN_PATTERNS = [
    re.compile(r"boards\.greenhouse\.io/([^/?#]+)", re.IGNORECASE),
    re.compile(r"job-boards\.greenhouse\.io/([^/?#]+)", re.IGNORECASE),
    re.compile(r"([^./]+)\.greenhouse\.io", re.IGNORECASE),
]
RESERVED_SUBDOMAINS = {"boards", "job-boards"}


class GreenhouseScraper(BaseScraper):
    platform = "greenhouse"
    api_base_url = "https://boards-api.greenhouse.io"
    embed_base_url = "https://boards.greenhouse.io"

    def validate(self, url: str) -> bool:
        url_lower = url.lower()
        return "greenhouse.io" in url_lower or "boards.greenhouse" in url_lower

    def extract_identifier(self, url: str) -> Optional[str]:
        for pattern in TOKEN_PATTERNS:
            match = pattern.search(url)
            if match and match.group(1) not in RESERVED_SUBDOMAINS:
                return match.group(1)
        return None

    async def _scrape(self, url: str, options: ScrapeOptions) -> ScraperResult:
        board_token = options.board_token or self.extract_identifier(url)
        if not board_token:
            raise ScraperError(
                "Could not extract board token from URL. Please provide the board token manually.",
                ScraperErrorCode.INVALID_URL,
            )
        detected = None if options.board_token else board_token

        response = await self._fetch(f"{self.api_base_url}/v1/boards/{board_token}/jobs?content=true")
        if not response.is_success:
            # Older boards only expose the embed feed
            fallback = await self._fetch(f"{self.embed_base_url}/{board_token}/embed/job_board/jobs.json")
            if not fallback.is_success:
                code = (
                    ScraperErrorCode.BOARD_NOT_FOUND
                    if response.status_code == 404
                    else ScraperErrorCode.NETWORK_ERROR
                )
                raise ScraperError(f"Failed to fetch jobs: {response.status_code}", code)
            data = fallback.json()
        else:
            data = response.json()

        jobs = [self._parse_job(job, board_token) for job in data.get("jobs", [])]
        logger.info(f"Greenhouse board {board_token}: {len(jobs)} jobs")

        return ScraperResult(
            success=True,
            jobs=jobs,
            detected_board_token=detected,
            open_external_ids=[job.external_id for job in jobs],
            open_external_ids_complete=True,
        )

    def _parse_job(self, data: dict, board_token: str) -> ScrapedJob:
        location, location_type = self.normalize_location(self._combined_location(data))

        description = None
        description_format = "plain"
        if data.get("content"):
            decoded = decode_html_entities(data["content"])
            if contains_html(decoded):
                description, description_format = process_description(decoded, "html")
            else:
                description, description_format = decoded, "markdown"

        departments = data.get("departments") or []
        return ScrapedJob(
            external_id=self.generate_external_id(board_token, data["id"]),
            title=data["title"],
            url=data["absolute_url"],
            location=location,
            location_type=location_type,
            department=departments[0].get("name") if departments else None,
            description=description,
            description_format=description_format,
            posted_date=parse_iso_datetime(data.get("updated_at")),
        )

    @staticmethod
    def _combined_location(data: dict) -> str:
        """Primary location name plus any "location" custom metadata field."""
        metadata_location = ""
        for entry in data.get("metadata") or []:
            if "location" in (entry.get("name") or "").lower():
                value = entry.get("value")
                if isinstance(value, list):
                    metadata_location = ", ".join(str(v) for v in value if v)
                elif isinstance(value, str):
                    metadata_location = value
                break

        primary = (data.get("location") or {}).get("name") or ""
        parts: List[str] = [part for part in (primary, metadata_location) if part]
        return ", ".join(parts)
