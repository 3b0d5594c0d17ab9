"""
Workday careers scraper.

Workday's CXS API (``/wday/cxs/{tenant}/{board}/...``) rejects requests
without a browser-issued session cookie and the matching
``x-calypso-csrf-token`` header, so every scrape starts with a browser
bootstrap. List pages return 20 postings with no description; details
are fetched per posting, which is where Workday rate limits hardest, so
list fetches are staggered and detail batches are small and adaptive.
"""

import logging
import math
import random
import re
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from jobtracker.schemas import ScrapeOptions, ScrapedJob, ScraperError, ScraperErrorCode, ScraperResult
from jobtracker.services.browser_client import BrowserSession
from jobtracker.services.description import contains_html, process_description
from jobtracker.services.scrapers.base import BrowserScraper, BrowserScraperConfig
from jobtracker.services.scrapers.hydrator import hydrate_details_in_batches
from jobtracker.services.scrapers.utils import parse_employment_type, parse_relative_posted_date

logger = logging.getLogger(__name__)

TENANT_HOST = re.compile(r"([^.]+)\.wd\d*\.myworkdayjobs\.com", re.IGNORECASE)
LOCALE_SEGMENT = re.compile(r"^[a-z]{2}-[a-z]{2}$", re.IGNORECASE)
CSRF_HEADER = "x-calypso-csrf-token"


class WorkdayConfig(BrowserScraperConfig):
    parallel_list_fetches: int = Field(default=2, ge=1)
    detail_batch_size: int = Field(default=5, ge=1)
    list_page_size: int = 20
    request_delay_base_ms: int = 800
    request_delay_jitter_ms: int = 200


class WorkdayTarget(BaseModel):
    base_url: str
    tenant: str
    board: str


class WorkdayScraper(BrowserScraper):
    platform = "workday"
    config_class = WorkdayConfig

    def validate(self, url: str) -> bool:
        return "myworkdayjobs.com" in url.lower()

    def extract_identifier(self, url: str) -> Optional[str]:
        target = self.parse_url(url)
        return f"{target.tenant}/{target.board}" if target else None

    @staticmethod
    def parse_url(url: str) -> Optional[WorkdayTarget]:
        parsed = urlparse(url)
        hostname = parsed.hostname or ""
        segments = [s for s in parsed.path.split("/") if s]

        match = TENANT_HOST.search(hostname)
        if match:
            tenant = match.group(1)
            index = 0
        elif hostname == "myworkdayjobs.com":
            tenant = segments[0] if segments else ""
            index = 1
        else:
            return None

        if index < len(segments) and LOCALE_SEGMENT.match(segments[index]):
            index += 1

        board = segments[index] if index < len(segments) else tenant
        if not tenant or not board:
            return None
        return WorkdayTarget(base_url=f"{parsed.scheme}://{hostname}", tenant=tenant, board=board)

    async def _scrape(self, url: str, options: ScrapeOptions) -> ScraperResult:
        detected = None
        if options.board_token and "/" in options.board_token:
            tenant, board = options.board_token.split("/", 1)
            parsed = urlparse(url)
            target = WorkdayTarget(base_url=f"{parsed.scheme}://{parsed.hostname}", tenant=tenant, board=board)
        else:
            target = self.parse_url(url)
            if target is None:
                raise ScraperError(
                    "Could not parse Workday URL. Expected format: https://company.wd5.myworkdayjobs.com/board",
                    ScraperErrorCode.INVALID_URL,
                )
            detected = f"{target.tenant}/{target.board}"

        session = await self._bootstrap_session(f"{target.base_url}/{target.board}")
        if not session or not session.csrf_token or not session.cookies:
            raise ScraperError(
                "Failed to establish session with Workday. The site may have bot protection enabled.",
                ScraperErrorCode.CSRF_ERROR,
            )
        logger.info(f"Workday: bootstrapped browser session (tenant: {target.tenant}/{target.board})")

        listing = await self._fetch_all_postings(target, session)
        if listing is None:
            logger.warning(f"Workday {target.tenant}/{target.board}: first list page failed")
            return ScraperResult(
                success=True,
                detected_board_token=detected,
                open_external_ids=[],
                open_external_ids_complete=False,
            )

        postings, is_complete = listing
        open_ids = []
        for posting in postings:
            external_id = self._external_id(target, posting)
            if external_id:
                open_ids.append(external_id)

        to_fetch, early_stats = self._select_for_detail(
            postings,
            options,
            get_title=lambda p: p.get("title"),
            get_location=lambda p: p.get("locationsText"),
            get_external_id=lambda p: self._external_id(target, p),
        )

        async def fetch_job(posting: dict) -> Optional[ScrapedJob]:
            return await self._hydrate_posting(target, session, posting)

        jobs, _ = await hydrate_details_in_batches(
            to_fetch,
            fetch_job,
            initial_batch_size=self.config.detail_batch_size,
            initial_delay_ms=self.config.request_delay_base_ms,
        )

        return ScraperResult(
            success=True,
            jobs=jobs,
            detected_board_token=detected,
            early_filtered=early_stats,
            open_external_ids=open_ids,
            open_external_ids_complete=is_complete,
        )

    def _session_headers(self, session: BrowserSession) -> dict:
        return self._headers(**{"Cookie": session.cookies, CSRF_HEADER: session.csrf_token})

    def _jitter_delay_ms(self) -> float:
        jitter = self.config.request_delay_jitter_ms
        return self.config.request_delay_base_ms + random.randint(-jitter, jitter)

    @staticmethod
    def _posting_id(posting: dict) -> Optional[str]:
        external_path = posting.get("externalPath") or ""
        posting_id = external_path.rstrip("/").split("/")[-1] if external_path else ""
        if not posting_id:
            bullets = posting.get("bulletFields") or []
            posting_id = bullets[1] if len(bullets) > 1 else ""
        return posting_id or None

    def _external_id(self, target: WorkdayTarget, posting: dict) -> Optional[str]:
        posting_id = self._posting_id(posting)
        return self.generate_external_id(target.board, posting_id) if posting_id else None

    async def _fetch_list_page(self, target: WorkdayTarget, session: BrowserSession, offset: int) -> Optional[dict]:
        url = f"{target.base_url}/wday/cxs/{target.tenant}/{target.board}/jobs"
        body = {
            "appliedFacets": {},
            "limit": self.config.list_page_size,
            "offset": offset,
            "searchText": "",
        }
        try:
            return await self._post_json(url, body, headers=self._session_headers(session))
        except Exception as e:
            logger.debug(f"Workday list page at offset {offset} failed: {e}")
            return None

    async def _fetch_all_postings(self, target: WorkdayTarget, session: BrowserSession):
        first = await self._fetch_list_page(target, session, 0)
        if not first or not isinstance(first.get("jobPostings"), list):
            return None

        total = first.get("total") or 0
        postings: List[dict] = list(first["jobPostings"])
        failed = 0

        page_size = self.config.list_page_size
        if total > page_size:
            offsets = [page * page_size for page in range(1, math.ceil(total / page_size))]

            async def fetch_page(offset: int) -> Optional[List[dict]]:
                result = await self._fetch_list_page(target, session, offset)
                if not result or not isinstance(result.get("jobPostings"), list):
                    return None
                return result["jobPostings"]

            more, failed = await self._fetch_remaining_pages(
                offsets,
                fetch_page,
                parallel=self.config.parallel_list_fetches,
                stagger_ms=lambda index: 300 + index * 400 + random.randint(0, 199),
                batch_delay_ms=self._jitter_delay_ms,
            )
            postings.extend(more)

        return postings, failed == 0 and len(postings) >= total

    async def _hydrate_posting(
        self, target: WorkdayTarget, session: BrowserSession, posting: dict
    ) -> Optional[ScrapedJob]:
        posting_id = self._posting_id(posting)
        if not posting_id:
            return None

        url = f"{target.base_url}/wday/cxs/{target.tenant}/{target.board}/job/{posting_id}"
        detail = await self._get_json(url, headers=self._session_headers(session))
        info = (detail or {}).get("jobPostingInfo")
        if not info:
            return None

        raw_description = info.get("jobDescription") or ""
        source_format = "html" if contains_html(raw_description) else "plain"
        description, description_format = process_description(raw_description, source_format)

        location = (posting.get("locationsText") or "").strip() or None
        return ScrapedJob(
            external_id=self.generate_external_id(target.board, posting_id),
            title=posting.get("title") or info.get("title"),
            url=info.get("externalUrl") or f"{target.base_url}/{target.board}{posting.get('externalPath') or ''}",
            location=location,
            location_type=self._parse_remote_type(posting.get("remoteType")),
            description=description,
            description_format=description_format,
            employment_type=parse_employment_type(info.get("timeType")),
            posted_date=parse_relative_posted_date(posting.get("postedOn")),
        )

    @staticmethod
    def _parse_remote_type(remote_type: Optional[str]) -> Optional[str]:
        if not remote_type:
            return None
        lowered = remote_type.lower()
        if lowered in ("remote", "hybrid"):
            return lowered
        return "onsite"
