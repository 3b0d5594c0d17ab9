"""
Eightfold.ai careers scraper.

Eightfold tenants are addressed by a "domain" (usually the company's
primary web domain, e.g. ``acme.com``) that every API call must carry.
Resolution order:
    1. board token supplied on the company
    2. probing ``/api/pcsx/job_cart`` and the careers page HTML
    3. browser bootstrap, capturing ``domain=`` from the page's own API calls
    4. ``<subdomain>.com`` for ``<subdomain>.eightfold.ai`` URLs

List pages are then fetched with bounded parallelism and details hydrated
only for postings that survive the early filter and are not yet stored.
"""

import logging
import math
import re
from typing import List, Optional, Tuple
from urllib.parse import quote, urlparse

from pydantic import Field

from jobtracker.schemas import ScrapeOptions, ScrapedJob, ScraperError, ScraperErrorCode, ScraperResult
from jobtracker.services.description import process_description
from jobtracker.services.scrapers.base import BrowserScraper, BrowserScraperConfig
from jobtracker.services.scrapers.hydrator import hydrate_details_in_batches
from jobtracker.services.scrapers.utils import from_timestamp, parse_employment_type

logger = logging.getLogger(__name__)

JOB_CART_DOMAIN = re.compile(r'"domain"\s*:\s*"([^"]+)"')
PAGE_DOMAIN = re.compile(r"""domain["\s:=]+(["']?)([^"'\s,)}]+)\1""", re.IGNORECASE)

WORK_LOCATION_TYPES = {
    "remote_local": "remote",
    "remote": "remote",
    "hybrid": "hybrid",
    "onsite": "onsite",
}


class EightfoldConfig(BrowserScraperConfig):
    page_size: int = 10
    parallel_list_fetches: int = Field(default=5, ge=1)
    detail_batch_size: int = Field(default=10, ge=1)
    request_delay_ms: int = 100


class EightfoldScraper(BrowserScraper):
    platform = "eightfold"
    config_class = EightfoldConfig

    def validate(self, url: str) -> bool:
        return "eightfold.ai" in url.lower()

    def extract_identifier(self, url: str) -> Optional[str]:
        hostname = (urlparse(url).hostname or "").lower()
        if not hostname:
            return None
        if "eightfold.ai" in hostname:
            return f"{hostname.split('.')[0]}.com"
        return re.sub(r"^(apply|careers)\.", "", hostname)

    async def _scrape(self, url: str, options: ScrapeOptions) -> ScraperResult:
        parsed = urlparse(url)
        hostname = (parsed.hostname or "").lower()
        if not parsed.scheme or not hostname:
            raise ScraperError("Could not parse Eightfold URL.", ScraperErrorCode.INVALID_URL)

        base_url = f"{parsed.scheme}://{hostname}"
        domain, base_url = await self._resolve_domain(url, base_url, options.board_token)
        if not domain:
            raise ScraperError(
                "Failed to detect Eightfold domain. This may not be an Eightfold-powered careers page.",
                ScraperErrorCode.BOARD_NOT_FOUND,
            )

        detected = None if options.board_token else domain
        board = re.sub(r"\.com$", "", domain, flags=re.IGNORECASE)

        listing = await self._fetch_all_positions(base_url, domain)
        if listing is None:
            logger.warning(f"Eightfold {domain}: first list page failed")
            return ScraperResult(
                success=True,
                detected_board_token=detected,
                open_external_ids=[],
                open_external_ids_complete=False,
            )

        positions, is_complete = listing
        open_ids = [self.generate_external_id(board, p["id"]) for p in positions]

        to_fetch, early_stats = self._select_for_detail(
            positions,
            options,
            get_title=lambda p: p.get("name"),
            get_location=lambda p: ", ".join(p.get("locations") or []),
            get_external_id=lambda p: self.generate_external_id(board, p["id"]),
        )

        async def fetch_job(position: dict) -> Optional[ScrapedJob]:
            details = await self._fetch_position_details(base_url, domain, position["id"])
            if details is None:
                return None
            return self._map_position(base_url, board, position, details)

        jobs, _ = await hydrate_details_in_batches(
            to_fetch,
            fetch_job,
            initial_batch_size=self.config.detail_batch_size,
            initial_delay_ms=self.config.request_delay_ms,
        )

        return ScraperResult(
            success=True,
            jobs=jobs,
            detected_board_token=detected,
            early_filtered=early_stats,
            open_external_ids=open_ids,
            open_external_ids_complete=is_complete,
        )

    async def _resolve_domain(
        self, url: str, base_url: str, board_token: Optional[str]
    ) -> Tuple[Optional[str], str]:
        if board_token:
            return board_token, base_url

        domain = await self._detect_domain_from_api(base_url)
        if domain:
            return domain, base_url

        session = await self._bootstrap_session(url)
        if session and session.domain:
            logger.info(f"Eightfold: bootstrapped browser session (domain: {session.domain})")
            return session.domain, session.base_url

        hostname = urlparse(base_url).hostname or ""
        if "eightfold.ai" in hostname:
            return f"{hostname.split('.')[0]}.com", base_url
        return None, base_url

    async def _detect_domain_from_api(self, base_url: str) -> Optional[str]:
        try:
            response = await self._fetch(f"{base_url}/api/pcsx/job_cart")
            if response.is_success:
                match = JOB_CART_DOMAIN.search(response.text)
                if match:
                    return match.group(1)

            page = await self._fetch(base_url, headers=self._headers(accept="text/html"))
            if page.is_success:
                match = PAGE_DOMAIN.search(page.text)
                if match:
                    return match.group(2)
        except Exception as e:
            logger.debug(f"Eightfold domain probe failed for {base_url}: {e}")
        return None

    async def _fetch_job_list(self, base_url: str, domain: str, start: int) -> Optional[dict]:
        url = (
            f"{base_url}/api/pcsx/search?domain={quote(domain, safe='')}"
            f"&query=&location=&start={start}&sort_by=timestamp"
        )
        try:
            response = await self._fetch(url)
        except Exception as e:
            logger.debug(f"Eightfold list page {start} failed: {e}")
            return None
        if not response.is_success:
            return None
        return response.json()

    async def _fetch_all_positions(self, base_url: str, domain: str) -> Optional[Tuple[List[dict], bool]]:
        first = await self._fetch_job_list(base_url, domain, 0)
        if not first or first.get("status") != 200 or not first.get("data"):
            return None

        total = first["data"].get("count") or 0
        positions = list(first["data"].get("positions") or [])
        failed = 0

        page_size = self.config.page_size
        if total > page_size:
            offsets = [page * page_size for page in range(1, math.ceil(total / page_size))]

            async def fetch_page(offset: int) -> Optional[List[dict]]:
                result = await self._fetch_job_list(base_url, domain, offset)
                data = (result or {}).get("data") or {}
                if not isinstance(data.get("positions"), list):
                    return None
                return data["positions"]

            more, failed = await self._fetch_remaining_pages(
                offsets,
                fetch_page,
                parallel=self.config.parallel_list_fetches,
                stagger_ms=lambda index: index * 50,
                batch_delay_ms=lambda: self.config.request_delay_ms,
            )
            positions.extend(more)

        return positions, failed == 0 and len(positions) >= total

    async def _fetch_position_details(self, base_url: str, domain: str, position_id) -> Optional[dict]:
        url = (
            f"{base_url}/api/pcsx/position_details?position_id={position_id}"
            f"&domain={quote(domain, safe='')}&hl=en"
        )
        response = await self._fetch(url)
        if not response.is_success:
            return None
        return response.json().get("data") or None

    def _map_position(self, base_url: str, board: str, position: dict, details: dict) -> ScrapedJob:
        locations = details.get("locations") or position.get("locations") or []
        location = ", ".join(locations) or None
        description, description_format = process_description(details.get("jobDescription"), "html")

        time_types = details.get("efcustomTextTimeType") or []
        work_option = (details.get("workLocationOption") or position.get("workLocationOption") or "").lower()

        return ScrapedJob(
            external_id=self.generate_external_id(board, position["id"]),
            title=details.get("name") or position["name"],
            url=details.get("publicUrl") or self._build_job_url(base_url, position),
            location=location,
            location_type=WORK_LOCATION_TYPES.get(work_option),
            department=details.get("department") or position.get("department"),
            description=description,
            description_format=description_format,
            employment_type=parse_employment_type(time_types[0]) if time_types else None,
            posted_date=from_timestamp(position.get("postedTs") or None),
        )

    @staticmethod
    def _build_job_url(base_url: str, position: dict) -> str:
        position_url = position.get("positionUrl")
        if position_url:
            return position_url if position_url.startswith("http") else f"{base_url}{position_url}"
        return f"{base_url}/careers/job/{position['id']}"
