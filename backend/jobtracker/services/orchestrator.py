"""
Scrape Orchestrator - drives company scrapes end to end

Per company:
    scrape → sync archive/reopen → dedupe → refresh changed duplicates
    → filter new jobs → insert → update company → ScrapingLog
    → (optional) background AI matching of the inserted jobs

Every run is audited as a ScrapeSession, including a single-company
refresh. A failing company never aborts a batch; it becomes an "error"
ScrapingLog and the session ends "partial" (some succeeded) or "failed"
(none did). Sessions can be stopped externally; workers check the session
status before starting each company.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Set

from jobtracker.database import utcnow
from jobtracker.middleware.metrics import record_scrape
from jobtracker.models import Company
from jobtracker.models.job import ARCHIVABLE_JOB_STATUSES
from jobtracker.schemas import (
    BatchFetchResult,
    BatchSummary,
    ExistingJob,
    FetchResult,
    JobFilters,
    ScrapeOptions,
    ScraperResult,
)
from jobtracker.services.dedup import DeduplicationService, DuplicateMatch
from jobtracker.services.filters import apply_filters
from jobtracker.services.matcher import JobMatcher
from jobtracker.services.repository import ScraperRepository
from jobtracker.services.scrapers.registry import ScraperRegistry, create_scraper_registry
from jobtracker.services.settings_service import SettingsService

logger = logging.getLogger(__name__)

SAFE_HYDRATION_MATCH_REASONS = ("external_id", "url")
DEFAULT_INTER_COMPANY_DELAY_MS = 1000


def _has_description(description: Optional[str]) -> bool:
    return bool(description and description.strip())


def _normalize_platform(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = value.strip().lower()
    return normalized or None


def is_custom_platform(value: Optional[str]) -> bool:
    return _normalize_platform(value) == "custom"


def resolve_batch_status(results: List[FetchResult]) -> str:
    if not results or all(result.outcome == "success" for result in results):
        return "completed"
    if all(result.outcome == "error" for result in results):
        return "failed"
    return "partial"


def resolve_session_status(outcome: str) -> str:
    if outcome == "success":
        return "completed"
    if outcome == "error":
        return "failed"
    return "partial"


class ScrapeOrchestrator:
    """
    Runs scrapes for one or many companies.

    Attributes:
        repository: persistence facade
        registry: routes careers URLs to platform scrapers
        dedup: classifies scraped jobs as new or already stored
        settings_service: filters, parallelism and matcher config
        matcher: JobMatcher used for auto-match after scrape
        inter_company_delay_ms: pause a worker takes between companies
    """

    def __init__(
        self,
        repository: Optional[ScraperRepository] = None,
        registry: Optional[ScraperRegistry] = None,
        dedup: Optional[DeduplicationService] = None,
        settings_service: Optional[SettingsService] = None,
        matcher: Optional[JobMatcher] = None,
        inter_company_delay_ms: int = DEFAULT_INTER_COMPANY_DELAY_MS,
    ):
        self.repository = repository or ScraperRepository()
        self.registry = registry or create_scraper_registry()
        self.dedup = dedup or DeduplicationService()
        self.settings_service = settings_service or SettingsService(self.repository)
        self.matcher = matcher or JobMatcher(settings_service=self.settings_service)
        self.inter_company_delay_ms = inter_company_delay_ms
        self._background_tasks: Set[asyncio.Task] = set()

    # ==================== Entry points ====================

    async def fetch_jobs_for_company(
        self,
        company_id: int,
        session_id: Optional[str] = None,
        trigger_source: str = "manual",
        filters: Optional[JobFilters] = None,
    ) -> FetchResult:
        """
        Scrape one company.

        Without ``session_id`` the refresh gets its own one-company session,
        finalized here unless it was stopped in the meantime.
        """
        company = await self.repository.get_company(company_id)
        if company is None:
            logger.error(f"Company {company_id}: not found")
            return FetchResult(
                company_id=company_id,
                company_name="Unknown",
                success=False,
                outcome="error",
                error="Company not found",
            )

        standalone = session_id is None
        if standalone:
            session_id = await self.repository.create_session(trigger_source, companies_total=1)

        result = await self._scrape_or_skip(company, session_id, trigger_source, filters)

        if standalone and await self.repository.is_session_in_progress(session_id):
            await self.repository.update_session_progress(
                session_id,
                companies_completed=1,
                total_jobs_found=result.jobs_found,
                total_jobs_added=result.jobs_added,
                total_jobs_filtered=result.jobs_filtered,
                total_jobs_archived=result.jobs_archived,
            )
            await self.repository.complete_session(session_id, resolve_session_status(result.outcome))

        return result

    async def fetch_jobs_for_all_companies(self, trigger_source: str = "manual") -> BatchFetchResult:
        companies = await self.repository.get_active_companies()
        scrapeable = [company for company in companies if not is_custom_platform(company.platform)]
        return await self._scrape_batch(scrapeable, trigger_source)

    async def fetch_jobs_for_companies(self, company_ids: List[int], trigger_source: str = "manual") -> BatchFetchResult:
        wanted = set(company_ids)
        companies = await self.repository.get_active_companies()
        selected = [company for company in companies if company.id in wanted]
        return await self._scrape_batch(selected, trigger_source)

    async def stop_session(self, session_id: str) -> bool:
        stopped = await self.repository.stop_session(session_id)
        if stopped:
            logger.info(f"Scrape session {session_id}: stop requested")
        return stopped

    async def wait_for_background_tasks(self):
        """Await in-flight background matching (used on shutdown and in tests)."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # ==================== Batch ====================

    async def _scrape_batch(self, companies: List[Company], trigger_source: str) -> BatchFetchResult:
        started = time.monotonic()
        session_id = await self.repository.create_session(trigger_source, companies_total=len(companies))
        logger.info(f"Scrape session {session_id}: starting batch of {len(companies)} companies ({trigger_source})")

        max_parallel = await self.settings_service.get_max_parallel_scrapes()
        worker_count = min(max_parallel, len(companies))
        results_by_index: Dict[int, FetchResult] = {}
        queue = list(enumerate(companies))
        state = {"stop_requested": False, "crashed": False}
        progress_lock = asyncio.Lock()

        async def process_queue():
            while queue and not state["stop_requested"]:
                index, company = queue.pop(0)

                if not await self.repository.is_session_in_progress(session_id):
                    state["stop_requested"] = True
                    logger.info(f"Scrape session {session_id}: stopped, skipping remaining companies")
                    return

                result = await self._scrape_or_skip(company, session_id, trigger_source)
                results_by_index[index] = result

                async with progress_lock:
                    summary = self._summarize(list(results_by_index.values()))
                    await self.repository.update_session_progress(
                        session_id,
                        companies_completed=len(results_by_index),
                        total_jobs_found=summary.total_jobs_found,
                        total_jobs_added=summary.total_jobs_added,
                        total_jobs_filtered=summary.total_jobs_filtered,
                        total_jobs_archived=summary.total_jobs_archived,
                    )

                if queue and self.inter_company_delay_ms > 0:
                    await asyncio.sleep(self.inter_company_delay_ms / 1000)

        async def worker():
            try:
                await process_queue()
            except Exception:
                logger.exception(f"Scrape session {session_id}: worker crashed, stopping batch")
                state["stop_requested"] = True
                state["crashed"] = True

        await asyncio.gather(*(worker() for _ in range(worker_count)))

        results = [results_by_index[index] for index in sorted(results_by_index)]
        status = "failed" if state["crashed"] else resolve_batch_status(results)
        try:
            if await self.repository.is_session_in_progress(session_id):
                await self.repository.complete_session(session_id, status)
            else:
                status = "failed"
        except Exception:
            logger.exception(f"Scrape session {session_id}: could not record final status")
            status = "failed"

        summary = self._summarize(results)
        summary.total_companies = len(companies)
        summary.total_duration = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Scrape session {session_id}: {status} - "
            f"{summary.successful_companies}/{len(companies)} companies succeeded, "
            f"{summary.total_jobs_added} jobs added"
        )
        return BatchFetchResult(session_id=session_id, status=status, results=results, summary=summary)

    @staticmethod
    def _summarize(results: List[FetchResult]) -> BatchSummary:
        successful = sum(1 for result in results if result.outcome == "success")
        return BatchSummary(
            total_companies=len(results),
            successful_companies=successful,
            failed_companies=len(results) - successful,
            total_jobs_found=sum(result.jobs_found for result in results),
            total_jobs_added=sum(result.jobs_added for result in results),
            total_jobs_filtered=sum(result.jobs_filtered for result in results),
            total_jobs_archived=sum(result.jobs_archived for result in results),
        )

    # ==================== One company ====================

    async def _scrape_or_skip(
        self,
        company: Company,
        session_id: str,
        trigger_source: str,
        filters: Optional[JobFilters] = None,
    ) -> FetchResult:
        if is_custom_platform(company.platform):
            logger.info(f"Company {company.name}: skipping custom platform company")
            return FetchResult(company_id=company.id, company_name=company.name, success=True, outcome="success")
        return await self._scrape_company(company, session_id, trigger_source, filters)

    async def _scrape_company(
        self,
        company: Company,
        session_id: str,
        trigger_source: str,
        filters: Optional[JobFilters],
    ) -> FetchResult:
        started = time.monotonic()
        platform = _normalize_platform(company.platform)
        logger.info(f"Company {company.name}: scraping {company.careers_url} ({platform or 'auto-detect'})")

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            existing_jobs = await self.repository.get_existing_jobs(company.id)
            existing_external_ids = {
                job.external_id
                for job in existing_jobs
                if job.external_id and _has_description(job.description)
            }
            filters = filters or await self.settings_service.get_scraper_filters()
            options = ScrapeOptions(
                board_token=company.board_token,
                filters=filters,
                existing_external_ids=existing_external_ids,
            )

            scraper_result = await self.registry.scrape(company.careers_url, platform, options)
            return await self._process_result(
                company, platform, scraper_result, existing_jobs, filters, session_id, trigger_source, started
            )
        except Exception as e:
            logger.exception(f"Company {company.name}: scrape failed")
            error = str(e) or "Unknown error"
            await self._log_error(company.id, platform, session_id, trigger_source, error, elapsed_ms())
            record_scrape(platform, "error", elapsed_ms() / 1000)
            return FetchResult(
                company_id=company.id,
                company_name=company.name,
                success=False,
                outcome="error",
                platform=platform,
                error=error,
                duration=elapsed_ms(),
            )

    async def _process_result(
        self,
        company: Company,
        platform: Optional[str],
        scraper_result: ScraperResult,
        existing_jobs: List[ExistingJob],
        filters: JobFilters,
        session_id: str,
        trigger_source: str,
        started: float,
    ) -> FetchResult:
        if not scraper_result.success:
            error = scraper_result.error or "Unknown error"
            duration = int((time.monotonic() - started) * 1000)
            logger.error(f"Company {company.name}: {error}")
            await self._log_error(company.id, platform, session_id, trigger_source, error, duration)
            record_scrape(platform, "error", duration / 1000)
            return FetchResult(
                company_id=company.id,
                company_name=company.name,
                success=False,
                outcome="error",
                platform=platform,
                error=error,
                duration=duration,
            )

        outcome = "partial" if scraper_result.open_external_ids_complete is False else "success"
        early = scraper_result.early_filtered
        early_total = early.total if early else 0
        jobs_found = len(scraper_result.jobs) + early_total

        if early_total:
            logger.info(
                f"Company {company.name}: fetched {jobs_found} jobs, early-filtered {early_total} "
                f"(country: {early.country}, city: {early.city}, title: {early.title})"
            )
        else:
            logger.info(f"Company {company.name}: fetched {jobs_found} jobs")

        open_ids = scraper_result.open_external_ids
        if open_ids is None:
            open_ids = [job.external_id for job in scraper_result.jobs]
        open_ids = list(dict.fromkeys(external_id for external_id in open_ids if external_id))

        jobs_archived = await self._sync_archived_jobs(company.id, open_ids, scraper_result.open_external_ids_complete)

        dedup_result = self.dedup.batch_deduplicate(scraper_result.jobs, existing_jobs)
        filter_result = apply_filters(dedup_result.new_jobs, filters)
        candidates = self._duplicate_hydration_candidates(dedup_result.duplicates, existing_jobs)
        jobs_updated = await self.repository.update_existing_jobs_from_scrape(candidates)

        if filter_result.filtered_out and not early_total:
            breakdown = filter_result.breakdown
            logger.info(
                f"Company {company.name}: filtered out {filter_result.filtered_out} jobs "
                f"(country: {breakdown.failed_country}, city: {breakdown.failed_city}, title: {breakdown.failed_title})"
            )

        inserted_ids = await self.repository.insert_jobs(company.id, filter_result.filtered)
        jobs_added = len(inserted_ids)

        await self._update_company_metadata(company, scraper_result.detected_board_token)
        logger.info(
            f"Company {company.name}: added {jobs_added} jobs, "
            f"{len(dedup_result.duplicates)} duplicates, {jobs_updated} refreshed, {jobs_archived} archived"
        )

        matchable_ids: List[int] = []
        if inserted_ids:
            matcher_config = await self.settings_service.get_matcher_config()
            if matcher_config.auto_match_after_scrape:
                matchable_ids = await self.repository.get_matchable_job_ids(inserted_ids)

        jobs_filtered = filter_result.filtered_out + early_total
        duration = int((time.monotonic() - started) * 1000)
        log_id = await self.repository.create_scraping_log(
            company_id=company.id,
            session_id=session_id,
            trigger_source=trigger_source,
            platform=platform,
            status="success" if outcome == "success" else "partial",
            jobs_found=jobs_found,
            jobs_added=jobs_added,
            jobs_updated=jobs_updated,
            jobs_filtered=jobs_filtered,
            jobs_archived=jobs_archived,
            duration=duration,
            matcher_status="pending" if matchable_ids else None,
            matcher_jobs_total=len(matchable_ids) if matchable_ids else None,
            matcher_jobs_completed=0,
        )

        if matchable_ids:
            self._start_background_matching(matchable_ids, log_id, company.id)

        record_scrape(
            platform,
            outcome,
            duration / 1000,
            found=jobs_found,
            added=jobs_added,
            updated=jobs_updated,
            filtered=jobs_filtered,
            archived=jobs_archived,
        )
        return FetchResult(
            company_id=company.id,
            company_name=company.name,
            success=outcome == "success",
            outcome=outcome,
            jobs_found=jobs_found,
            jobs_added=jobs_added,
            jobs_updated=jobs_updated,
            jobs_filtered=jobs_filtered,
            jobs_archived=jobs_archived,
            platform=platform,
            duration=duration,
            log_id=log_id,
        )

    async def _sync_archived_jobs(self, company_id: int, open_ids: List[str], open_ids_complete: Optional[bool]) -> int:
        if open_ids:
            reopened = await self.repository.reopen_scraper_archived_jobs(company_id, open_ids)
            if reopened:
                logger.info(f"Company {company_id}: reopened {reopened} archived jobs")

        # An incomplete listing would archive postings that are still open
        if open_ids_complete is False:
            return 0
        return await self.repository.archive_missing_jobs(company_id, open_ids, ARCHIVABLE_JOB_STATUSES)

    @staticmethod
    def _duplicate_hydration_candidates(
        duplicates: List[DuplicateMatch], existing_jobs: List[ExistingJob]
    ) -> List[tuple]:
        existing_by_id = {job.id: job for job in existing_jobs}
        candidates = []
        for duplicate in duplicates:
            if duplicate.match_reason not in SAFE_HYDRATION_MATCH_REASONS:
                continue
            existing = existing_by_id.get(duplicate.existing_job_id)
            if existing is None or not _has_description(duplicate.job.description):
                continue
            if (existing.description or "").strip() == duplicate.job.description.strip():
                continue
            candidates.append((duplicate.existing_job_id, duplicate.job))
        return candidates

    async def _update_company_metadata(self, company: Company, detected_board_token: Optional[str]):
        now = utcnow()
        updates = {"last_scraped_at": now, "updated_at": now}
        if detected_board_token and not company.board_token:
            updates["board_token"] = detected_board_token
        await self.repository.update_company(company.id, **updates)

    async def _log_error(
        self,
        company_id: int,
        platform: Optional[str],
        session_id: str,
        trigger_source: str,
        error: str,
        duration: int,
    ):
        try:
            await self.repository.create_scraping_log(
                company_id=company_id,
                session_id=session_id,
                trigger_source=trigger_source,
                platform=platform,
                status="error",
                jobs_found=0,
                jobs_added=0,
                jobs_updated=0,
                jobs_filtered=0,
                jobs_archived=0,
                error_message=error,
                duration=duration,
            )
        except Exception as e:
            logger.error(f"Company {company_id}: failed to write error log: {e}")

    # ==================== Background matching ====================

    def _start_background_matching(self, job_ids: List[int], log_id: int, company_id: int):
        task = asyncio.create_task(self._run_background_matching(job_ids, log_id, company_id))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _run_background_matching(self, job_ids: List[int], log_id: int, company_id: int):
        started = time.monotonic()
        try:
            await self.repository.update_scraping_log(log_id, matcher_status="in_progress")

            async def on_progress(completed: int, total: int, succeeded: int, failed: int):
                await self.repository.update_scraping_log(log_id, matcher_jobs_completed=completed)

            result = await self.matcher.match_with_tracking(
                job_ids,
                trigger_source="auto_match",
                company_id=company_id,
                on_progress=on_progress,
            )
            await self.repository.update_scraping_log(
                log_id,
                matcher_status="failed" if result.failed == result.total else "completed",
                matcher_jobs_completed=result.total,
                matcher_error_count=result.failed,
                matcher_duration=int((time.monotonic() - started) * 1000),
            )
            logger.info(f"Company {company_id}: background matching {result.succeeded}/{result.total} jobs matched")
        except Exception as e:
            logger.error(f"Company {company_id}: background matching failed: {e}")
            try:
                await self.repository.update_scraping_log(
                    log_id,
                    matcher_status="failed",
                    matcher_duration=int((time.monotonic() - started) * 1000),
                )
            except Exception as update_error:
                logger.error(f"Failed to mark scraping log {log_id} matcher status: {update_error}")


_orchestrator: Optional[ScrapeOrchestrator] = None


def get_orchestrator() -> ScrapeOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ScrapeOrchestrator()
    return _orchestrator


async def shutdown_orchestrator():
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.wait_for_background_tasks()
        await _orchestrator.registry.aclose()
        _orchestrator = None
