"""
Background Job Scheduler - Periodic Company Refresh

This module manages automated scraping using APScheduler.

Each tick:
    1. Skip if a refresh is already running in this process
    2. Skip if the scheduler is disabled in settings
    3. Acquire the cross-process lock (settings row ``scheduler.lock``);
       skip if another instance holds it
    4. Scrape active companies not refreshed within their own
       ``scrape_frequency`` (or the global frequency when unset),
       as one "scheduler" session
    5. Store ``scheduler.lastRun`` and release the lock

Cron source: an explicitly stored ``scheduler_cron`` setting, otherwise
derived from ``global_scrape_frequency`` (default every 6 hours).
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from jobtracker.database import utcnow
from jobtracker.middleware.metrics import record_scheduler_run
from jobtracker.models import Company
from jobtracker.schemas import BatchFetchResult, RefreshResponse, SchedulerStatus
from jobtracker.services.orchestrator import ScrapeOrchestrator, get_orchestrator, is_custom_platform
from jobtracker.services.repository import ScraperRepository
from jobtracker.services.settings_service import SettingsService, is_valid_cron

logger = logging.getLogger(__name__)

DEFAULT_FREQUENCY_HOURS = 6
LAST_RUN_KEY = "scheduler.lastRun"
JOB_ID = "scheduled-refresh"


def generate_cron_expression(frequency_hours: int) -> str:
    """
    Cron for a refresh every ``frequency_hours``.

    Up to 24 hours maps to "every N hours"; longer frequencies tick daily
    and the due-company selection decides whether anything runs.
    """
    if not frequency_hours or frequency_hours <= 0:
        frequency_hours = DEFAULT_FREQUENCY_HOURS
    if frequency_hours <= 24:
        return f"0 */{frequency_hours} * * *"
    return "0 0 * * *"


class JobScheduler:
    """
    Process-wide scheduler with an explicit start/stop lifecycle.

    Attributes:
        owner_id: identifies this process in the scheduler lock
        is_running: True while a refresh runs in this process
    """

    def __init__(
        self,
        repository: Optional[ScraperRepository] = None,
        settings_service: Optional[SettingsService] = None,
        orchestrator_factory: Callable[[], ScrapeOrchestrator] = get_orchestrator,
    ):
        self.repository = repository or ScraperRepository()
        self.settings_service = settings_service or SettingsService(self.repository)
        self.orchestrator_factory = orchestrator_factory
        self.owner_id = str(uuid.uuid4())
        self.is_running = False
        self.cron_expression: Optional[str] = None
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._enabled_cache: Optional[bool] = None
        self._manual_task: Optional[asyncio.Task] = None

    @property
    def is_active(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # ==================== Settings ====================

    async def is_enabled(self) -> bool:
        if self._enabled_cache is None:
            self._enabled_cache = await self.settings_service.is_scheduler_enabled()
        return self._enabled_cache

    def invalidate_enabled_cache(self):
        self._enabled_cache = None

    async def get_frequency_hours(self) -> int:
        raw = await self.settings_service.get("global_scrape_frequency")
        try:
            hours = int(str(raw).strip())
        except (TypeError, ValueError):
            return DEFAULT_FREQUENCY_HOURS
        return hours if hours > 0 else DEFAULT_FREQUENCY_HOURS

    async def get_cron_expression(self) -> str:
        stored = await self.repository.get_setting("scheduler_cron")
        if stored and is_valid_cron(stored.strip()):
            return stored.strip()
        if stored:
            logger.warning(f"Ignoring invalid scheduler_cron {stored!r}")
        return generate_cron_expression(await self.get_frequency_hours())

    # ==================== Lifecycle ====================

    async def start(self) -> bool:
        """
        Start the cron task.

        Returns:
            True if the scheduler is active afterwards.
        """
        if self.is_active:
            return True
        if not await self.is_enabled():
            logger.info("Scheduler disabled in settings, not starting")
            return False

        self.cron_expression = await self.get_cron_expression()
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_tick,
            CronTrigger.from_crontab(self.cron_expression),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Scheduler started: {self.cron_expression}")
        return True

    def stop(self):
        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Scheduler stopped")

    async def restart(self) -> bool:
        self.stop()
        self.invalidate_enabled_cache()
        return await self.start()

    async def get_status(self) -> SchedulerStatus:
        last_run = None
        raw_last_run = await self.repository.get_setting(LAST_RUN_KEY)
        if raw_last_run:
            try:
                last_run = datetime.fromisoformat(raw_last_run)
            except ValueError:
                logger.warning(f"Unparseable {LAST_RUN_KEY}: {raw_last_run!r}")

        next_run = None
        if self.is_active:
            job = self._scheduler.get_job(JOB_ID)
            if job is not None:
                next_run = job.next_run_time

        return SchedulerStatus(
            is_active=self.is_active,
            is_running=self.is_running,
            enabled=await self.is_enabled(),
            cron_expression=self.cron_expression or await self.get_cron_expression(),
            last_run=last_run,
            next_run=next_run,
        )

    # ==================== Runs ====================

    async def run_tick(self):
        """Cron entry point."""
        if self.is_running:
            logger.info("Scheduled refresh skipped: previous run still in progress")
            record_scheduler_run("skipped_running")
            return
        if not await self.is_enabled():
            logger.info("Scheduled refresh skipped: scheduler disabled")
            record_scheduler_run("skipped_disabled")
            return

        self.is_running = True
        await self._run_locked()

    async def trigger_manual_refresh(self) -> RefreshResponse:
        """Start a refresh in the background unless one is already running."""
        if self.is_running:
            return RefreshResponse(started=False, message="Refresh already in progress")

        self.is_running = True
        self._manual_task = asyncio.create_task(self._run_locked())
        return RefreshResponse(started=True, message="Refresh started")

    async def _run_locked(self):
        """Run one refresh under the cross-process lock. Caller sets is_running."""
        token = None
        try:
            token = await self.repository.acquire_scheduler_lock(self.owner_id)
            if token is None:
                logger.info("Scheduled refresh skipped: another instance holds the scheduler lock")
                record_scheduler_run("skipped_locked")
                return

            await self.run_scheduled_refresh()
            record_scheduler_run("completed")
        except Exception:
            logger.exception("Scheduled refresh failed")
            record_scheduler_run("failed")
        finally:
            if token is not None:
                try:
                    await self.repository.release_scheduler_lock(token)
                except Exception as e:
                    logger.error(f"Failed to release scheduler lock: {e}")
            self.is_running = False

    async def run_scheduled_refresh(self) -> Optional[BatchFetchResult]:
        frequency_hours = await self.get_frequency_hours()
        now = utcnow()

        def is_due(company: Company) -> bool:
            if company.last_scraped_at is None:
                return True
            hours = frequency_hours
            if company.scrape_frequency and company.scrape_frequency > 0:
                hours = company.scrape_frequency
            return company.last_scraped_at < now - timedelta(hours=hours)

        companies = await self.repository.get_active_companies()
        due = [company for company in companies if not is_custom_platform(company.platform) and is_due(company)]
        logger.info(f"Scheduled refresh: {len(due)} of {len(companies)} active companies due ({frequency_hours}h)")

        result = None
        if due:
            orchestrator = self.orchestrator_factory()
            result = await orchestrator.fetch_jobs_for_companies(
                [company.id for company in due], trigger_source="scheduler"
            )

        await self.repository.set_setting(LAST_RUN_KEY, now.isoformat())
        return result


_scheduler: Optional[JobScheduler] = None


def get_scheduler() -> JobScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = JobScheduler()
    return _scheduler


async def start_scheduler() -> bool:
    return await get_scheduler().start()


def stop_scheduler():
    if _scheduler is not None:
        _scheduler.stop()


async def restart_scheduler() -> bool:
    return await get_scheduler().restart()


async def trigger_manual_refresh() -> RefreshResponse:
    return await get_scheduler().trigger_manual_refresh()
