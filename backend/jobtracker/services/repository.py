"""
Persistence facade for the scraping and matching pipelines.

Every method opens its own short-lived AsyncSession so callers (the
orchestrator, scheduler and matcher) never share a session across awaits
on unrelated work.

Scheduler lock:
    A single settings row ``scheduler.lock`` holding
    ``{"ownerId", "token", "expiresAt"}`` (expiresAt in epoch ms).
    Acquisition is compare-and-swap on the raw stored value: the UPDATE only
    matches if the row still holds the value we read, and the row is re-read
    to confirm we won. Losing a race returns None, never raises.
"""

import json
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from jobtracker.database import async_session, utcnow
from jobtracker.models import (
    Company,
    Job,
    MatchLog,
    MatchSession,
    Profile,
    ScrapeSession,
    ScrapingLog,
    Setting,
)
from jobtracker.models.job import ARCHIVE_SOURCE_SCRAPER
from jobtracker.schemas import ExistingJob, ScrapedJob

logger = logging.getLogger(__name__)

SCHEDULER_LOCK_KEY = "scheduler.lock"
SCHEDULER_LOCK_TIMEOUT_MS = 5 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


def parse_scheduler_lock(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return None
    if not isinstance(parsed, dict):
        return None
    if not isinstance(parsed.get("ownerId"), str) or not isinstance(parsed.get("token"), str):
        return None
    if not isinstance(parsed.get("expiresAt"), (int, float)):
        return None
    return parsed


def _has_description(description: Optional[str]) -> bool:
    return isinstance(description, str) and bool(description.strip())


class ScraperRepository:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory or async_session

    # Companies

    async def get_company(self, company_id: int) -> Optional[Company]:
        async with self.session_factory() as db:
            result = await db.execute(select(Company).where(Company.id == company_id))
            return result.scalar_one_or_none()

    async def get_active_companies(self) -> List[Company]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Company).where(Company.is_active.is_(True)).order_by(Company.id)
            )
            return list(result.scalars().all())

    async def update_company(self, company_id: int, **updates):
        async with self.session_factory() as db:
            await db.execute(update(Company).where(Company.id == company_id).values(**updates))
            await db.commit()

    # Settings

    async def get_setting(self, key: str) -> Optional[str]:
        async with self.session_factory() as db:
            result = await db.execute(select(Setting.value).where(Setting.key == key))
            return result.scalar_one_or_none()

    async def get_all_settings(self) -> Dict[str, Optional[str]]:
        async with self.session_factory() as db:
            result = await db.execute(select(Setting.key, Setting.value))
            return {key: value for key, value in result.all()}

    async def set_setting(self, key: str, value: str):
        async with self.session_factory() as db:
            stmt = sqlite_insert(Setting).values(key=key, value=value, updated_at=utcnow())
            stmt = stmt.on_conflict_do_update(
                index_elements=[Setting.key],
                set_={"value": value, "updated_at": utcnow()},
            )
            await db.execute(stmt)
            await db.commit()

    # Jobs

    async def get_existing_jobs(self, company_id: int) -> List[ExistingJob]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Job.id, Job.external_id, Job.title, Job.url, Job.status, Job.description)
                .where(Job.company_id == company_id)
            )
            return [
                ExistingJob(
                    id=row.id,
                    external_id=row.external_id,
                    title=row.title,
                    url=row.url,
                    status=row.status,
                    description=row.description,
                )
                for row in result.all()
            ]

    async def insert_jobs(self, company_id: int, jobs: List[ScrapedJob]) -> List[int]:
        """Insert new jobs, skipping (company_id, external_id) conflicts. Returns inserted ids."""
        if not jobs:
            return []

        now = utcnow()
        rows = [
            {
                "company_id": company_id,
                "external_id": job.external_id,
                "title": job.title,
                "url": job.url,
                "location": job.location,
                "location_type": job.location_type,
                "department": job.department,
                "description": job.description,
                "description_format": job.description_format or "plain",
                "employment_type": job.employment_type,
                "posted_date": job.posted_date,
                "status": "new",
                "discovered_at": now,
                "updated_at": now,
            }
            for job in jobs
        ]

        async with self.session_factory() as db:
            stmt = sqlite_insert(Job).values(rows).on_conflict_do_nothing().returning(Job.id)
            result = await db.execute(stmt)
            inserted = [row[0] for row in result.all()]
            await db.commit()

        return inserted

    async def update_existing_jobs_from_scrape(self, updates: List[tuple]) -> int:
        """Refresh stored postings from ``(existing_job_id, ScrapedJob)`` pairs."""
        if not updates:
            return 0

        updated = 0
        async with self.session_factory() as db:
            for existing_job_id, job in updates:
                result = await db.execute(
                    update(Job)
                    .where(Job.id == existing_job_id)
                    .values(
                        title=job.title,
                        url=job.url,
                        location=job.location,
                        location_type=job.location_type,
                        department=job.department,
                        description=job.description,
                        description_format=job.description_format or "plain",
                        employment_type=job.employment_type,
                        posted_date=job.posted_date,
                        updated_at=utcnow(),
                    )
                )
                updated += result.rowcount or 0
            await db.commit()
        return updated

    async def reopen_scraper_archived_jobs(self, company_id: int, open_external_ids: List[str]) -> int:
        if not open_external_ids:
            return 0

        async with self.session_factory() as db:
            result = await db.execute(
                update(Job)
                .where(
                    Job.company_id == company_id,
                    Job.status == "archived",
                    Job.archive_source == ARCHIVE_SOURCE_SCRAPER,
                    Job.external_id.in_(open_external_ids),
                )
                .values(status="new", archived_at=None, archive_source=None, updated_at=utcnow())
            )
            await db.commit()
        return result.rowcount or 0

    async def archive_missing_jobs(
        self, company_id: int, open_external_ids: List[str], statuses_to_archive: List[str]
    ) -> int:
        """Archive postings no longer listed on the careers site."""
        if not statuses_to_archive:
            return 0

        conditions = [
            Job.company_id == company_id,
            Job.external_id.is_not(None),
            Job.status.in_(statuses_to_archive),
        ]
        if open_external_ids:
            conditions.append(Job.external_id.not_in(open_external_ids))

        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                update(Job)
                .where(and_(*conditions))
                .values(status="archived", archived_at=now, archive_source=ARCHIVE_SOURCE_SCRAPER, updated_at=now)
            )
            await db.commit()
        return result.rowcount or 0

    async def get_matchable_job_ids(self, job_ids: List[int]) -> List[int]:
        """Keep only ids of jobs with a non-empty description, preserving order."""
        if not job_ids:
            return []

        async with self.session_factory() as db:
            result = await db.execute(select(Job.id, Job.description).where(Job.id.in_(job_ids)))
            matchable = {row.id for row in result.all() if _has_description(row.description)}
        return [job_id for job_id in job_ids if job_id in matchable]

    # Scrape sessions and logs

    async def create_session(self, trigger_source: str, companies_total: int, session_id: Optional[str] = None) -> str:
        session_id = session_id or str(uuid.uuid4())
        async with self.session_factory() as db:
            db.add(ScrapeSession(
                id=session_id,
                trigger_source=trigger_source,
                status="in_progress",
                companies_total=companies_total,
            ))
            await db.commit()
        return session_id

    async def get_session(self, session_id: str) -> Optional[ScrapeSession]:
        async with self.session_factory() as db:
            result = await db.execute(select(ScrapeSession).where(ScrapeSession.id == session_id))
            return result.scalar_one_or_none()

    async def list_sessions(self, limit: int = 20, offset: int = 0) -> List[ScrapeSession]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ScrapeSession)
                .order_by(ScrapeSession.started_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_session_logs(self, session_id: str) -> List[ScrapingLog]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ScrapingLog).where(ScrapingLog.session_id == session_id).order_by(ScrapingLog.id)
            )
            return list(result.scalars().all())

    async def is_session_in_progress(self, session_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(select(ScrapeSession.status).where(ScrapeSession.id == session_id))
            return result.scalar_one_or_none() == "in_progress"

    async def stop_session(self, session_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(ScrapeSession)
                .where(ScrapeSession.id == session_id, ScrapeSession.status == "in_progress")
                .values(status="failed", completed_at=utcnow())
            )
            await db.commit()
        return (result.rowcount or 0) > 0

    async def update_session_progress(
        self,
        session_id: str,
        companies_completed: int,
        total_jobs_found: int,
        total_jobs_added: int,
        total_jobs_filtered: int,
        total_jobs_archived: int,
    ):
        async with self.session_factory() as db:
            await db.execute(
                update(ScrapeSession)
                .where(ScrapeSession.id == session_id, ScrapeSession.status == "in_progress")
                .values(
                    companies_completed=companies_completed,
                    total_jobs_found=total_jobs_found,
                    total_jobs_added=total_jobs_added,
                    total_jobs_filtered=total_jobs_filtered,
                    total_jobs_archived=total_jobs_archived,
                )
            )
            await db.commit()

    async def complete_session(self, session_id: str, status: str):
        async with self.session_factory() as db:
            await db.execute(
                update(ScrapeSession)
                .where(ScrapeSession.id == session_id, ScrapeSession.status == "in_progress")
                .values(status=status, completed_at=utcnow())
            )
            await db.commit()

    async def create_scraping_log(self, **fields) -> int:
        fields.setdefault("completed_at", utcnow())
        async with self.session_factory() as db:
            log = ScrapingLog(**fields)
            db.add(log)
            await db.commit()
            return log.id

    async def update_scraping_log(self, log_id: int, **updates):
        async with self.session_factory() as db:
            await db.execute(update(ScrapingLog).where(ScrapingLog.id == log_id).values(**updates))
            await db.commit()

    # Scheduler lock

    async def _compare_and_swap_setting(self, key: str, previous_raw: Optional[str], next_raw: str) -> bool:
        async with self.session_factory() as db:
            if previous_raw is None:
                stmt = sqlite_insert(Setting).values(key=key, value=next_raw, updated_at=utcnow())
                await db.execute(stmt.on_conflict_do_nothing(index_elements=[Setting.key]))
            else:
                await db.execute(
                    update(Setting)
                    .where(Setting.key == key, Setting.value == previous_raw)
                    .values(value=next_raw, updated_at=utcnow())
                )
            await db.commit()
        return await self.get_setting(key) == next_raw

    async def acquire_scheduler_lock(self, owner_id: str) -> Optional[str]:
        """
        Returns:
            The lock token on success, None if another owner holds an
            unexpired lock or won a concurrent acquisition.
        """
        now = _now_ms()
        current_raw = await self.get_setting(SCHEDULER_LOCK_KEY)
        current = parse_scheduler_lock(current_raw)
        if current and current["expiresAt"] > now:
            return None

        token = str(uuid.uuid4())
        next_raw = json.dumps({
            "ownerId": owner_id,
            "token": token,
            "expiresAt": now + SCHEDULER_LOCK_TIMEOUT_MS,
        })
        if await self._compare_and_swap_setting(SCHEDULER_LOCK_KEY, current_raw, next_raw):
            return token
        return None

    async def refresh_scheduler_lock(self, token: str) -> Optional[str]:
        current_raw = await self.get_setting(SCHEDULER_LOCK_KEY)
        current = parse_scheduler_lock(current_raw)
        if not current or current["token"] != token:
            return None

        next_raw = json.dumps({**current, "expiresAt": _now_ms() + SCHEDULER_LOCK_TIMEOUT_MS})
        if await self._compare_and_swap_setting(SCHEDULER_LOCK_KEY, current_raw, next_raw):
            return token
        return None

    async def release_scheduler_lock(self, token: str):
        current_raw = await self.get_setting(SCHEDULER_LOCK_KEY)
        current = parse_scheduler_lock(current_raw)
        if not current or current["token"] != token:
            return

        async with self.session_factory() as db:
            await db.execute(
                delete(Setting).where(Setting.key == SCHEDULER_LOCK_KEY, Setting.value == current_raw)
            )
            await db.commit()


class MatchRepository:
    """Reads jobs/profile for the matcher and records MatchSession/MatchLog rows"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or async_session

    async def get_profile(self) -> Optional[Profile]:
        async with self.session_factory() as db:
            result = await db.execute(select(Profile).where(Profile.id == "default"))
            return result.scalar_one_or_none()

    async def get_jobs(self, job_ids: List[int]) -> List[Job]:
        if not job_ids:
            return []
        async with self.session_factory() as db:
            result = await db.execute(select(Job).where(Job.id.in_(job_ids)))
            by_id = {job.id: job for job in result.scalars().all()}
        return [by_id[job_id] for job_id in job_ids if job_id in by_id]

    async def get_unmatched_job_ids(self) -> List[int]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Job.id)
                .where(
                    Job.match_score.is_(None),
                    Job.description.is_not(None),
                    func.trim(Job.description) != "",
                    Job.status != "archived",
                )
                .order_by(Job.id)
            )
            return list(result.scalars().all())

    async def save_match_result(self, job_id: int, result) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(Job)
                .where(Job.id == job_id)
                .values(
                    match_score=result.score,
                    match_reasons=list(result.reasons),
                    matched_skills=list(result.matched_skills),
                    missing_skills=list(result.missing_skills),
                    recommendations=list(result.recommendations),
                    updated_at=utcnow(),
                )
            )
            await db.commit()

    async def create_match_session(
        self, trigger_source: str, jobs_total: int, company_id: Optional[int] = None
    ) -> str:
        session_id = str(uuid.uuid4())
        async with self.session_factory() as db:
            db.add(MatchSession(
                id=session_id,
                trigger_source=trigger_source,
                company_id=company_id,
                status="in_progress",
                jobs_total=jobs_total,
            ))
            await db.commit()
        return session_id

    async def get_match_session(self, session_id: str) -> Optional[MatchSession]:
        async with self.session_factory() as db:
            result = await db.execute(select(MatchSession).where(MatchSession.id == session_id))
            return result.scalar_one_or_none()

    async def get_match_logs(self, session_id: str) -> List[MatchLog]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(MatchLog).where(MatchLog.session_id == session_id).order_by(MatchLog.id)
            )
            return list(result.scalars().all())

    async def update_match_session_progress(
        self, session_id: str, jobs_completed: int, jobs_succeeded: int, jobs_failed: int, error_count: int
    ):
        async with self.session_factory() as db:
            await db.execute(
                update(MatchSession)
                .where(MatchSession.id == session_id)
                .values(
                    jobs_completed=jobs_completed,
                    jobs_succeeded=jobs_succeeded,
                    jobs_failed=jobs_failed,
                    error_count=error_count,
                )
            )
            await db.commit()

    async def complete_match_session(
        self, session_id: str, status: str, completed_at: Optional[datetime] = None, **counters: int
    ):
        """Finish a match session; ``counters`` are written in the same UPDATE as the status."""
        async with self.session_factory() as db:
            await db.execute(
                update(MatchSession)
                .where(MatchSession.id == session_id)
                .values(status=status, completed_at=completed_at or utcnow(), **counters)
            )
            await db.commit()

    async def create_match_log(self, **fields) -> int:
        async with self.session_factory() as db:
            log = MatchLog(**fields)
            db.add(log)
            await db.commit()
            return log.id
