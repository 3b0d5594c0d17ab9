"""
Tests for the scrape orchestrator.

Tests cover:
- Filter, dedupe and insert for one company (India location filter)
- Idempotent re-runs
- Archiving postings that disappear, and the incomplete-listing guard
- Batch status when one company fails, external stop, and worker errors
- Custom platform and unknown company handling
- Background matching mirrored into the ScrapingLog

The registry and matcher are mocked; persistence uses the test database.

Run with: cd backend && pytest tests/test_orchestrator.py -v
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from jobtracker.schemas import EarlyFilterStats, FetchResult, MatchSessionResult, ScrapedJob, ScraperResult

LISTING = [
    ("gh-1", "Backend Engineer", "Bengaluru, India"),
    ("gh-2", "Frontend Engineer", "Remote"),
    ("gh-3", "Data Scientist", "Mumbai"),
    ("gh-4", "Product Manager", "London, UK"),
    ("gh-5", "Site Reliability Engineer", "Hyderabad"),
    ("gh-6", "Visual Designer", "San Francisco, CA"),
    ("gh-7", "QA Analyst", "Pune, Maharashtra"),
    ("gh-8", "Security Engineer", "Berlin"),
    ("gh-9", "Mobile Developer", "Worldwide"),
    ("gh-10", "Technical Writer", "Toronto"),
    ("gh-11", "Support Specialist", "Chennai"),
    ("gh-12", "Sales Lead", "Singapore"),
]
OUTSIDE_INDIA = 5


def listing(description=None):
    return [
        ScrapedJob(
            external_id=external_id,
            title=title,
            url=f"https://boards.greenhouse.io/acme/jobs/{external_id}",
            location=location,
            description=description,
        )
        for external_id, title, location in LISTING
    ]


def scraper_result(jobs, complete=True, **fields):
    return ScraperResult(
        success=True,
        jobs=jobs,
        open_external_ids=[job.external_id for job in jobs],
        open_external_ids_complete=complete,
        **fields,
    )


def make_orchestrator(scrape_result=None, side_effect=None, matcher=None):
    from jobtracker.services.orchestrator import ScrapeOrchestrator

    registry = MagicMock()
    registry.scrape = AsyncMock(return_value=scrape_result, side_effect=side_effect)
    if matcher is None:
        matcher = MagicMock()
        matcher.match_with_tracking = AsyncMock()
    return ScrapeOrchestrator(registry=registry, matcher=matcher, inter_company_delay_ms=0)


class TestFetchJobsForCompany:
    """Single-company refresh."""

    @pytest.mark.asyncio
    async def test_filters_and_inserts_new_jobs(self, seed):
        """12 listed jobs, country India: 5 filtered, 7 added."""
        company = await seed.company()
        orchestrator = make_orchestrator(scraper_result(listing()))

        result = await orchestrator.fetch_jobs_for_company(company.id)

        assert result.success
        assert result.outcome == "success"
        assert result.jobs_found == 12
        assert result.jobs_filtered == OUTSIDE_INDIA
        assert result.jobs_added == 12 - OUTSIDE_INDIA
        assert result.platform == "greenhouse"

    @pytest.mark.asyncio
    async def test_passes_board_token_and_known_ids_to_scraper(self, seed):
        company = await seed.company(board_token="acme")
        await seed.job(company.id, external_id="gh-1", description="Already hydrated")
        await seed.job(company.id, external_id="gh-2")
        orchestrator = make_orchestrator(scraper_result([]))

        await orchestrator.fetch_jobs_for_company(company.id)

        url, platform, options = orchestrator.registry.scrape.await_args.args
        assert url == "https://boards.greenhouse.io/acme"
        assert platform == "greenhouse"
        assert options.board_token == "acme"
        assert options.existing_external_ids == {"gh-1"}
        assert options.filters.country == "India"

    @pytest.mark.asyncio
    async def test_creates_and_completes_own_session(self, seed):
        from jobtracker.services.repository import ScraperRepository

        company = await seed.company()
        orchestrator = make_orchestrator(scraper_result(listing()))

        await orchestrator.fetch_jobs_for_company(company.id, trigger_source="company_refresh")

        repo = ScraperRepository()
        sessions = await repo.list_sessions()
        assert len(sessions) == 1
        session = sessions[0]
        assert session.trigger_source == "company_refresh"
        assert session.status == "completed"
        assert session.companies_total == 1
        assert session.companies_completed == 1
        assert session.total_jobs_added == 12 - OUTSIDE_INDIA

        logs = await repo.get_session_logs(session.id)
        assert len(logs) == 1
        assert logs[0].status == "success"
        assert logs[0].jobs_found == 12
        assert logs[0].jobs_filtered == OUTSIDE_INDIA
        assert logs[0].matcher_status is None

    @pytest.mark.asyncio
    async def test_rerun_adds_nothing(self, seed):
        """Same scraper output twice: second run inserts zero jobs."""
        company = await seed.company()
        orchestrator = make_orchestrator(scraper_result(listing()))

        first = await orchestrator.fetch_jobs_for_company(company.id)
        second = await orchestrator.fetch_jobs_for_company(company.id)

        assert first.jobs_added == 7
        assert second.jobs_added == 0
        assert second.jobs_archived == 0

    @pytest.mark.asyncio
    async def test_early_filtered_count_included(self, seed):
        company = await seed.company()
        jobs = listing()[:2]
        result_with_stats = scraper_result(jobs, early_filtered=EarlyFilterStats(total=4, country=3, title=1))
        orchestrator = make_orchestrator(result_with_stats)

        result = await orchestrator.fetch_jobs_for_company(company.id)

        assert result.jobs_found == 6
        assert result.jobs_filtered == 4
        assert result.jobs_added == 2

    @pytest.mark.asyncio
    async def test_updates_last_scraped_and_detected_board_token(self, seed):
        from jobtracker.services.repository import ScraperRepository

        company = await seed.company()
        orchestrator = make_orchestrator(scraper_result([], detected_board_token="acme-detected"))

        await orchestrator.fetch_jobs_for_company(company.id)

        refreshed = await ScraperRepository().get_company(company.id)
        assert refreshed.last_scraped_at is not None
        assert refreshed.board_token == "acme-detected"

    @pytest.mark.asyncio
    async def test_refreshes_duplicate_with_changed_description(self, seed):
        from jobtracker.services.repository import MatchRepository

        company = await seed.company()
        existing = await seed.job(
            company.id, external_id="gh-1", title="Backend Engineer", location="Bengaluru, India", description="old"
        )
        jobs = [listing(description="Brand new description")[0]]
        orchestrator = make_orchestrator(scraper_result(jobs))

        result = await orchestrator.fetch_jobs_for_company(company.id)

        assert result.jobs_added == 0
        assert result.jobs_updated == 1
        job = (await MatchRepository().get_jobs([existing.id]))[0]
        assert job.description == "Brand new description"

    @pytest.mark.asyncio
    async def test_company_not_found(self, db):
        orchestrator = make_orchestrator(scraper_result([]))

        result = await orchestrator.fetch_jobs_for_company(999)

        assert not result.success
        assert result.error == "Company not found"
        orchestrator.registry.scrape.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_custom_platform_is_skipped(self, seed):
        company = await seed.company(platform="custom", careers_url="https://acme.example/careers")
        orchestrator = make_orchestrator(scraper_result([]))

        result = await orchestrator.fetch_jobs_for_company(company.id)

        assert result.success
        assert result.jobs_found == 0
        orchestrator.registry.scrape.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_scraper_failure_becomes_error_log(self, seed):
        from jobtracker.services.repository import ScraperRepository

        company = await seed.company()
        orchestrator = make_orchestrator(ScraperResult.failure("Board not found"))

        result = await orchestrator.fetch_jobs_for_company(company.id)

        assert result.outcome == "error"
        assert result.error == "Board not found"
        repo = ScraperRepository()
        session = (await repo.list_sessions())[0]
        assert session.status == "failed"
        logs = await repo.get_session_logs(session.id)
        assert logs[0].status == "error"
        assert logs[0].error_message == "Board not found"

    @pytest.mark.asyncio
    async def test_scraper_exception_does_not_escape(self, seed):
        company = await seed.company()
        orchestrator = make_orchestrator(side_effect=RuntimeError("browser crashed"))

        result = await orchestrator.fetch_jobs_for_company(company.id)

        assert result.outcome == "error"
        assert result.error == "browser crashed"


class TestArchiving:
    """Archive/reopen driven by the open listing."""

    @pytest.mark.asyncio
    async def test_missing_postings_are_archived(self, seed):
        from jobtracker.services.repository import MatchRepository

        company = await seed.company()
        gone = await seed.job(company.id, external_id="gh-old", title="Office Manager")
        orchestrator = make_orchestrator(scraper_result(listing()))

        result = await orchestrator.fetch_jobs_for_company(company.id)

        assert result.jobs_archived == 1
        job = (await MatchRepository().get_jobs([gone.id]))[0]
        assert job.status == "archived"
        assert job.archive_source == "scraper"

    @pytest.mark.asyncio
    async def test_incomplete_listing_does_not_archive(self, seed):
        from jobtracker.services.repository import MatchRepository

        company = await seed.company()
        kept = await seed.job(company.id, external_id="gh-old", title="Office Manager")
        orchestrator = make_orchestrator(scraper_result(listing(), complete=False))

        result = await orchestrator.fetch_jobs_for_company(company.id)

        assert result.outcome == "partial"
        assert result.jobs_archived == 0
        assert (await MatchRepository().get_jobs([kept.id]))[0].status == "new"

    @pytest.mark.asyncio
    async def test_reappearing_posting_is_reopened(self, seed):
        from jobtracker.services.repository import MatchRepository

        company = await seed.company()
        returning = await seed.job(
            company.id,
            external_id="gh-1",
            title="Backend Engineer",
            status="archived",
            archive_source="scraper",
        )
        orchestrator = make_orchestrator(scraper_result(listing()))

        result = await orchestrator.fetch_jobs_for_company(company.id)

        job = (await MatchRepository().get_jobs([returning.id]))[0]
        assert job.status == "new"
        assert job.archived_at is None
        assert job.archive_source is None
        assert result.jobs_added == 6


class TestBatch:
    """Multi-company sessions."""

    @pytest.mark.asyncio
    async def test_one_failure_makes_batch_partial(self, seed):
        from jobtracker.services.repository import ScraperRepository

        await seed.company(name="Acme")
        await seed.company(name="Globex", careers_url="https://boards.greenhouse.io/globex")

        async def scrape(url, platform, options):
            if url.endswith("globex"):
                return ScraperResult.failure("Board not found")
            return scraper_result(listing())

        orchestrator = make_orchestrator(side_effect=scrape)

        batch = await orchestrator.fetch_jobs_for_all_companies(trigger_source="manual")

        assert batch.status == "partial"
        assert batch.summary.total_companies == 2
        assert batch.summary.successful_companies == 1
        assert batch.summary.failed_companies == 1
        assert batch.summary.total_jobs_added == 7

        session = await ScraperRepository().get_session(batch.session_id)
        assert session.status == "partial"
        assert session.companies_completed == 2
        assert session.total_jobs_found == 12

    @pytest.mark.asyncio
    async def test_all_failures_make_batch_failed(self, seed):
        await seed.company(name="Acme")
        await seed.company(name="Globex", careers_url="https://boards.greenhouse.io/globex")
        orchestrator = make_orchestrator(ScraperResult.failure("down"))

        batch = await orchestrator.fetch_jobs_for_all_companies()

        assert batch.status == "failed"
        assert len(batch.results) == 2

    @pytest.mark.asyncio
    async def test_inactive_and_custom_companies_excluded(self, seed):
        await seed.company(name="Acme")
        await seed.company(name="Dormant", careers_url="https://boards.greenhouse.io/dormant", is_active=False)
        await seed.company(name="Bespoke", careers_url="https://bespoke.example/jobs", platform="custom")
        orchestrator = make_orchestrator(scraper_result([]))

        batch = await orchestrator.fetch_jobs_for_all_companies()

        assert [result.company_name for result in batch.results] == ["Acme"]
        assert orchestrator.registry.scrape.await_count == 1

    @pytest.mark.asyncio
    async def test_fetch_selected_companies(self, seed):
        acme = await seed.company(name="Acme")
        await seed.company(name="Globex", careers_url="https://boards.greenhouse.io/globex")
        orchestrator = make_orchestrator(scraper_result([]))

        batch = await orchestrator.fetch_jobs_for_companies([acme.id], trigger_source="scheduler")

        assert [result.company_id for result in batch.results] == [acme.id]

    @pytest.mark.asyncio
    async def test_stopped_session_skips_remaining_companies(self, seed):
        """Workers check the session before each company."""
        from jobtracker.services.repository import ScraperRepository

        await seed.setting("scraper_max_parallel_scrapes", "1")
        await seed.company(name="Acme")
        await seed.company(name="Globex", careers_url="https://boards.greenhouse.io/globex")
        await seed.company(name="Initech", careers_url="https://boards.greenhouse.io/initech")
        repo = ScraperRepository()

        async def scrape_then_stop(url, platform, options):
            session = (await repo.list_sessions())[0]
            await orchestrator.stop_session(session.id)
            return scraper_result([])

        orchestrator = make_orchestrator(side_effect=scrape_then_stop)

        batch = await orchestrator.fetch_jobs_for_all_companies()

        assert orchestrator.registry.scrape.await_count == 1
        assert len(batch.results) == 1
        assert batch.status == "failed"
        assert (await repo.get_session(batch.session_id)).status == "failed"

    @pytest.mark.asyncio
    async def test_progress_write_error_fails_session_instead_of_hanging(self, seed):
        """A database error inside a worker stops the batch and closes the session as failed."""
        from jobtracker.services.repository import ScraperRepository

        await seed.setting("scraper_max_parallel_scrapes", "2")
        await seed.company(name="Acme")
        await seed.company(name="Globex", careers_url="https://boards.greenhouse.io/globex")
        await seed.company(name="Initech", careers_url="https://boards.greenhouse.io/initech")
        orchestrator = make_orchestrator(scraper_result([]))
        orchestrator.repository.update_session_progress = AsyncMock(side_effect=RuntimeError("database is locked"))

        batch = await orchestrator.fetch_jobs_for_all_companies()

        assert batch.status == "failed"
        assert orchestrator.registry.scrape.await_count == 2
        session = await ScraperRepository().get_session(batch.session_id)
        assert session.status == "failed"
        assert session.completed_at is not None


class TestBackgroundMatching:
    """Auto-match after scrape."""

    @pytest.mark.asyncio
    async def test_matcher_progress_mirrored_into_log(self, seed):
        from jobtracker.services.repository import ScraperRepository

        company = await seed.company()
        progress_seen = []

        async def match_with_tracking(job_ids, trigger_source, company_id, on_progress):
            await on_progress(1, len(job_ids), 1, 0)
            progress_seen.append((trigger_source, company_id, len(job_ids)))
            return MatchSessionResult(session_id="m-1", total=len(job_ids), succeeded=len(job_ids) - 1, failed=1)

        matcher = MagicMock()
        matcher.match_with_tracking = AsyncMock(side_effect=match_with_tracking)
        orchestrator = make_orchestrator(scraper_result(listing(description="Build things")), matcher=matcher)

        result = await orchestrator.fetch_jobs_for_company(company.id)
        await orchestrator.wait_for_background_tasks()

        assert progress_seen == [("auto_match", company.id, 7)]
        log = (await ScraperRepository().get_session_logs((await ScraperRepository().list_sessions())[0].id))[0]
        assert log.id == result.log_id
        assert log.matcher_status == "completed"
        assert log.matcher_jobs_total == 7
        assert log.matcher_jobs_completed == 7
        assert log.matcher_error_count == 1
        assert log.matcher_duration is not None

    @pytest.mark.asyncio
    async def test_matcher_crash_marks_log_failed(self, seed):
        from jobtracker.services.repository import ScraperRepository

        company = await seed.company()
        matcher = MagicMock()
        matcher.match_with_tracking = AsyncMock(side_effect=RuntimeError("provider down"))
        orchestrator = make_orchestrator(scraper_result(listing(description="Build things")), matcher=matcher)

        result = await orchestrator.fetch_jobs_for_company(company.id)
        await orchestrator.wait_for_background_tasks()

        assert result.success
        repo = ScraperRepository()
        log = (await repo.get_session_logs((await repo.list_sessions())[0].id))[0]
        assert log.matcher_status == "failed"

    @pytest.mark.asyncio
    async def test_auto_match_disabled(self, seed):
        await seed.setting("matcher_auto_match_after_scrape", "false")
        company = await seed.company()
        orchestrator = make_orchestrator(scraper_result(listing(description="Build things")))

        await orchestrator.fetch_jobs_for_company(company.id)
        await orchestrator.wait_for_background_tasks()

        orchestrator.matcher.match_with_tracking.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_jobs_without_description_not_matched(self, seed):
        company = await seed.company()
        orchestrator = make_orchestrator(scraper_result(listing()))

        await orchestrator.fetch_jobs_for_company(company.id)
        await orchestrator.wait_for_background_tasks()

        orchestrator.matcher.match_with_tracking.assert_not_awaited()


class TestStatusHelpers:
    def _result(self, outcome):
        return FetchResult(company_id=1, company_name="Acme", success=outcome == "success", outcome=outcome)

    def test_resolve_batch_status(self):
        from jobtracker.services.orchestrator import resolve_batch_status

        assert resolve_batch_status([]) == "completed"
        assert resolve_batch_status([self._result("success")] * 2) == "completed"
        assert resolve_batch_status([self._result("error")] * 2) == "failed"
        assert resolve_batch_status([self._result("success"), self._result("error")]) == "partial"
        assert resolve_batch_status([self._result("partial")]) == "partial"

    def test_resolve_session_status(self):
        from jobtracker.services.orchestrator import resolve_session_status

        assert resolve_session_status("success") == "completed"
        assert resolve_session_status("error") == "failed"
        assert resolve_session_status("partial") == "partial"
