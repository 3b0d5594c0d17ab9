"""
Tests for the AI job matcher.

Tests cover:
- Strategy selection (single job, bulk batches, one call per job)
- Session tracking: MatchSession counters, MatchLog rows, stored scores
- Partial and invalid AI responses
- Missing profile / missing jobs
- Circuit breaker short-circuit, per-job failure counting and recovery
- Final session counters written with the status
- Prompt helpers, response validation and error redaction

The AI provider is replaced by a fake AsyncOpenAI-shaped client.

Run with: cd backend && pytest tests/test_matcher.py -v
"""

import asyncio
import json
import re
from types import SimpleNamespace
from unittest.mock import patch

import pytest


class FakeCompletions:
    """Answers chat.completions.create from a responder(system, prompt) function."""

    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    async def create(self, messages, response_format=None, **kwargs):
        system, prompt = messages[0]["content"], messages[1]["content"]
        self.calls.append({"system": system, "prompt": prompt, "kwargs": kwargs})
        content = self.responder(system, prompt)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def fake_factory(responder):
    completions = FakeCompletions(responder)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))

    def factory(model, reasoning_effort="medium", provider_id=None):
        return client, {"model": model, "temperature": 0.1}

    return factory, completions


def score_everything(score=80, skip_ids=()):
    """Responder returning a result for every job in the prompt."""
    from jobtracker.services.matcher import BULK_MATCH_SYSTEM_PROMPT

    def responder(system, prompt):
        result = {
            "score": score,
            "reasons": ["Strong Python background"],
            "matched_skills": ["Python"],
            "missing_skills": ["Go"],
            "recommendations": ["Highlight API work"],
        }
        if system != BULK_MATCH_SYSTEM_PROMPT:
            return json.dumps(result)
        ids = [int(i) for i in re.findall(r"### Job ID: (\d+)", prompt)]
        return json.dumps({"results": [{"job_id": i, **result} for i in ids if i not in skip_ids]})

    return responder


async def seed_jobs(seed, count):
    company = await seed.company()
    jobs = []
    for index in range(count):
        jobs.append(await seed.job(
            company.id,
            external_id=f"gh-{index}",
            title=f"Engineer {index}",
            description="Build Python services",
        ))
    return [job.id for job in jobs]


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, ms: float):
        self.now += ms / 1000


class TestMatchWithTracking:
    """JobMatcher.match_with_tracking() end to end against the database."""

    @pytest.mark.asyncio
    async def test_bulk_batches_respect_batch_size(self, seed):
        """5 jobs with batch size 2 take 3 AI calls."""
        from jobtracker.services.matcher import JobMatcher
        from jobtracker.services.repository import MatchRepository

        await seed.profile()
        await seed.setting("matcher_batch_size", "2")
        await seed.setting("matcher_concurrency_limit", "1")
        job_ids = await seed_jobs(seed, 5)
        factory, completions = fake_factory(score_everything(score=82))

        result = await JobMatcher(ai_client_factory=factory).match_with_tracking(job_ids)

        assert len(completions.calls) == 3
        assert (result.total, result.succeeded, result.failed) == (5, 5, 0)

        repo = MatchRepository()
        session = await repo.get_match_session(result.session_id)
        assert session.status == "completed"
        assert session.jobs_total == 5
        assert session.jobs_completed == 5
        assert session.jobs_succeeded == 5
        assert session.trigger_source == "manual"

        logs = await repo.get_match_logs(result.session_id)
        assert len(logs) == 5
        assert all(log.status == "success" and log.score == 82 for log in logs)

        jobs = await repo.get_jobs(job_ids)
        assert all(job.match_score == 82 for job in jobs)
        assert jobs[0].matched_skills == ["Python"]
        assert jobs[0].missing_skills == ["Go"]

    @pytest.mark.asyncio
    async def test_single_job_uses_single_prompt(self, seed):
        from jobtracker.services.matcher import SINGLE_MATCH_SYSTEM_PROMPT, JobMatcher

        await seed.profile()
        job_ids = await seed_jobs(seed, 1)
        factory, completions = fake_factory(score_everything())

        result = await JobMatcher(ai_client_factory=factory).match_with_tracking(job_ids)

        assert result.succeeded == 1
        assert completions.calls[0]["system"] == SINGLE_MATCH_SYSTEM_PROMPT
        assert "## Candidate Profile" in completions.calls[0]["prompt"]
        assert completions.calls[0]["kwargs"]["model"] == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_bulk_disabled_makes_one_call_per_job(self, seed):
        from jobtracker.services.matcher import JobMatcher

        await seed.profile()
        await seed.setting("matcher_bulk_enabled", "false")
        job_ids = await seed_jobs(seed, 3)
        factory, completions = fake_factory(score_everything())

        result = await JobMatcher(ai_client_factory=factory).match_with_tracking(job_ids)

        assert len(completions.calls) == 3
        assert result.succeeded == 3

    @pytest.mark.asyncio
    async def test_job_missing_from_batch_response_fails_alone(self, seed):
        from jobtracker.services.matcher import JobMatcher
        from jobtracker.services.repository import MatchRepository

        await seed.profile()
        job_ids = await seed_jobs(seed, 2)
        factory, _ = fake_factory(score_everything(skip_ids={job_ids[1]}))

        result = await JobMatcher(ai_client_factory=factory).match_with_tracking(job_ids)

        assert (result.succeeded, result.failed) == (1, 1)
        logs = {log.job_id: log for log in await MatchRepository().get_match_logs(result.session_id)}
        assert logs[job_ids[1]].status == "failed"
        assert logs[job_ids[1]].error_message == "AI did not return match result for this job"
        assert logs[job_ids[1]].error_type == "validation"
        session = await MatchRepository().get_match_session(result.session_id)
        assert session.status == "completed"

    @pytest.mark.asyncio
    async def test_unparseable_response_fails_batch(self, seed):
        from jobtracker.services.matcher import JobMatcher
        from jobtracker.services.repository import MatchRepository

        await seed.profile()
        await seed.setting("matcher_max_retries", "1")
        job_ids = await seed_jobs(seed, 2)
        factory, _ = fake_factory(lambda system, prompt: "I think they are a great fit!")

        result = await JobMatcher(ai_client_factory=factory).match_with_tracking(job_ids)

        assert (result.succeeded, result.failed) == (0, 2)
        repo = MatchRepository()
        assert (await repo.get_match_session(result.session_id)).status == "failed"
        logs = await repo.get_match_logs(result.session_id)
        assert {log.error_type for log in logs} == {"json_parse"}

    @pytest.mark.asyncio
    async def test_no_profile_fails_every_job(self, seed):
        from jobtracker.services.matcher import JobMatcher
        from jobtracker.services.repository import MatchRepository

        job_ids = await seed_jobs(seed, 2)
        factory, completions = fake_factory(score_everything())

        result = await JobMatcher(ai_client_factory=factory).match_with_tracking(job_ids)

        assert result.failed == 2
        assert completions.calls == []
        logs = await MatchRepository().get_match_logs(result.session_id)
        assert all(log.error_message == "No profile found" for log in logs)

    @pytest.mark.asyncio
    async def test_unknown_job_id_fails_that_job(self, seed):
        from jobtracker.services.matcher import JobMatcher

        await seed.profile()
        job_ids = await seed_jobs(seed, 1)
        factory, _ = fake_factory(score_everything())

        result = await JobMatcher(ai_client_factory=factory).match_with_tracking(job_ids + [9999])

        assert (result.total, result.succeeded, result.failed) == (2, 1, 1)

    @pytest.mark.asyncio
    async def test_open_circuit_breaker_short_circuits(self, seed):
        """With the breaker open, no AI call is made and jobs fail as circuit_breaker."""
        from jobtracker.services.matcher import JobMatcher, get_matcher_circuit_breaker
        from jobtracker.services.repository import MatchRepository

        breaker = get_matcher_circuit_breaker(10, 60000)
        for _ in range(10):
            breaker.record_failure()

        await seed.profile()
        job_ids = await seed_jobs(seed, 3)
        factory, completions = fake_factory(score_everything())

        result = await JobMatcher(ai_client_factory=factory).match_with_tracking(job_ids)

        assert completions.calls == []
        assert result.failed == 3
        logs = await MatchRepository().get_match_logs(result.session_id)
        assert {log.error_type for log in logs} == {"circuit_breaker"}

    @pytest.mark.asyncio
    async def test_progress_callback_sync_and_async(self, seed):
        from jobtracker.services.matcher import JobMatcher

        await seed.profile()
        job_ids = await seed_jobs(seed, 2)
        factory, _ = fake_factory(score_everything())
        sync_calls, async_calls = [], []

        async def on_progress_async(*args):
            async_calls.append(args)

        matcher = JobMatcher(ai_client_factory=factory)
        await matcher.match_with_tracking(job_ids, on_progress=lambda *args: sync_calls.append(args))
        await matcher.match_with_tracking(job_ids, trigger_source="auto_match", on_progress=on_progress_async)

        assert sync_calls[-1] == (2, 2, 2, 0)
        assert async_calls[-1] == (2, 2, 2, 0)

    @pytest.mark.asyncio
    async def test_empty_input_creates_no_session(self, db):
        from jobtracker.services.matcher import JobMatcher

        factory, completions = fake_factory(score_everything())
        result = await JobMatcher(ai_client_factory=factory).match_with_tracking([])

        assert result.session_id == ""
        assert result.total == 0

    @pytest.mark.asyncio
    async def test_match_unmatched_jobs_skips_scored_and_archived(self, seed):
        from jobtracker.services.matcher import JobMatcher

        await seed.profile()
        company = await seed.company()
        pending = await seed.job(company.id, external_id="a", description="Python")
        await seed.job(company.id, external_id="b", description="Python", match_score=50)
        await seed.job(company.id, external_id="c", description="Python", status="archived")
        await seed.job(company.id, external_id="d")
        factory, _ = fake_factory(score_everything())

        result = await JobMatcher(ai_client_factory=factory).match_unmatched_jobs()

        assert result.total == 1
        assert result.succeeded == 1

    @pytest.mark.asyncio
    async def test_session_marked_failed_when_engine_raises(self, seed):
        """An unexpected error fails the session and propagates."""
        from jobtracker.services.matcher import JobMatcher
        from sqlalchemy import select
        from jobtracker.database import async_session
        from jobtracker.models import MatchSession

        await seed.profile()
        job_ids = await seed_jobs(seed, 2)

        def broken_factory(*args, **kwargs):
            raise ValueError("OPENAI_API_KEY is not configured")

        with pytest.raises(ValueError):
            await JobMatcher(ai_client_factory=broken_factory).match_with_tracking(job_ids)

        async with async_session() as session:
            statuses = (await session.execute(select(MatchSession.status))).scalars().all()
        assert statuses == ["failed"]


class TestCircuitBreakerAccounting:
    """The shared breaker counts failed jobs, not failed attempts."""

    async def _configure(self, seed, retries):
        await seed.profile()
        await seed.setting("matcher_bulk_enabled", "false")
        await seed.setting("matcher_concurrency_limit", "1")
        await seed.setting("matcher_max_retries", str(retries))
        await seed.setting("matcher_circuit_breaker_threshold", "3")
        await seed.setting("matcher_circuit_breaker_reset_timeout", "60000")

    @pytest.mark.asyncio
    async def test_retries_of_one_job_do_not_trip_breaker(self, seed):
        """A job failing all 3 attempts is one failure; the next job still gets scored."""
        from jobtracker.services.matcher import JobMatcher, get_matcher_circuit_breaker
        from jobtracker.services.resilience import CircuitState

        await self._configure(seed, retries=3)
        job_ids = await seed_jobs(seed, 2)
        healthy = score_everything()

        def responder(system, prompt):
            if "**Title:** Engineer 0\n" in prompt:
                raise ConnectionError("connection reset by peer")
            return healthy(system, prompt)

        factory, completions = fake_factory(responder)
        with patch("jobtracker.services.resilience.backoff_delay_ms", return_value=0):
            result = await JobMatcher(ai_client_factory=factory).match_with_tracking(job_ids)

        assert (result.succeeded, result.failed) == (1, 1)
        assert len(completions.calls) == 4
        breaker = get_matcher_circuit_breaker(3, 60000)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count <= 1

    @pytest.mark.asyncio
    async def test_opens_after_threshold_failed_jobs_and_recovers(self, seed):
        """3 failed jobs open the breaker, later jobs make no call, calls resume after the reset timeout."""
        from jobtracker.services import matcher as matcher_module
        from jobtracker.services.matcher import JobMatcher
        from jobtracker.services.repository import MatchRepository
        from jobtracker.services.resilience import CircuitBreaker, CircuitState

        await self._configure(seed, retries=2)
        job_ids = await seed_jobs(seed, 5)
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=3, reset_timeout_ms=60000, clock=clock)
        outage = {"down": True}
        healthy = score_everything()

        def responder(system, prompt):
            if outage["down"]:
                raise ConnectionError("connection refused")
            return healthy(system, prompt)

        factory, completions = fake_factory(responder)
        matcher = JobMatcher(ai_client_factory=factory)

        with patch.object(matcher_module, "_circuit_breaker", breaker), \
                patch("jobtracker.services.resilience.backoff_delay_ms", return_value=0):
            failed_run = await matcher.match_with_tracking(job_ids)

            assert failed_run.failed == 5
            assert len(completions.calls) == 6
            assert breaker.state == CircuitState.OPEN
            logs = await MatchRepository().get_match_logs(failed_run.session_id)
            assert sorted(log.error_type for log in logs) == ["circuit_breaker"] * 2 + ["network"] * 3

            outage["down"] = False
            still_open = await matcher.match_with_tracking(job_ids[:1])
            assert still_open.failed == 1
            assert len(completions.calls) == 6

            clock.advance(60000)
            recovered = await matcher.match_with_tracking(job_ids[:3])

        assert recovered.succeeded == 3
        assert len(completions.calls) == 9
        assert breaker.state == CircuitState.CLOSED


class TestSessionCounters:
    @pytest.mark.asyncio
    async def test_final_counts_survive_out_of_order_progress_writes(self, seed):
        """A slow early progress write landing last does not leave stale counters on the session."""
        from jobtracker.services.matcher import JobMatcher
        from jobtracker.services.repository import MatchRepository

        class LaggingProgressRepository(MatchRepository):
            async def update_match_session_progress(self, session_id, jobs_completed, **counters):
                await asyncio.sleep(0.05 * (3 - jobs_completed))
                await super().update_match_session_progress(session_id, jobs_completed=jobs_completed, **counters)

        await seed.profile()
        await seed.setting("matcher_bulk_enabled", "false")
        await seed.setting("matcher_concurrency_limit", "3")
        job_ids = await seed_jobs(seed, 3)
        factory, _ = fake_factory(score_everything())
        repo = LaggingProgressRepository()

        result = await JobMatcher(repository=repo, ai_client_factory=factory).match_with_tracking(job_ids)

        session = await repo.get_match_session(result.session_id)
        assert session.status == "completed"
        assert (session.jobs_completed, session.jobs_succeeded, session.jobs_failed) == (3, 3, 0)
        assert session.error_count == 0


class TestHelpers:
    """Prompt building, response validation and redaction."""

    def test_parse_json_content_strips_code_fences(self):
        from jobtracker.services.matcher import parse_json_content

        assert parse_json_content('```json\n{"score": 70}\n```') == {"score": 70}

    def test_parse_json_content_errors(self):
        from jobtracker.services.matcher import parse_json_content
        from jobtracker.services.resilience import MatcherError, MatcherErrorType

        with pytest.raises(MatcherError) as exc_info:
            parse_json_content("")
        assert exc_info.value.error_type == MatcherErrorType.JSON_PARSE

        with pytest.raises(MatcherError) as exc_info:
            parse_json_content("[1, 2]")
        assert exc_info.value.error_type == MatcherErrorType.VALIDATION

    def test_validate_batch_response_filters_bad_entries(self):
        from jobtracker.services.matcher import validate_batch_response

        batch = [SimpleNamespace(id=1), SimpleNamespace(id=2)]
        data = {"results": [
            {"job_id": 1, "score": 70},
            {"job_id": 1, "score": 10},
            {"job_id": 3, "score": 90},
            {"job_id": 2, "score": 150},
        ]}

        results = validate_batch_response(data, batch)

        assert list(results) == [1]
        assert results[1].score == 70

    def test_validate_batch_response_requires_results(self):
        from jobtracker.services.matcher import validate_batch_response
        from jobtracker.services.resilience import MatcherError

        with pytest.raises(MatcherError):
            validate_batch_response({"score": 70}, [SimpleNamespace(id=1)])

    def test_chunk(self):
        from jobtracker.services.matcher import chunk

        assert chunk([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        assert chunk([1, 2], 0) == [[1], [2]]

    def test_format_profile_lists_skills_and_experience(self):
        from jobtracker.services.matcher import format_profile

        profile = SimpleNamespace(
            summary="Backend engineer",
            skills=[{"name": "Python", "proficiency": 5, "category": "backend"}, {"proficiency": 2}],
            experience=[{"title": "Engineer", "company": "Initech", "description": "APIs"}],
        )
        text = format_profile(profile)

        assert "- Python (Expert, backend)" in text
        assert "- Engineer at Initech: APIs" in text

    def test_bulk_prompt_includes_job_ids(self):
        from jobtracker.services.matcher import build_bulk_match_prompt

        profile = SimpleNamespace(summary=None, skills=[], experience=[])
        jobs = [
            SimpleNamespace(id=7, title="SRE", location="Pune", description="Keep it up"),
            SimpleNamespace(id=8, title="QA", location=None, description=None),
        ]
        prompt = build_bulk_match_prompt(jobs, profile)

        assert "### Job ID: 7" in prompt
        assert "### Job ID: 8" in prompt
        assert "No description provided" in prompt
        assert "No skills listed" in prompt

    def test_sanitize_error_message(self):
        from jobtracker.services.matcher import sanitize_error_message

        message = sanitize_error_message(
            "401 for jane.doe@example.com with Bearer abc.def key sk-abcdefghijklmnopqrstuvwx"
        )
        assert "jane.doe@example.com" not in message
        assert "[EMAIL]" in message
        assert "Bearer [REDACTED]" in message
        assert "sk-abcdefghijklmnopqrstuvwx" not in message

        long_message = sanitize_error_message("x " * 1000)
        assert len(long_message) == 1000
        assert long_message.endswith("...")


class TestAiClient:
    """get_ai_client() provider options."""

    def test_missing_key_raises(self):
        from jobtracker.services.ai_client import get_ai_client

        settings = SimpleNamespace(openai_api_key="", openai_base_url=None)
        with patch("jobtracker.services.ai_client.get_settings", return_value=settings):
            with pytest.raises(ValueError, match="OPENAI_API_KEY"):
                get_ai_client("gpt-4o-mini")

    def test_reasoning_models_get_reasoning_effort(self):
        from jobtracker.services.ai_client import get_ai_client

        settings = SimpleNamespace(openai_api_key="sk-test", openai_base_url=None)
        with patch("jobtracker.services.ai_client.get_settings", return_value=settings):
            _, options = get_ai_client("o3-mini", reasoning_effort="high")
            _, plain_options = get_ai_client("gpt-4o-mini")

        assert options == {"model": "o3-mini", "reasoning_effort": "high"}
        assert plain_options == {"model": "gpt-4o-mini", "temperature": 0.1}
