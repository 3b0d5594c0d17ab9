"""
Job Matching Service - AI-Powered Job Relevance Scoring

Scores jobs against the candidate profile with a language model and
records every run as a MatchSession with one MatchLog per job.

Strategies:
    - single job: one AI call for that job
    - bulk enabled: jobs chunked into batches of ``batch_size``, one AI
      call per batch
    - bulk disabled: one AI call per job

Batches (or single jobs) run through a pool of ``concurrency_limit``
workers. Each AI call is bounded by a timeout, retried with exponential
backoff, and guarded by a process-wide circuit breaker so a failing
provider stops receiving traffic until the reset timeout elapses.

Failure of one job never fails the run; the session is marked "failed"
only when every job failed.
"""

import asyncio
import inspect
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from jobtracker.models.job import Job
from jobtracker.models.profile import Profile
from jobtracker.middleware.metrics import (
    record_match_call_latency,
    record_match_result,
    update_circuit_breaker_state,
)
from jobtracker.schemas import BulkMatchItem, MatchResult, MatcherConfig, MatchSessionResult
from jobtracker.services.ai_client import get_ai_client
from jobtracker.services.repository import MatchRepository
from jobtracker.services.resilience import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    MatcherError,
    MatcherErrorType,
    categorize_error,
    retry_with_backoff,
    with_timeout,
)
from jobtracker.services.settings_service import SettingsService

logger = logging.getLogger(__name__)

PROFICIENCY_NAMES = ["Beginner", "Elementary", "Intermediate", "Advanced", "Expert"]
MAX_DESCRIPTION_CHARS = 12000
MAX_ERROR_MESSAGE_LENGTH = 1000

SCORING_RULES = """IMPORTANT SCORING RULES - Be strict and realistic:

**Years of Experience is CRITICAL:**
- If a job requires X years of experience and the candidate has less, this is a MAJOR penalty
- Missing 1-2 years: Deduct 15-20 points
- Missing 3+ years: Deduct 25-35 points
- If experience requirement is completely unmet, score should NOT exceed 50

**Seniority Level Mismatch:**
- Junior applying to Senior role: Maximum score of 45
- Mid-level applying to Staff/Principal role: Maximum score of 55
- Entry-level applying to roles requiring 5+ years: Maximum score of 35

**Scoring Guidelines:**
- 85-100: Excellent match - meets ALL requirements including years of experience
- 70-84: Strong match - meets most requirements, experience within 1-2 years of requirement
- 55-69: Moderate match - has relevant skills but noticeable experience gap
- 40-54: Weak match - significant gaps in experience or key skills
- Below 40: Poor match - major experience or skill deficiencies

Do NOT inflate scores. A candidate with 2 years experience should NOT score above 60 for a role requiring 5+ years, regardless of skill match."""

SINGLE_MATCH_SYSTEM_PROMPT = f"""You are an expert job matching assistant. Your task is to analyze a job description and compare it against a candidate's profile to determine how well they match.

For the job, you must:
1. Identify the key requirements from the job description
2. Match these against the candidate's profile
3. Calculate a match score from 0-100
4. Provide specific reasons for the score
5. List matched and missing skills
6. Give actionable recommendations

{SCORING_RULES}

You MUST return a single JSON object."""

BULK_MATCH_SYSTEM_PROMPT = f"""You are an expert job matching assistant. Your task is to analyze MULTIPLE job descriptions and compare each against a candidate's profile to determine match scores.

For EACH job, you must:
1. Identify the key requirements from the job description
2. Match these against the candidate's profile
3. Calculate a match score from 0-100
4. Provide specific reasons for the score
5. List matched and missing skills
6. Give actionable recommendations

{SCORING_RULES}

You MUST return a JSON object with a top-level "results" array containing one object per job, using the exact job IDs provided."""

SINGLE_RESPONSE_FORMAT = """Respond with ONLY valid JSON:
{
  "score": <number 0-100>,
  "reasons": ["reason1", "reason2"],
  "matched_skills": ["skill1", "skill2"],
  "missing_skills": ["skill1", "skill2"],
  "recommendations": ["recommendation1", "recommendation2"]
}"""

BULK_RESPONSE_FORMAT = """Analyze each job and respond with ONLY valid JSON:
{
  "results": [
    {
      "job_id": <number>,
      "score": <number 0-100>,
      "reasons": ["reason1", "reason2"],
      "matched_skills": ["skill1", "skill2"],
      "missing_skills": ["skill1", "skill2"],
      "recommendations": ["recommendation1", "recommendation2"]
    }
  ]
}"""

REDACTION_PATTERNS = [
    (re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+"), "[EMAIL]"),
    (re.compile(r"Bearer\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE), "Bearer [REDACTED]"),
    (re.compile(r"\b(?:sk|pk|rk)-[A-Za-z0-9_-]{16,}\b"), "[API_KEY]"),
    (re.compile(r"\b[A-Fa-f0-9]{32,}\b"), "[REDACTED]"),
    (re.compile(r"\b[A-Za-z0-9+/]{32,}={0,2}"), "[REDACTED]"),
    (re.compile(r"\b\d{16,}\b"), "[REDACTED]"),
]

# Serializes whole match operations when matcher_serialize_operations is on
_operation_lock = asyncio.Lock()

_circuit_breaker: Optional[CircuitBreaker] = None


def get_matcher_circuit_breaker(failure_threshold: int, reset_timeout_ms: int) -> CircuitBreaker:
    """Process-wide breaker; rebuilt when its thresholds change."""
    global _circuit_breaker
    if (
        _circuit_breaker is None
        or _circuit_breaker.failure_threshold != failure_threshold
        or _circuit_breaker.reset_timeout_ms != reset_timeout_ms
    ):
        _circuit_breaker = CircuitBreaker(failure_threshold=failure_threshold, reset_timeout_ms=reset_timeout_ms)
    return _circuit_breaker


def reset_matcher_circuit_breaker():
    global _circuit_breaker
    _circuit_breaker = None


def sanitize_error_message(message: str) -> str:
    """Redact secrets/PII and cap the length before persisting"""
    for pattern, replacement in REDACTION_PATTERNS:
        message = pattern.sub(replacement, message)
    if len(message) > MAX_ERROR_MESSAGE_LENGTH:
        message = message[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return message


def chunk(items: List[Any], size: int) -> List[List[Any]]:
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


@dataclass
class MatchOutcome:
    job_id: int
    result: Optional[MatchResult] = None
    error: Optional[BaseException] = None
    attempt_count: int = 1
    duration: int = 0  # milliseconds

    @property
    def success(self) -> bool:
        return self.result is not None

    @property
    def error_type(self) -> Optional[str]:
        return categorize_error(self.error).value if self.error is not None else None


# ==================== Prompt building ====================

def format_profile(profile: Profile) -> str:
    skills = []
    for skill in profile.skills or []:
        if not isinstance(skill, dict) or not skill.get("name"):
            continue
        details = []
        proficiency = skill.get("proficiency")
        if isinstance(proficiency, int) and 1 <= proficiency <= len(PROFICIENCY_NAMES):
            details.append(PROFICIENCY_NAMES[proficiency - 1])
        if skill.get("category"):
            details.append(skill["category"])
        suffix = f" ({', '.join(details)})" if details else ""
        skills.append(f"- {skill['name']}{suffix}")

    experience = []
    for entry in profile.experience or []:
        if not isinstance(entry, dict):
            continue
        line = f"- {entry.get('title', '')} at {entry.get('company', '')}"
        if entry.get("description"):
            line += f": {entry['description']}"
        experience.append(line)

    return (
        "## Candidate Profile\n\n"
        f"**Summary:**\n{profile.summary or 'No summary provided'}\n\n"
        f"**Skills:**\n{chr(10).join(skills) if skills else 'No skills listed'}\n\n"
        f"**Experience:**\n{chr(10).join(experience) if experience else 'No experience listed'}"
    )


def format_job(job: Job, with_id: bool) -> str:
    description = (job.description or "No description provided")[:MAX_DESCRIPTION_CHARS]
    header = f"### Job ID: {job.id}\n" if with_id else "## Job\n\n"
    location = f"**Location:** {job.location}\n" if job.location else ""
    return f"{header}**Title:** {job.title}\n{location}**Description:** {description}\n"


def build_single_match_prompt(job: Job, profile: Profile) -> str:
    return f"{format_profile(profile)}\n\n---\n\n{format_job(job, with_id=False)}\n---\n\n{SINGLE_RESPONSE_FORMAT}\n"


def build_bulk_match_prompt(jobs: List[Job], profile: Profile) -> str:
    job_blocks = "\n".join(format_job(job, with_id=True) for job in jobs)
    return (
        f"{format_profile(profile)}\n\n---\n\n## Jobs to Analyze\n\n{job_blocks}\n---\n\n"
        f"{BULK_RESPONSE_FORMAT}\n"
    )


def parse_json_content(content: Optional[str]) -> Dict[str, Any]:
    if not content or not content.strip():
        raise MatcherError("AI returned an empty response", MatcherErrorType.JSON_PARSE)

    content = content.strip()
    # Handle markdown code blocks
    if content.startswith("```"):
        lines = content.split("\n")
        content = "\n".join(lines[1:-1])

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise MatcherError(f"Failed to parse AI JSON response: {e}", MatcherErrorType.JSON_PARSE)
    if not isinstance(data, dict):
        raise MatcherError("AI response is not a JSON object", MatcherErrorType.VALIDATION)
    return data


def validate_batch_response(data: Dict[str, Any], batch: List[Job]) -> Dict[int, MatchResult]:
    """
    Keep one result per requested job.

    Entries with an invalid or unknown job_id, or a duplicate of one
    already seen, are ignored. Jobs with no entry are simply absent.
    """
    raw_results = data.get("results")
    if not isinstance(raw_results, list):
        raise MatcherError("AI response is missing a results array", MatcherErrorType.VALIDATION)

    batch_ids = {job.id for job in batch}
    validated: Dict[int, MatchResult] = {}
    for raw in raw_results:
        try:
            item = BulkMatchItem.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid bulk match entry: {e.error_count()} validation errors")
            continue
        if item.job_id not in batch_ids:
            logger.warning(f"AI returned job_id {item.job_id} which was not in the batch, ignoring")
            continue
        if item.job_id in validated:
            logger.warning(f"AI returned duplicate job_id {item.job_id}, using first occurrence")
            continue
        validated[item.job_id] = MatchResult(**item.model_dump(exclude={"job_id"}))

    missing = batch_ids - validated.keys()
    if missing:
        logger.warning(f"AI response missing job IDs: {', '.join(str(i) for i in sorted(missing))}")
    return validated


# ==================== Engine ====================

OnResult = Callable[[MatchOutcome], Awaitable[None]]
OnProgress = Callable[[int, int, int, int], Any]


class JobMatcher:
    """
    AI match engine with session tracking.

    Attributes:
        repository: MatchRepository for jobs, profile and audit rows
        settings_service: source of MatcherConfig
        ai_client_factory: get_ai_client-compatible factory
    """

    def __init__(
        self,
        repository: Optional[MatchRepository] = None,
        settings_service: Optional[SettingsService] = None,
        ai_client_factory=get_ai_client,
    ):
        self.repository = repository or MatchRepository()
        self.settings_service = settings_service or SettingsService()
        self.ai_client_factory = ai_client_factory

    # ---------- AI calls ----------

    async def _complete_json(self, client, request_options: Dict[str, Any], system: str, prompt: str,
                             timeout_ms: int, operation: str) -> Dict[str, Any]:
        response = await with_timeout(
            client.chat.completions.create(
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                **request_options,
            ),
            timeout_ms,
            operation,
        )
        return parse_json_content(response.choices[0].message.content)

    async def _match_one(self, job: Job, profile: Profile, config: MatcherConfig,
                         breaker: CircuitBreaker, client, request_options: Dict[str, Any]) -> MatchOutcome:
        started = time.monotonic()

        async def attempt() -> MatchResult:
            if not breaker.can_execute():
                raise CircuitBreakerOpenError()
            call_started = time.monotonic()
            try:
                data = await self._complete_json(
                    client,
                    request_options,
                    SINGLE_MATCH_SYSTEM_PROMPT,
                    build_single_match_prompt(job, profile),
                    config.timeout_ms,
                    f"Match for job {job.id}",
                )
                try:
                    result = MatchResult.model_validate(data)
                except ValidationError as e:
                    raise MatcherError(f"AI match result failed validation: {e}", MatcherErrorType.VALIDATION)
            finally:
                record_match_call_latency("single", time.monotonic() - call_started)
            breaker.record_success()
            return result

        try:
            result, attempts = await retry_with_backoff(
                attempt,
                max_retries=config.max_retries,
                base_delay=config.backoff_base_delay,
                max_delay=config.backoff_max_delay,
            )
        except Exception as e:
            # One failure per job once retries are spent
            if not isinstance(e, CircuitBreakerOpenError):
                breaker.record_failure()
            return MatchOutcome(
                job_id=job.id,
                error=e,
                attempt_count=getattr(e, "attempt_count", 1),
                duration=int((time.monotonic() - started) * 1000),
            )
        return MatchOutcome(
            job_id=job.id,
            result=result,
            attempt_count=attempts,
            duration=int((time.monotonic() - started) * 1000),
        )

    async def _match_batch(self, batch: List[Job], profile: Profile, config: MatcherConfig,
                           breaker: CircuitBreaker, client, request_options: Dict[str, Any]) -> List[MatchOutcome]:
        if not breaker.can_execute():
            logger.info(f"Circuit breaker open, marking {len(batch)} jobs as failed")
            error = CircuitBreakerOpenError("Circuit breaker open - too many failures")
            return [MatchOutcome(job_id=job.id, error=error) for job in batch]

        started = time.monotonic()
        prompt = build_bulk_match_prompt(batch, profile)

        async def attempt() -> Dict[str, Any]:
            call_started = time.monotonic()
            try:
                return await self._complete_json(
                    client,
                    request_options,
                    BULK_MATCH_SYSTEM_PROMPT,
                    prompt,
                    config.timeout_ms * 2,
                    f"Bulk match of {len(batch)} jobs",
                )
            finally:
                record_match_call_latency("bulk", time.monotonic() - call_started)

        try:
            data, attempts = await retry_with_backoff(
                attempt,
                max_retries=config.max_retries,
                base_delay=config.backoff_base_delay,
                max_delay=config.backoff_max_delay,
            )
            results = validate_batch_response(data, batch)
        except Exception as e:
            breaker.record_failure()
            attempt_count = getattr(e, "attempt_count", 1)
            logger.error(f"Batch of {len(batch)} jobs failed: {e} (type: {categorize_error(e).value})")
            return [MatchOutcome(job_id=job.id, error=e, attempt_count=attempt_count) for job in batch]

        breaker.record_success()
        per_job_ms = int((time.monotonic() - started) * 1000 / len(batch))
        outcomes = []
        for job in batch:
            if job.id in results:
                outcomes.append(MatchOutcome(
                    job_id=job.id, result=results[job.id], attempt_count=attempts, duration=per_job_ms
                ))
            else:
                outcomes.append(MatchOutcome(
                    job_id=job.id,
                    error=MatcherError("AI did not return match result for this job", MatcherErrorType.VALIDATION),
                    attempt_count=attempts,
                ))
        logger.info(f"Batch completed: {len(results)}/{len(batch)} jobs")
        return outcomes

    async def execute_match(self, jobs: List[Job], profile: Profile, config: MatcherConfig,
                            on_result: OnResult) -> None:
        """
        Match ``jobs`` with the strategy selected by ``config``.

        ``on_result`` is awaited once per job as soon as its outcome is
        known, from whichever worker produced it.
        """
        if not jobs:
            return

        breaker = get_matcher_circuit_breaker(config.circuit_breaker_threshold, config.circuit_breaker_reset_timeout)
        client, request_options = self.ai_client_factory(config.model, config.reasoning_effort, config.provider_id)
        semaphore = asyncio.Semaphore(max(1, config.concurrency_limit))

        async def run_single(job: Job):
            async with semaphore:
                outcome = await self._match_one(job, profile, config, breaker, client, request_options)
                update_circuit_breaker_state(not breaker.can_execute())
                await on_result(outcome)

        async def run_batch(batch: List[Job]):
            async with semaphore:
                outcomes = await self._match_batch(batch, profile, config, breaker, client, request_options)
                update_circuit_breaker_state(not breaker.can_execute())
                for outcome in outcomes:
                    await on_result(outcome)

        if len(jobs) == 1:
            logger.info(f"Matching job {jobs[0].id} (single)")
            await run_single(jobs[0])
        elif config.bulk_enabled:
            batches = chunk(jobs, config.batch_size)
            logger.info(
                f"Matching {len(jobs)} jobs in {len(batches)} batches "
                f"(batch size {config.batch_size}, concurrency {config.concurrency_limit})"
            )
            await asyncio.gather(*(run_batch(batch) for batch in batches))
        else:
            logger.info(f"Matching {len(jobs)} jobs individually (concurrency {config.concurrency_limit})")
            await asyncio.gather(*(run_single(job) for job in jobs))

    # ---------- Tracking ----------

    async def _persist_outcome(self, session_id: str, outcome: MatchOutcome, model: str):
        try:
            if outcome.success:
                await self.repository.save_match_result(outcome.job_id, outcome.result)
                await self.repository.create_match_log(
                    session_id=session_id,
                    job_id=outcome.job_id,
                    status="success",
                    score=outcome.result.score,
                    attempt_count=outcome.attempt_count,
                    duration=outcome.duration,
                    model_used=model,
                )
            else:
                await self.repository.create_match_log(
                    session_id=session_id,
                    job_id=outcome.job_id,
                    status="failed",
                    attempt_count=outcome.attempt_count,
                    duration=outcome.duration,
                    error_type=outcome.error_type,
                    error_message=sanitize_error_message(str(outcome.error)),
                    model_used=model,
                )
        except Exception as e:
            logger.error(f"Failed to persist match result for job {outcome.job_id}: {e}")

    async def match_with_tracking(
        self,
        job_ids: List[int],
        trigger_source: str = "manual",
        company_id: Optional[int] = None,
        on_progress: Optional[OnProgress] = None,
    ) -> MatchSessionResult:
        """
        Match ``job_ids`` inside a new MatchSession.

        Args:
            job_ids: Jobs to score, in order
            trigger_source: manual | scheduler | company_refresh | auto_match
            company_id: Company the run belongs to, if any
            on_progress: Called (sync or async) with (completed, total, succeeded, failed)

        Returns:
            MatchSessionResult with the session id and aggregate counts
        """
        if not job_ids:
            return MatchSessionResult(session_id="", total=0, succeeded=0, failed=0)

        total = len(job_ids)
        session_id = await self.repository.create_match_session(trigger_source, total, company_id)
        logger.info(f"Match session {session_id}: {total} jobs (trigger: {trigger_source})")

        config = await self.settings_service.get_matcher_config()
        counts = {"completed": 0, "succeeded": 0, "failed": 0}

        def final_counters() -> Dict[str, int]:
            return {
                "jobs_completed": counts["completed"],
                "jobs_succeeded": counts["succeeded"],
                "jobs_failed": counts["failed"],
                "error_count": counts["failed"],
            }

        async def on_result(outcome: MatchOutcome):
            await self._persist_outcome(session_id, outcome, config.model)
            counts["completed"] += 1
            if outcome.success:
                counts["succeeded"] += 1
                record_match_result("success")
            else:
                counts["failed"] += 1
                record_match_result("failed", outcome.error_type)
                logger.warning(f"Match failed for job {outcome.job_id}: {outcome.error}")

            await self.repository.update_match_session_progress(
                session_id,
                jobs_completed=counts["completed"],
                jobs_succeeded=counts["succeeded"],
                jobs_failed=counts["failed"],
                error_count=counts["failed"],
            )
            if on_progress:
                try:
                    maybe_awaitable = on_progress(counts["completed"], total, counts["succeeded"], counts["failed"])
                    if inspect.isawaitable(maybe_awaitable):
                        await maybe_awaitable
                except Exception as e:
                    logger.error(f"Match progress callback failed: {e}")

        try:
            if config.serialize_operations:
                async with _operation_lock:
                    await self._run(job_ids, config, on_result)
            else:
                await self._run(job_ids, config, on_result)
        except Exception:
            logger.exception(f"Match session {session_id} failed")
            await self.repository.complete_match_session(session_id, "failed", **final_counters())
            raise

        status = "failed" if counts["succeeded"] == 0 else "completed"
        await self.repository.complete_match_session(session_id, status, **final_counters())
        logger.info(
            f"Match session {session_id} {status}: "
            f"{counts['succeeded']} succeeded, {counts['failed']} failed of {total}"
        )
        return MatchSessionResult(
            session_id=session_id,
            total=total,
            succeeded=counts["succeeded"],
            failed=counts["failed"],
        )

    async def _run(self, job_ids: List[int], config: MatcherConfig, on_result: OnResult):
        profile = await self.repository.get_profile()
        if profile is None:
            error = MatcherError("No profile found", MatcherErrorType.VALIDATION)
            for job_id in job_ids:
                await on_result(MatchOutcome(job_id=job_id, error=error))
            return

        jobs = await self.repository.get_jobs(job_ids)
        found = {job.id for job in jobs}
        for job_id in job_ids:
            if job_id not in found:
                await on_result(MatchOutcome(
                    job_id=job_id,
                    error=MatcherError(f"Job with ID {job_id} not found", MatcherErrorType.VALIDATION),
                ))

        await self.execute_match(jobs, profile, config, on_result)

    async def match_unmatched_jobs(self, trigger_source: str = "manual") -> MatchSessionResult:
        job_ids = await self.repository.get_unmatched_job_ids()
        logger.info(f"Found {len(job_ids)} unmatched jobs")
        return await self.match_with_tracking(job_ids, trigger_source=trigger_source)


async def match_with_tracking(
    job_ids: List[int],
    trigger_source: str = "manual",
    company_id: Optional[int] = None,
    on_progress: Optional[OnProgress] = None,
) -> MatchSessionResult:
    return await JobMatcher().match_with_tracking(
        job_ids, trigger_source=trigger_source, company_id=company_id, on_progress=on_progress
    )


async def match_unmatched_jobs(trigger_source: str = "manual") -> MatchSessionResult:
    return await JobMatcher().match_unmatched_jobs(trigger_source=trigger_source)
