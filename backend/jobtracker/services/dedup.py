"""
Deduplication of freshly scraped jobs against a company's known jobs.

Match order (first hit wins):
    1. external_id  - platform+board+native id, stable across re-scrapes
    2. url          - same canonical posting URL
    3. title        - Dice bigram similarity above the threshold (0.9)

Only external_id/url matches are trusted enough to refresh stored
descriptions; title matches are treated as "probably the same" and skipped.
"""

import logging
from typing import List, Optional

from pydantic import BaseModel

from jobtracker.schemas import ExistingJob, ScrapedJob

logger = logging.getLogger(__name__)

DEFAULT_TITLE_SIMILARITY_THRESHOLD = 0.9


def _bigrams(text: str) -> dict:
    counts = {}
    for i in range(len(text) - 1):
        pair = text[i:i + 2]
        counts[pair] = counts.get(pair, 0) + 1
    return counts


def dice_similarity(first: str, second: str) -> float:
    """
    Sørensen-Dice coefficient over character bigrams (whitespace ignored).

    Returns:
        1.0 for identical strings, 0.0 when either has fewer than 2 chars.
    """
    first = "".join(first.split())
    second = "".join(second.split())

    if first == second:
        return 1.0
    if len(first) < 2 or len(second) < 2:
        return 0.0

    first_bigrams = _bigrams(first)
    intersection = 0
    for i in range(len(second) - 1):
        pair = second[i:i + 2]
        count = first_bigrams.get(pair, 0)
        if count > 0:
            first_bigrams[pair] = count - 1
            intersection += 1

    return (2.0 * intersection) / (len(first) + len(second) - 2)


class DeduplicationResult(BaseModel):
    is_new: bool
    existing_job_id: Optional[int] = None
    similarity: float = 0.0
    match_reason: Optional[str] = None  # external_id | url | title


class DuplicateMatch(BaseModel):
    job: ScrapedJob
    existing_job_id: int
    similarity: float
    match_reason: str


class BatchDeduplicationResult(BaseModel):
    new_jobs: List[ScrapedJob]
    duplicates: List[DuplicateMatch]


class DeduplicationService:
    def __init__(self, title_similarity_threshold: float = DEFAULT_TITLE_SIMILARITY_THRESHOLD):
        self.title_similarity_threshold = title_similarity_threshold

    def deduplicate(self, job: ScrapedJob, existing_jobs: List[ExistingJob]) -> DeduplicationResult:
        for existing in existing_jobs:
            if existing.external_id and existing.external_id == job.external_id:
                return DeduplicationResult(
                    is_new=False, existing_job_id=existing.id, similarity=1.0, match_reason="external_id"
                )

        for existing in existing_jobs:
            if existing.url == job.url:
                return DeduplicationResult(
                    is_new=False, existing_job_id=existing.id, similarity=1.0, match_reason="url"
                )

        best_similarity = 0.0
        best_match = None
        title = job.title.lower()
        for existing in existing_jobs:
            similarity = dice_similarity(title, existing.title.lower())
            if similarity > best_similarity:
                best_similarity = similarity
                best_match = existing

        if best_match is not None and best_similarity > self.title_similarity_threshold:
            return DeduplicationResult(
                is_new=False, existing_job_id=best_match.id, similarity=best_similarity, match_reason="title"
            )

        return DeduplicationResult(is_new=True, similarity=best_similarity)

    def batch_deduplicate(self, jobs: List[ScrapedJob], existing_jobs: List[ExistingJob]) -> BatchDeduplicationResult:
        """
        Split ``jobs`` into new jobs and duplicates.

        New jobs join the comparison set under transient negative ids so that
        repeats inside the same scrape are caught too.
        """
        new_jobs = []
        duplicates = []
        comparison = list(existing_jobs)
        transient_id = -1

        for job in jobs:
            result = self.deduplicate(job, comparison)
            if result.is_new:
                new_jobs.append(job)
                comparison.append(ExistingJob(
                    id=transient_id,
                    external_id=job.external_id,
                    title=job.title,
                    url=job.url,
                ))
                transient_id -= 1
            else:
                duplicates.append(DuplicateMatch(
                    job=job,
                    existing_job_id=result.existing_job_id,
                    similarity=result.similarity,
                    match_reason=result.match_reason,
                ))

        logger.debug(f"Deduplicated {len(jobs)} jobs: {len(new_jobs)} new, {len(duplicates)} duplicates")
        return BatchDeduplicationResult(new_jobs=new_jobs, duplicates=duplicates)
