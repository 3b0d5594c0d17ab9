from typing import List, Optional

from pydantic import BaseModel, Field


class MatchResult(BaseModel):
    score: float = Field(ge=0, le=100)
    reasons: List[str] = Field(default_factory=list)
    matched_skills: List[str] = Field(default_factory=list)
    missing_skills: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class BulkMatchItem(MatchResult):
    job_id: int


class BulkMatchResponse(BaseModel):
    results: List[BulkMatchItem] = Field(default_factory=list)


class MatcherConfig(BaseModel):
    model: str = "gpt-4o-mini"
    provider_id: Optional[str] = None
    reasoning_effort: str = "medium"
    bulk_enabled: bool = True
    batch_size: int = 2
    max_retries: int = 3
    concurrency_limit: int = 3
    serialize_operations: bool = False
    timeout_ms: int = 30000
    backoff_base_delay: int = 2000
    backoff_max_delay: int = 32000
    circuit_breaker_threshold: int = 10
    circuit_breaker_reset_timeout: int = 60000
    auto_match_after_scrape: bool = True


class MatchSessionResult(BaseModel):
    session_id: str
    total: int
    succeeded: int
    failed: int
