from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional, Set

from pydantic import BaseModel, Field


Platform = Literal["greenhouse", "lever", "ashby", "eightfold", "workday", "custom"]
LocationType = Literal["remote", "hybrid", "onsite"]
DescriptionFormat = Literal["markdown", "plain", "html"]
TriggerSource = Literal["manual", "scheduler", "company_refresh"]
FetchOutcome = Literal["success", "partial", "error"]


class ScraperErrorCode(str, Enum):
    INVALID_URL = "invalid_url"
    BOARD_NOT_FOUND = "board_not_found"
    RATE_LIMITED = "rate_limited"
    NETWORK_ERROR = "network_error"
    PARSE_ERROR = "parse_error"
    AUTH_REQUIRED = "auth_required"
    BROWSER_ERROR = "browser_error"
    CSRF_ERROR = "csrf_error"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_ERROR_CODES


RETRYABLE_ERROR_CODES = {
    ScraperErrorCode.RATE_LIMITED,
    ScraperErrorCode.NETWORK_ERROR,
    ScraperErrorCode.TIMEOUT,
    ScraperErrorCode.BROWSER_ERROR,
}


class ScraperError(Exception):
    """Raised inside a scraper; converted to a failed ScraperResult at the boundary."""

    def __init__(self, message: str, code: ScraperErrorCode = ScraperErrorCode.UNKNOWN):
        super().__init__(message)
        self.code = code

    @property
    def retryable(self) -> bool:
        return self.code.retryable


class ScrapedJob(BaseModel):
    external_id: str
    title: str
    url: str
    location: Optional[str] = None
    location_type: Optional[LocationType] = None
    department: Optional[str] = None
    description: Optional[str] = None
    description_format: Optional[DescriptionFormat] = None
    employment_type: Optional[str] = None
    posted_date: Optional[datetime] = None


class JobFilters(BaseModel):
    country: Optional[str] = None
    city: Optional[str] = None
    title_keywords: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.country or self.city or self.title_keywords)


class EarlyFilterStats(BaseModel):
    total: int = 0
    country: int = 0
    city: int = 0
    title: int = 0


class ScrapeOptions(BaseModel):
    board_token: Optional[str] = None
    filters: Optional[JobFilters] = None
    existing_external_ids: Set[str] = Field(default_factory=set)


class ScraperResult(BaseModel):
    success: bool
    jobs: List[ScrapedJob] = Field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[ScraperErrorCode] = None
    detected_board_token: Optional[str] = None
    early_filtered: Optional[EarlyFilterStats] = None
    # Every posting currently listed (before filtering); drives archival
    open_external_ids: Optional[List[str]] = None
    open_external_ids_complete: Optional[bool] = None

    @classmethod
    def failure(cls, error: str, code: ScraperErrorCode = ScraperErrorCode.UNKNOWN) -> "ScraperResult":
        return cls(success=False, error=error, error_code=code)


class FetchResult(BaseModel):
    company_id: int
    company_name: str
    success: bool
    outcome: FetchOutcome
    jobs_found: int = 0
    jobs_added: int = 0
    jobs_updated: int = 0
    jobs_filtered: int = 0
    jobs_archived: int = 0
    platform: Optional[str] = None
    error: Optional[str] = None
    duration: int = 0  # milliseconds
    log_id: Optional[int] = None


class BatchSummary(BaseModel):
    total_companies: int = 0
    successful_companies: int = 0
    failed_companies: int = 0
    total_jobs_found: int = 0
    total_jobs_added: int = 0
    total_jobs_filtered: int = 0
    total_jobs_archived: int = 0
    total_duration: int = 0


class BatchFetchResult(BaseModel):
    session_id: str
    status: str
    results: List[FetchResult] = Field(default_factory=list)
    summary: BatchSummary = Field(default_factory=BatchSummary)


class ExistingJob(BaseModel):
    id: int
    external_id: Optional[str] = None
    title: str
    url: str
    status: Optional[str] = None
    description: Optional[str] = None
