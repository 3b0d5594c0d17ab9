from jobtracker.schemas.scraper import (
    ScrapedJob,
    ExistingJob,
    JobFilters,
    EarlyFilterStats,
    ScrapeOptions,
    ScraperResult,
    ScraperError,
    ScraperErrorCode,
    FetchResult,
    BatchSummary,
    BatchFetchResult,
)
from jobtracker.schemas.matcher import (
    MatchResult,
    BulkMatchItem,
    BulkMatchResponse,
    MatcherConfig,
    MatchSessionResult,
)
from jobtracker.schemas.session import (
    ScrapingLogResponse,
    ScrapeSessionResponse,
    ScrapeSessionDetail,
    MatchSessionResponse,
    RefreshRequest,
    RefreshResponse,
    MatchRequest,
    SchedulerStatus,
    SettingsUpdateResult,
)

__all__ = [
    "ScrapedJob",
    "ExistingJob",
    "JobFilters",
    "EarlyFilterStats",
    "ScrapeOptions",
    "ScraperResult",
    "ScraperError",
    "ScraperErrorCode",
    "FetchResult",
    "BatchSummary",
    "BatchFetchResult",
    "MatchResult",
    "BulkMatchItem",
    "BulkMatchResponse",
    "MatcherConfig",
    "MatchSessionResult",
    "ScrapingLogResponse",
    "ScrapeSessionResponse",
    "ScrapeSessionDetail",
    "MatchSessionResponse",
    "RefreshRequest",
    "RefreshResponse",
    "MatchRequest",
    "SchedulerStatus",
    "SettingsUpdateResult",
]
