from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel


class ScrapingLogResponse(BaseModel):
    id: int
    company_id: Optional[int] = None
    status: str
    jobs_found: int
    jobs_added: int
    jobs_updated: int
    jobs_filtered: int
    jobs_archived: int
    platform: Optional[str] = None
    error_message: Optional[str] = None
    duration: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    matcher_status: Optional[str] = None
    matcher_jobs_total: Optional[int] = None
    matcher_jobs_completed: Optional[int] = None
    matcher_error_count: Optional[int] = None
    matcher_duration: Optional[int] = None

    class Config:
        from_attributes = True


class ScrapeSessionResponse(BaseModel):
    id: str
    trigger_source: str
    status: str
    companies_total: int
    companies_completed: int
    total_jobs_found: int
    total_jobs_added: int
    total_jobs_filtered: int
    total_jobs_archived: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ScrapeSessionDetail(ScrapeSessionResponse):
    logs: List[ScrapingLogResponse] = []


class MatchSessionResponse(BaseModel):
    id: str
    trigger_source: str
    company_id: Optional[int] = None
    status: str
    jobs_total: int
    jobs_completed: int
    jobs_succeeded: int
    jobs_failed: int
    error_count: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RefreshRequest(BaseModel):
    company_ids: Optional[List[int]] = None


class RefreshResponse(BaseModel):
    started: bool
    message: str


class MatchRequest(BaseModel):
    job_ids: List[int]


class SchedulerStatus(BaseModel):
    is_active: bool
    is_running: bool
    enabled: bool
    cron_expression: str
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None


class SettingsUpdateResult(BaseModel):
    updated: Dict[str, str]
    cron_updated: bool = False
    enabled_changed: bool = False
    new_enabled_value: Optional[bool] = None
