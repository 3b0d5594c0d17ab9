"""
Scrape audit models

ScrapeSession aggregates one batch run; ScrapingLog holds one row per
company attempt inside it. The matcher_* columns on ScrapingLog mirror the
background match run that follows a successful scrape.

Session Status Flow:
    in_progress → completed / partial / failed
    in_progress → failed (stopped externally)
"""

import uuid

from sqlalchemy import Column, String, Integer, Text, DateTime, ForeignKey
from jobtracker.database import Base, utcnow


class ScrapeSession(Base):
    __tablename__ = "scrape_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    trigger_source = Column(String(20), nullable=False)  # manual | scheduler | company_refresh
    status = Column(String(20), nullable=False, default="in_progress", index=True)
    companies_total = Column(Integer, nullable=False, default=0)
    companies_completed = Column(Integer, nullable=False, default=0)
    total_jobs_found = Column(Integer, nullable=False, default=0)
    total_jobs_added = Column(Integer, nullable=False, default=0)
    total_jobs_filtered = Column(Integer, nullable=False, default=0)
    total_jobs_archived = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)


class ScrapingLog(Base):
    __tablename__ = "scraping_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=True, index=True)
    session_id = Column(String, ForeignKey("scrape_sessions.id", ondelete="CASCADE"), nullable=True, index=True)
    trigger_source = Column(String(20), nullable=True)
    status = Column(String(20), nullable=False)  # success | error | partial
    jobs_found = Column(Integer, nullable=False, default=0)
    jobs_added = Column(Integer, nullable=False, default=0)
    jobs_updated = Column(Integer, nullable=False, default=0)
    jobs_filtered = Column(Integer, nullable=False, default=0)
    jobs_archived = Column(Integer, nullable=False, default=0)
    platform = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    duration = Column(Integer, nullable=True)  # milliseconds
    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    matcher_status = Column(String(20), nullable=True)  # pending | in_progress | completed | failed
    matcher_jobs_total = Column(Integer, nullable=True)
    matcher_jobs_completed = Column(Integer, nullable=True)
    matcher_error_count = Column(Integer, nullable=True)
    matcher_duration = Column(Integer, nullable=True)
