"""
Job Model - SQLAlchemy ORM model for job postings

Stores postings scraped from company career sites together with the
AI match result and the user-assigned status.

Status Flow:
    new → viewed → interested → applied / rejected
    any open status → archived (posting disappeared from the career site)
    archived (by the scraper) → new (posting reappeared)
"""

from sqlalchemy import Column, String, Integer, Float, Text, DateTime, JSON, ForeignKey, UniqueConstraint
from jobtracker.database import Base, utcnow


JOB_STATUSES = ["new", "viewed", "interested", "applied", "rejected", "archived"]

# Statuses the scraper may move to "archived" when a posting disappears.
# "applied" is left alone so the user's application history survives.
ARCHIVABLE_JOB_STATUSES = ["new", "viewed", "interested", "rejected"]

ARCHIVE_SOURCE_SCRAPER = "scraper"


class Job(Base):
    """
    Job posting entity with AI match scoring.

    Attributes:
        company_id: Owning company
        external_id: platform-board-nativeid key used for deduplication
        title / url / location / department: Posting fields as scraped
        location_type: "remote", "hybrid" or "onsite"
        description: Normalized description (markdown or plain text)
        description_format: "markdown", "plain" or "html"
        employment_type: "full-time", "part-time", "contract", "intern", "temporary"
        status: Pipeline stage (indexed)
        match_score: AI-calculated relevance (0-100), null until matched
        match_reasons / matched_skills / missing_skills / recommendations: JSON lists
        archived_at / archive_source: Set when the posting is archived
    """

    __tablename__ = "jobs"
    __table_args__ = (
        UniqueConstraint("company_id", "external_id", name="uq_jobs_company_external_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column(String(500), nullable=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    description_format = Column(String(20), nullable=True)
    url = Column(String(2000), nullable=False)
    location = Column(String(500), nullable=True)
    location_type = Column(String(20), nullable=True)
    department = Column(String(255), nullable=True)
    employment_type = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default="new", index=True)
    match_score = Column(Float, nullable=True)
    match_reasons = Column(JSON, nullable=True)
    matched_skills = Column(JSON, nullable=True)
    missing_skills = Column(JSON, nullable=True)
    recommendations = Column(JSON, nullable=True)
    posted_date = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, nullable=True)
    archive_source = Column(String(20), nullable=True)
    discovered_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
