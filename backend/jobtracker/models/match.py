"""
Match audit models

MatchSession aggregates one matcher run over a list of jobs; MatchLog is
one row per job with the outcome, score, attempts and model used.
"""

import uuid

from sqlalchemy import Column, String, Integer, Float, Text, DateTime, ForeignKey
from jobtracker.database import Base, utcnow


class MatchSession(Base):
    __tablename__ = "match_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    trigger_source = Column(String(20), nullable=False)  # manual | scheduler | company_refresh | auto_match
    company_id = Column(Integer, ForeignKey("companies.id", ondelete="SET NULL"), nullable=True)
    status = Column(String(20), nullable=False, default="in_progress")
    jobs_total = Column(Integer, nullable=False, default=0)
    jobs_completed = Column(Integer, nullable=False, default=0)
    jobs_succeeded = Column(Integer, nullable=False, default=0)
    jobs_failed = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)


class MatchLog(Base):
    __tablename__ = "match_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, ForeignKey("match_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(20), nullable=False)  # success | failed
    score = Column(Float, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=1)
    duration = Column(Integer, nullable=True)  # milliseconds
    error_type = Column(String(30), nullable=True)
    error_message = Column(Text, nullable=True)
    model_used = Column(String(100), nullable=True)
    completed_at = Column(DateTime, default=utcnow)
