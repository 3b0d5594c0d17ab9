"""
Profile Model - candidate profile used for AI match scoring

Singleton model (id="default") holding the summary, skills and work
history that the matcher sends to the language model.

Skill entries:
    {"name": "Python", "proficiency": 4, "category": "backend"}
    proficiency is 1 (beginner) to 5 (expert)

Experience entries:
    {"title": "Backend Engineer", "company": "Acme", "description": "..."}
"""

from sqlalchemy import Column, String, Text, JSON, DateTime
from jobtracker.database import Base, utcnow


class Profile(Base):
    """
    Candidate profile for job matching.

    Note: Single-user service uses id="default" as the sole profile.
    """

    __tablename__ = "profiles"

    id = Column(String, primary_key=True, default="default")
    name = Column(String(255), nullable=False, default="")
    summary = Column(Text, nullable=True)
    skills = Column(JSON, nullable=False, default=list)
    experience = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
