"""
Setting Model - runtime key/value settings

Holds the user-editable knobs (filters, scheduler cadence, matcher tuning)
plus a few internal keys such as ``scheduler.lock`` and ``scheduler.lastRun``.
"""

from sqlalchemy import Column, String, Text, DateTime
from jobtracker.database import Base, utcnow


class Setting(Base):
    __tablename__ = "settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
