"""
Company Model - career sites tracked by the scraper

A company is scraped when it is active and its platform is not "custom".
When ``platform`` is empty the scraper registry infers it from the URL.
"""

from sqlalchemy import Column, String, Integer, Boolean, DateTime
from jobtracker.database import Base, utcnow


class Company(Base):
    """
    Tracked company.

    Attributes:
        careers_url: Public careers page or job board URL
        platform: "greenhouse", "lever", "ashby", "eightfold", "workday", "custom" or null
        board_token: Manual override for the platform board/tenant identifier
        is_active: Inactive companies are skipped by batch and scheduled runs
        last_scraped_at: Updated after every successful scrape
        scrape_frequency: Hours between scheduled scrapes; null falls back to global_scrape_frequency
    """

    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    careers_url = Column(String(2000), nullable=False)
    platform = Column(String(50), nullable=True)
    board_token = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_scraped_at = Column(DateTime, nullable=True)
    scrape_frequency = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
