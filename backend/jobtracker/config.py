from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/jobs.db"

    # AI provider (any OpenAI-compatible endpoint)
    openai_api_key: str = ""
    openai_base_url: Optional[str] = None
    matcher_model: str = "gpt-4o-mini"
    matcher_provider_id: str = "openai"

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Scraping
    scraper_user_agent: str = "Mozilla/5.0 (compatible; JobTracker/1.0)"
    browser_headless: bool = True

    # Scheduler
    scheduler_autostart: bool = True

    cors_origins: List[str] = ["http://localhost:3000"]

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
