"""
Job Tracker API - Main Application Entry Point

This module initializes the FastAPI application with:
- Logging and database schema initialization
- Cron scheduler for periodic company refreshes
- CORS middleware for frontend communication
- Prometheus metrics
- API router registration

Architecture:
    FastAPI App
    ├── Lifespan Management (startup/shutdown)
    ├── CORS Middleware
    ├── Prometheus Middleware (/metrics)
    └── API Router
        ├── /companies - Company refresh (scrape) triggers
        ├── /scrape-sessions - Scrape session audit and stop
        ├── /scheduler - Scheduler status and control
        ├── /match, /match-sessions - AI matching
        └── /settings - Runtime settings
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from jobtracker.api import api_router
from jobtracker.config import get_settings
from jobtracker.database import init_db
from jobtracker.logging_config import setup_logging
from jobtracker.middleware.metrics import setup_metrics
from jobtracker.scheduler import start_scheduler, stop_scheduler
from jobtracker.services.orchestrator import shutdown_orchestrator

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifecycle events.

    Startup:
        1. Configure logging
        2. Initialize database tables
        3. Start the scheduler (unless SCHEDULER_AUTOSTART=false)

    Shutdown:
        1. Stop the scheduler
        2. Wait for background matching and close HTTP clients
    """
    setup_logging(settings.log_level, settings.log_file)
    await init_db()
    if settings.scheduler_autostart:
        try:
            await start_scheduler()
        except Exception:
            logger.exception("Failed to start scheduler")
    yield
    stop_scheduler()
    await shutdown_orchestrator()


app = FastAPI(
    title="Job Tracker API",
    description="Career site scraping and AI job matching",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

setup_metrics(app)

app.include_router(api_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
