from fastapi import APIRouter
from jobtracker.api import companies, match, scheduler, sessions, settings

api_router = APIRouter()
api_router.include_router(companies.router, prefix="/companies", tags=["companies"])
api_router.include_router(sessions.router, prefix="/scrape-sessions", tags=["scrape-sessions"])
api_router.include_router(scheduler.router, prefix="/scheduler", tags=["scheduler"])
api_router.include_router(match.router, tags=["match"])
api_router.include_router(settings.router, prefix="/settings", tags=["settings"])
