import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException

from jobtracker.scheduler import JobScheduler, get_scheduler
from jobtracker.schemas import SettingsUpdateResult
from jobtracker.services.settings_service import SettingsService, SettingsValidationError

logger = logging.getLogger(__name__)

router = APIRouter()


def get_settings_service() -> SettingsService:
    return SettingsService()


@router.get("", response_model=Dict[str, str])
async def get_settings(service: SettingsService = Depends(get_settings_service)):
    return await service.get_all_settings()


@router.put("", response_model=SettingsUpdateResult)
async def update_settings(
    updates: Dict[str, Any] = Body(...),
    service: SettingsService = Depends(get_settings_service),
    scheduler: JobScheduler = Depends(get_scheduler),
):
    try:
        result = await service.update_settings(updates)
    except SettingsValidationError as e:
        raise HTTPException(status_code=400, detail={"key": e.key, "message": str(e)})

    if result.cron_updated or result.enabled_changed:
        scheduler.invalidate_enabled_cache()
        active = await scheduler.restart()
        logger.info(f"Scheduler restarted after settings change (active: {active})")

    return result
