from fastapi import APIRouter, Depends

from jobtracker.scheduler import JobScheduler, get_scheduler
from jobtracker.schemas import RefreshResponse, SchedulerStatus

router = APIRouter()


@router.get("/status", response_model=SchedulerStatus)
async def scheduler_status(scheduler: JobScheduler = Depends(get_scheduler)):
    return await scheduler.get_status()


@router.post("/start", response_model=SchedulerStatus)
async def start_scheduler(scheduler: JobScheduler = Depends(get_scheduler)):
    await scheduler.restart()
    return await scheduler.get_status()


@router.post("/stop", response_model=SchedulerStatus)
async def stop_scheduler(scheduler: JobScheduler = Depends(get_scheduler)):
    scheduler.stop()
    return await scheduler.get_status()


@router.post("/trigger", response_model=RefreshResponse)
async def trigger_refresh(scheduler: JobScheduler = Depends(get_scheduler)):
    return await scheduler.trigger_manual_refresh()
