from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from jobtracker.schemas import ScrapeSessionDetail, ScrapeSessionResponse, ScrapingLogResponse
from jobtracker.services.orchestrator import ScrapeOrchestrator, get_orchestrator
from jobtracker.services.repository import ScraperRepository

router = APIRouter()


def get_repository() -> ScraperRepository:
    return ScraperRepository()


@router.get("", response_model=List[ScrapeSessionResponse])
async def list_sessions(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    repository: ScraperRepository = Depends(get_repository),
):
    sessions = await repository.list_sessions(limit=limit, offset=offset)
    return [ScrapeSessionResponse.model_validate(session) for session in sessions]


@router.get("/{session_id}", response_model=ScrapeSessionDetail)
async def get_session(
    session_id: str,
    repository: ScraperRepository = Depends(get_repository),
):
    session = await repository.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")

    logs = await repository.get_session_logs(session_id)
    detail = ScrapeSessionDetail.model_validate(session)
    detail.logs = [ScrapingLogResponse.model_validate(log) for log in logs]
    return detail


@router.post("/{session_id}/stop")
async def stop_session(
    session_id: str,
    repository: ScraperRepository = Depends(get_repository),
    orchestrator: ScrapeOrchestrator = Depends(get_orchestrator),
):
    session = await repository.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")

    stopped = await orchestrator.stop_session(session_id)
    return {"stopped": stopped}
