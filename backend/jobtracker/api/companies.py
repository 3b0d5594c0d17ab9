from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from jobtracker.schemas import BatchFetchResult, FetchResult, RefreshRequest
from jobtracker.services.orchestrator import ScrapeOrchestrator, get_orchestrator

router = APIRouter()


@router.post("/refresh", response_model=BatchFetchResult)
async def refresh_companies(
    request: Optional[RefreshRequest] = None,
    orchestrator: ScrapeOrchestrator = Depends(get_orchestrator),
):
    if request and request.company_ids:
        return await orchestrator.fetch_jobs_for_companies(request.company_ids, trigger_source="manual")
    return await orchestrator.fetch_jobs_for_all_companies(trigger_source="manual")


@router.post("/{company_id}/refresh", response_model=FetchResult)
async def refresh_company(
    company_id: int,
    orchestrator: ScrapeOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.fetch_jobs_for_company(company_id, trigger_source="company_refresh")
    if result.error == "Company not found":
        raise HTTPException(status_code=404, detail="Company not found")
    return result
