from typing import List

from fastapi import APIRouter, Depends, HTTPException

from jobtracker.schemas import MatchRequest, MatchSessionResponse, MatchSessionResult
from jobtracker.services.matcher import JobMatcher

router = APIRouter()


def get_matcher() -> JobMatcher:
    return JobMatcher()


@router.post("/match", response_model=MatchSessionResult)
async def match_jobs(request: MatchRequest, matcher: JobMatcher = Depends(get_matcher)):
    if not request.job_ids:
        raise HTTPException(status_code=400, detail="job_ids must not be empty")
    return await matcher.match_with_tracking(request.job_ids, trigger_source="manual")


@router.post("/match/unmatched", response_model=MatchSessionResult)
async def match_unmatched(matcher: JobMatcher = Depends(get_matcher)):
    return await matcher.match_unmatched_jobs()


@router.get("/match-sessions/{session_id}", response_model=MatchSessionResponse)
async def get_match_session(session_id: str, matcher: JobMatcher = Depends(get_matcher)):
    session = await matcher.repository.get_match_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Match session not found")
    return MatchSessionResponse.model_validate(session)
