import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query

from autocategorizer.api.dependencies import get_candidate_service
from autocategorizer.api.schemas import BatchReviewRequest, CorrectionRequest, ReviewRequest
from autocategorizer.models import CategorizationCandidate
from autocategorizer.services.candidates import (
    BatchCandidateResult,
    CandidateService,
    CandidateStats,
)

router = APIRouter(prefix="/candidates")


def _require(done: bool, candidate_id: int) -> dict[str, object]:
    if not done:
        raise HTTPException(
            status_code=404, detail=f"Candidate {candidate_id} not found or not pending"
        )
    return {"status": "success", "candidate_id": candidate_id}


@router.get("/pending", response_model=dict[int, list[CategorizationCandidate]])
async def pending_candidates(
    service: Annotated[CandidateService, Depends(get_candidate_service)],
    transaction_ids: Annotated[list[int], Query()],
) -> dict[int, list[CategorizationCandidate]]:
    return service.pending_for_transactions(transaction_ids)


@router.get("/stats/{user_id}", response_model=CandidateStats)
async def candidate_stats(
    user_id: str,
    service: Annotated[CandidateService, Depends(get_candidate_service)],
) -> CandidateStats:
    return service.stats(user_id)


@router.post("/{candidate_id}/accept")
async def accept_candidate(
    candidate_id: int,
    service: Annotated[CandidateService, Depends(get_candidate_service)],
    req: ReviewRequest | None = None,
) -> dict[str, object]:
    actor = req.actor if req else "user"
    return _require(await asyncio.to_thread(service.accept, candidate_id, actor), candidate_id)


@router.post("/{candidate_id}/reject")
async def reject_candidate(
    candidate_id: int,
    service: Annotated[CandidateService, Depends(get_candidate_service)],
    req: ReviewRequest | None = None,
) -> dict[str, object]:
    actor = req.actor if req else "user"
    return _require(await asyncio.to_thread(service.reject, candidate_id, actor), candidate_id)


@router.post("/{candidate_id}/correct")
async def correct_candidate(
    candidate_id: int,
    req: CorrectionRequest,
    service: Annotated[CandidateService, Depends(get_candidate_service)],
) -> dict[str, object]:
    corrected = await asyncio.to_thread(
        service.record_correction, candidate_id, req.category_id, req.actor
    )
    return _require(corrected, candidate_id)


@router.post("/accept", response_model=BatchCandidateResult)
async def accept_candidates(
    req: BatchReviewRequest,
    service: Annotated[CandidateService, Depends(get_candidate_service)],
) -> BatchCandidateResult:
    return await asyncio.to_thread(service.accept_many, req.candidate_ids, req.actor)


@router.post("/reject", response_model=BatchCandidateResult)
async def reject_candidates(
    req: BatchReviewRequest,
    service: Annotated[CandidateService, Depends(get_candidate_service)],
) -> BatchCandidateResult:
    return await asyncio.to_thread(service.reject_many, req.candidate_ids, req.actor)
