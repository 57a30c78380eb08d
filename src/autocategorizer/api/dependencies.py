from fastapi import HTTPException, Request

from autocategorizer.integration.stores import TransactionStore
from autocategorizer.pipeline import CategorizationPipeline
from autocategorizer.services.candidates import CandidateService
from autocategorizer.services.usage import UsageTracker


def get_pipeline(request: Request) -> CategorizationPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if not pipeline:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return pipeline


def get_candidate_service(request: Request) -> CandidateService:
    service = getattr(request.app.state, "candidate_service", None)
    if not service:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return service


def get_transaction_store(request: Request) -> TransactionStore:
    store = getattr(request.app.state, "transactions", None)
    if not store:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return store


def get_usage_tracker_optional(request: Request) -> UsageTracker | None:
    return getattr(request.app.state, "usage", None)
