from typing import Annotated

from fastapi import APIRouter, Depends

from autocategorizer.api.dependencies import get_pipeline, get_transaction_store
from autocategorizer.api.schemas import CategorizeRequest
from autocategorizer.integration.stores import TransactionStore
from autocategorizer.logger import get_logger
from autocategorizer.models import PipelineResult
from autocategorizer.pipeline import CategorizationPipeline

logger = get_logger(__name__)

router = APIRouter()


def _store_incoming(store: TransactionStore, req: CategorizeRequest) -> None:
    add = getattr(store, "add", None)
    if add is None:
        return
    for transaction in req.transactions:
        add(transaction)


@router.post("/categorize", response_model=PipelineResult)
async def categorize_transactions(
    req: CategorizeRequest,
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
    store: Annotated[TransactionStore, Depends(get_transaction_store)],
) -> PipelineResult:
    _store_incoming(store, req)
    return await pipeline.run(req.transactions)


@router.post("/categorize/{user_id}/uncategorized", response_model=PipelineResult)
async def categorize_uncategorized(
    user_id: str,
    pipeline: Annotated[CategorizationPipeline, Depends(get_pipeline)],
    store: Annotated[TransactionStore, Depends(get_transaction_store)],
) -> PipelineResult:
    transactions = store.get_uncategorized(user_id)
    logger.info("[API] Categorizing %s uncategorized transactions for user %s", len(transactions), user_id)
    return await pipeline.run(transactions)
