import asyncio
import contextlib
from time import perf_counter

from autocategorizer.core.settings import PipelineSettings
from autocategorizer.domain.confidence import confidence_band
from autocategorizer.logger import get_logger
from autocategorizer.models import (
    CandidateMethod,
    CandidateStatus,
    CategorizationCandidate,
    StageResult,
    SuggestionResponse,
    Transaction,
)
from autocategorizer.services.suggestions import SuggestionService

from .base import Stage

logger = get_logger(__name__)


class StageCancelled(Exception):
    pass


def batch_owner(transactions: list[Transaction]) -> tuple[str | None, str | None]:
    """Return ``(user_id, None)`` for a single-owner batch, else ``(None, error)``."""
    owners = {t.user_id for t in transactions}
    if None in owners:
        return None, "no owning user found for the batch"
    if len(owners) != 1:
        return None, f"batch spans {len(owners)} users; expected exactly one"
    return owners.pop(), None


async def _await_unless_cancelled(awaitable, cancel_event: asyncio.Event | None):
    if cancel_event is None:
        return await awaitable
    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise StageCancelled()

    call = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if call.done():
            return call.result()
        raise StageCancelled()
    finally:
        for pending in (call, waiter):
            if not pending.done():
                pending.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await pending


class LLMStage(Stage):
    """Last resort: every suggestion becomes a pending candidate for review."""

    name = "LLM"

    def __init__(self, service: SuggestionService, settings: PipelineSettings | None = None):
        self.service = service
        self.settings = settings or PipelineSettings()

    async def process(
        self,
        transactions: list[Transaction],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> StageResult:
        if not transactions:
            return StageResult(stage=self.name)

        user_id, problem = batch_owner(transactions)
        if user_id is None:
            logger.warning("[LLM] Cannot process LLM categorization: %s", problem)
            return StageResult.unresolved(
                self.name, transactions, f"LLM stage skipped: {problem}"
            )

        started = perf_counter()
        logger.info(
            "[LLM] Processing %s transactions for user %s; this will incur AI costs.",
            len(transactions),
            user_id,
        )

        try:
            response: SuggestionResponse = await _await_unless_cancelled(
                self.service.suggest(transactions, user_id), cancel_event
            )
        except StageCancelled:
            logger.warning("[LLM] Cancelled; %s transactions stay unresolved.", len(transactions))
            return StageResult.unresolved(self.name, transactions, "LLM stage cancelled")

        if not response.success:
            logger.error("[LLM] Suggestion service failed: %s", ", ".join(response.errors))
            result = StageResult.unresolved(self.name, transactions, *response.errors)
            if not result.errors:
                result.errors.append("LLM suggestion service failed")
            return result

        known = {t.id for t in transactions}
        actor = f"LLMStage-{user_id}"
        result = StageResult(stage=self.name)
        for suggestion in response.suggestions:
            if suggestion.transaction_id not in known:
                logger.warning(
                    "[LLM] Ignoring suggestion for transaction %s outside this batch",
                    suggestion.transaction_id,
                )
                continue
            result.candidates.append(
                CategorizationCandidate(
                    transaction_id=suggestion.transaction_id,
                    user_id=user_id,
                    category_id=suggestion.category_id,
                    category_name=suggestion.category_name,
                    method=CandidateMethod.LLM,
                    confidence_score=suggestion.confidence,
                    reasoning=suggestion.reasoning,
                    metadata={
                        "handler": "LLMStage",
                        "matching_rules": suggestion.matching_rules,
                        "is_recommended": suggestion.is_recommended,
                    },
                    status=CandidateStatus.PENDING,
                    processed_by="LLMStage",
                    created_by=actor,
                    updated_by=actor,
                )
            )
            result.metrics.record(
                suggestion.category_name, confidence_band(suggestion.confidence)
            )

        resolved = {c.transaction_id for c in result.candidates}
        result.remaining = [t for t in transactions if t.id not in resolved]
        result.metrics.processed_by_llm = len(resolved)
        result.metrics.estimated_cost_savings = (
            self.settings.llm_cost_saving * len(result.candidates)
        )
        result.metrics.processing_time_ms = (perf_counter() - started) * 1000

        logger.info(
            "[LLM] Created %s candidates for %s transactions; %s unresolved.",
            len(result.candidates),
            len(resolved),
            len(result.remaining),
        )
        return result
