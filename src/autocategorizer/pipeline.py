import asyncio
from collections.abc import Callable
from time import perf_counter

from autocategorizer.integration.stores import RuleStore, TransactionStore
from autocategorizer.logger import get_logger
from autocategorizer.models import (
    CategorizationCandidate,
    Category,
    PipelineResult,
    StageResult,
    Transaction,
)
from autocategorizer.services.candidates import CandidateService
from autocategorizer.services.usage import UsageTracker
from autocategorizer.stages.base import Stage
from autocategorizer.stages.llm import LLMStage, batch_owner

logger = get_logger(__name__)

LLM_OPERATION = "transaction_categorization"

# Receives every auto-applied (transaction, category) pair of one stage at once
BatchConfirmationListener = Callable[[list[tuple[Transaction, Category]]], None]


class CategorizationPipeline:
    """Runs a batch through the stages in order, handing each the leftovers of the last."""

    def __init__(
        self,
        stages: list[Stage],
        *,
        usage: UsageTracker | None = None,
        candidates: CandidateService | None = None,
        transactions: TransactionStore | None = None,
        rules: RuleStore | None = None,
        on_confirmed: BatchConfirmationListener | None = None,
    ):
        self.stages = list(stages)
        self.usage = usage
        self.candidates = candidates
        self.transactions = transactions
        self.rules = rules
        self.on_confirmed = on_confirmed

    async def run(
        self,
        transactions: list[Transaction],
        cancel_event: asyncio.Event | None = None,
    ) -> PipelineResult:
        started = perf_counter()
        result = PipelineResult()
        result.metrics.total_transactions = len(transactions)
        if not transactions:
            return result

        logger.info(
            "[PIPELINE] Starting categorization for %s transactions. IDs: %s",
            len(transactions),
            [t.id for t in transactions],
        )

        remaining = list(transactions)
        for stage in self.stages:
            if not remaining:
                logger.debug("[PIPELINE] Nothing left to categorize; skipping %s and later stages.", stage.name)
                break
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("[PIPELINE] Cancelled before %s stage.", stage.name)
                result.cancelled = True
                result.errors.append(f"Pipeline cancelled before {stage.name} stage")
                break

            stage_result = await self._run_stage(stage, remaining, cancel_event)
            self._merge(result, stage_result)
            if stage_result.skipped:
                continue

            await asyncio.to_thread(self._flush, stage_result, result)
            remaining = stage_result.remaining
            logger.info(
                "[PIPELINE] %s stage resolved %s transactions, %s remaining.",
                stage.name,
                len({a.transaction_id for a in stage_result.auto_applied}
                    | {c.transaction_id for c in stage_result.candidates}),
                len(remaining),
            )
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True

        result.unresolved_ids = [t.id for t in remaining]
        result.metrics.processing_time_ms = (perf_counter() - started) * 1000
        self._log_summary(result)
        return result

    async def _run_stage(
        self,
        stage: Stage,
        transactions: list[Transaction],
        cancel_event: asyncio.Event | None,
    ) -> StageResult:
        reserved_for: str | None = None
        if isinstance(stage, LLMStage):
            gate, reserved_for = self._gate_llm(stage, transactions)
            if gate is not None:
                return gate

        try:
            stage_result = await stage.process(transactions, cancel_event=cancel_event)
        except asyncio.CancelledError:
            if reserved_for is not None:
                self.usage.release(reserved_for, LLM_OPERATION)
            raise
        except Exception as e:
            logger.exception("[PIPELINE] Error in %s stage", stage.name)
            stage_result = StageResult.unresolved(stage.name, transactions, f"{stage.name} failed: {e}")

        # A call that produced nothing because it failed does not count against the quota
        if reserved_for is not None and stage_result.errors and not stage_result.candidates:
            self.usage.release(reserved_for, LLM_OPERATION)
        return stage_result

    def _gate_llm(
        self, stage: Stage, transactions: list[Transaction]
    ) -> tuple[StageResult | None, str | None]:
        """Decide whether the costly stage may run.

        Returns ``(None, user_id)`` when it may; ``user_id`` is set only when a
        quota unit was reserved for that user.
        """
        user_id, problem = batch_owner(transactions)
        if user_id is None:
            logger.warning("[PIPELINE] Not routing to %s stage: %s", stage.name, problem)
            skipped = StageResult.unresolved(
                stage.name, transactions, f"{stage.name} stage skipped: {problem}"
            )
            skipped.skipped = True
            return skipped, None

        if self.usage is None:
            return None, None
        if not self.usage.try_acquire(user_id, LLM_OPERATION):
            logger.info(
                "[PIPELINE] Daily AI quota used up for user %s; %s transactions stay unresolved.",
                user_id,
                len(transactions),
            )
            skipped = StageResult.unresolved(stage.name, transactions)
            skipped.skipped = True
            return skipped, None
        return None, user_id

    @staticmethod
    def _merge(result: PipelineResult, stage_result: StageResult) -> None:
        result.auto_applied.extend(stage_result.auto_applied)
        result.candidates.extend(stage_result.candidates)
        result.metrics.merge(stage_result.metrics)
        result.errors.extend(stage_result.errors)

    def _flush(self, stage_result: StageResult, result: PipelineResult) -> None:
        """Persist one stage's output in a single round per collaborator."""
        try:
            if stage_result.candidates and self.candidates is not None:
                stored = self.candidates.create_candidates(stage_result.candidates)
                self._adopt_ids(result, stored)
            if stage_result.auto_applied and self.transactions is not None:
                self.transactions.apply_categorizations(stage_result.auto_applied)
            if stage_result.rule_matches and self.rules is not None:
                self.rules.record_matches(stage_result.rule_matches)
        except Exception as e:
            logger.exception("[PIPELINE] Error persisting %s stage output", stage_result.stage)
            result.errors.append(f"Database operation failed after {stage_result.stage} stage: {e}")
            return

        if self.on_confirmed is None or self.transactions is None or not stage_result.auto_applied:
            return
        confirmed: list[tuple[Transaction, Category]] = []
        for item in stage_result.auto_applied:
            transaction = self.transactions.get(item.transaction_id)
            if transaction is not None:
                confirmed.append(
                    (transaction, Category(id=item.category_id, name=item.category_name or ""))
                )
        if confirmed:
            self.on_confirmed(confirmed)

    @staticmethod
    def _adopt_ids(result: PipelineResult, stored: list[CategorizationCandidate]) -> None:
        by_key = {(c.transaction_id, c.category_id, c.method): c for c in stored}
        result.candidates = [
            by_key.get((c.transaction_id, c.category_id, c.method), c) if c.id is None else c
            for c in result.candidates
        ]

    @staticmethod
    def _log_summary(result: PipelineResult) -> None:
        metrics = result.metrics
        total = metrics.total_transactions

        def share(count: int) -> float:
            return count / total if total else 0.0

        logger.info(
            "[PIPELINE] Completed %s transactions in %.1f ms. Rules: %s (%.1f%%), ML: %s (%.1f%%), "
            "LLM: %s (%.1f%%), unresolved: %s (%.1f%%), success rate: %.1f%%, "
            "estimated cost savings: $%s",
            total,
            metrics.processing_time_ms,
            metrics.processed_by_rules,
            share(metrics.processed_by_rules) * 100,
            metrics.processed_by_ml,
            share(metrics.processed_by_ml) * 100,
            metrics.processed_by_llm,
            share(metrics.processed_by_llm) * 100,
            len(result.unresolved_ids),
            share(len(result.unresolved_ids)) * 100,
            metrics.success_rate * 100,
            metrics.estimated_cost_savings,
        )
        if result.errors:
            logger.warning(
                "[PIPELINE] Completed with %s errors: %s", len(result.errors), "; ".join(result.errors)
            )
        if metrics.category_distribution:
            top = sorted(metrics.category_distribution.items(), key=lambda x: x[1], reverse=True)[:5]
            logger.debug("[PIPELINE] Top categories: %s", ", ".join(f"{k}: {v}" for k, v in top))
