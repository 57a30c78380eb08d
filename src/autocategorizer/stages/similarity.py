import asyncio
import json
import os
import threading
from dataclasses import dataclass
from decimal import Decimal
from time import perf_counter
from typing import Protocol

from rapidfuzz import fuzz, process

from autocategorizer.core.settings import PipelineSettings
from autocategorizer.domain.confidence import confidence_band
from autocategorizer.logger import get_logger
from autocategorizer.models import (
    AutoAppliedCategorization,
    CandidateMethod,
    CategorizationCandidate,
    Category,
    StageResult,
    Transaction,
)

from .base import Stage

logger = get_logger(__name__)


@dataclass(frozen=True)
class SimilarityMatch:
    category_id: int
    category_name: str
    confidence: Decimal
    matched_description: str
    exact: bool


class SimilarityMatcher(Protocol):
    def match(self, transaction: Transaction) -> SimilarityMatch | None: ...

    def learn(self, transaction: Transaction, category: Category) -> None: ...

    def learn_many(self, confirmed: list[tuple[Transaction, Category]]) -> None: ...


class FuzzyHistoryMatcher:
    """Nearest description among previously confirmed categorizations, per user."""

    def __init__(self, data_path: str | None = None, threshold: float = 90.0):
        self.data_path = data_path
        self.threshold = threshold
        # user -> description -> {"id": category id, "name": category name}
        self.memory: dict[str, dict[str, dict]] = {}
        self._lock = threading.Lock()
        self.load()

    def load(self) -> None:
        if self.data_path and os.path.exists(self.data_path):
            try:
                with open(self.data_path, "r") as f:
                    self.memory = json.load(f)
            except json.JSONDecodeError:
                self.memory = {}

    def save(self) -> None:
        if not self.data_path:
            return
        with open(self.data_path, "w") as f:
            json.dump(self.memory, f, indent=2)

    def match(self, transaction: Transaction) -> SimilarityMatch | None:
        with self._lock:
            known = dict(self.memory.get(transaction.user_id or "", {}))
        if not known:
            return None

        if transaction.description in known:
            entry = known[transaction.description]
            return SimilarityMatch(
                category_id=entry["id"],
                category_name=entry["name"],
                confidence=Decimal("1.0"),
                matched_description=transaction.description,
                exact=True,
            )

        result = process.extractOne(
            transaction.description,
            known.keys(),
            scorer=fuzz.token_sort_ratio,
        )
        if result:
            match_description, match_score, _ = result
            if match_score >= self.threshold:
                entry = known[match_description]
                return SimilarityMatch(
                    category_id=entry["id"],
                    category_name=entry["name"],
                    confidence=(Decimal(str(match_score)) / 100).quantize(Decimal("0.0001")),
                    matched_description=match_description,
                    exact=False,
                )
        return None

    def learn(self, transaction: Transaction, category: Category) -> None:
        self.learn_many([(transaction, category)])

    def learn_many(self, confirmed: list[tuple[Transaction, Category]]) -> None:
        """Remember a batch of confirmed categorizations and save once."""
        if not confirmed:
            return
        with self._lock:
            for transaction, category in confirmed:
                self.memory.setdefault(transaction.user_id or "", {})[transaction.description] = {
                    "id": category.id,
                    "name": category.name,
                }
            self.save()

    def clear(self) -> None:
        with self._lock:
            self.memory = {}
            self.save()


class SimilarityStage(Stage):
    """Low-cost heuristic stage. Without a matcher every transaction passes through."""

    name = "ML"

    def __init__(
        self,
        matcher: SimilarityMatcher | None = None,
        settings: PipelineSettings | None = None,
    ):
        self.matcher = matcher
        self.settings = settings or PipelineSettings()

    async def process(
        self,
        transactions: list[Transaction],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> StageResult:
        if self.matcher is None:
            logger.debug("[ML] No matcher configured; passing %s transactions through.", len(transactions))
            return StageResult(stage=self.name, remaining=list(transactions))
        return await asyncio.to_thread(self._match_all, transactions)

    def _match_all(self, transactions: list[Transaction]) -> StageResult:
        started = perf_counter()
        result = StageResult(stage=self.name)

        for transaction in transactions:
            found = self.matcher.match(transaction)
            if found is None:
                result.remaining.append(transaction)
                continue

            reason = f"Similar to previously confirmed '{found.matched_description}'"
            metadata = {
                "handler": "SimilarityStage",
                "matched_description": found.matched_description,
                "exact": found.exact,
            }
            result.metrics.record(found.category_name, confidence_band(found.confidence))
            if found.confidence >= self.settings.auto_apply_threshold:
                result.auto_applied.append(
                    AutoAppliedCategorization(
                        transaction_id=transaction.id,
                        user_id=transaction.user_id,
                        category_id=found.category_id,
                        category_name=found.category_name,
                        method=CandidateMethod.ML,
                        confidence_score=found.confidence,
                        reasoning=reason,
                        metadata=metadata,
                        processed_by="SimilarityStage",
                    )
                )
            else:
                actor = f"SimilarityStage-{transaction.user_id}"
                result.candidates.append(
                    CategorizationCandidate(
                        transaction_id=transaction.id,
                        user_id=transaction.user_id,
                        category_id=found.category_id,
                        category_name=found.category_name,
                        method=CandidateMethod.ML,
                        confidence_score=found.confidence,
                        reasoning=reason,
                        metadata=metadata,
                        processed_by="SimilarityStage",
                        created_by=actor,
                        updated_by=actor,
                    )
                )

        result.metrics.processed_by_ml = len(result.auto_applied) + len(result.candidates)
        result.metrics.processing_time_ms = (perf_counter() - started) * 1000
        logger.info(
            "[ML] %s auto-applied, %s candidates, %s unresolved out of %s",
            len(result.auto_applied),
            len(result.candidates),
            len(result.remaining),
            len(transactions),
        )
        return result
