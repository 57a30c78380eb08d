from collections.abc import Callable, Iterable

from pydantic import BaseModel, Field

from autocategorizer.integration.stores import (
    CandidateStore,
    CategoryResolver,
    RuleStore,
    TransactionStore,
)
from autocategorizer.logger import get_logger
from autocategorizer.models import (
    CandidateMethod,
    CandidateStatus,
    CategorizationCandidate,
    Category,
    Transaction,
    utcnow,
)

logger = get_logger(__name__)

ConfirmationListener = Callable[[Transaction, Category], None]


class BatchCandidateResult(BaseModel):
    successful_count: int = 0
    failed_count: int = 0
    errors: list[str] = Field(default_factory=list)


class CandidateStats(BaseModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_method: dict[str, int] = Field(default_factory=dict)


class CandidateService:
    """Lifecycle of reviewable candidates and the rule feedback they produce."""

    def __init__(
        self,
        candidates: CandidateStore,
        transactions: TransactionStore,
        rules: RuleStore,
        categories: CategoryResolver,
        on_confirmed: ConfirmationListener | None = None,
    ):
        self.candidates = candidates
        self.transactions = transactions
        self.rules = rules
        self.categories = categories
        self.on_confirmed = on_confirmed

    def create_candidates(
        self, candidates: list[CategorizationCandidate]
    ) -> list[CategorizationCandidate]:
        """Store new candidates, skipping categorized transactions and pending duplicates."""
        if not candidates:
            return []

        transaction_ids = {c.transaction_id for c in candidates}
        categorized = self.transactions.get_categorized_ids(transaction_ids)
        seen = {
            (c.transaction_id, c.category_id, c.method)
            for c in self.candidates.get_pending_for_transactions(transaction_ids)
        }

        valid: list[CategorizationCandidate] = []
        duplicates = 0
        already_categorized = 0
        for candidate in candidates:
            if candidate.transaction_id in categorized:
                already_categorized += 1
                continue
            key = (candidate.transaction_id, candidate.category_id, candidate.method)
            if key in seen:
                duplicates += 1
                continue
            seen.add(key)
            valid.append(candidate)

        if len(valid) < len(candidates):
            logger.info(
                "[CANDIDATES] Filtered out %s candidates: %s exact duplicates, %s already categorized",
                len(candidates) - len(valid),
                duplicates,
                already_categorized,
            )
        if not valid:
            return []

        stored = self.candidates.add_many(valid)
        logger.debug("[CANDIDATES] Stored %s candidates", len(stored))
        return stored

    def _pending(self, candidate_id: int) -> CategorizationCandidate | None:
        candidate = self.candidates.get(candidate_id)
        if candidate is None:
            logger.warning("[CANDIDATES] Candidate %s not found", candidate_id)
            return None
        if candidate.status is not CandidateStatus.PENDING:
            logger.warning(
                "[CANDIDATES] Candidate %s is not pending (status: %s)",
                candidate_id,
                candidate.status.value,
            )
            return None
        return candidate

    def _finish(
        self,
        candidate: CategorizationCandidate,
        status: CandidateStatus,
        actor: str,
        applied_category_id: int | None = None,
    ) -> CategorizationCandidate:
        updated = candidate.model_copy(
            update={
                "status": status,
                "applied_category_id": applied_category_id,
                "updated_at": utcnow(),
                "updated_by": actor,
            }
        )
        self.candidates.update(updated)
        return updated

    def _notify(self, transaction_id: int, category_id: int) -> None:
        if self.on_confirmed is None:
            return
        transaction = self.transactions.get(transaction_id)
        category = self.categories.get_category(category_id)
        if transaction is not None and category is not None:
            self.on_confirmed(transaction, category)

    def accept(self, candidate_id: int, actor: str = "user") -> bool:
        candidate = self._pending(candidate_id)
        if candidate is None:
            return False

        self.transactions.apply_category(candidate.transaction_id, candidate.category_id)
        self._finish(candidate, CandidateStatus.ACCEPTED, actor, candidate.category_id)
        if candidate.method is CandidateMethod.RULE and candidate.rule_id is not None:
            self.rules.record_match(candidate.rule_id)
        self._notify(candidate.transaction_id, candidate.category_id)

        logger.info(
            "[CANDIDATES] Accepted candidate %s for transaction %s",
            candidate_id,
            candidate.transaction_id,
        )
        return True

    def reject(self, candidate_id: int, actor: str = "user") -> bool:
        candidate = self._pending(candidate_id)
        if candidate is None:
            return False
        self._finish(candidate, CandidateStatus.REJECTED, actor)
        logger.info("[CANDIDATES] Rejected candidate %s", candidate_id)
        return True

    def record_correction(
        self, candidate_id: int, corrected_category_id: int, actor: str = "user"
    ) -> bool:
        """Apply a different category than proposed and penalise the originating rule."""
        candidate = self._pending(candidate_id)
        if candidate is None:
            return False

        if corrected_category_id == candidate.category_id:
            logger.debug(
                "[CANDIDATES] Correction of candidate %s keeps its category; accepting instead.",
                candidate_id,
            )
            return self.accept(candidate_id, actor)

        if self.categories.get_category(corrected_category_id) is None:
            logger.warning(
                "[CANDIDATES] Cannot correct candidate %s: category %s does not exist",
                candidate_id,
                corrected_category_id,
            )
            return False

        self.transactions.apply_category(candidate.transaction_id, corrected_category_id)
        self._finish(candidate, CandidateStatus.CORRECTED, actor, corrected_category_id)
        if candidate.method is CandidateMethod.RULE and candidate.rule_id is not None:
            self.rules.record_correction(candidate.rule_id)
            logger.info(
                "[CANDIDATES] Rule %s corrected via candidate %s (%s -> %s)",
                candidate.rule_id,
                candidate_id,
                candidate.category_id,
                corrected_category_id,
            )
        self._notify(candidate.transaction_id, corrected_category_id)
        return True

    def accept_many(self, candidate_ids: Iterable[int], actor: str = "user") -> BatchCandidateResult:
        return self._batch(candidate_ids, lambda cid: self.accept(cid, actor))

    def reject_many(self, candidate_ids: Iterable[int], actor: str = "user") -> BatchCandidateResult:
        return self._batch(candidate_ids, lambda cid: self.reject(cid, actor))

    @staticmethod
    def _batch(candidate_ids: Iterable[int], action: Callable[[int], bool]) -> BatchCandidateResult:
        result = BatchCandidateResult()
        for candidate_id in candidate_ids:
            if action(candidate_id):
                result.successful_count += 1
            else:
                result.failed_count += 1
                result.errors.append(f"Candidate {candidate_id} not found or not pending")
        return result

    def pending_for_transactions(
        self, transaction_ids: Iterable[int]
    ) -> dict[int, list[CategorizationCandidate]]:
        grouped: dict[int, list[CategorizationCandidate]] = {}
        for candidate in self.candidates.get_pending_for_transactions(transaction_ids):
            grouped.setdefault(candidate.transaction_id, []).append(candidate)
        for items in grouped.values():
            items.sort(key=lambda c: c.confidence_score, reverse=True)
        return grouped

    def stats(self, user_id: str) -> CandidateStats:
        stats = CandidateStats()
        for candidate in self.candidates.list_for_user(user_id):
            stats.total += 1
            status = candidate.status.value
            method = candidate.method.value
            stats.by_status[status] = stats.by_status.get(status, 0) + 1
            stats.by_method[method] = stats.by_method.get(method, 0) + 1
        return stats
