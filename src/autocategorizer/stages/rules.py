import asyncio
from decimal import Decimal
from time import perf_counter

from autocategorizer.core.settings import PipelineSettings
from autocategorizer.domain import confidence
from autocategorizer.domain.rules import build_match_reason, check_rule
from autocategorizer.integration.stores import CategoryResolver, RuleStore
from autocategorizer.logger import get_logger
from autocategorizer.models import (
    AutoAppliedCategorization,
    CandidateMethod,
    CandidateStatus,
    CategorizationCandidate,
    CategorizationRule,
    Category,
    StageResult,
    Transaction,
    utcnow,
)

from .base import Stage

logger = get_logger(__name__)


class RuleMatchingStage(Stage):
    """Applies the owner's rules in priority order; the first usable match wins."""

    name = "Rules"

    def __init__(
        self,
        rules: RuleStore,
        categories: CategoryResolver,
        settings: PipelineSettings | None = None,
    ):
        self.rules = rules
        self.categories = categories
        self.settings = settings or PipelineSettings()

    async def process(
        self,
        transactions: list[Transaction],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> StageResult:
        return await asyncio.to_thread(self._match_all, transactions)

    def _match_all(self, transactions: list[Transaction]) -> StageResult:
        started = perf_counter()
        result = StageResult(stage=self.name)
        rules_by_user: dict[str, list[CategorizationRule]] = {}

        for transaction in transactions:
            user_id = transaction.user_id
            if user_id is None:
                logger.warning(
                    "[RULES] Transaction %s has no owning user; leaving it unresolved.",
                    transaction.id,
                )
                result.errors.append(f"Transaction {transaction.id} has no owning user")
                result.remaining.append(transaction)
                continue

            if user_id not in rules_by_user:
                # Private ordered copy for the duration of this run
                rules_by_user[user_id] = sorted(
                    self.rules.get_active_rules(user_id), key=lambda r: (r.priority, r.id)
                )
                logger.debug(
                    "[RULES] Loaded %s active rules for user %s",
                    len(rules_by_user[user_id]),
                    user_id,
                )

            if not self._resolve(transaction, rules_by_user[user_id], result):
                result.remaining.append(transaction)

        result.metrics.processed_by_rules = len(result.auto_applied) + len(result.candidates)
        result.metrics.estimated_cost_savings = (
            self.settings.rule_cost_saving * len(result.auto_applied)
        )
        result.metrics.processing_time_ms = (perf_counter() - started) * 1000

        logger.info(
            "[RULES] %s auto-applied, %s candidates, %s unresolved out of %s",
            len(result.auto_applied),
            len(result.candidates),
            len(result.remaining),
            len(transactions),
        )
        return result

    def _resolve(
        self,
        transaction: Transaction,
        rules: list[CategorizationRule],
        result: StageResult,
    ) -> bool:
        for rule in rules:
            check = check_rule(rule, transaction)
            if check.failed:
                self._record_failure(rule, transaction, check.error, result)
                continue
            if not check.matched:
                continue

            try:
                category = self.categories.get_category(rule.category_id)
                if category is None:
                    logger.warning(
                        "[RULES] Rule %s '%s' matched but its category %s no longer exists; skipping.",
                        rule.id,
                        rule.name,
                        rule.category_id,
                    )
                    continue
                score = confidence.score(rule, transaction)
                reason = build_match_reason(rule, transaction)
            except Exception as e:
                self._record_failure(rule, transaction, f"{type(e).__name__}: {e}", result)
                continue

            self._emit(transaction, rule, category, score, reason, result)
            return True

        logger.debug("[RULES] No rule matched transaction %s", transaction.id)
        return False

    @staticmethod
    def _record_failure(
        rule: CategorizationRule,
        transaction: Transaction,
        error: str | None,
        result: StageResult,
    ) -> None:
        logger.error(
            "[RULES] Error applying rule %s to transaction %s: %s",
            rule.id,
            transaction.id,
            error,
        )
        result.errors.append(f"Rule {rule.id} failed on transaction {transaction.id}: {error}")

    def _emit(
        self,
        transaction: Transaction,
        rule: CategorizationRule,
        category: Category,
        score: Decimal,
        reason: str,
        result: StageResult,
    ) -> None:
        metadata = {
            "rule_id": rule.id,
            "rule_name": rule.name,
            "rule_pattern": rule.pattern,
            "rule_type": rule.match_type.value,
            "priority": rule.priority,
            "matched_at": utcnow().isoformat(),
        }
        result.metrics.record(category.name, confidence.confidence_band(score))

        if score >= self.settings.auto_apply_threshold:
            logger.info(
                "[RULES] Rule %s matched transaction %s with confidence %s >= %s; auto-applying '%s'.",
                rule.id,
                transaction.id,
                score,
                self.settings.auto_apply_threshold,
                category.name,
            )
            result.auto_applied.append(
                AutoAppliedCategorization(
                    transaction_id=transaction.id,
                    user_id=transaction.user_id,
                    category_id=category.id,
                    category_name=category.name,
                    method=CandidateMethod.RULE,
                    confidence_score=score,
                    reasoning=reason,
                    metadata=metadata,
                    processed_by="RuleMatchingStage",
                )
            )
            result.rule_matches[rule.id] = result.rule_matches.get(rule.id, 0) + 1
            return

        logger.info(
            "[RULES] Rule %s matched transaction %s with confidence %s; created candidate for review.",
            rule.id,
            transaction.id,
            score,
        )
        actor = f"RuleMatchingStage-{transaction.user_id}"
        result.candidates.append(
            CategorizationCandidate(
                transaction_id=transaction.id,
                user_id=transaction.user_id,
                category_id=category.id,
                category_name=category.name,
                method=CandidateMethod.RULE,
                confidence_score=score,
                reasoning=reason,
                metadata=metadata,
                status=CandidateStatus.PENDING,
                processed_by="RuleMatchingStage",
                created_by=actor,
                updated_by=actor,
            )
        )
