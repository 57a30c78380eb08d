import json
import os
import threading
from collections.abc import Iterable
from typing import Protocol, TypeVar

from pydantic import BaseModel

from autocategorizer.logger import get_logger
from autocategorizer.models import (
    AutoAppliedCategorization,
    CandidateStatus,
    CategorizationCandidate,
    CategorizationRule,
    Category,
    Transaction,
)

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class TransactionStore(Protocol):
    def get(self, transaction_id: int) -> Transaction | None: ...

    def get_uncategorized(self, user_id: str) -> list[Transaction]: ...

    def get_categorized_ids(self, transaction_ids: Iterable[int]) -> set[int]: ...

    def apply_categorizations(self, items: list[AutoAppliedCategorization]) -> None: ...

    def apply_category(self, transaction_id: int, category_id: int) -> None: ...


class RuleStore(Protocol):
    def get_active_rules(self, user_id: str) -> list[CategorizationRule]: ...

    def get_rule(self, rule_id: int) -> CategorizationRule | None: ...

    def record_matches(self, counts: dict[int, int]) -> None: ...

    def record_match(self, rule_id: int) -> None: ...

    def record_correction(self, rule_id: int) -> None: ...


class CategoryResolver(Protocol):
    def get_category(self, category_id: int) -> Category | None: ...

    def get_categories(self, user_id: str) -> list[Category]: ...


class CandidateStore(Protocol):
    def add_many(self, candidates: list[CategorizationCandidate]) -> list[CategorizationCandidate]: ...

    def get(self, candidate_id: int) -> CategorizationCandidate | None: ...

    def update(self, candidate: CategorizationCandidate) -> None: ...

    def get_pending_for_transactions(
        self, transaction_ids: Iterable[int]
    ) -> list[CategorizationCandidate]: ...

    def list_for_user(self, user_id: str) -> list[CategorizationCandidate]: ...


def read_json_models(path: str | None, model: type[ModelT]) -> list[ModelT]:
    """Load a JSON array of ``model`` records; a missing file yields nothing."""
    if not path or not os.path.exists(path):
        return []
    with open(path, encoding="utf-8") as f:
        raw = json.load(f)
    items = [model.model_validate(item) for item in raw]
    logger.info("[STORES] Loaded %s %s records from %s", len(items), model.__name__, path)
    return items


class InMemoryTransactionStore:
    def __init__(self, transactions: Iterable[Transaction] = ()):
        self._lock = threading.Lock()
        self._transactions: dict[int, Transaction] = {t.id: t for t in transactions}

    def add(self, transaction: Transaction) -> None:
        with self._lock:
            self._transactions[transaction.id] = transaction

    def get(self, transaction_id: int) -> Transaction | None:
        return self._transactions.get(transaction_id)

    def get_uncategorized(self, user_id: str) -> list[Transaction]:
        return [
            t for t in self._transactions.values()
            if t.user_id == user_id and t.category_id is None
        ]

    def get_categorized_ids(self, transaction_ids: Iterable[int]) -> set[int]:
        result = set()
        for transaction_id in transaction_ids:
            transaction = self._transactions.get(transaction_id)
            if transaction is not None and transaction.category_id is not None:
                result.add(transaction_id)
        return result

    def apply_categorizations(self, items: list[AutoAppliedCategorization]) -> None:
        with self._lock:
            for item in items:
                self._set_category(item.transaction_id, item.category_id)

    def apply_category(self, transaction_id: int, category_id: int) -> None:
        with self._lock:
            self._set_category(transaction_id, category_id)

    def _set_category(self, transaction_id: int, category_id: int) -> None:
        transaction = self._transactions.get(transaction_id)
        if transaction is None:
            raise KeyError(f"Transaction {transaction_id} not found")
        self._transactions[transaction_id] = transaction.model_copy(
            update={"category_id": category_id}
        )


class InMemoryRuleStore:
    def __init__(self, rules: Iterable[CategorizationRule] = ()):
        self._lock = threading.Lock()
        self._rules: dict[int, CategorizationRule] = {r.id: r for r in rules}

    @classmethod
    def from_json(cls, path: str | None) -> "InMemoryRuleStore":
        return cls(read_json_models(path, CategorizationRule))

    def add(self, rule: CategorizationRule) -> None:
        with self._lock:
            self._rules[rule.id] = rule

    def get_active_rules(self, user_id: str) -> list[CategorizationRule]:
        with self._lock:
            rules = [
                r.model_copy(deep=True) for r in self._rules.values()
                if r.user_id == user_id and r.is_active
            ]
        return sorted(rules, key=lambda r: (r.priority, r.id))

    def get_rule(self, rule_id: int) -> CategorizationRule | None:
        rule = self._rules.get(rule_id)
        return rule.model_copy(deep=True) if rule is not None else None

    def record_matches(self, counts: dict[int, int]) -> None:
        with self._lock:
            for rule_id, count in counts.items():
                rule = self._rules.get(rule_id)
                if rule is None:
                    logger.warning("[RULES] Cannot record matches for unknown rule %s", rule_id)
                    continue
                self._rules[rule_id] = rule.model_copy(
                    update={"match_count": rule.match_count + count}
                )

    def record_match(self, rule_id: int) -> None:
        self.record_matches({rule_id: 1})

    def record_correction(self, rule_id: int) -> None:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                logger.warning("[RULES] Cannot record correction for unknown rule %s", rule_id)
                return
            self._rules[rule_id] = rule.model_copy(
                update={"correction_count": rule.correction_count + 1}
            )


class InMemoryCategoryResolver:
    def __init__(self, categories: Iterable[Category] = ()):
        self._categories: dict[int, Category] = {c.id: c for c in categories}

    @classmethod
    def from_json(cls, path: str | None) -> "InMemoryCategoryResolver":
        return cls(read_json_models(path, Category))

    def add(self, category: Category) -> None:
        self._categories[category.id] = category

    def delete(self, category_id: int) -> None:
        self._categories.pop(category_id, None)

    def get_category(self, category_id: int) -> Category | None:
        return self._categories.get(category_id)

    def get_categories(self, user_id: str) -> list[Category]:
        return [
            c for c in self._categories.values()
            if c.user_id is None or c.user_id == user_id
        ]


class InMemoryCandidateStore:
    """Candidate store kept in memory, optionally mirrored to a JSON file."""

    def __init__(self, data_path: str | None = None):
        self.data_path = data_path
        self._lock = threading.Lock()
        self._candidates: dict[int, CategorizationCandidate] = {}
        self._next_id = 1
        self.load()

    def load(self) -> None:
        if not self.data_path or not os.path.exists(self.data_path):
            return
        try:
            with open(self.data_path, encoding="utf-8") as f:
                raw = json.load(f)
        except json.JSONDecodeError:
            logger.warning("[CANDIDATES] Ignoring unreadable candidate file %s", self.data_path)
            return
        candidates = [CategorizationCandidate.model_validate(item) for item in raw]
        self._candidates = {c.id: c for c in candidates if c.id is not None}
        self._next_id = max(self._candidates, default=0) + 1

    def save(self) -> None:
        if not self.data_path:
            return
        payload = [c.model_dump(mode="json") for c in self._candidates.values()]
        with open(self.data_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)

    def add_many(self, candidates: list[CategorizationCandidate]) -> list[CategorizationCandidate]:
        stored: list[CategorizationCandidate] = []
        with self._lock:
            for candidate in candidates:
                saved = candidate.model_copy(update={"id": self._next_id})
                self._candidates[saved.id] = saved
                self._next_id += 1
                stored.append(saved)
            self.save()
        return stored

    def get(self, candidate_id: int) -> CategorizationCandidate | None:
        return self._candidates.get(candidate_id)

    def update(self, candidate: CategorizationCandidate) -> None:
        if candidate.id is None or candidate.id not in self._candidates:
            raise KeyError(f"Candidate {candidate.id} not found")
        with self._lock:
            self._candidates[candidate.id] = candidate
            self.save()

    def get_pending_for_transactions(
        self, transaction_ids: Iterable[int]
    ) -> list[CategorizationCandidate]:
        wanted = set(transaction_ids)
        return [
            c for c in self._candidates.values()
            if c.transaction_id in wanted and c.status is CandidateStatus.PENDING
        ]

    def list_for_user(self, user_id: str) -> list[CategorizationCandidate]:
        return [c for c in self._candidates.values() if c.user_id == user_id]
