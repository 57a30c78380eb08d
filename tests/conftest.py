from datetime import datetime
from decimal import Decimal

import pytest

from autocategorizer.integration.stores import (
    InMemoryCandidateStore,
    InMemoryCategoryResolver,
    InMemoryRuleStore,
    InMemoryTransactionStore,
)
from autocategorizer.models import CategorizationRule, Category, MatchType, Transaction


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_tx(tx_id: int, description: str, amount: float = -12.5, user_id: str | None = "u1", **kwargs) -> Transaction:
    return Transaction(
        id=tx_id,
        description=description,
        amount=amount,
        date=datetime(2024, 3, 1, 12, 0),
        user_id=user_id,
        **kwargs,
    )


def make_rule(rule_id: int, pattern: str, category_id: int = 1, **kwargs) -> CategorizationRule:
    values = {
        "id": rule_id,
        "user_id": "u1",
        "name": f"rule-{rule_id}",
        "category_id": category_id,
        "pattern": pattern,
        "match_type": MatchType.CONTAINS,
        "base_confidence": Decimal("0.8"),
    }
    values.update(kwargs)
    return CategorizationRule(**values)


@pytest.fixture
def categories() -> InMemoryCategoryResolver:
    return InMemoryCategoryResolver(
        [
            Category(id=1, name="Groceries", user_id="u1"),
            Category(id=2, name="Transport", user_id="u1"),
            Category(id=3, name="Salary", user_id="u1", is_income=True),
            Category(id=4, name="Dining", user_id="u1"),
        ]
    )


@pytest.fixture
def rule_store() -> InMemoryRuleStore:
    return InMemoryRuleStore()


@pytest.fixture
def transaction_store() -> InMemoryTransactionStore:
    return InMemoryTransactionStore()


@pytest.fixture
def candidate_store() -> InMemoryCandidateStore:
    return InMemoryCandidateStore()
