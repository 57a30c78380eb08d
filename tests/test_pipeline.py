import asyncio
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import make_rule, make_tx

from autocategorizer.models import Category, LlmSuggestion, StageResult, SuggestionResponse
from autocategorizer.pipeline import CategorizationPipeline
from autocategorizer.services.candidates import CandidateService
from autocategorizer.services.usage import UsageTracker
from autocategorizer.stages.base import Stage
from autocategorizer.stages.llm import LLMStage
from autocategorizer.stages.rules import RuleMatchingStage
from autocategorizer.stages.similarity import FuzzyHistoryMatcher, SimilarityStage


class ExplodingStage(Stage):
    name = "Exploding"

    async def process(self, transactions, *, cancel_event=None) -> StageResult:
        raise RuntimeError("kaboom")


@pytest.fixture
def suggestion_service() -> MagicMock:
    mock = MagicMock()
    mock.suggest = AsyncMock(
        return_value=SuggestionResponse(
            success=True,
            suggestions=[
                LlmSuggestion(
                    transaction_id=2,
                    category_id=4,
                    category_name="Dining",
                    confidence=Decimal("0.97"),
                    reasoning="Restaurant expense",
                )
            ],
        )
    )
    return mock


@pytest.fixture
def usage() -> UsageTracker:
    return UsageTracker(max_calls_per_day=1, clock=lambda: datetime(2024, 3, 1, 9, 0))


@pytest.fixture
def build(rule_store, categories, transaction_store, candidate_store, suggestion_service, usage):
    rule_store.add(make_rule(1, "WALMART"))

    def _build(*stages: Stage, on_confirmed=None) -> CategorizationPipeline:
        candidates = CandidateService(candidate_store, transaction_store, rule_store, categories)
        if not stages:
            stages = (
                RuleMatchingStage(rule_store, categories),
                SimilarityStage(),
                LLMStage(suggestion_service),
            )
        return CategorizationPipeline(
            list(stages),
            usage=usage,
            candidates=candidates,
            transactions=transaction_store,
            rules=rule_store,
            on_confirmed=on_confirmed,
        )

    return _build


def stored(transaction_store, *txs):
    for tx in txs:
        transaction_store.add(tx)
    return list(txs)


@pytest.mark.anyio
async def test_each_transaction_ends_in_exactly_one_outcome(
    build, transaction_store, rule_store, candidate_store, usage, suggestion_service
):
    batch = stored(
        transaction_store,
        make_tx(1, "WALMART STORE"),
        make_tx(2, "LA TRATTORIA"),
        make_tx(3, "UNKNOWN VENDOR"),
    )
    listener = MagicMock()

    result = await build(on_confirmed=listener).run(batch)

    applied = {a.transaction_id for a in result.auto_applied}
    proposed = {c.transaction_id for c in result.candidates}
    unresolved = set(result.unresolved_ids)
    assert applied == {1}
    assert proposed == {2}
    assert unresolved == {3}
    assert applied | proposed | unresolved == {1, 2, 3}

    assert transaction_store.get(1).category_id == 1
    assert transaction_store.get(2).category_id is None
    assert rule_store.get_rule(1).match_count == 1
    assert result.candidates[0].id is not None
    assert candidate_store.get(result.candidates[0].id).category_id == 4
    assert usage.current_usage("u1") == 1
    suggestion_service.suggest.assert_awaited_once()
    listener.assert_called_once()

    metrics = result.metrics
    assert metrics.total_transactions == 3
    assert metrics.processed_by_rules == 1
    assert metrics.processed_by_llm == 1
    assert metrics.success_rate == pytest.approx(2 / 3)
    assert metrics.estimated_cost_savings == Decimal("0.015")
    assert not result.has_errors


@pytest.mark.anyio
async def test_exhausted_quota_skips_llm(build, transaction_store, usage, suggestion_service):
    usage.try_acquire("u1", "earlier run")
    batch = stored(transaction_store, make_tx(2, "LA TRATTORIA"))

    result = await build().run(batch)

    suggestion_service.suggest.assert_not_called()
    assert result.unresolved_ids == [2]
    assert result.candidates == []
    assert result.errors == []


@pytest.mark.anyio
async def test_fully_resolved_batch_never_reaches_llm(build, transaction_store, usage, suggestion_service):
    batch = stored(transaction_store, make_tx(1, "WALMART STORE"))

    result = await build().run(batch)

    suggestion_service.suggest.assert_not_called()
    assert usage.current_usage("u1") == 0
    assert result.unresolved_ids == []


@pytest.mark.anyio
async def test_failing_stage_is_isolated(build, transaction_store, rule_store, categories, suggestion_service):
    batch = stored(transaction_store, make_tx(2, "LA TRATTORIA"))

    result = await build(
        RuleMatchingStage(rule_store, categories), ExplodingStage(), LLMStage(suggestion_service)
    ).run(batch)

    assert result.errors == ["Exploding failed: kaboom"]
    assert [c.transaction_id for c in result.candidates] == [2]
    assert result.unresolved_ids == []


@pytest.mark.anyio
async def test_persistence_failure_is_reported(build):
    # Transaction 1 was never stored, so applying its category fails
    result = await build().run([make_tx(1, "WALMART STORE")])

    assert result.errors[0].startswith("Database operation failed after Rules stage")
    assert [a.transaction_id for a in result.auto_applied] == [1]


@pytest.mark.anyio
async def test_cancel_before_first_stage(build, transaction_store, suggestion_service):
    batch = stored(transaction_store, make_tx(1, "WALMART STORE"), make_tx(2, "LA TRATTORIA"))
    event = asyncio.Event()
    event.set()

    result = await build().run(batch, cancel_event=event)

    assert result.cancelled
    assert result.unresolved_ids == [1, 2]
    assert transaction_store.get(1).category_id is None
    suggestion_service.suggest.assert_not_called()


@pytest.mark.anyio
async def test_mixed_owner_batch_is_not_sent_to_llm(build, transaction_store, usage, suggestion_service):
    batch = stored(
        transaction_store,
        make_tx(2, "LA TRATTORIA", user_id="u1"),
        make_tx(3, "UNKNOWN VENDOR", user_id="u2"),
    )

    result = await build().run(batch)

    suggestion_service.suggest.assert_not_called()
    assert usage.current_usage("u1") == 0
    assert result.unresolved_ids == [2, 3]
    assert result.errors == ["LLM stage skipped: batch spans 2 users; expected exactly one"]


@pytest.mark.anyio
async def test_empty_batch(build):
    result = await build().run([])

    assert result.metrics.total_transactions == 0
    assert result.unresolved_ids == []


@pytest.mark.anyio
async def test_failed_llm_calls_do_not_use_up_quota(build, transaction_store, usage, suggestion_service):
    suggestion_service.suggest.return_value = SuggestionResponse(
        success=False, errors=["LLM categorization failed: boom"]
    )
    batch = stored(transaction_store, make_tx(2, "LA TRATTORIA"))
    pipeline = build()

    for _ in range(3):
        result = await pipeline.run(batch)
        assert result.errors == ["LLM categorization failed: boom"]

    assert suggestion_service.suggest.await_count == 3
    assert usage.current_usage("u1") == 0
    assert usage.remaining_quota("u1") == 1


@pytest.mark.anyio
async def test_raising_llm_stage_gives_quota_back(build, transaction_store, usage, suggestion_service):
    suggestion_service.suggest.side_effect = RuntimeError("connection reset")
    batch = stored(transaction_store, make_tx(2, "LA TRATTORIA"))

    result = await build().run(batch)

    assert result.unresolved_ids == [2]
    assert usage.current_usage("u1") == 0


@pytest.mark.anyio
async def test_cancelled_llm_call_gives_quota_back(build, transaction_store, usage):
    event = asyncio.Event()

    class CancellingService:
        async def suggest(self, transactions, user_id):
            event.set()
            await asyncio.sleep(30)

    batch = stored(transaction_store, make_tx(2, "LA TRATTORIA"))

    result = await build(LLMStage(CancellingService())).run(batch, cancel_event=event)

    assert result.cancelled
    assert result.unresolved_ids == [2]
    assert usage.current_usage("u1") == 0


@pytest.mark.anyio
async def test_history_is_saved_once_per_stage_flush(build, transaction_store, tmp_path):
    matcher = FuzzyHistoryMatcher(data_path=str(tmp_path / "history.json"))
    matcher.learn_many(
        [
            (make_tx(10, "NETFLIX"), Category(id=5, name="Subscriptions")),
            (make_tx(11, "SHELL STATION"), Category(id=2, name="Transport")),
            (make_tx(12, "LA TRATTORIA"), Category(id=4, name="Dining")),
        ]
    )
    batch = stored(
        transaction_store,
        make_tx(1, "NETFLIX"),
        make_tx(2, "SHELL STATION"),
        make_tx(3, "LA TRATTORIA"),
    )

    with patch.object(matcher, "save", wraps=matcher.save) as save:
        result = await build(SimilarityStage(matcher), on_confirmed=matcher.learn_many).run(batch)

    assert sorted(a.transaction_id for a in result.auto_applied) == [1, 2, 3]
    assert save.call_count == 1
