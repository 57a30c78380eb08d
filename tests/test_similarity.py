from decimal import Decimal
from unittest.mock import patch

import pytest
from conftest import make_tx

from autocategorizer.core.settings import PipelineSettings
from autocategorizer.models import CandidateMethod, Category
from autocategorizer.stages.similarity import FuzzyHistoryMatcher, SimilarityStage


@pytest.fixture
def matcher(tmp_path):
    data_file = tmp_path / "history.json"
    return FuzzyHistoryMatcher(data_path=str(data_file), threshold=50.0)


def test_learn_and_exact_match(matcher):
    t1 = make_tx(1, "Spotify Premium")
    matcher.learn(t1, Category(id=5, name="Subscriptions"))

    # Reload to verify persistence
    matcher.load()

    found = matcher.match(t1)
    assert found is not None
    assert found.category_id == 5
    assert found.category_name == "Subscriptions"
    assert found.confidence == Decimal("1.0")
    assert found.exact


def test_fuzzy_match(matcher):
    matcher.learn(make_tx(1, "Uber Ride"), Category(id=2, name="Transport"))

    found = matcher.match(make_tx(2, "Uber Ride XL"))
    assert found is not None
    assert found.category_name == "Transport"
    assert found.confidence > Decimal("0.4")
    assert not found.exact


def test_history_is_per_user(matcher):
    matcher.learn(make_tx(1, "Uber Ride", user_id="u1"), Category(id=2, name="Transport"))

    assert matcher.match(make_tx(2, "Uber Ride", user_id="u2")) is None


def test_no_match(matcher):
    assert matcher.match(make_tx(1, "Unknown Transaction")) is None


def test_clear(matcher):
    matcher.learn(make_tx(1, "Uber Ride"), Category(id=2, name="Transport"))
    matcher.clear()
    assert matcher.match(make_tx(1, "Uber Ride")) is None


@pytest.mark.anyio
async def test_stage_without_matcher_passes_everything_through():
    batch = [make_tx(1, "A"), make_tx(2, "B")]

    result = await SimilarityStage().process(batch)

    assert result.remaining == batch
    assert result.auto_applied == []
    assert result.candidates == []


@pytest.mark.anyio
async def test_stage_auto_applies_exact_and_proposes_fuzzy(matcher):
    matcher.learn(make_tx(1, "Uber Ride"), Category(id=2, name="Transport"))
    stage = SimilarityStage(matcher, PipelineSettings(auto_apply_threshold=Decimal("0.95")))
    batch = [make_tx(10, "Uber Ride"), make_tx(11, "Uber Ride XL"), make_tx(12, "Bakery")]

    result = await stage.process(batch)

    assert [a.transaction_id for a in result.auto_applied] == [10]
    assert [c.transaction_id for c in result.candidates] == [11]
    assert result.candidates[0].method is CandidateMethod.ML
    assert [t.id for t in result.remaining] == [12]
    assert result.metrics.processed_by_ml == 2


def test_learn_many_saves_once(matcher):
    with patch.object(matcher, "save", wraps=matcher.save) as save:
        matcher.learn_many(
            [
                (make_tx(1, "Uber Ride"), Category(id=2, name="Transport")),
                (make_tx(2, "Spotify Premium"), Category(id=5, name="Subscriptions")),
                (make_tx(3, "Shell Station"), Category(id=2, name="Transport")),
            ]
        )
        matcher.learn_many([])

    assert save.call_count == 1
    matcher.load()
    assert matcher.match(make_tx(4, "Spotify Premium")).category_id == 5
