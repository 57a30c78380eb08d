import json
from collections.abc import Generator
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import make_tx

from autocategorizer.integration.stores import InMemoryCategoryResolver
from autocategorizer.models import Category
from autocategorizer.services.suggestions import (
    OpenAISuggestionService,
    build_request,
    category_path,
    parse_response,
    strip_code_fence,
)

CATEGORIES = [
    Category(id=10, name="Food"),
    Category(id=11, name="Groceries", parent_id=10),
    Category(id=12, name="Salary", is_income=True),
]

REPLY = {
    "success": True,
    "categorizations": [
        {
            "transactionId": 1,
            "suggestions": [
                {"categoryId": 11, "categoryName": "Groceries", "confidence": 0.92, "reasoning": "Supermarket"},
                {"categoryId": 99, "categoryName": "Invented", "confidence": 0.5, "reasoning": "?"},
                {"categoryId": 10, "confidence": 1.4, "reasoning": "Food in general"},
            ],
            "recommendedCategoryId": 11,
        },
        {
            "transactionId": 77,
            "suggestions": [{"categoryId": 11, "confidence": 0.9}],
        },
    ],
}


def test_category_path_walks_parents():
    assert category_path(CATEGORIES[1], CATEGORIES) == "Food > Groceries"
    assert category_path(CATEGORIES[0], CATEGORIES) == "Food"


def test_build_request_shape():
    request = build_request([make_tx(1, "REWE", amount=-23.4)], CATEGORIES)

    [tx] = request["transactions"]
    assert tx["absoluteAmount"] == 23.4
    assert tx["isIncome"] is False
    assert tx["transactionType"] == "Expense"
    assert request["availableCategories"][1]["fullPath"] == "Food > Groceries"
    assert request["availableCategories"][2]["type"] == "Income"
    assert request["context"]["currencies"] == ["EUR"]


def test_strip_code_fence():
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence("```\n[]\n```") == "[]"
    assert strip_code_fence(' {"a": 1} ') == '{"a": 1}'


def test_parse_response_filters_unknown_ids():
    text = f"```json\n{json.dumps(REPLY)}\n```"

    response = parse_response(text, [make_tx(1, "REWE")], CATEGORIES)

    assert response.success
    assert [(s.transaction_id, s.category_id) for s in response.suggestions] == [(1, 11), (1, 10)]
    groceries, food = response.suggestions
    assert groceries.confidence == Decimal("0.92")
    assert groceries.is_recommended
    assert food.category_name == "Food"
    assert food.confidence == Decimal("1")
    assert not food.is_recommended


def test_parse_response_rejects_garbage():
    response = parse_response("Sorry, I cannot help with that.", [make_tx(1, "REWE")], CATEGORIES)

    assert not response.success
    assert response.errors[0].startswith("Failed to parse LLM response")


def test_parse_response_passes_on_reported_failure():
    response = parse_response('{"success": false, "errors": ["rate limited"]}', [], CATEGORIES)

    assert not response.success
    assert response.errors == ["rate limited"]


@pytest.fixture
def mock_openai_client() -> Generator[MagicMock, None, None]:
    with patch("autocategorizer.services.suggestions.AsyncOpenAI") as mock:
        yield mock


@pytest.fixture
def resolver() -> InMemoryCategoryResolver:
    return InMemoryCategoryResolver(CATEGORIES)


@pytest.mark.anyio
async def test_openai_service_suggest(mock_openai_client, resolver):
    mock_instance = mock_openai_client.return_value
    mock_instance.responses.create = AsyncMock(return_value=MagicMock(output_text=json.dumps(REPLY)))

    service = OpenAISuggestionService(resolver, api_key="sk-fake", model="gpt-4o-mini")
    response = await service.suggest([make_tx(1, "REWE")], "u1")

    assert response.success
    assert len(response.suggestions) == 2
    mock_instance.responses.create.assert_awaited_once()
    kwargs = mock_instance.responses.create.call_args.kwargs
    assert kwargs["model"] == "gpt-4o-mini"
    assert json.loads(kwargs["input"])["transactions"][0]["description"] == "REWE"


@pytest.mark.anyio
async def test_openai_service_error_becomes_failed_response(mock_openai_client, resolver):
    mock_instance = mock_openai_client.return_value
    mock_instance.responses.create = AsyncMock(side_effect=RuntimeError("connection reset"))

    service = OpenAISuggestionService(resolver, api_key="sk-fake")
    response = await service.suggest([make_tx(1, "REWE")], "u1")

    assert not response.success
    assert response.errors == ["LLM categorization failed: connection reset"]


@pytest.mark.anyio
async def test_openai_service_needs_categories(mock_openai_client):
    service = OpenAISuggestionService(InMemoryCategoryResolver(), api_key="sk-fake")

    response = await service.suggest([make_tx(1, "REWE")], "u1")

    assert not response.success
    mock_openai_client.return_value.responses.create.assert_not_called()
