import json
import os
from decimal import Decimal
from typing import Any, Protocol

from openai import AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError

from autocategorizer.integration.stores import CategoryResolver
from autocategorizer.logger import get_logger
from autocategorizer.models import Category, LlmSuggestion, SuggestionResponse, Transaction

logger = get_logger(__name__)


class SuggestionService(Protocol):
    async def suggest(self, transactions: list[Transaction], user_id: str) -> SuggestionResponse: ...


SYSTEM_PROMPT = """You are a financial transaction categorization expert. Analyze each transaction and suggest categories based on:

1. The description (merchant names, transaction types)
2. Amount and whether it is income (amount > 0) or an expense (amount < 0)
3. Currency, to recognise regional merchants
4. The list of available categories

Instructions:
- Return ONLY valid JSON in the exact format below
- Only suggest categories from availableCategories, using their ids
- Only suggest income categories for income transactions
- Provide confidence scores between 0.0 and 1.0 and be conservative
- Provide exactly 3 suggestions per transaction, ordered by confidence
- Explain each suggestion in one sentence mentioning type and amount

Response format:
{
  "success": true,
  "categorizations": [
    {
      "transactionId": 123,
      "suggestions": [
        {"categoryId": 15, "categoryName": "Online Shopping", "confidence": 0.92,
         "reasoning": "Expense at Amazon.com, typical online purchase", "matchingRules": []}
      ],
      "recommendedCategoryId": 15
    }
  ]
}"""


class _ParsedSuggestion(BaseModel):
    category_id: int = Field(alias="categoryId")
    category_name: str | None = Field(default=None, alias="categoryName")
    confidence: float = 0.0
    reasoning: str = ""
    matching_rules: list[int] = Field(default_factory=list, alias="matchingRules")


class _ParsedCategorization(BaseModel):
    transaction_id: int = Field(alias="transactionId")
    suggestions: list[_ParsedSuggestion] = Field(default_factory=list)
    recommended_category_id: int | None = Field(default=None, alias="recommendedCategoryId")


class _ParsedResponse(BaseModel):
    success: bool = True
    categorizations: list[_ParsedCategorization] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


def category_path(category: Category, categories: list[Category]) -> str:
    by_id = {c.id: c for c in categories}
    path = [category.name]
    current = category
    seen = {category.id}
    while current.parent_id is not None and current.parent_id in by_id and current.parent_id not in seen:
        current = by_id[current.parent_id]
        seen.add(current.id)
        path.insert(0, current.name)
    return " > ".join(path)


def build_request(transactions: list[Transaction], categories: list[Category]) -> dict[str, Any]:
    return {
        "transactions": [
            {
                "id": t.id,
                "amount": t.amount,
                "absoluteAmount": abs(t.amount),
                "isIncome": t.amount > 0,
                "transactionType": t.transaction_type,
                "description": t.description,
                "userDescription": t.user_description,
                "transactionDate": t.date.isoformat(),
                "accountName": t.account_name,
                "currency": t.currency,
            }
            for t in transactions
        ],
        "availableCategories": [
            {
                "id": c.id,
                "name": c.name,
                "fullPath": category_path(c, categories),
                "type": "Income" if c.is_income else "Expense",
                "parentId": c.parent_id,
            }
            for c in categories
        ],
        "context": {
            "batchSize": len(transactions),
            "language": "en",
            "currencies": sorted({t.currency for t in transactions}),
        },
    }


def strip_code_fence(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_response(
    text: str,
    transactions: list[Transaction],
    categories: list[Category],
) -> SuggestionResponse:
    try:
        parsed = _ParsedResponse.model_validate(json.loads(strip_code_fence(text)))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error("[LLM] Failed to parse LLM response: %s", e)
        return SuggestionResponse(success=False, errors=[f"Failed to parse LLM response: {e}"])

    if not parsed.success:
        return SuggestionResponse(success=False, errors=parsed.errors or ["LLM reported failure"])

    known_transactions = {t.id for t in transactions}
    known_categories = {c.id: c for c in categories}
    suggestions: list[LlmSuggestion] = []
    for categorization in parsed.categorizations:
        if categorization.transaction_id not in known_transactions:
            logger.warning(
                "[LLM] Response contains unknown transaction id %s", categorization.transaction_id
            )
            continue
        for item in categorization.suggestions:
            category = known_categories.get(item.category_id)
            if category is None:
                logger.warning(
                    "[LLM] Dropping suggestion with unknown category id %s for transaction %s",
                    item.category_id,
                    categorization.transaction_id,
                )
                continue
            suggestions.append(
                LlmSuggestion(
                    transaction_id=categorization.transaction_id,
                    category_id=category.id,
                    category_name=category.name,
                    confidence=Decimal(str(min(1.0, max(0.0, item.confidence)))),
                    reasoning=item.reasoning,
                    matching_rules=item.matching_rules,
                    is_recommended=item.category_id == categorization.recommended_category_id,
                )
            )
    return SuggestionResponse(success=True, suggestions=suggestions)


class OpenAISuggestionService:
    def __init__(
        self,
        categories: CategoryResolver,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        timeout: float = 240.0,
    ):
        self.categories = categories
        self.client = AsyncOpenAI(
            api_key=api_key or os.getenv("OPENAI_API_KEY"),
            base_url=base_url or os.getenv("OPENAI_BASE_URL") or None,
            timeout=timeout,
        )
        self.model = model

    async def suggest(self, transactions: list[Transaction], user_id: str) -> SuggestionResponse:
        categories = self.categories.get_categories(user_id)
        if not categories:
            return SuggestionResponse(
                success=False, errors=[f"No categories available for user {user_id}"]
            )

        request = build_request(transactions, categories)
        logger.debug(
            "[LLM] Sending %s transactions to %s: %s",
            len(transactions),
            self.model,
            [t.id for t in transactions],
        )
        try:
            response = await self.client.responses.create(
                model=self.model,
                instructions=SYSTEM_PROMPT,
                input=json.dumps(request),
                temperature=0.0,
            )
        except Exception as e:
            logger.error(f"[LLM] Error: {e}")
            return SuggestionResponse(success=False, errors=[f"LLM categorization failed: {e}"])

        text = self._extract_output_text(response)
        if not text:
            return SuggestionResponse(success=False, errors=["LLM returned an empty response"])
        logger.debug("[LLM] Received %s characters", len(text))
        return parse_response(text, transactions, categories)

    @staticmethod
    def _extract_output_text(response: object) -> str | None:
        output_text = getattr(response, "output_text", None)
        if output_text:
            return output_text

        output = getattr(response, "output", None)
        if not output:
            return None

        parts: list[str] = []
        for item in output:
            content = getattr(item, "content", None)
            if not content:
                continue
            for block in content:
                block_type = getattr(block, "type", None)
                if block_type in {"output_text", "text"}:
                    text = getattr(block, "text", None)
                    if text:
                        parts.append(text)

        if parts:
            return "".join(parts)
        return None
