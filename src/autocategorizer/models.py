from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MatchType(str, Enum):
    EQUALS = "Equals"
    STARTS_WITH = "StartsWith"
    ENDS_WITH = "EndsWith"
    CONTAINS = "Contains"
    REGEX = "Regex"


class RuleLogic(str, Enum):
    ALL = "All"
    ANY = "Any"


class ConditionField(str, Enum):
    DESCRIPTION = "Description"
    USER_DESCRIPTION = "UserDescription"
    AMOUNT = "Amount"
    ACCOUNT_TYPE = "AccountType"
    ACCOUNT_NAME = "AccountName"
    TRANSACTION_TYPE = "TransactionType"
    REFERENCE_NUMBER = "ReferenceNumber"
    NOTES = "Notes"


class ConditionOperator(str, Enum):
    EQUALS = "Equals"
    NOT_EQUALS = "NotEquals"
    CONTAINS = "Contains"
    NOT_CONTAINS = "NotContains"
    STARTS_WITH = "StartsWith"
    ENDS_WITH = "EndsWith"
    GREATER_THAN = "GreaterThan"
    LESS_THAN = "LessThan"
    GREATER_THAN_OR_EQUAL = "GreaterThanOrEqual"
    LESS_THAN_OR_EQUAL = "LessThanOrEqual"
    REGEX = "Regex"


class CandidateMethod(str, Enum):
    RULE = "Rule"
    ML = "ML"
    LLM = "LLM"


class CandidateStatus(str, Enum):
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    CORRECTED = "Corrected"


class Transaction(BaseModel):
    id: int
    description: str
    amount: float
    date: datetime
    user_id: Optional[str] = None
    account_name: Optional[str] = None
    account_type: Optional[str] = None
    currency: str = "EUR"
    user_description: Optional[str] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    category_id: Optional[int] = None

    @property
    def transaction_type(self) -> str:
        return "Income" if self.amount > 0 else "Expense"


class Category(BaseModel):
    id: int
    name: str
    user_id: Optional[str] = None
    parent_id: Optional[int] = None
    is_income: bool = False


class RuleCondition(BaseModel):
    field: ConditionField
    operator: ConditionOperator
    value: str
    is_case_sensitive: bool = False
    order: int = 0


class CategorizationRule(BaseModel):
    id: int
    user_id: str
    name: str = ""
    category_id: int
    pattern: str = ""
    match_type: MatchType = MatchType.CONTAINS
    is_case_sensitive: bool = False
    priority: int = 0
    is_active: bool = True
    base_confidence: Decimal = Field(default=Decimal("0.8"), ge=0, le=1)
    match_count: int = Field(default=0, ge=0)
    correction_count: int = Field(default=0, ge=0)
    conditions: list[RuleCondition] = Field(default_factory=list)
    logic: RuleLogic = RuleLogic.ALL
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    account_types: Optional[str] = None

    @property
    def has_conditions(self) -> bool:
        return bool(self.conditions)

    @property
    def accuracy_rate(self) -> Decimal:
        """Share of matches that were not later corrected.

        A rule without history is trusted fully; a rule that has only been
        corrected is not trusted at all.
        """
        if self.match_count == 0:
            return Decimal("1") if self.correction_count == 0 else Decimal("0")
        rate = Decimal(self.match_count - self.correction_count) / Decimal(self.match_count)
        return max(Decimal("0"), rate)


class CategorizationCandidate(BaseModel):
    id: Optional[int] = None
    transaction_id: int
    user_id: Optional[str] = None
    category_id: int
    category_name: Optional[str] = None
    method: CandidateMethod
    confidence_score: Decimal
    reasoning: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: CandidateStatus = CandidateStatus.PENDING
    processed_by: str = ""
    applied_category_id: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    created_by: str = ""
    updated_by: str = ""

    @property
    def rule_id(self) -> Optional[int]:
        value = self.metadata.get("rule_id")
        return int(value) if value is not None else None


class AutoAppliedCategorization(BaseModel):
    transaction_id: int
    user_id: Optional[str] = None
    category_id: int
    category_name: Optional[str] = None
    method: CandidateMethod
    confidence_score: Decimal
    reasoning: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    processed_by: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class Metrics(BaseModel):
    total_transactions: int = 0
    processed_by_rules: int = 0
    processed_by_ml: int = 0
    processed_by_llm: int = 0
    category_distribution: dict[str, int] = Field(default_factory=dict)
    confidence_distribution: dict[str, int] = Field(default_factory=dict)
    estimated_cost_savings: Decimal = Decimal("0")
    processing_time_ms: float = 0.0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success_rate(self) -> float:
        if self.total_transactions == 0:
            return 0.0
        processed = self.processed_by_rules + self.processed_by_ml + self.processed_by_llm
        return processed / self.total_transactions

    def record(self, category_name: str | None, band: str) -> None:
        name = category_name or "Unknown"
        self.category_distribution[name] = self.category_distribution.get(name, 0) + 1
        self.confidence_distribution[band] = self.confidence_distribution.get(band, 0) + 1

    def merge(self, other: "Metrics") -> None:
        """Fold a stage's metrics into this one. Totals are owned by the caller."""
        self.processed_by_rules += other.processed_by_rules
        self.processed_by_ml += other.processed_by_ml
        self.processed_by_llm += other.processed_by_llm
        for name, count in other.category_distribution.items():
            self.category_distribution[name] = self.category_distribution.get(name, 0) + count
        for band, count in other.confidence_distribution.items():
            self.confidence_distribution[band] = self.confidence_distribution.get(band, 0) + count
        self.estimated_cost_savings += other.estimated_cost_savings
        self.processing_time_ms += other.processing_time_ms


class StageResult(BaseModel):
    stage: str
    auto_applied: list[AutoAppliedCategorization] = Field(default_factory=list)
    candidates: list[CategorizationCandidate] = Field(default_factory=list)
    remaining: list[Transaction] = Field(default_factory=list)
    metrics: Metrics = Field(default_factory=Metrics)
    errors: list[str] = Field(default_factory=list)
    # rule id -> number of auto-applied matches in this stage
    rule_matches: dict[int, int] = Field(default_factory=dict)
    skipped: bool = False

    @classmethod
    def unresolved(cls, stage: str, transactions: list[Transaction], *errors: str) -> "StageResult":
        return cls(stage=stage, remaining=list(transactions), errors=list(errors))


class PipelineResult(BaseModel):
    auto_applied: list[AutoAppliedCategorization] = Field(default_factory=list)
    candidates: list[CategorizationCandidate] = Field(default_factory=list)
    unresolved_ids: list[int] = Field(default_factory=list)
    metrics: Metrics = Field(default_factory=Metrics)
    errors: list[str] = Field(default_factory=list)
    cancelled: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


class LlmSuggestion(BaseModel):
    transaction_id: int
    category_id: int
    category_name: Optional[str] = None
    confidence: Decimal = Field(ge=0, le=1)
    reasoning: str = ""
    matching_rules: list[int] = Field(default_factory=list)
    is_recommended: bool = False


class SuggestionResponse(BaseModel):
    success: bool
    suggestions: list[LlmSuggestion] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
