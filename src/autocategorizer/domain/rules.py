import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from autocategorizer.models import (
    CategorizationRule,
    ConditionField,
    ConditionOperator,
    MatchType,
    RuleCondition,
    RuleLogic,
    Transaction,
)


@dataclass(frozen=True)
class RuleCheck:
    """Outcome of testing one rule against one transaction."""

    matched: bool
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


NO_MATCH = RuleCheck(matched=False)
MATCH = RuleCheck(matched=True)


def _fold(value: str, case_sensitive: bool) -> str:
    return value if case_sensitive else value.casefold()


def _regex_flags(case_sensitive: bool) -> int:
    return 0 if case_sensitive else re.IGNORECASE


def text_equals(left: str, right: str, case_sensitive: bool) -> bool:
    return _fold(left, case_sensitive) == _fold(right, case_sensitive)


def text_contains(haystack: str, needle: str, case_sensitive: bool) -> bool:
    return _fold(needle, case_sensitive) in _fold(haystack, case_sensitive)


def matches_description(rule: CategorizationRule, description: str) -> bool:
    """Pattern match of the rule against a description.

    Raises ``re.error`` for a malformed Regex pattern; callers decide how to
    report it.
    """
    if not description or not description.strip():
        return False

    case_sensitive = rule.is_case_sensitive
    pattern = rule.pattern
    if rule.match_type is MatchType.CONTAINS:
        return text_contains(description, pattern, case_sensitive)
    if rule.match_type is MatchType.STARTS_WITH:
        return _fold(description, case_sensitive).startswith(_fold(pattern, case_sensitive))
    if rule.match_type is MatchType.ENDS_WITH:
        return _fold(description, case_sensitive).endswith(_fold(pattern, case_sensitive))
    if rule.match_type is MatchType.EQUALS:
        return text_equals(description, pattern, case_sensitive)
    if rule.match_type is MatchType.REGEX:
        return re.search(pattern, description, _regex_flags(case_sensitive)) is not None
    return False


def matches_amount(rule: CategorizationRule, amount: float) -> bool:
    absolute = abs(Decimal(str(amount)))
    if rule.min_amount is not None and absolute < rule.min_amount:
        return False
    if rule.max_amount is not None and absolute > rule.max_amount:
        return False
    return True


def matches_account_type(rule: CategorizationRule, account_type: str | None) -> bool:
    if not rule.account_types or not rule.account_types.strip():
        return True
    allowed = {part.strip().casefold() for part in rule.account_types.split(",") if part.strip()}
    return bool(account_type) and account_type.casefold() in allowed


def field_value(transaction: Transaction, field: ConditionField) -> str:
    if field is ConditionField.DESCRIPTION:
        return transaction.description or ""
    if field is ConditionField.USER_DESCRIPTION:
        return transaction.user_description or ""
    if field is ConditionField.AMOUNT:
        return f"{abs(Decimal(str(transaction.amount))):.2f}"
    if field is ConditionField.ACCOUNT_TYPE:
        return transaction.account_type or ""
    if field is ConditionField.ACCOUNT_NAME:
        return transaction.account_name or ""
    if field is ConditionField.TRANSACTION_TYPE:
        return transaction.transaction_type
    if field is ConditionField.REFERENCE_NUMBER:
        return transaction.reference_number or ""
    if field is ConditionField.NOTES:
        return transaction.notes or ""
    raise ValueError(f"Unsupported condition field: {field}")


def _to_decimal(value: str) -> Decimal | None:
    try:
        return Decimal(value.strip())
    except (InvalidOperation, AttributeError):
        return None


_NUMERIC_OPERATORS = {
    ConditionOperator.GREATER_THAN: lambda a, b: a > b,
    ConditionOperator.LESS_THAN: lambda a, b: a < b,
    ConditionOperator.GREATER_THAN_OR_EQUAL: lambda a, b: a >= b,
    ConditionOperator.LESS_THAN_OR_EQUAL: lambda a, b: a <= b,
}


def evaluate_condition(condition: RuleCondition, transaction: Transaction) -> bool:
    actual = field_value(transaction, condition.field)
    expected = condition.value
    case_sensitive = condition.is_case_sensitive
    op = condition.operator

    if op is ConditionOperator.EQUALS:
        return text_equals(actual, expected, case_sensitive)
    if op is ConditionOperator.NOT_EQUALS:
        return not text_equals(actual, expected, case_sensitive)
    if op is ConditionOperator.CONTAINS:
        return text_contains(actual, expected, case_sensitive)
    if op is ConditionOperator.NOT_CONTAINS:
        return not text_contains(actual, expected, case_sensitive)
    if op is ConditionOperator.STARTS_WITH:
        return _fold(actual, case_sensitive).startswith(_fold(expected, case_sensitive))
    if op is ConditionOperator.ENDS_WITH:
        return _fold(actual, case_sensitive).endswith(_fold(expected, case_sensitive))
    if op in _NUMERIC_OPERATORS:
        left = _to_decimal(actual)
        right = _to_decimal(expected)
        if left is None or right is None:
            return False
        return _NUMERIC_OPERATORS[op](left, right)
    if op is ConditionOperator.REGEX:
        return re.search(expected, actual, _regex_flags(case_sensitive)) is not None
    raise ValueError(f"Unsupported condition operator: {op}")


def _conditions_match(rule: CategorizationRule, transaction: Transaction) -> bool:
    ordered = sorted(rule.conditions, key=lambda c: c.order)
    if rule.logic is RuleLogic.ANY:
        return any(evaluate_condition(c, transaction) for c in ordered)
    return all(evaluate_condition(c, transaction) for c in ordered)


def check_rule(rule: CategorizationRule, transaction: Transaction) -> RuleCheck:
    """Test a rule against a transaction without letting evaluation errors escape."""
    if not rule.is_active:
        return NO_MATCH
    try:
        if rule.has_conditions:
            matched = _conditions_match(rule, transaction)
        else:
            matched = (
                matches_description(rule, transaction.description)
                and matches_amount(rule, transaction.amount)
                and matches_account_type(rule, transaction.account_type)
            )
    except Exception as exc:
        return RuleCheck(matched=False, error=f"{type(exc).__name__}: {exc}")
    return MATCH if matched else NO_MATCH


def matched_conditions(rule: CategorizationRule, transaction: Transaction) -> list[str]:
    described: list[str] = []
    for condition in sorted(rule.conditions, key=lambda c: c.order):
        try:
            if evaluate_condition(condition, transaction):
                described.append(
                    f"{condition.field.value} {condition.operator.value} '{condition.value}'"
                )
        except Exception:
            continue
    return described


def build_match_reason(rule: CategorizationRule, transaction: Transaction) -> str:
    reason = f"Matched rule '{rule.name}'"
    if rule.pattern:
        reason += f" (pattern: '{rule.pattern}')"
    if rule.has_conditions:
        conditions = matched_conditions(rule, transaction)
        if conditions:
            reason += f" with conditions: {', '.join(conditions)}"
    return reason
