from decimal import Decimal

from conftest import make_rule, make_tx

from autocategorizer.domain.rules import build_match_reason, check_rule, evaluate_condition
from autocategorizer.models import (
    ConditionField,
    ConditionOperator,
    MatchType,
    RuleCondition,
    RuleLogic,
)


def test_contains_ignores_case_unless_asked():
    tx = make_tx(1, "Starbucks Coffee #123")

    assert check_rule(make_rule(1, "STARBUCKS"), tx).matched
    assert not check_rule(make_rule(2, "STARBUCKS", is_case_sensitive=True), tx).matched


def test_match_types():
    tx = make_tx(1, "AMAZON MKTPLACE PMTS")

    assert check_rule(make_rule(1, "amazon", match_type=MatchType.STARTS_WITH), tx).matched
    assert check_rule(make_rule(2, "pmts", match_type=MatchType.ENDS_WITH), tx).matched
    assert not check_rule(make_rule(3, "amazon", match_type=MatchType.EQUALS), tx).matched
    assert check_rule(make_rule(4, r"^amazon\s+mkt", match_type=MatchType.REGEX), tx).matched


def test_blank_description_never_matches():
    assert not check_rule(make_rule(1, "a"), make_tx(1, "   ")).matched


def test_amount_range_uses_absolute_value():
    rule = make_rule(1, "SHELL", min_amount=Decimal("10"), max_amount=Decimal("50"))

    assert check_rule(rule, make_tx(1, "SHELL 42", amount=-25.5)).matched
    assert not check_rule(rule, make_tx(2, "SHELL 42", amount=-60)).matched
    assert not check_rule(rule, make_tx(3, "SHELL 42", amount=5)).matched


def test_account_type_filter():
    rule = make_rule(1, "ATM", account_types="Checking, Savings")

    assert check_rule(rule, make_tx(1, "ATM WITHDRAWAL", account_type="savings")).matched
    assert not check_rule(rule, make_tx(2, "ATM WITHDRAWAL", account_type="Credit")).matched
    assert not check_rule(rule, make_tx(3, "ATM WITHDRAWAL")).matched


def _amazon_conditions() -> list[RuleCondition]:
    return [
        RuleCondition(
            field=ConditionField.DESCRIPTION,
            operator=ConditionOperator.CONTAINS,
            value="amazon",
            order=0,
        ),
        RuleCondition(
            field=ConditionField.AMOUNT,
            operator=ConditionOperator.GREATER_THAN,
            value="100",
            order=1,
        ),
    ]


def test_all_conditions_must_hold():
    rule = make_rule(1, "", conditions=_amazon_conditions(), logic=RuleLogic.ALL)

    assert check_rule(rule, make_tx(1, "AMAZON.COM", amount=-150)).matched
    assert not check_rule(rule, make_tx(2, "AMAZON.COM", amount=-50)).matched


def test_any_condition_is_enough():
    rule = make_rule(1, "", conditions=_amazon_conditions(), logic=RuleLogic.ANY)

    assert check_rule(rule, make_tx(1, "AMAZON.COM", amount=-50)).matched
    assert check_rule(rule, make_tx(2, "EBAY", amount=-150)).matched
    assert not check_rule(rule, make_tx(3, "EBAY", amount=-50)).matched


def test_numeric_condition_with_unparseable_value_is_false():
    condition = RuleCondition(
        field=ConditionField.AMOUNT, operator=ConditionOperator.LESS_THAN, value="lots"
    )
    assert evaluate_condition(condition, make_tx(1, "x", amount=-1)) is False


def test_transaction_type_condition():
    condition = RuleCondition(
        field=ConditionField.TRANSACTION_TYPE, operator=ConditionOperator.EQUALS, value="income"
    )
    assert evaluate_condition(condition, make_tx(1, "PAYROLL", amount=2500))
    assert not evaluate_condition(condition, make_tx(2, "RENT", amount=-900))


def test_bad_regex_is_reported_not_raised():
    rule = make_rule(1, "[unclosed", match_type=MatchType.REGEX)

    check = check_rule(rule, make_tx(1, "anything"))

    assert not check.matched
    assert check.failed
    assert check.error


def test_inactive_rule_never_matches():
    assert not check_rule(make_rule(1, "SHELL", is_active=False), make_tx(1, "SHELL")).matched


def test_match_reason_lists_satisfied_conditions():
    rule = make_rule(1, "AMAZON", name="Big Amazon", conditions=_amazon_conditions())

    reason = build_match_reason(rule, make_tx(1, "AMAZON.COM", amount=-150))

    assert reason == (
        "Matched rule 'Big Amazon' (pattern: 'AMAZON') with conditions: "
        "Description Contains 'amazon', Amount GreaterThan '100'"
    )
