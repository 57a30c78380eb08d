from decimal import Decimal

from autocategorizer.domain.rules import text_contains, text_equals
from autocategorizer.models import CategorizationRule, MatchType, Transaction

MIN_CONFIDENCE = Decimal("0.1")
MAX_CONFIDENCE = Decimal("1.0")

EXACT_EQUALS_BOOST = Decimal("1.2")
STRONG_COVERAGE_BOOST = Decimal("1.15")
MODERATE_COVERAGE_BOOST = Decimal("1.10")
BROAD_PATTERN_PENALTY = Decimal("0.8")

STRONG_COVERAGE_RATIO = Decimal("0.6")
MODERATE_COVERAGE_RATIO = Decimal("0.4")
MIN_BOOSTABLE_PATTERN_LENGTH = 4
BROAD_PATTERN_LENGTH = 3

HIGH_BAND = "High (90-100%)"
MEDIUM_BAND = "Medium (70-89%)"
LOW_BAND = "Low (50-69%)"
VERY_LOW_BAND = "Very Low (<50%)"


def _clamp(value: Decimal) -> Decimal:
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, value))


def _contains_adjustment(rule: CategorizationRule, description: str, adjusted: Decimal) -> Decimal:
    pattern = rule.pattern
    case_sensitive = rule.is_case_sensitive

    if text_equals(pattern.strip(), description.strip(), case_sensitive):
        return MAX_CONFIDENCE

    if len(pattern) < BROAD_PATTERN_LENGTH:
        return adjusted * BROAD_PATTERN_PENALTY

    if (
        len(pattern) >= MIN_BOOSTABLE_PATTERN_LENGTH
        and description
        and text_contains(description, pattern, case_sensitive)
    ):
        ratio = Decimal(len(pattern)) / Decimal(len(description))
        if ratio >= STRONG_COVERAGE_RATIO:
            return min(MAX_CONFIDENCE, adjusted * STRONG_COVERAGE_BOOST)
        if ratio >= MODERATE_COVERAGE_RATIO:
            return min(MAX_CONFIDENCE, adjusted * MODERATE_COVERAGE_BOOST)

    return adjusted


def score(rule: CategorizationRule, transaction: Transaction) -> Decimal:
    """Confidence that ``rule`` categorizes ``transaction`` correctly.

    The rule's historical accuracy scales its base confidence, then match-type
    specific adjustments apply:

    * Equals rules that match the description exactly are boosted by 20%.
    * Contains rules whose pattern is the whole trimmed description score 1.0.
    * Contains rules shorter than three characters are penalised by 20%.
    * Otherwise Contains rules covering at least 60% (or 40%) of the
      description are boosted by 15% (or 10%).

    The result is clamped to [0.1, 1.0].
    """
    description = transaction.description or ""
    adjusted = rule.accuracy_rate * rule.base_confidence

    if rule.match_type is MatchType.EQUALS and text_equals(
        rule.pattern, description, rule.is_case_sensitive
    ):
        adjusted = min(MAX_CONFIDENCE, adjusted * EXACT_EQUALS_BOOST)

    if rule.match_type is MatchType.CONTAINS and rule.pattern:
        adjusted = _contains_adjustment(rule, description, adjusted)

    return _clamp(adjusted)


def confidence_band(confidence: Decimal) -> str:
    if confidence >= Decimal("0.9"):
        return HIGH_BAND
    if confidence >= Decimal("0.7"):
        return MEDIUM_BAND
    if confidence >= Decimal("0.5"):
        return LOW_BAND
    return VERY_LOW_BAND
