"""
Tests for the categorization engine.

Covers:
- Each rule type evaluator
- Combined AND/OR rules
- Score to confidence tiers
- Frequency suggestions and ranking
- Auto-apply gate
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from smefin_engines.categorization import (
    AMOUNT_RANGE_SCORE,
    COUNTERPARTY_SCORE,
    DESCRIPTION_PATTERN_SCORE,
    FrequencyPolicy,
    best_suggestion,
    confidence_for_score,
    distinct_by_category,
    evaluate_rule,
    frequency_suggestions,
    rank_suggestions,
    should_auto_apply,
)
from smefin_kernel.domain.categorization import (
    CategorizationConfidence,
    CategorizationRuleType,
    CategorySuggestion,
    SimilarTransaction,
    TransactionFacts,
    parse_rule_conditions,
    validate_rule_conditions,
)
from smefin_kernel.exceptions import InvalidRuleConditionsError


def _facts(description=None, amount="100", counterparty=None, reference=None):
    return TransactionFacts(
        transaction_id=uuid4(),
        amount=Decimal(amount),
        description=description,
        counterparty_name=counterparty,
        reference=reference,
    )


def _evaluate(rule_type, conditions, facts):
    return evaluate_rule(parse_rule_conditions(rule_type, conditions), facts)


def _suggestion(confidence, score, name="Cat"):
    return CategorySuggestion(
        category_id=uuid4(),
        category_name=name,
        confidence=confidence,
        score=score,
        reason="test",
    )


class TestKeywordRules:

    def test_petrol_example(self):
        """One of two keywords matched scores 50, a MEDIUM suggestion."""
        match = _evaluate(
            CategorizationRuleType.KEYWORD_MATCH,
            {"keywords": ["fuel", "petrol"]},
            _facts("Total Petrol Station"),
        )

        assert match.is_match
        assert match.score == 50.0
        assert "petrol" in match.reason
        assert confidence_for_score(match.score) == CategorizationConfidence.MEDIUM

    def test_counterparty_text_is_searched(self):
        match = _evaluate(
            CategorizationRuleType.KEYWORD_MATCH,
            {"keywords": ["zesco"]},
            _facts("Monthly bill", counterparty="ZESCO"),
        )
        assert match.is_match
        assert match.score == 100.0

    def test_exclude_keyword_wins(self):
        match = _evaluate(
            CategorizationRuleType.KEYWORD_MATCH,
            {"keywords": ["fuel"], "exclude_keywords": ["refund"]},
            _facts("Fuel refund"),
        )
        assert not match.is_match
        assert "refund" in match.reason

    def test_no_keyword_matched(self):
        match = _evaluate(
            CategorizationRuleType.KEYWORD_MATCH,
            {"keywords": ["fuel"]},
            _facts(None),
        )
        assert not match.is_match


class TestOtherRuleTypes:

    def test_amount_range_inclusive(self):
        conditions = {"amount_min": "10", "amount_max": "50"}
        hit = _evaluate(CategorizationRuleType.AMOUNT_RANGE, conditions, _facts(amount="50"))
        miss = _evaluate(CategorizationRuleType.AMOUNT_RANGE, conditions, _facts(amount="50.01"))
        assert hit.is_match and hit.score == AMOUNT_RANGE_SCORE
        assert not miss.is_match

    def test_amount_range_open_bound(self):
        match = _evaluate(
            CategorizationRuleType.AMOUNT_RANGE, {"amount_min": 1000}, _facts(amount="99999")
        )
        assert match.is_match

    def test_counterparty_substring(self):
        match = _evaluate(
            CategorizationRuleType.COUNTERPARTY_MATCH,
            {"counterparty_patterns": ["airtel"]},
            _facts(counterparty="Airtel Money Zambia"),
        )
        assert match.is_match and match.score == COUNTERPARTY_SCORE

    def test_counterparty_missing(self):
        match = _evaluate(
            CategorizationRuleType.COUNTERPARTY_MATCH,
            {"counterparty_patterns": ["airtel"]},
            _facts(counterparty=None),
        )
        assert not match.is_match

    def test_description_regex(self):
        match = _evaluate(
            CategorizationRuleType.DESCRIPTION_PATTERN,
            {"description_patterns": [r"^pos\s+\d+"]},
            _facts("POS 4411 Shoprite"),
        )
        assert match.is_match and match.score == DESCRIPTION_PATTERN_SCORE

    def test_invalid_stored_regex_is_skipped(self):
        """A pattern that does not compile is ignored at evaluation time."""
        match = _evaluate(
            CategorizationRuleType.DESCRIPTION_PATTERN,
            {"description_patterns": ["([", "shoprite"]},
            _facts("POS 4411 Shoprite"),
        )
        assert match.is_match

    def test_invalid_regex_rejected_on_write(self):
        with pytest.raises(InvalidRuleConditionsError):
            validate_rule_conditions(
                CategorizationRuleType.DESCRIPTION_PATTERN, {"description_patterns": ["(["]}
            )

    def test_empty_keywords_rejected(self):
        with pytest.raises(InvalidRuleConditionsError):
            parse_rule_conditions(CategorizationRuleType.KEYWORD_MATCH, {"keywords": []})

    def test_inverted_amount_range_rejected(self):
        with pytest.raises(InvalidRuleConditionsError):
            parse_rule_conditions(
                CategorizationRuleType.AMOUNT_RANGE, {"amount_min": 50, "amount_max": 10}
            )


class TestCombinedRules:

    conditions = {
        "rules": [
            {"type": "keyword", "keywords": ["fuel"]},
            {"type": "amount", "amount_max": "500"},
        ],
    }

    def test_and_averages_scores(self):
        match = _evaluate(
            CategorizationRuleType.COMBINED_RULE, self.conditions, _facts("Fuel", amount="200")
        )
        assert match.is_match
        assert match.score == (100.0 + AMOUNT_RANGE_SCORE) / 2

    def test_and_requires_every_sub_rule(self):
        match = _evaluate(
            CategorizationRuleType.COMBINED_RULE, self.conditions, _facts("Fuel", amount="900")
        )
        assert not match.is_match

    def test_or_takes_best_match(self):
        match = _evaluate(
            CategorizationRuleType.COMBINED_RULE,
            {**self.conditions, "operator": "or"},
            _facts("Groceries", amount="200"),
        )
        assert match.is_match
        assert match.score == AMOUNT_RANGE_SCORE

    def test_unknown_sub_rule_rejected(self):
        with pytest.raises(InvalidRuleConditionsError):
            parse_rule_conditions(
                CategorizationRuleType.COMBINED_RULE, {"rules": [{"type": "combined"}]}
            )


class TestConfidence:

    @pytest.mark.parametrize(
        "score,tier",
        [
            (95, CategorizationConfidence.VERY_HIGH),
            (90, CategorizationConfidence.VERY_HIGH),
            (85, CategorizationConfidence.HIGH),
            (70, CategorizationConfidence.HIGH),
            (50, CategorizationConfidence.MEDIUM),
            (49.9, CategorizationConfidence.LOW),
        ],
    )
    def test_tiers(self, score, tier):
        assert confidence_for_score(score) == tier


class TestFrequencyAndRanking:

    def test_frequency_counts_per_category(self):
        fuel, food = uuid4(), uuid4()
        similar = [
            SimilarTransaction(uuid4(), fuel, "Fuel"),
            SimilarTransaction(uuid4(), food, "Food"),
            SimilarTransaction(uuid4(), fuel, "Fuel"),
            SimilarTransaction(uuid4(), fuel, "Fuel"),
        ]

        suggestions = frequency_suggestions(similar, FrequencyPolicy())

        assert [s.category_name for s in suggestions] == ["Fuel", "Food"]
        assert suggestions[0].confidence == CategorizationConfidence.HIGH
        assert suggestions[0].score == 60.0
        assert suggestions[0].reason == "Found 3 similar transactions"
        assert suggestions[1].confidence == CategorizationConfidence.LOW

    def test_ranking_confidence_before_score(self):
        medium = _suggestion(CategorizationConfidence.MEDIUM, 99)
        high = _suggestion(CategorizationConfidence.HIGH, 70)
        high_better = _suggestion(CategorizationConfidence.HIGH, 85)

        ranked = rank_suggestions([medium, high, high_better])

        assert ranked == [high_better, high, medium]
        assert best_suggestion([medium, high]) == high
        assert best_suggestion([]) is None

    def test_frequency_score_not_capped(self):
        """Ten votes score 200; the tier stays HIGH."""
        fuel = uuid4()
        similar = [SimilarTransaction(uuid4(), fuel, "Fuel") for _ in range(10)]

        [suggestion] = frequency_suggestions(similar, FrequencyPolicy())

        assert suggestion.score == 200.0
        assert suggestion.confidence == CategorizationConfidence.HIGH

    def test_distinct_keeps_best_per_category(self):
        fuel_rule = _suggestion(CategorizationConfidence.VERY_HIGH, 90, "Fuel")
        fuel_keyword = CategorySuggestion(
            category_id=fuel_rule.category_id,
            category_name="Fuel",
            confidence=CategorizationConfidence.MEDIUM,
            score=50,
            reason="keyword",
        )
        food = _suggestion(CategorizationConfidence.HIGH, 70, "Food")

        ranked = rank_suggestions([fuel_keyword, food, fuel_rule])

        assert distinct_by_category(ranked) == [fuel_rule, food]
        assert distinct_by_category([]) == []

    def test_auto_apply_only_at_threshold(self):
        assert should_auto_apply(_suggestion(CategorizationConfidence.VERY_HIGH, 90))
        assert not should_auto_apply(_suggestion(CategorizationConfidence.HIGH, 89))
        assert not should_auto_apply(None)
