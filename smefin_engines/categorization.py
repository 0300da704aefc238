"""
smefin_engines.categorization -- Pure transaction categorization engine.

Responsibility:
    Match a transaction against categorization rule conditions, turn match
    scores into confidence tiers, derive frequency-based suggestions from
    similar transactions, rank suggestions and decide auto-apply.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Rule scores are in [0, 100]; frequency scores are the match count
      times the per-match score and can exceed 100.
    - The confidence tier of a rule suggestion comes from its score
      (>=90 VERY_HIGH, >=70 HIGH, >=50 MEDIUM, else LOW); the tier declared on
      the rule is not consulted.
    - Ranking is by tier, then score, both descending; the sort is stable so
      ties keep their input order (rules before frequency suggestions).
    - Auto-apply iff the best suggestion's tier is exactly VERY_HIGH.

Failure modes:
    - An exception while evaluating a rule yields a non-match with reason
      "Error evaluating rule" and a ``categorization_rule_evaluation_failed``
      log line; other rules still run.
    - Invalid regular expressions are skipped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Sequence
from uuid import UUID

from smefin_kernel.domain.categorization import (
    AmountRangeConditions,
    CategorizationConfidence,
    CategorySuggestion,
    CombinedConditions,
    CombinedOperator,
    CounterpartyConditions,
    DescriptionPatternConditions,
    KeywordConditions,
    RuleConditions,
    RuleMatch,
    SimilarTransaction,
    TransactionFacts,
)
from smefin_kernel.logging_config import get_logger

logger = get_logger("engines.categorization")

AMOUNT_RANGE_SCORE = 80.0
COUNTERPARTY_SCORE = 90.0
DESCRIPTION_PATTERN_SCORE = 85.0

_NO_MATCH = RuleMatch(is_match=False, score=0.0, reason="")


@dataclass(frozen=True)
class FrequencyPolicy:
    """Tuning for similar-transaction suggestions."""

    score_per_match: float = 20.0
    high_threshold: int = 3
    medium_threshold: int = 2


# =========================================================================
# Evaluators
# =========================================================================


def evaluate_keywords(conditions: KeywordConditions, facts: TransactionFacts) -> RuleMatch:
    text = f"{facts.description or ''} {facts.counterparty_name or ''}".lower()

    for excluded in conditions.exclude_keywords:
        if excluded.lower() in text:
            return RuleMatch(False, 0.0, f"Excluded by keyword: {excluded}")

    matched = [k for k in conditions.keywords if k.lower() in text]
    if not matched:
        return RuleMatch(False, 0.0, "No keywords matched")

    score = min(100.0, len(matched) / len(conditions.keywords) * 100)
    return RuleMatch(True, score, f"Matched keywords: {', '.join(matched)}")


def evaluate_amount_range(
    conditions: AmountRangeConditions, facts: TransactionFacts
) -> RuleMatch:
    amount = Decimal(facts.amount)
    if conditions.amount_min is not None and amount < conditions.amount_min:
        return RuleMatch(False, 0.0, "Amount below range")
    if conditions.amount_max is not None and amount > conditions.amount_max:
        return RuleMatch(False, 0.0, "Amount above range")
    low = conditions.amount_min if conditions.amount_min is not None else "-"
    high = conditions.amount_max if conditions.amount_max is not None else "-"
    return RuleMatch(True, AMOUNT_RANGE_SCORE, f"Amount {amount} within range {low} to {high}")


def evaluate_counterparty(
    conditions: CounterpartyConditions, facts: TransactionFacts
) -> RuleMatch:
    counterparty = (facts.counterparty_name or "").lower()
    if counterparty:
        for pattern in conditions.counterparty_patterns:
            if pattern.lower() in counterparty:
                return RuleMatch(
                    True, COUNTERPARTY_SCORE, f"Counterparty matched pattern: {pattern}"
                )
    return RuleMatch(False, 0.0, "Counterparty did not match")


def evaluate_description_pattern(
    conditions: DescriptionPatternConditions, facts: TransactionFacts
) -> RuleMatch:
    description = facts.description or ""
    for pattern in conditions.description_patterns:
        try:
            compiled = re.compile(pattern, re.IGNORECASE)
        except re.error:
            logger.debug(
                "categorization_pattern_invalid", extra={"pattern": pattern}
            )
            continue
        if compiled.search(description):
            return RuleMatch(
                True,
                DESCRIPTION_PATTERN_SCORE,
                f"Description matched pattern: {pattern}",
            )
    return RuleMatch(False, 0.0, "Description did not match")


def evaluate_combined(conditions: CombinedConditions, facts: TransactionFacts) -> RuleMatch:
    results = [_evaluate_simple(sub, facts) for sub in conditions.rules]

    if conditions.operator == CombinedOperator.AND:
        if results and all(r.is_match for r in results):
            score = sum(r.score for r in results) / len(results)
            return RuleMatch(True, score, " AND ".join(r.reason for r in results))
    else:
        best: RuleMatch | None = None
        for result in results:
            if result.is_match and (best is None or result.score > best.score):
                best = result
        if best is not None:
            return best

    return RuleMatch(False, 0.0, "Combined rule conditions not met")


_EVALUATORS: dict[type, Callable[..., RuleMatch]] = {
    KeywordConditions: evaluate_keywords,
    AmountRangeConditions: evaluate_amount_range,
    CounterpartyConditions: evaluate_counterparty,
    DescriptionPatternConditions: evaluate_description_pattern,
    CombinedConditions: evaluate_combined,
}


def _evaluate_simple(conditions: RuleConditions, facts: TransactionFacts) -> RuleMatch:
    evaluator = _EVALUATORS.get(type(conditions))
    if evaluator is None:
        logger.warning(
            "categorization_rule_type_unknown",
            extra={"conditions_type": type(conditions).__name__},
        )
        return _NO_MATCH
    return evaluator(conditions, facts)


def evaluate_rule(
    conditions: RuleConditions,
    facts: TransactionFacts,
    rule_name: str | None = None,
) -> RuleMatch:
    """Dispatch to the evaluator of the condition type, containing failures."""
    try:
        return _evaluate_simple(conditions, facts)
    except Exception:
        logger.warning(
            "categorization_rule_evaluation_failed",
            extra={"rule_name": rule_name, "transaction_id": facts.transaction_id},
            exc_info=True,
        )
        return RuleMatch(False, 0.0, "Error evaluating rule")


# =========================================================================
# Confidence, frequency, ranking
# =========================================================================


def confidence_for_score(score: float) -> CategorizationConfidence:
    if score >= 90:
        return CategorizationConfidence.VERY_HIGH
    if score >= 70:
        return CategorizationConfidence.HIGH
    if score >= 50:
        return CategorizationConfidence.MEDIUM
    return CategorizationConfidence.LOW


def frequency_suggestions(
    similar: Sequence[SimilarTransaction],
    policy: FrequencyPolicy = FrequencyPolicy(),
) -> list[CategorySuggestion]:
    """One suggestion per distinct category among similar transactions.

    Categories appear in first-seen order.
    """
    counts: dict[UUID, tuple[str, int]] = {}
    for item in similar:
        name, count = counts.get(item.category_id, (item.category_name, 0))
        counts[item.category_id] = (name, count + 1)

    suggestions = []
    for category_id, (name, count) in counts.items():
        if count >= policy.high_threshold:
            confidence = CategorizationConfidence.HIGH
        elif count >= policy.medium_threshold:
            confidence = CategorizationConfidence.MEDIUM
        else:
            confidence = CategorizationConfidence.LOW
        suggestions.append(
            CategorySuggestion(
                category_id=category_id,
                category_name=name,
                confidence=confidence,
                score=count * policy.score_per_match,
                reason=f"Found {count} similar transactions",
            )
        )
    return suggestions


def rank_suggestions(
    suggestions: Sequence[CategorySuggestion],
) -> list[CategorySuggestion]:
    return sorted(
        suggestions,
        key=lambda s: (s.confidence.rank, s.score),
        reverse=True,
    )


def distinct_by_category(
    ranked: Sequence[CategorySuggestion],
) -> list[CategorySuggestion]:
    """Keep the first (best-ranked) suggestion for each category."""
    seen: set[UUID] = set()
    distinct = []
    for suggestion in ranked:
        if suggestion.category_id in seen:
            continue
        seen.add(suggestion.category_id)
        distinct.append(suggestion)
    return distinct


def best_suggestion(
    suggestions: Sequence[CategorySuggestion],
) -> CategorySuggestion | None:
    ranked = rank_suggestions(suggestions)
    return ranked[0] if ranked else None


def should_auto_apply(
    suggestion: CategorySuggestion | None,
    threshold: CategorizationConfidence = CategorizationConfidence.VERY_HIGH,
) -> bool:
    return suggestion is not None and suggestion.confidence == threshold
