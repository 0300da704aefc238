"""
Categorization domain types (``smefin_kernel.domain.categorization``).

Responsibility
--------------
Value objects for transaction categorization: category and rule
vocabularies, the typed condition set of each rule type, the transaction
facts rules are matched against, and suggestion/result records.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Each ``CategorizationRuleType`` has exactly one condition class;
  ``parse_rule_conditions`` refuses anything else with
  ``InvalidRuleConditionsError``.
* Description patterns must compile when a rule is written.  Rules stored
  before that check are still evaluated; their bad patterns are skipped.
* Confidence tiers are ordered LOW < MEDIUM < HIGH < VERY_HIGH.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Union
from uuid import UUID

from smefin_kernel.domain.results import BulkResult
from smefin_kernel.exceptions import InvalidRuleConditionsError


class CategoryType(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    ASSET = "ASSET"
    LIABILITY = "LIABILITY"
    EQUITY = "EQUITY"


class CategorizationRuleType(str, Enum):
    KEYWORD_MATCH = "KEYWORD_MATCH"
    AMOUNT_RANGE = "AMOUNT_RANGE"
    COUNTERPARTY_MATCH = "COUNTERPARTY_MATCH"
    DESCRIPTION_PATTERN = "DESCRIPTION_PATTERN"
    COMBINED_RULE = "COMBINED_RULE"


class CategorizationConfidence(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]


_CONFIDENCE_RANK = {
    CategorizationConfidence.LOW: 0,
    CategorizationConfidence.MEDIUM: 1,
    CategorizationConfidence.HIGH: 2,
    CategorizationConfidence.VERY_HIGH: 3,
}


class CombinedOperator(str, Enum):
    AND = "AND"
    OR = "OR"


# =========================================================================
# Rule conditions (one class per rule type)
# =========================================================================


def _string_list(
    rule_type: CategorizationRuleType, data: dict[str, Any], key: str
) -> tuple[str, ...]:
    raw = data.get(key) or []
    if isinstance(raw, str) or not isinstance(raw, (list, tuple)):
        raise InvalidRuleConditionsError(rule_type.value, f"{key} must be a list of strings")
    values = tuple(str(v).strip() for v in raw if str(v).strip())
    return values


def _optional_decimal(
    rule_type: CategorizationRuleType, data: dict[str, Any], key: str
) -> Decimal | None:
    raw = data.get(key)
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise InvalidRuleConditionsError(rule_type.value, f"{key} must be numeric")
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        raise InvalidRuleConditionsError(rule_type.value, f"{key} must be numeric") from None


@dataclass(frozen=True)
class KeywordConditions:
    keywords: tuple[str, ...]
    exclude_keywords: tuple[str, ...] = ()

    rule_type = CategorizationRuleType.KEYWORD_MATCH

    def __post_init__(self) -> None:
        if not self.keywords:
            raise InvalidRuleConditionsError(
                self.rule_type.value, "at least one keyword is required"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KeywordConditions:
        return cls(
            keywords=_string_list(cls.rule_type, data, "keywords"),
            exclude_keywords=_string_list(cls.rule_type, data, "exclude_keywords"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"keywords": list(self.keywords)}
        if self.exclude_keywords:
            data["exclude_keywords"] = list(self.exclude_keywords)
        return data


@dataclass(frozen=True)
class AmountRangeConditions:
    """Inclusive range; either bound may be open."""

    amount_min: Decimal | None = None
    amount_max: Decimal | None = None

    rule_type = CategorizationRuleType.AMOUNT_RANGE

    def __post_init__(self) -> None:
        if self.amount_min is None and self.amount_max is None:
            raise InvalidRuleConditionsError(
                self.rule_type.value, "amount_min or amount_max is required"
            )
        if (
            self.amount_min is not None
            and self.amount_max is not None
            and self.amount_min > self.amount_max
        ):
            raise InvalidRuleConditionsError(
                self.rule_type.value, "amount_min must not exceed amount_max"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AmountRangeConditions:
        return cls(
            amount_min=_optional_decimal(cls.rule_type, data, "amount_min"),
            amount_max=_optional_decimal(cls.rule_type, data, "amount_max"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.amount_min is not None:
            data["amount_min"] = str(self.amount_min)
        if self.amount_max is not None:
            data["amount_max"] = str(self.amount_max)
        return data


@dataclass(frozen=True)
class CounterpartyConditions:
    counterparty_patterns: tuple[str, ...]

    rule_type = CategorizationRuleType.COUNTERPARTY_MATCH

    def __post_init__(self) -> None:
        if not self.counterparty_patterns:
            raise InvalidRuleConditionsError(
                self.rule_type.value, "at least one counterparty pattern is required"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CounterpartyConditions:
        return cls(
            counterparty_patterns=_string_list(
                cls.rule_type, data, "counterparty_patterns"
            )
        )

    def to_dict(self) -> dict[str, Any]:
        return {"counterparty_patterns": list(self.counterparty_patterns)}


@dataclass(frozen=True)
class DescriptionPatternConditions:
    """Regular expressions searched case-insensitively in the description."""

    description_patterns: tuple[str, ...]

    rule_type = CategorizationRuleType.DESCRIPTION_PATTERN

    def __post_init__(self) -> None:
        if not self.description_patterns:
            raise InvalidRuleConditionsError(
                self.rule_type.value, "at least one description pattern is required"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DescriptionPatternConditions:
        return cls(
            description_patterns=_string_list(
                cls.rule_type, data, "description_patterns"
            )
        )

    def validate_patterns(self) -> None:
        """Raise on the first pattern that does not compile."""
        for pattern in self.description_patterns:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise InvalidRuleConditionsError(
                    self.rule_type.value, f"invalid pattern {pattern!r}: {exc}"
                ) from exc

    def to_dict(self) -> dict[str, Any]:
        return {"description_patterns": list(self.description_patterns)}


SimpleConditions = Union[
    KeywordConditions,
    AmountRangeConditions,
    CounterpartyConditions,
    DescriptionPatternConditions,
]

# Sub-rule tags used inside a combined rule
_SUB_RULE_TYPES: dict[str, type] = {
    "keyword": KeywordConditions,
    "amount": AmountRangeConditions,
    "counterparty": CounterpartyConditions,
    "description": DescriptionPatternConditions,
}
_SUB_RULE_TAGS: dict[type, str] = {v: k for k, v in _SUB_RULE_TYPES.items()}


@dataclass(frozen=True)
class CombinedConditions:
    """AND/OR combination of simple sub-rules (no nesting)."""

    rules: tuple[SimpleConditions, ...]
    operator: CombinedOperator = CombinedOperator.AND

    rule_type = CategorizationRuleType.COMBINED_RULE

    def __post_init__(self) -> None:
        if not self.rules:
            raise InvalidRuleConditionsError(
                self.rule_type.value, "at least one sub-rule is required"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CombinedConditions:
        raw_operator = str(data.get("operator") or CombinedOperator.AND.value).upper()
        try:
            operator = CombinedOperator(raw_operator)
        except ValueError:
            raise InvalidRuleConditionsError(
                cls.rule_type.value, f"unknown operator {raw_operator}"
            ) from None
        raw_rules = data.get("rules") or []
        if not isinstance(raw_rules, (list, tuple)):
            raise InvalidRuleConditionsError(cls.rule_type.value, "rules must be a list")
        rules = []
        for raw in raw_rules:
            if not isinstance(raw, dict):
                raise InvalidRuleConditionsError(
                    cls.rule_type.value, "each sub-rule must be an object"
                )
            sub_cls = _SUB_RULE_TYPES.get(raw.get("type"))
            if sub_cls is None:
                raise InvalidRuleConditionsError(
                    cls.rule_type.value, f"unknown sub-rule type {raw.get('type')!r}"
                )
            rules.append(sub_cls.from_dict(raw))
        return cls(rules=tuple(rules), operator=operator)

    def validate_patterns(self) -> None:
        for sub in self.rules:
            if isinstance(sub, DescriptionPatternConditions):
                sub.validate_patterns()

    def to_dict(self) -> dict[str, Any]:
        return {
            "operator": self.operator.value,
            "rules": [
                {"type": _SUB_RULE_TAGS[type(sub)], **sub.to_dict()} for sub in self.rules
            ],
        }


RuleConditions = Union[
    KeywordConditions,
    AmountRangeConditions,
    CounterpartyConditions,
    DescriptionPatternConditions,
    CombinedConditions,
]

_CONDITIONS_BY_TYPE: dict[CategorizationRuleType, type] = {
    CategorizationRuleType.KEYWORD_MATCH: KeywordConditions,
    CategorizationRuleType.AMOUNT_RANGE: AmountRangeConditions,
    CategorizationRuleType.COUNTERPARTY_MATCH: CounterpartyConditions,
    CategorizationRuleType.DESCRIPTION_PATTERN: DescriptionPatternConditions,
    CategorizationRuleType.COMBINED_RULE: CombinedConditions,
}


def parse_rule_conditions(
    rule_type: CategorizationRuleType, data: dict[str, Any]
) -> RuleConditions:
    """Parse stored JSON into the condition class of ``rule_type``."""
    if not isinstance(data, dict):
        raise InvalidRuleConditionsError(rule_type.value, "conditions must be an object")
    return _CONDITIONS_BY_TYPE[rule_type].from_dict(data)


def validate_rule_conditions(
    rule_type: CategorizationRuleType, data: dict[str, Any]
) -> RuleConditions:
    """Write-time validation: parse and also require every regex to compile."""
    conditions = parse_rule_conditions(rule_type, data)
    if isinstance(conditions, (DescriptionPatternConditions, CombinedConditions)):
        conditions.validate_patterns()
    return conditions


# =========================================================================
# Facts, matches and suggestions
# =========================================================================


@dataclass(frozen=True)
class TransactionFacts:
    """The parts of a transaction categorization rules look at."""

    transaction_id: UUID
    amount: Decimal
    description: str | None = None
    counterparty_name: str | None = None
    reference: str | None = None


@dataclass(frozen=True)
class RuleMatch:
    is_match: bool
    score: float = 0.0
    reason: str = ""


@dataclass(frozen=True)
class CategorizationRuleRecord:
    id: UUID
    organization_id: UUID
    category_id: UUID
    name: str
    rule_type: CategorizationRuleType
    conditions: dict[str, Any]
    confidence: CategorizationConfidence = CategorizationConfidence.MEDIUM
    priority: int = 0
    is_active: bool = True
    description: str | None = None
    category_name: str | None = None
    match_count: int = 0
    last_matched_at: datetime | None = None


@dataclass(frozen=True)
class SimilarTransaction:
    """A previously categorized transaction found by the frequency heuristic."""

    transaction_id: UUID
    category_id: UUID
    category_name: str


@dataclass(frozen=True)
class CategorySuggestion:
    category_id: UUID
    category_name: str
    confidence: CategorizationConfidence
    score: float
    reason: str
    rule_id: UUID | None = None
    rule_name: str | None = None


@dataclass(frozen=True)
class StoredSuggestion:
    id: UUID
    transaction_id: UUID
    category_id: UUID
    confidence: CategorizationConfidence
    score: float
    reason: str | None
    rule_id: UUID | None = None
    is_accepted: bool | None = None
    accepted_at: datetime | None = None
    accepted_by_id: UUID | None = None


@dataclass(frozen=True)
class CategorizationResult:
    transaction_id: UUID
    suggestions: tuple[CategorySuggestion, ...]
    best_suggestion: CategorySuggestion | None
    is_auto_applied: bool = False


@dataclass(frozen=True)
class CategoryNode:
    """One node of the category tree returned by ``get_hierarchy``."""

    id: UUID
    name: str
    type: CategoryType
    parent_id: UUID | None
    level: int
    path: tuple[str, ...]
    color: str | None = None
    icon: str | None = None
    is_active: bool = True
    children: tuple[CategoryNode, ...] = ()


@dataclass(frozen=True)
class CategoryRecord:
    id: UUID
    organization_id: UUID
    name: str
    type: CategoryType
    parent_id: UUID | None = None
    description: str | None = None
    color: str | None = None
    icon: str | None = None
    is_active: bool = True
    is_system: bool = False


@dataclass(frozen=True)
class CategoryStats:
    category: CategoryRecord
    transaction_count: int
    total_amount: Decimal
    children_count: int
    last_used: datetime | None = None


@dataclass(frozen=True)
class TopCategory:
    category_id: UUID
    name: str
    transaction_count: int
    percentage: int


@dataclass(frozen=True)
class CategoryAnalytics:
    total_categories: int
    categories_by_type: dict[str, int]
    categorized_transactions: int
    uncategorized_transactions: int
    top_categories: tuple[TopCategory, ...]


@dataclass(frozen=True)
class RuleStats:
    rule_id: UUID
    match_count: int
    suggestion_count: int
    accepted_count: int
    rejected_count: int
    accuracy: float | None
    last_matched_at: datetime | None = None


@dataclass(frozen=True)
class UncategorizedRunSummary:
    processed: int
    categorized: int
    results: BulkResult


@dataclass(frozen=True)
class RecategorizationSummary:
    processed: int
    recategorized: int
