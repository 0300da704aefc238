"""
Pure decision engines.

Each module is a pure calculation layer with zero I/O: no database, no clock
access.  Services in ``smefin_kernel.services`` load data, call into these
functions and persist the results.

    approval        rule conditions, requirements, priority, due date, completion
    categorization  rule evaluators, confidence tiers, frequency suggestions, ranking
    vat             Zambian VAT arithmetic
    barcode         EAN-13 / UPC check digits
"""

from smefin_engines.approval import (
    calculate_due_date,
    determine_request_priority,
    evaluate_completion,
    evaluate_condition,
    evaluate_conditions,
    evaluate_rules,
    merge_approvers,
    order_requirements,
)
from smefin_engines.barcode import validate_barcode
from smefin_engines.categorization import (
    best_suggestion,
    confidence_for_score,
    distinct_by_category,
    evaluate_rule,
    frequency_suggestions,
    rank_suggestions,
    should_auto_apply,
)
from smefin_engines.vat import VatCalculator

__all__ = [
    "calculate_due_date",
    "determine_request_priority",
    "evaluate_completion",
    "evaluate_condition",
    "evaluate_conditions",
    "evaluate_rules",
    "merge_approvers",
    "order_requirements",
    "validate_barcode",
    "best_suggestion",
    "confidence_for_score",
    "distinct_by_category",
    "evaluate_rule",
    "frequency_suggestions",
    "rank_suggestions",
    "should_auto_apply",
    "VatCalculator",
]
