"""
smefin_engines.approval -- Pure approval rule evaluation engine.

Responsibility:
    Evaluate approval rule conditions against an expense context, turn the
    ``require_approval`` actions of matched rules into ordered approval
    requirements, derive request priority and due date from them, and
    aggregate task decisions into a request outcome.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import smefin_kernel/domain/ types and the logger.

Invariants enforced:
    - Deterministic: the same rules (in the same order) and the same context
      always produce the same requirement list in the same order.
    - AND semantics: a rule matches iff every one of its conditions holds.
    - Requirements are ordered by the owning rule's priority, highest first.
      The sort is stable so rules of equal priority keep their input order.
    - Completion: any completed required REJECTED task rejects the request;
      this is checked before the all-completed test that approves it.
    - Purity: no clock access (``now`` is a parameter), no database.

Failure modes:
    - An operator without an evaluator logs ``approval_condition_unknown_operator``
      and evaluates to False (fail-closed).
    - Ordered comparisons against a missing fact, or between incomparable
      types, evaluate to False.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Sequence
from uuid import UUID

from smefin_kernel.domain.approval import (
    ApprovalCondition,
    ApprovalDecision,
    ApprovalPriority,
    ApprovalRequestStatus,
    ApprovalRequirement,
    ApprovalRuleRecord,
    ApprovalTaskRecord,
    ApprovalTaskStatus,
    ConditionField,
    ConditionOperator,
    ExpenseContext,
    RuleActionType,
)
from smefin_kernel.logging_config import get_logger

logger = get_logger("engines.approval")


# =========================================================================
# Condition evaluation
# =========================================================================


def resolve_field(condition_field: ConditionField, context: ExpenseContext) -> Any:
    """Return the context value a condition field refers to.

    Enum-valued facts resolve to their string value and the category
    resolves to the string form of its id, so conditions compare against
    plain stored values.
    """
    if condition_field == ConditionField.AMOUNT:
        return context.amount
    if condition_field == ConditionField.CATEGORY:
        return str(context.category_id) if context.category_id is not None else None
    if condition_field == ConditionField.SUBMITTER_ROLE:
        return context.submitter_role.value if context.submitter_role else None
    if condition_field == ConditionField.DATE:
        return context.expense_date
    if condition_field == ConditionField.VENDOR:
        return context.vendor
    if condition_field == ConditionField.PAYMENT_METHOD:
        return context.payment_method.value if context.payment_method else None
    logger.warning(
        "approval_condition_unknown_field",
        extra={"field": str(condition_field)},
    )
    return None


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def _apply(actual: Any, expected: Any) -> bool:
        if actual is None:
            return False
        try:
            return compare(actual, expected)
        except TypeError:
            return False

    return _apply


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    return str(expected).lower() in str(actual).lower()


def _starts_with(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    return str(actual).lower().startswith(str(expected).lower())


_OPERATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.GT: _ordered(lambda a, e: a > e),
    ConditionOperator.GTE: _ordered(lambda a, e: a >= e),
    ConditionOperator.LT: _ordered(lambda a, e: a < e),
    ConditionOperator.LTE: _ordered(lambda a, e: a <= e),
    ConditionOperator.EQ: lambda a, e: a == e,
    ConditionOperator.NE: lambda a, e: a != e,
    ConditionOperator.IN: lambda a, e: a in e,
    ConditionOperator.NOT_IN: lambda a, e: a not in e,
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.STARTS_WITH: _starts_with,
}


def evaluate_condition(condition: ApprovalCondition, context: ExpenseContext) -> bool:
    """Evaluate one condition against the context."""
    evaluator = _OPERATORS.get(condition.operator)
    if evaluator is None:
        logger.warning(
            "approval_condition_unknown_operator",
            extra={"operator": str(condition.operator)},
        )
        return False
    return evaluator(resolve_field(condition.field, context), condition.value)


def evaluate_conditions(
    conditions: Iterable[ApprovalCondition], context: ExpenseContext
) -> bool:
    """AND-combine conditions.  Short-circuits on the first failure."""
    return all(evaluate_condition(c, context) for c in conditions)


# =========================================================================
# Requirements
# =========================================================================


def requirements_for_rule(rule: ApprovalRuleRecord) -> list[ApprovalRequirement]:
    """One requirement per ``require_approval`` action of a matched rule."""
    return [
        ApprovalRequirement(
            rule_id=rule.id,
            rule_name=rule.name,
            rule_priority=rule.priority,
            approver_roles=action.approver_roles,
            approver_users=action.approver_users,
            escalation_time_hours=action.escalation_time_hours,
            notification_template=action.notification_template,
            priority=action.priority,
        )
        for action in rule.actions
        if action.type == RuleActionType.REQUIRE_APPROVAL
    ]


def order_requirements(
    requirements: Sequence[ApprovalRequirement],
) -> list[ApprovalRequirement]:
    """Order by owning rule priority, highest first (stable)."""
    return sorted(requirements, key=lambda r: r.rule_priority, reverse=True)


def evaluate_rules(
    rules: Sequence[ApprovalRuleRecord],
    context: ExpenseContext,
) -> tuple[list[ApprovalRequirement], list[ApprovalRuleRecord]]:
    """Evaluate active rules against the context.

    Args:
        rules: Rules in evaluation order (priority desc, created_at asc).
            Inactive rules are ignored.
        context: The expense facts.

    Returns:
        ``(requirements, matched_rules)``.  Requirements are ordered by
        ``order_requirements``; matched rules keep input order.
    """
    requirements: list[ApprovalRequirement] = []
    matched: list[ApprovalRuleRecord] = []
    for rule in rules:
        if not rule.is_active:
            continue
        if evaluate_conditions(rule.conditions, context):
            matched.append(rule)
            requirements.extend(requirements_for_rule(rule))
    return order_requirements(requirements), matched


def determine_request_priority(
    requirements: Iterable[ApprovalRequirement],
) -> ApprovalPriority:
    """Highest declared requirement priority; LOW when there are none."""
    best = ApprovalPriority.LOW
    for requirement in requirements:
        if requirement.priority.rank > best.rank:
            best = requirement.priority
    return best


def calculate_due_date(
    requirements: Iterable[ApprovalRequirement], now: datetime
) -> datetime | None:
    """``now`` plus the shortest escalation window, or None if none is set."""
    hours = [
        r.escalation_time_hours
        for r in requirements
        if r.escalation_time_hours is not None and r.escalation_time_hours > 0
    ]
    if not hours:
        return None
    return now + timedelta(hours=min(hours))


def merge_approvers(
    explicit_users: Iterable[UUID], role_users: Iterable[UUID]
) -> list[UUID]:
    """Explicit users first, then role holders, de-duplicated in order."""
    seen: set[UUID] = set()
    merged: list[UUID] = []
    for user_id in (*explicit_users, *role_users):
        if user_id not in seen:
            seen.add(user_id)
            merged.append(user_id)
    return merged


# =========================================================================
# Completion
# =========================================================================


def evaluate_completion(
    tasks: Iterable[ApprovalTaskRecord],
) -> ApprovalRequestStatus | None:
    """Aggregate task outcomes into a request outcome.

    Returns:
        REJECTED if any completed required task was rejected; APPROVED if
        every required task is completed; otherwise None (still pending).
        A request with no required tasks stays pending.
    """
    required = [t for t in tasks if t.is_required]
    if not required:
        return None

    completed = [t for t in required if t.status == ApprovalTaskStatus.COMPLETED]
    if any(t.decision == ApprovalDecision.REJECTED for t in completed):
        return ApprovalRequestStatus.REJECTED
    if len(completed) == len(required):
        return ApprovalRequestStatus.APPROVED
    return None
