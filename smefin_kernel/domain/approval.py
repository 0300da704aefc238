"""
Approval domain types (``smefin_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the expense approval workflow.  Defines the request,
task and history vocabularies, the request lifecycle state machine, the
closed set of rule conditions and actions, the fact context an expense is
evaluated against, and the read-side records services hand back.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports from
``db/``, ``models/``, ``services/`` or ``selectors/``.

Invariants enforced
-------------------
* Lifecycle -- ``APPROVAL_REQUEST_TRANSITIONS`` defines the only valid
  request status transitions.  Terminal states have no outgoing edges.
* Closed conditions -- an ``ApprovalCondition`` can only be built from a
  known ``ConditionField`` and ``ConditionOperator``; its value is coerced
  to the field's type when the rule is written, not when it is evaluated.
* Closed actions -- ``RuleAction`` is one of four action types;
  ``require_approval`` must name at least one approver role or user.
* A rule definition has a name, at least one condition and at least one
  action.  ``RuleValidationError`` reports every violation at once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Protocol, Sequence
from uuid import UUID

from smefin_kernel.domain.organization import PaymentMethod, UserRole
from smefin_kernel.exceptions import RuleValidationError


# =========================================================================
# Request / Task / History vocabularies
# =========================================================================


class ApprovalRequestStatus(str, Enum):
    """Approval request lifecycle states."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


APPROVAL_REQUEST_TRANSITIONS: dict[
    ApprovalRequestStatus, frozenset[ApprovalRequestStatus]
] = {
    ApprovalRequestStatus.PENDING: frozenset({
        ApprovalRequestStatus.APPROVED,
        ApprovalRequestStatus.REJECTED,
        ApprovalRequestStatus.CANCELLED,
        ApprovalRequestStatus.EXPIRED,
    }),
    ApprovalRequestStatus.APPROVED: frozenset(),
    ApprovalRequestStatus.REJECTED: frozenset(),
    ApprovalRequestStatus.CANCELLED: frozenset(),
    ApprovalRequestStatus.EXPIRED: frozenset(),
}

TERMINAL_REQUEST_STATUSES: frozenset[ApprovalRequestStatus] = frozenset({
    ApprovalRequestStatus.APPROVED,
    ApprovalRequestStatus.REJECTED,
    ApprovalRequestStatus.CANCELLED,
    ApprovalRequestStatus.EXPIRED,
})


def can_transition(
    current: ApprovalRequestStatus, target: ApprovalRequestStatus
) -> bool:
    return target in APPROVAL_REQUEST_TRANSITIONS.get(current, frozenset())


class ApprovalTaskStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"
    EXPIRED = "EXPIRED"


class ApprovalDecision(str, Enum):
    """Decision an approver records on a task."""

    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    RETURNED = "RETURNED"


class ApprovalPriority(str, Enum):
    """Request urgency.  ``rank`` orders LOW < NORMAL < HIGH < URGENT."""

    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    ApprovalPriority.LOW: 0,
    ApprovalPriority.NORMAL: 1,
    ApprovalPriority.HIGH: 2,
    ApprovalPriority.URGENT: 3,
}


class ApprovalAction(str, Enum):
    """Actions recorded in the append-only approval history."""

    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    RETURNED = "RETURNED"
    CANCELLED = "CANCELLED"
    ESCALATED = "ESCALATED"
    DELEGATED = "DELEGATED"
    EXPIRED = "EXPIRED"


DECISION_HISTORY_ACTIONS: dict[ApprovalDecision, ApprovalAction] = {
    ApprovalDecision.APPROVED: ApprovalAction.APPROVED,
    ApprovalDecision.REJECTED: ApprovalAction.REJECTED,
    ApprovalDecision.RETURNED: ApprovalAction.RETURNED,
}


# =========================================================================
# Rule conditions
# =========================================================================


class ConditionField(str, Enum):
    """Expense facts a rule condition can test."""

    AMOUNT = "amount"
    CATEGORY = "category"
    SUBMITTER_ROLE = "submitter_role"
    DATE = "date"
    VENDOR = "vendor"
    PAYMENT_METHOD = "payment_method"


class ConditionOperator(str, Enum):
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    NE = "ne"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"


LIST_OPERATORS: frozenset[ConditionOperator] = frozenset({
    ConditionOperator.IN,
    ConditionOperator.NOT_IN,
})

STRING_OPERATORS: frozenset[ConditionOperator] = frozenset({
    ConditionOperator.CONTAINS,
    ConditionOperator.STARTS_WITH,
})


def _coerce_scalar(condition_field: ConditionField, raw: Any) -> Any:
    """Coerce one JSON scalar to the Python type of ``condition_field``."""
    if raw is None or isinstance(raw, (list, tuple, dict)):
        raise ValueError(f"expected a scalar value, got {raw!r}")
    if condition_field == ConditionField.AMOUNT:
        if isinstance(raw, bool):
            raise ValueError(f"amount value must be numeric, got {raw!r}")
        try:
            return Decimal(str(raw))
        except InvalidOperation:
            raise ValueError(f"amount value must be numeric, got {raw!r}") from None
    if condition_field == ConditionField.DATE:
        if isinstance(raw, datetime):
            return raw.date()
        if isinstance(raw, date):
            return raw
        try:
            return date.fromisoformat(str(raw)[:10])
        except ValueError:
            raise ValueError(f"date value must be ISO formatted, got {raw!r}") from None
    if isinstance(raw, Enum):
        return raw.value
    return str(raw)


def _encode_scalar(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


@dataclass(frozen=True)
class ApprovalCondition:
    """One ``field operator value`` test.  Conditions of a rule are AND-ed.

    ``value`` is already coerced: a ``Decimal`` for amount comparisons, a
    ``date`` for date comparisons, a ``tuple`` for ``in``/``not_in`` and a
    ``str`` for ``contains``/``starts_with`` and every other field.
    """

    field: ConditionField
    operator: ConditionOperator
    value: Any

    def __post_init__(self) -> None:
        if self.operator in LIST_OPERATORS:
            if not isinstance(self.value, tuple):
                raise RuleValidationError(
                    [f"{self.field.value} {self.operator.value}: value must be a list"]
                )
        elif self.operator in STRING_OPERATORS:
            if not isinstance(self.value, str):
                raise RuleValidationError(
                    [f"{self.field.value} {self.operator.value}: value must be a string"]
                )
        elif self.value is None or isinstance(self.value, (tuple, list, dict)):
            raise RuleValidationError(
                [f"{self.field.value} {self.operator.value}: value must be a scalar"]
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApprovalCondition:
        """Parse and coerce a stored or submitted condition.

        Raises:
            RuleValidationError: unknown field/operator, missing value, or a
                value that cannot be coerced to the field's type.
        """
        if not isinstance(data, dict):
            raise RuleValidationError([f"condition must be an object, got {data!r}"])
        errors: list[str] = []
        raw_field = data.get("field")
        raw_operator = data.get("operator")
        if not raw_field:
            errors.append("condition field is required")
        if not raw_operator:
            errors.append("condition operator is required")
        if "value" not in data or data["value"] is None:
            errors.append("condition value is required")
        if errors:
            raise RuleValidationError(errors)

        try:
            condition_field = ConditionField(raw_field)
        except ValueError:
            errors.append(f"unknown condition field: {raw_field}")
        try:
            operator = ConditionOperator(raw_operator)
        except ValueError:
            errors.append(f"unknown condition operator: {raw_operator}")
        if errors:
            raise RuleValidationError(errors)

        raw_value = data["value"]
        try:
            if operator in LIST_OPERATORS:
                if not isinstance(raw_value, (list, tuple)):
                    raise ValueError(f"{operator.value} requires a list value")
                value: Any = tuple(_coerce_scalar(condition_field, v) for v in raw_value)
            elif operator in STRING_OPERATORS:
                if isinstance(raw_value, (list, tuple, dict)):
                    raise ValueError(f"{operator.value} requires a string value")
                value = str(raw_value)
            else:
                value = _coerce_scalar(condition_field, raw_value)
        except ValueError as exc:
            raise RuleValidationError(
                [f"{condition_field.value} {operator.value}: {exc}"]
            ) from exc

        return cls(field=condition_field, operator=operator, value=value)

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.value, tuple):
            value: Any = [_encode_scalar(v) for v in self.value]
        else:
            value = _encode_scalar(self.value)
        return {
            "field": self.field.value,
            "operator": self.operator.value,
            "value": value,
        }


# =========================================================================
# Rule actions
# =========================================================================


class RuleActionType(str, Enum):
    REQUIRE_APPROVAL = "require_approval"
    AUTO_APPROVE = "auto_approve"
    NOTIFY = "notify"
    ESCALATE = "escalate"


@dataclass(frozen=True)
class RuleAction:
    """What a matched rule asks for.

    Only ``require_approval`` produces approval requirements; the other
    types are stored and validated but carry no workflow effect.
    """

    type: RuleActionType
    approver_roles: tuple[UserRole, ...] = ()
    approver_users: tuple[UUID, ...] = ()
    escalation_time_hours: int | None = None
    notification_template: str | None = None
    priority: ApprovalPriority = ApprovalPriority.NORMAL

    def __post_init__(self) -> None:
        errors = []
        if (
            self.type == RuleActionType.REQUIRE_APPROVAL
            and not self.approver_roles
            and not self.approver_users
        ):
            errors.append(
                "require_approval action must specify approver_roles or approver_users"
            )
        if self.escalation_time_hours is not None and self.escalation_time_hours <= 0:
            errors.append("escalation_time_hours must be positive")
        if errors:
            raise RuleValidationError(errors)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RuleAction:
        if not isinstance(data, dict):
            raise RuleValidationError([f"action must be an object, got {data!r}"])
        raw_type = data.get("type")
        if not raw_type:
            raise RuleValidationError(["action type is required"])
        errors: list[str] = []
        try:
            action_type = RuleActionType(raw_type)
        except ValueError:
            raise RuleValidationError([f"unknown action type: {raw_type}"]) from None

        roles: list[UserRole] = []
        for raw_role in data.get("approver_roles") or ():
            try:
                roles.append(UserRole(raw_role))
            except ValueError:
                errors.append(f"unknown approver role: {raw_role}")
        users: list[UUID] = []
        for raw_user in data.get("approver_users") or ():
            try:
                users.append(raw_user if isinstance(raw_user, UUID) else UUID(str(raw_user)))
            except ValueError:
                errors.append(f"invalid approver user id: {raw_user}")
        raw_priority = data.get("priority") or ApprovalPriority.NORMAL.value
        try:
            priority = ApprovalPriority(raw_priority)
        except ValueError:
            errors.append(f"unknown priority: {raw_priority}")
            priority = ApprovalPriority.NORMAL
        hours = data.get("escalation_time_hours")
        if hours is not None:
            if isinstance(hours, bool) or not isinstance(hours, int):
                errors.append("escalation_time_hours must be an integer")
                hours = None
        if errors:
            raise RuleValidationError(errors)

        return cls(
            type=action_type,
            approver_roles=tuple(roles),
            approver_users=tuple(users),
            escalation_time_hours=hours,
            notification_template=data.get("notification_template"),
            priority=priority,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value, "priority": self.priority.value}
        if self.approver_roles:
            data["approver_roles"] = [r.value for r in self.approver_roles]
        if self.approver_users:
            data["approver_users"] = [str(u) for u in self.approver_users]
        if self.escalation_time_hours is not None:
            data["escalation_time_hours"] = self.escalation_time_hours
        if self.notification_template is not None:
            data["notification_template"] = self.notification_template
        return data


# =========================================================================
# Rule definitions and records
# =========================================================================


@dataclass(frozen=True)
class ApprovalRuleDefinition:
    """A validated approval rule as submitted by an administrator."""

    name: str
    conditions: tuple[ApprovalCondition, ...]
    actions: tuple[RuleAction, ...]
    priority: int = 0
    description: str | None = None
    is_active: bool = True

    def __post_init__(self) -> None:
        errors = []
        if not self.name or not self.name.strip():
            errors.append("Rule name is required")
        if not self.conditions:
            errors.append("At least one condition is required")
        if not self.actions:
            errors.append("At least one action is required")
        if errors:
            raise RuleValidationError(errors)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApprovalRuleDefinition:
        """Build a definition from API/config input, collecting every error."""
        errors: list[str] = []
        conditions: list[ApprovalCondition] = []
        actions: list[RuleAction] = []
        for raw in data.get("conditions") or ():
            try:
                conditions.append(ApprovalCondition.from_dict(raw))
            except RuleValidationError as exc:
                errors.extend(exc.errors)
        for raw in data.get("actions") or ():
            try:
                actions.append(RuleAction.from_dict(raw))
            except RuleValidationError as exc:
                errors.extend(exc.errors)

        name = data.get("name") or ""
        if not name.strip():
            errors.append("Rule name is required")
        if not data.get("conditions"):
            errors.append("At least one condition is required")
        if not data.get("actions"):
            errors.append("At least one action is required")
        priority = data.get("priority", 0)
        if isinstance(priority, bool) or not isinstance(priority, int):
            errors.append(f"priority must be an integer, got {priority!r}")
        if errors:
            raise RuleValidationError(errors)

        return cls(
            name=name.strip(),
            conditions=tuple(conditions),
            actions=tuple(actions),
            priority=priority,
            description=data.get("description"),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass(frozen=True)
class ApprovalRuleRecord:
    """A stored approval rule, parsed back into typed conditions/actions."""

    id: UUID
    organization_id: UUID
    name: str
    priority: int
    is_active: bool
    conditions: tuple[ApprovalCondition, ...]
    actions: tuple[RuleAction, ...]
    description: str | None = None
    match_count: int = 0
    last_matched_at: datetime | None = None
    created_at: datetime | None = None


# =========================================================================
# Evaluation inputs and outputs
# =========================================================================


@dataclass(frozen=True)
class ExpenseContext:
    """Facts about one expense, as seen by approval rule conditions."""

    expense_id: UUID
    organization_id: UUID
    amount: Decimal
    currency: str
    submitter_id: UUID
    submitter_role: UserRole = UserRole.USER
    category_id: UUID | None = None
    vendor: str | None = None
    payment_method: PaymentMethod | None = None
    expense_date: date | None = None
    description: str | None = None


@dataclass(frozen=True)
class ApprovalRequirement:
    """Who must approve, derived from one ``require_approval`` action.

    Never persisted; exists only within one evaluation.
    """

    rule_id: UUID
    rule_name: str
    rule_priority: int
    approver_roles: tuple[UserRole, ...] = ()
    approver_users: tuple[UUID, ...] = ()
    escalation_time_hours: int | None = None
    notification_template: str | None = None
    priority: ApprovalPriority = ApprovalPriority.NORMAL


@dataclass(frozen=True)
class ApprovalTaskRecord:
    id: UUID
    approval_request_id: UUID
    approver_id: UUID
    status: ApprovalTaskStatus
    sequence: int
    is_required: bool = True
    decision: ApprovalDecision | None = None
    comments: str | None = None
    decided_at: datetime | None = None


@dataclass(frozen=True)
class ApprovalHistoryRecord:
    id: UUID
    approval_request_id: UUID
    user_id: UUID
    action: ApprovalAction
    from_status: ApprovalRequestStatus | None
    to_status: ApprovalRequestStatus | None
    comments: str | None
    created_at: datetime


@dataclass(frozen=True)
class ApprovalRequestRecord:
    """An approval request with its tasks (by sequence) and history (newest first)."""

    id: UUID
    organization_id: UUID
    expense_id: UUID
    requester_id: UUID
    status: ApprovalRequestStatus
    priority: ApprovalPriority
    total_amount: Decimal
    currency: str
    submitted_at: datetime
    reason: str | None = None
    due_date: datetime | None = None
    completed_at: datetime | None = None
    tasks: tuple[ApprovalTaskRecord, ...] = ()
    history: tuple[ApprovalHistoryRecord, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES


@dataclass(frozen=True)
class PendingApproval:
    """A pending task together with the request it belongs to."""

    task: ApprovalTaskRecord
    request: ApprovalRequestRecord


@dataclass(frozen=True)
class ApprovalStats:
    total_requests: int
    pending_requests: int
    approved_requests: int
    rejected_requests: int
    average_approval_time_hours: float
    requests_by_status: dict[str, int] = field(default_factory=dict)
    requests_by_priority: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ApprovalRequestFilter:
    requester_id: UUID | None = None
    approver_id: UUID | None = None
    status: ApprovalRequestStatus | None = None
    priority: ApprovalPriority | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None


# =========================================================================
# Collaborator protocols
# =========================================================================


class ApprovalNotifier(Protocol):
    """Delivery channel for approval notifications (fire-and-forget)."""

    def approval_requested(
        self, request: ApprovalRequestRecord, approver_ids: Sequence[UUID]
    ) -> None:
        ...

    def approval_completed(self, request: ApprovalRequestRecord) -> None:
        ...
