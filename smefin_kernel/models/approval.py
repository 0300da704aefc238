"""
Module: smefin_kernel.models.approval
Responsibility: ORM persistence for approval rules, approval requests, their
    per-approver tasks and the append-only approval history.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ only.

Invariants enforced:
    - One request per expense: UNIQUE(expense_id).  Backs the pre-check in
      ApprovalWorkflowService against concurrent submissions.
    - Status columns only hold known enum values (CHECK constraints).
    - Task sequence numbers are unique within a request.
    - Approval history is append-only: ORM UPDATE/DELETE raise
      ImmutabilityViolationError.

Failure modes:
    - IntegrityError on a second request for the same expense.
    - ImmutabilityViolationError on history UPDATE/DELETE.
    - RuleValidationError from ApprovalRuleModel.to_dto() when a stored rule
      names an unknown field, operator or action type.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from smefin_kernel.db.base import Base, OrganizationScoped, TrackedBase, UUIDString
from smefin_kernel.domain.approval import (
    ApprovalAction,
    ApprovalCondition,
    ApprovalDecision,
    ApprovalHistoryRecord,
    ApprovalPriority,
    ApprovalRequestRecord,
    ApprovalRequestStatus,
    ApprovalRuleDefinition,
    ApprovalRuleRecord,
    ApprovalTaskRecord,
    ApprovalTaskStatus,
    RuleAction,
)
from smefin_kernel.exceptions import ImmutabilityViolationError


class ApprovalRuleModel(OrganizationScoped, TrackedBase):
    """Approval rule with conditions and actions stored as typed JSON.

    Conditions/actions are only ever written from a validated
    ``ApprovalRuleDefinition`` (see ``apply_definition``).
    """

    __tablename__ = "approval_rules"

    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_approval_rules_org_name"),
        Index(
            "ix_approval_rules_org_active_priority",
            "organization_id", "is_active", "priority",
        ),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[int] = mapped_column(nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    conditions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    actions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    match_count: Mapped[int] = mapped_column(nullable=False, default=0)
    last_matched_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<ApprovalRule {self.name} priority={self.priority} active={self.is_active}>"

    def apply_definition(self, definition: ApprovalRuleDefinition) -> None:
        self.name = definition.name
        self.description = definition.description
        self.priority = definition.priority
        self.is_active = definition.is_active
        self.conditions = [c.to_dict() for c in definition.conditions]
        self.actions = [a.to_dict() for a in definition.actions]

    def to_dto(self) -> ApprovalRuleRecord:
        """Parse stored JSON back into typed conditions and actions.

        Raises:
            RuleValidationError: If a stored condition or action is invalid.
        """
        return ApprovalRuleRecord(
            id=self.id,
            organization_id=self.organization_id,
            name=self.name,
            description=self.description,
            priority=self.priority,
            is_active=self.is_active,
            conditions=tuple(ApprovalCondition.from_dict(c) for c in self.conditions or ()),
            actions=tuple(RuleAction.from_dict(a) for a in self.actions or ()),
            match_count=self.match_count,
            last_matched_at=self.last_matched_at,
            created_at=self.created_at,
        )


class ApprovalRequestModel(OrganizationScoped, TrackedBase):
    """Approval workflow instance for one expense.

    Terminal on APPROVED, REJECTED, CANCELLED and EXPIRED.
    """

    __tablename__ = "approval_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED', 'CANCELLED', 'EXPIRED')",
            name="ck_approval_requests_valid_status",
        ),
        CheckConstraint(
            "priority IN ('LOW', 'NORMAL', 'HIGH', 'URGENT')",
            name="ck_approval_requests_valid_priority",
        ),
        UniqueConstraint("expense_id", name="uq_approval_requests_expense"),
        Index("ix_approval_requests_org_status", "organization_id", "status"),
        Index("ix_approval_requests_due", "status", "due_date"),
    )

    expense_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("expenses.id"), nullable=False
    )
    requester_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("users.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ApprovalRequestStatus.PENDING.value
    )
    priority: Mapped[str] = mapped_column(
        String(10), nullable=False, default=ApprovalPriority.NORMAL.value
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(nullable=False)
    due_date: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    tasks: Mapped[list[ApprovalTaskModel]] = relationship(
        "ApprovalTaskModel",
        back_populates="request",
        order_by="ApprovalTaskModel.sequence",
        lazy="selectin",
    )
    history: Mapped[list[ApprovalHistoryModel]] = relationship(
        "ApprovalHistoryModel",
        back_populates="request",
        order_by="ApprovalHistoryModel.sequence.desc()",
        lazy="selectin",
        passive_deletes="all",
    )
    expense = relationship("ExpenseModel", lazy="joined")

    def __repr__(self) -> str:
        return f"<ApprovalRequest {self.id} expense={self.expense_id} status={self.status}>"

    def to_dto(self, include_children: bool = True) -> ApprovalRequestRecord:
        return ApprovalRequestRecord(
            id=self.id,
            organization_id=self.organization_id,
            expense_id=self.expense_id,
            requester_id=self.requester_id,
            status=ApprovalRequestStatus(self.status),
            priority=ApprovalPriority(self.priority),
            total_amount=self.total_amount,
            currency=self.currency,
            submitted_at=self.submitted_at,
            reason=self.reason,
            due_date=self.due_date,
            completed_at=self.completed_at,
            tasks=tuple(
                t.to_dto() for t in sorted(self.tasks, key=lambda t: t.sequence)
            ) if include_children else (),
            history=tuple(
                h.to_dto()
                for h in sorted(self.history, key=lambda h: h.sequence, reverse=True)
            ) if include_children else (),
        )


class ApprovalTaskModel(TrackedBase):
    """One approver's decision slot within a request."""

    __tablename__ = "approval_tasks"

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'COMPLETED', 'SKIPPED', 'EXPIRED')",
            name="ck_approval_tasks_valid_status",
        ),
        CheckConstraint(
            "decision IS NULL OR decision IN ('APPROVED', 'REJECTED', 'RETURNED')",
            name="ck_approval_tasks_valid_decision",
        ),
        UniqueConstraint(
            "approval_request_id", "sequence", name="uq_approval_tasks_request_sequence"
        ),
        Index("ix_approval_tasks_approver_status", "approver_id", "status"),
    )

    approval_request_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_requests.id"), nullable=False
    )
    approver_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("users.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ApprovalTaskStatus.PENDING.value
    )
    decision: Mapped[str | None] = mapped_column(String(20), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    sequence: Mapped[int] = mapped_column(nullable=False)
    is_required: Mapped[bool] = mapped_column(nullable=False, default=True)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)

    request: Mapped[ApprovalRequestModel] = relationship(
        "ApprovalRequestModel", back_populates="tasks"
    )

    def __repr__(self) -> str:
        return f"<ApprovalTask {self.id} approver={self.approver_id} status={self.status}>"

    def to_dto(self) -> ApprovalTaskRecord:
        return ApprovalTaskRecord(
            id=self.id,
            approval_request_id=self.approval_request_id,
            approver_id=self.approver_id,
            status=ApprovalTaskStatus(self.status),
            sequence=self.sequence,
            is_required=self.is_required,
            decision=ApprovalDecision(self.decision) if self.decision else None,
            comments=self.comments,
            decided_at=self.decided_at,
        )


class ApprovalHistoryModel(Base):
    """Approval audit trail entry. Append-only.

    ``sequence`` orders entries within a request independently of clock
    resolution.
    """

    __tablename__ = "approval_history"

    __table_args__ = (
        UniqueConstraint(
            "approval_request_id", "sequence", name="uq_approval_history_request_sequence"
        ),
    )

    approval_request_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("approval_requests.id"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("users.id"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    sequence: Mapped[int] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    request: Mapped[ApprovalRequestModel] = relationship(
        "ApprovalRequestModel", back_populates="history"
    )

    def __repr__(self) -> str:
        return f"<ApprovalHistory {self.action} request={self.approval_request_id}>"

    def to_dto(self) -> ApprovalHistoryRecord:
        return ApprovalHistoryRecord(
            id=self.id,
            approval_request_id=self.approval_request_id,
            user_id=self.user_id,
            action=ApprovalAction(self.action),
            from_status=ApprovalRequestStatus(self.from_status) if self.from_status else None,
            to_status=ApprovalRequestStatus(self.to_status) if self.to_status else None,
            comments=self.comments,
            created_at=self.created_at,
        )


# =============================================================================
# ORM-Level Immutability for History (Append-Only)
# =============================================================================


@event.listens_for(ApprovalHistoryModel, "before_update")
def prevent_history_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalHistory",
        entity_id=str(target.id),
        reason="Approval history is append-only -- cannot modify",
    )


@event.listens_for(ApprovalHistoryModel, "before_delete")
def prevent_history_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ApprovalHistory",
        entity_id=str(target.id),
        reason="Approval history is append-only -- cannot delete",
    )
