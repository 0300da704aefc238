"""
Module: smefin_kernel.selectors.approval_selector
Responsibility: Read-only queries over approval requests and tasks: filtered
    and paginated listings, an approver's pending queue and summary stats.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Read-only: no mutations.
    - Every query is scoped to one organization.
    - The pending queue is ordered by request priority (URGENT first), then
      by submission time (oldest first).

Failure modes:
    - Returns empty pages/lists when nothing matches; never raises on
      absence of data.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import case, exists, func, or_, select

from smefin_kernel.domain.approval import (
    ApprovalPriority,
    ApprovalRequestFilter,
    ApprovalRequestRecord,
    ApprovalRequestStatus,
    ApprovalStats,
    ApprovalTaskStatus,
    PendingApproval,
)
from smefin_kernel.domain.results import Page, PageRequest
from smefin_kernel.models.approval import ApprovalRequestModel, ApprovalTaskModel
from smefin_kernel.models.organization import ExpenseModel
from smefin_kernel.selectors.base import BaseSelector

_PRIORITY_RANK = case(
    {p.value: p.rank for p in ApprovalPriority},
    value=ApprovalRequestModel.priority,
    else_=0,
)


class ApprovalSelector(BaseSelector):
    """Queries for approval listings, queues and dashboards."""

    def list_requests(
        self,
        organization_id: UUID,
        filters: ApprovalRequestFilter | None = None,
        page: PageRequest | None = None,
    ) -> Page[ApprovalRequestRecord]:
        """Newest-first listing of requests matching ``filters``."""
        filters = filters or ApprovalRequestFilter()
        page = page or PageRequest()

        conditions = [ApprovalRequestModel.organization_id == organization_id]
        if filters.status is not None:
            conditions.append(ApprovalRequestModel.status == filters.status.value)
        if filters.priority is not None:
            conditions.append(ApprovalRequestModel.priority == filters.priority.value)
        if filters.requester_id is not None:
            conditions.append(ApprovalRequestModel.requester_id == filters.requester_id)
        if filters.date_from is not None:
            conditions.append(ApprovalRequestModel.submitted_at >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(ApprovalRequestModel.submitted_at <= filters.date_to)
        if filters.approver_id is not None:
            conditions.append(
                exists().where(
                    ApprovalTaskModel.approval_request_id == ApprovalRequestModel.id,
                    ApprovalTaskModel.approver_id == filters.approver_id,
                )
            )
        if filters.search:
            term = filters.search.strip()
            conditions.append(
                or_(
                    ExpenseModel.description.icontains(term, autoescape=True),
                    ExpenseModel.vendor.icontains(term, autoescape=True),
                    ApprovalRequestModel.reason.icontains(term, autoescape=True),
                )
            )

        expense_join = ExpenseModel.id == ApprovalRequestModel.expense_id
        total = self.session.execute(
            select(func.count(ApprovalRequestModel.id))
            .select_from(ApprovalRequestModel)
            .join(ExpenseModel, expense_join)
            .where(*conditions)
        ).scalar_one()
        models = self.session.execute(
            select(ApprovalRequestModel)
            .join(ExpenseModel, expense_join)
            .where(*conditions)
            .order_by(
                ApprovalRequestModel.submitted_at.desc(), ApprovalRequestModel.id
            )
            .offset(page.offset)
            .limit(page.limit)
        ).unique().scalars().all()

        return Page(
            items=tuple(m.to_dto() for m in models),
            total=total,
            page=page.page,
            limit=page.limit,
        )

    def pending_tasks_for_approver(
        self, organization_id: UUID, approver_id: UUID
    ) -> list[PendingApproval]:
        rows = self.session.execute(
            select(ApprovalTaskModel, ApprovalRequestModel)
            .join(ApprovalRequestModel)
            .where(
                ApprovalRequestModel.organization_id == organization_id,
                ApprovalRequestModel.status == ApprovalRequestStatus.PENDING.value,
                ApprovalTaskModel.approver_id == approver_id,
                ApprovalTaskModel.status == ApprovalTaskStatus.PENDING.value,
            )
            .order_by(
                _PRIORITY_RANK.desc(),
                ApprovalRequestModel.submitted_at.asc(),
                ApprovalTaskModel.sequence.asc(),
            )
        ).unique().all()
        return [
            PendingApproval(task=task.to_dto(), request=request.to_dto())
            for task, request in rows
        ]

    def stats(
        self,
        organization_id: UUID,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> ApprovalStats:
        """Counts by status and priority plus average time to a decision.

        The average covers APPROVED and REJECTED requests only, in hours,
        rounded to two decimals.
        """
        conditions = [ApprovalRequestModel.organization_id == organization_id]
        if date_from is not None:
            conditions.append(ApprovalRequestModel.submitted_at >= date_from)
        if date_to is not None:
            conditions.append(ApprovalRequestModel.submitted_at <= date_to)

        by_status = dict(
            self.session.execute(
                select(ApprovalRequestModel.status, func.count())
                .where(*conditions)
                .group_by(ApprovalRequestModel.status)
            ).all()
        )
        by_priority = dict(
            self.session.execute(
                select(ApprovalRequestModel.priority, func.count())
                .where(*conditions)
                .group_by(ApprovalRequestModel.priority)
            ).all()
        )

        decided = self.session.execute(
            select(ApprovalRequestModel.submitted_at, ApprovalRequestModel.completed_at)
            .where(
                *conditions,
                ApprovalRequestModel.status.in_([
                    ApprovalRequestStatus.APPROVED.value,
                    ApprovalRequestStatus.REJECTED.value,
                ]),
                ApprovalRequestModel.completed_at.is_not(None),
            )
        ).all()
        if decided:
            total_seconds = sum(
                (completed - submitted).total_seconds() for submitted, completed in decided
            )
            average_hours = round(total_seconds / len(decided) / 3600, 2)
        else:
            average_hours = 0.0

        return ApprovalStats(
            total_requests=sum(by_status.values()),
            pending_requests=by_status.get(ApprovalRequestStatus.PENDING.value, 0),
            approved_requests=by_status.get(ApprovalRequestStatus.APPROVED.value, 0),
            rejected_requests=by_status.get(ApprovalRequestStatus.REJECTED.value, 0),
            average_approval_time_hours=average_hours,
            requests_by_status={s.value: by_status.get(s.value, 0) for s in ApprovalRequestStatus},
            requests_by_priority={
                p.value: by_priority.get(p.value, 0) for p in ApprovalPriority
            },
        )
