"""
smefin_kernel.services.approval_workflow_service -- Expense approval lifecycle.

Responsibility:
    Submits expenses for approval (rule evaluation, approver fan-out, task
    creation), records approver decisions, aggregates task outcomes into a
    request outcome, cancels pending requests and expires overdue tasks.
    Rule evaluation and completion logic are delegated to
    ``smefin_engines.approval``.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/, engines,
    smefin_config.

Invariants enforced:
    - Only DRAFT expenses can be submitted; at most one request per expense
      (service check + UNIQUE(expense_id)).
    - Request status transitions follow APPROVAL_REQUEST_TRANSITIONS.
    - Only the assigned approver can decide a task, and only while it is
      PENDING.  The task row is locked FOR UPDATE where supported.
    - Every submission, decision and cancellation appends one history row.
    - Notifications are fire-and-forget: a notifier failure is logged and
      never rolls back the workflow change.

Failure modes:
    - ExpenseNotFoundError, ExpenseNotDraftError, DuplicateApprovalRequestError
      on submission.
    - ApprovalTaskNotFoundError, TaskNotPendingError, UnauthorizedApproverError
      on decisions.
    - ApprovalRequestNotFoundError, ApprovalRequestNotPendingError on
      cancellation.
"""

from __future__ import annotations

from typing import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from smefin_config import get_active_config
from smefin_engines.approval import (
    calculate_due_date,
    determine_request_priority,
    evaluate_completion,
    merge_approvers,
)
from smefin_kernel.domain.approval import (
    DECISION_HISTORY_ACTIONS,
    ApprovalAction,
    ApprovalDecision,
    ApprovalNotifier,
    ApprovalPriority,
    ApprovalRequestRecord,
    ApprovalRequestStatus,
    ApprovalRequirement,
    ApprovalTaskRecord,
    ApprovalTaskStatus,
    ExpenseContext,
    can_transition,
)
from smefin_kernel.domain.clock import Clock
from smefin_kernel.domain.organization import ExpenseStatus, PaymentMethod, UserRole
from smefin_kernel.domain.results import BulkItemResult, BulkOutcome, BulkResult
from smefin_kernel.exceptions import (
    ApprovalRequestNotFoundError,
    ApprovalRequestNotPendingError,
    ApprovalTaskNotFoundError,
    DuplicateApprovalRequestError,
    ExpenseNotDraftError,
    ExpenseNotFoundError,
    NotFoundError,
    SmeFinError,
    TaskNotPendingError,
    UnauthorizedApproverError,
)
from smefin_kernel.logging_config import get_logger
from smefin_kernel.models.approval import (
    ApprovalHistoryModel,
    ApprovalRequestModel,
    ApprovalTaskModel,
)
from smefin_kernel.models.organization import ExpenseModel, UserModel
from smefin_kernel.services.approval_rule_service import ApprovalRulesEngine
from smefin_kernel.services.base import BaseService
from smefin_kernel.services.notification import LoggingNotifier

logger = get_logger("services.approval_workflow")

_EXPENSE_STATUS_FOR_OUTCOME = {
    ApprovalRequestStatus.APPROVED: ExpenseStatus.APPROVED,
    ApprovalRequestStatus.REJECTED: ExpenseStatus.REJECTED,
}


class ApprovalWorkflowService(BaseService):
    """Drives approval requests from submission to a terminal outcome."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        notifier: ApprovalNotifier | None = None,
        rules_engine: ApprovalRulesEngine | None = None,
    ):
        super().__init__(session, clock)
        self.notifier = notifier or LoggingNotifier()
        self.rules_engine = rules_engine or ApprovalRulesEngine(session, self.clock)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_expense_for_approval(
        self,
        expense_id: UUID,
        organization_id: UUID,
        requester_id: UUID,
        reason: str | None = None,
        priority: ApprovalPriority | None = None,
    ) -> ApprovalRequestRecord | None:
        """Submit a DRAFT expense for approval.

        Returns:
            The new request, or None when no rule requires approval (the
            expense is approved straight away).
        """
        expense = self._load_expense(expense_id, organization_id)
        if expense.status != ExpenseStatus.DRAFT.value:
            raise ExpenseNotDraftError(str(expense_id), expense.status)

        existing_id = self.session.execute(
            select(ApprovalRequestModel.id).where(
                ApprovalRequestModel.expense_id == expense_id
            )
        ).scalar_one_or_none()
        if existing_id is not None:
            raise DuplicateApprovalRequestError(str(expense_id), str(existing_id))

        context = self._build_context(expense)
        requirements = self.rules_engine.evaluate_expense(context)
        now = self.clock.now()

        if not requirements:
            expense.status = ExpenseStatus.APPROVED.value
            expense.updated_at = now
            self.session.flush()
            logger.info(
                "expense_auto_approved",
                extra={
                    "organization_id": str(organization_id),
                    "expense_id": str(expense_id),
                    "amount": expense.amount,
                },
            )
            return None

        request = ApprovalRequestModel(
            organization_id=organization_id,
            expense_id=expense_id,
            requester_id=requester_id,
            status=ApprovalRequestStatus.PENDING.value,
            priority=(priority or determine_request_priority(requirements)).value,
            reason=reason,
            total_amount=expense.amount,
            currency=expense.currency,
            submitted_at=now,
            due_date=calculate_due_date(requirements, now),
            created_at=now,
            updated_at=now,
        )
        try:
            with self.session.begin_nested():
                self.session.add(request)
                self.session.flush()
        except IntegrityError:
            logger.warning(
                "approval_request_duplicate_race",
                extra={"expense_id": str(expense_id)},
            )
            raise DuplicateApprovalRequestError(str(expense_id)) from None

        approver_ids = self._create_tasks(request, requirements)
        if not approver_ids:
            logger.warning(
                "approval_request_without_approvers",
                extra={
                    "organization_id": str(organization_id),
                    "approval_request_id": str(request.id),
                    "rules": sorted({r.rule_name for r in requirements}),
                },
            )

        expense.status = ExpenseStatus.PENDING_APPROVAL.value
        expense.updated_at = now
        self._append_history(
            request,
            user_id=requester_id,
            action=ApprovalAction.SUBMITTED,
            from_status=None,
            to_status=ApprovalRequestStatus.PENDING,
            comments=reason,
        )
        self.session.flush()

        record = request.to_dto()
        logger.info(
            "approval_request_submitted",
            extra={
                "organization_id": str(organization_id),
                "approval_request_id": str(request.id),
                "expense_id": str(expense_id),
                "priority": record.priority.value,
                "task_count": len(record.tasks),
                "due_date": record.due_date,
            },
        )
        self._notify_requested(record, approver_ids)
        return record

    def _load_expense(self, expense_id: UUID, organization_id: UUID) -> ExpenseModel:
        expense = self.session.execute(
            select(ExpenseModel).where(
                ExpenseModel.id == expense_id,
                ExpenseModel.organization_id == organization_id,
            )
        ).scalar_one_or_none()
        if expense is None:
            raise ExpenseNotFoundError(str(expense_id))
        return expense

    def _build_context(self, expense: ExpenseModel) -> ExpenseContext:
        submitter = expense.submitted_by
        role = UserRole(submitter.role) if submitter is not None else UserRole.USER
        return ExpenseContext(
            expense_id=expense.id,
            organization_id=expense.organization_id,
            amount=expense.amount,
            currency=expense.currency,
            submitter_id=expense.submitted_by_id,
            submitter_role=role,
            category_id=expense.category_id,
            vendor=expense.vendor,
            payment_method=(
                PaymentMethod(expense.payment_method) if expense.payment_method else None
            ),
            expense_date=expense.expense_date,
            description=expense.description,
        )

    def _role_holders(
        self, organization_id: UUID, roles: Sequence[UserRole]
    ) -> list[UUID]:
        if not roles:
            return []
        status = get_active_config().approval.default_approver_role_status
        return list(
            self.session.execute(
                select(UserModel.id)
                .where(
                    UserModel.organization_id == organization_id,
                    UserModel.role.in_([r.value for r in roles]),
                    UserModel.status == status,
                )
                .order_by(UserModel.created_at.asc(), UserModel.email.asc())
            ).scalars()
        )

    def _create_tasks(
        self, request: ApprovalRequestModel, requirements: Sequence[ApprovalRequirement]
    ) -> list[UUID]:
        """One task per approver per requirement; sequence is request-wide."""
        sequence = 0
        notified: list[UUID] = []
        for requirement in requirements:
            approvers = merge_approvers(
                requirement.approver_users,
                self._role_holders(request.organization_id, requirement.approver_roles),
            )
            for approver_id in approvers:
                sequence += 1
                request.tasks.append(
                    ApprovalTaskModel(
                        approver_id=approver_id,
                        status=ApprovalTaskStatus.PENDING.value,
                        sequence=sequence,
                        is_required=True,
                        created_at=request.submitted_at,
                        updated_at=request.submitted_at,
                    )
                )
                if approver_id not in notified:
                    notified.append(approver_id)
        self.session.flush()
        return notified

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def process_approval_decision(
        self,
        task_id: UUID,
        organization_id: UUID,
        approver_id: UUID,
        decision: ApprovalDecision,
        comments: str | None = None,
    ) -> ApprovalTaskRecord:
        decision = ApprovalDecision(decision)
        task = self.session.execute(
            select(ApprovalTaskModel)
            .join(ApprovalRequestModel)
            .where(
                ApprovalTaskModel.id == task_id,
                ApprovalRequestModel.organization_id == organization_id,
            )
            .with_for_update()
        ).scalar_one_or_none()
        if task is None:
            raise ApprovalTaskNotFoundError(str(task_id))
        if task.status != ApprovalTaskStatus.PENDING.value:
            raise TaskNotPendingError(str(task_id), task.status)
        if task.approver_id != approver_id:
            raise UnauthorizedApproverError(str(task_id), str(approver_id))

        request = task.request
        current = ApprovalRequestStatus(request.status)
        if current != ApprovalRequestStatus.PENDING:
            raise TaskNotPendingError(str(task_id), f"request {current.value}")

        now = self.clock.now()
        task.status = ApprovalTaskStatus.COMPLETED.value
        task.decision = decision.value
        task.comments = comments
        task.decided_at = now
        task.updated_at = now
        self.session.flush()

        outcome = evaluate_completion(t.to_dto() for t in request.tasks)
        if outcome is not None and can_transition(current, outcome):
            request.status = outcome.value
            request.completed_at = now
            request.updated_at = now
            expense = request.expense
            expense.status = _EXPENSE_STATUS_FOR_OUTCOME[outcome].value
            expense.updated_at = now

        self._append_history(
            request,
            user_id=approver_id,
            action=DECISION_HISTORY_ACTIONS[decision],
            from_status=current,
            to_status=ApprovalRequestStatus(request.status),
            comments=comments,
        )
        self.session.flush()

        logger.info(
            "approval_decision_recorded",
            extra={
                "organization_id": str(organization_id),
                "approval_request_id": str(request.id),
                "task_id": str(task_id),
                "approver_id": str(approver_id),
                "decision": decision.value,
                "request_status": request.status,
            },
        )
        if outcome is not None:
            logger.info(
                "approval_request_completed",
                extra={
                    "organization_id": str(organization_id),
                    "approval_request_id": str(request.id),
                    "status": outcome.value,
                },
            )
            self._notify_completed(request.to_dto())
        return task.to_dto()

    def process_bulk_approval(
        self,
        task_ids: Sequence[UUID],
        organization_id: UUID,
        approver_id: UUID,
        decision: ApprovalDecision,
        comments: str | None = None,
    ) -> BulkResult:
        """Decide many tasks; each item succeeds or fails on its own."""
        items: list[BulkItemResult] = []
        for task_id in task_ids:
            try:
                with self.session.begin_nested():
                    task = self.process_approval_decision(
                        task_id, organization_id, approver_id, decision, comments
                    )
            except (NotFoundError, TaskNotPendingError) as exc:
                items.append(BulkItemResult(
                    item_id=task_id, outcome=BulkOutcome.SKIPPED,
                    reason=str(exc), code=exc.code,
                ))
            except SmeFinError as exc:
                items.append(BulkItemResult(
                    item_id=task_id, outcome=BulkOutcome.FAILED,
                    reason=str(exc), code=exc.code,
                ))
            else:
                items.append(BulkItemResult(
                    item_id=task_id, outcome=BulkOutcome.SUCCESS, payload=task,
                ))

        result = BulkResult(items=tuple(items))
        logger.info(
            "approval_bulk_decision_processed",
            extra={
                "organization_id": str(organization_id),
                "approver_id": str(approver_id),
                "decision": ApprovalDecision(decision).value,
                "requested": len(task_ids),
                "succeeded": result.success_count,
                "skipped": len(result.skipped),
                "failed": len(result.failed),
            },
        )
        return result

    # ------------------------------------------------------------------
    # Cancellation, expiry, reads
    # ------------------------------------------------------------------

    def cancel_approval_request(
        self,
        request_id: UUID,
        organization_id: UUID,
        user_id: UUID,
        reason: str | None = None,
    ) -> ApprovalRequestRecord:
        request = self._load_request(request_id, organization_id)
        current = ApprovalRequestStatus(request.status)
        if not can_transition(current, ApprovalRequestStatus.CANCELLED):
            raise ApprovalRequestNotPendingError(str(request_id), request.status)

        now = self.clock.now()
        request.status = ApprovalRequestStatus.CANCELLED.value
        request.completed_at = now
        request.updated_at = now
        for task in request.tasks:
            if task.status == ApprovalTaskStatus.PENDING.value:
                task.status = ApprovalTaskStatus.SKIPPED.value
                task.updated_at = now
        request.expense.status = ExpenseStatus.DRAFT.value
        request.expense.updated_at = now

        self._append_history(
            request,
            user_id=user_id,
            action=ApprovalAction.CANCELLED,
            from_status=current,
            to_status=ApprovalRequestStatus.CANCELLED,
            comments=reason,
        )
        self.session.flush()

        logger.info(
            "approval_request_cancelled",
            extra={
                "organization_id": str(organization_id),
                "approval_request_id": str(request_id),
                "user_id": str(user_id),
            },
        )
        return request.to_dto()

    def get_approval_request(
        self, request_id: UUID, organization_id: UUID
    ) -> ApprovalRequestRecord:
        return self._load_request(request_id, organization_id).to_dto()

    def expire_overdue_tasks(self, organization_id: UUID) -> int:
        """Mark PENDING tasks of overdue PENDING requests EXPIRED.

        The requests themselves stay PENDING.
        """
        now = self.clock.now()
        tasks = self.session.execute(
            select(ApprovalTaskModel)
            .join(ApprovalRequestModel)
            .where(
                ApprovalRequestModel.organization_id == organization_id,
                ApprovalRequestModel.status == ApprovalRequestStatus.PENDING.value,
                ApprovalRequestModel.due_date.is_not(None),
                ApprovalRequestModel.due_date < now,
                ApprovalTaskModel.status == ApprovalTaskStatus.PENDING.value,
            )
        ).scalars().all()

        for task in tasks:
            task.status = ApprovalTaskStatus.EXPIRED.value
            task.updated_at = now
        self.session.flush()

        if tasks:
            logger.info(
                "approval_tasks_expired",
                extra={"organization_id": str(organization_id), "count": len(tasks)},
            )
        return len(tasks)

    def _load_request(
        self, request_id: UUID, organization_id: UUID
    ) -> ApprovalRequestModel:
        request = self.session.execute(
            select(ApprovalRequestModel).where(
                ApprovalRequestModel.id == request_id,
                ApprovalRequestModel.organization_id == organization_id,
            )
        ).scalar_one_or_none()
        if request is None:
            raise ApprovalRequestNotFoundError(str(request_id))
        return request

    def _append_history(
        self,
        request: ApprovalRequestModel,
        user_id: UUID,
        action: ApprovalAction,
        from_status: ApprovalRequestStatus | None,
        to_status: ApprovalRequestStatus | None,
        comments: str | None,
    ) -> None:
        sequence = max((h.sequence for h in request.history), default=0) + 1
        request.history.append(
            ApprovalHistoryModel(
                user_id=user_id,
                action=action.value,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value if to_status else None,
                comments=comments,
                sequence=sequence,
                created_at=self.clock.now(),
            )
        )

    # ------------------------------------------------------------------
    # Notifications (fire-and-forget)
    # ------------------------------------------------------------------

    def _notify_requested(
        self, request: ApprovalRequestRecord, approver_ids: Sequence[UUID]
    ) -> None:
        if not approver_ids:
            return
        try:
            self.notifier.approval_requested(request, approver_ids)
        except Exception:
            logger.warning(
                "approval_notification_failed",
                extra={"approval_request_id": str(request.id), "kind": "requested"},
                exc_info=True,
            )

    def _notify_completed(self, request: ApprovalRequestRecord) -> None:
        try:
            self.notifier.approval_completed(request)
        except Exception:
            logger.warning(
                "approval_notification_failed",
                extra={"approval_request_id": str(request.id), "kind": "completed"},
                exc_info=True,
            )
