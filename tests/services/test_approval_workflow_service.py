"""
Tests for ApprovalWorkflowService.

Covers:
- Submission: auto-approval, task creation, priority and due date
- Precondition failures: unknown, non-draft and duplicate submissions
- Decisions: approve, reject, authorization and double decisions
- Bulk decisions with per-item outcomes
- Cancellation and overdue task expiry
- Notifications never break the workflow
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from smefin_kernel.domain.approval import (
    ApprovalAction,
    ApprovalDecision,
    ApprovalPriority,
    ApprovalRequestStatus,
    ApprovalTaskStatus,
)
from smefin_kernel.domain.organization import ExpenseStatus, UserRole, UserStatus
from smefin_kernel.domain.results import BulkOutcome
from smefin_kernel.exceptions import (
    ApprovalRequestNotPendingError,
    BadRequestError,
    DuplicateApprovalRequestError,
    ExpenseNotDraftError,
    ExpenseNotFoundError,
    TaskNotPendingError,
    UnauthorizedApproverError,
)
from smefin_kernel.services.approval_rule_service import ApprovalRuleService
from smefin_kernel.services.approval_workflow_service import ApprovalWorkflowService

HIGH_VALUE_RULE = {
    "name": "High Value",
    "priority": 100,
    "conditions": [{"field": "amount", "operator": "gt", "value": 1000}],
    "actions": [{
        "type": "require_approval",
        "approver_roles": ["MANAGER", "ADMIN"],
        "escalation_time_hours": 24,
        "priority": "HIGH",
    }],
}

VERY_HIGH_RULE = {
    "name": "Very High",
    "priority": 200,
    "conditions": [{"field": "amount", "operator": "gt", "value": 5000}],
    "actions": [{
        "type": "require_approval",
        "approver_roles": ["ADMIN"],
        "escalation_time_hours": 12,
        "priority": "URGENT",
    }],
}


class RecordingNotifier:

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.requested = []
        self.completed = []

    def approval_requested(self, request, approver_ids):
        if self.fail:
            raise RuntimeError("mail server down")
        self.requested.append((request.id, list(approver_ids)))

    def approval_completed(self, request):
        if self.fail:
            raise RuntimeError("mail server down")
        self.completed.append((request.id, request.status))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def workflow(session, clock, notifier):
    return ApprovalWorkflowService(session, clock, notifier=notifier)


@pytest.fixture
def rules(session, clock, org_id):
    service = ApprovalRuleService(session, clock)
    service.create_rule(org_id, HIGH_VALUE_RULE)
    service.create_rule(org_id, VERY_HIGH_RULE)
    return service


@pytest.fixture
def approvers(make_user, rules):
    manager = make_user(UserRole.MANAGER, first_name="Mwila")
    admin = make_user(UserRole.ADMIN, first_name="Chanda")
    make_user(UserRole.MANAGER, status=UserStatus.SUSPENDED)
    return manager, admin


class TestSubmission:

    def test_high_value_example(self, workflow, make_expense, approvers, requester, org_id, clock):
        """1500 ZMW: only the >1000 rule matches; one task per active approver."""
        manager, admin = approvers
        expense = make_expense("1500")

        request = workflow.submit_expense_for_approval(
            expense.id, org_id, requester.id, reason="Client visit"
        )

        assert request.status == ApprovalRequestStatus.PENDING
        assert request.priority == ApprovalPriority.HIGH
        assert request.total_amount == Decimal("1500")
        assert request.due_date == clock.now() + timedelta(hours=24)
        assert [t.approver_id for t in request.tasks] == [manager.id, admin.id]
        assert [t.sequence for t in request.tasks] == [1, 2]
        assert all(t.status == ApprovalTaskStatus.PENDING for t in request.tasks)
        assert expense.status == ExpenseStatus.PENDING_APPROVAL.value

        assert len(request.history) == 1
        submitted = request.history[0]
        assert submitted.action == ApprovalAction.SUBMITTED
        assert submitted.from_status is None
        assert submitted.to_status == ApprovalRequestStatus.PENDING
        assert submitted.comments == "Client visit"

    def test_no_rule_matches_auto_approves(self, workflow, make_expense, rules, requester, org_id):
        expense = make_expense("250")

        result = workflow.submit_expense_for_approval(expense.id, org_id, requester.id)

        assert result is None
        assert expense.status == ExpenseStatus.APPROVED.value

    def test_both_rules_match_takes_urgent_and_shortest_window(
        self, workflow, make_expense, approvers, requester, org_id, clock
    ):
        manager, admin = approvers
        expense = make_expense("7000")

        request = workflow.submit_expense_for_approval(expense.id, org_id, requester.id)

        assert request.priority == ApprovalPriority.URGENT
        assert request.due_date == clock.now() + timedelta(hours=12)
        # Very High (priority 200) first: admin; then High Value: manager, admin.
        assert [t.approver_id for t in request.tasks] == [admin.id, manager.id, admin.id]
        assert [t.sequence for t in request.tasks] == [1, 2, 3]

    def test_explicit_priority_overrides(self, workflow, make_expense, approvers, requester, org_id):
        expense = make_expense("1500")
        request = workflow.submit_expense_for_approval(
            expense.id, org_id, requester.id, priority=ApprovalPriority.LOW
        )
        assert request.priority == ApprovalPriority.LOW

    def test_unknown_expense(self, workflow, requester, org_id):
        with pytest.raises(ExpenseNotFoundError):
            workflow.submit_expense_for_approval(uuid4(), org_id, requester.id)

    def test_other_organization_expense_is_invisible(
        self, workflow, make_expense, requester, org_id, other_org_id
    ):
        expense = make_expense("1500", organization_id=other_org_id)
        with pytest.raises(ExpenseNotFoundError):
            workflow.submit_expense_for_approval(expense.id, org_id, requester.id)

    def test_non_draft_rejected(self, workflow, make_expense, requester, org_id):
        expense = make_expense("1500", status=ExpenseStatus.APPROVED)
        with pytest.raises(ExpenseNotDraftError) as exc_info:
            workflow.submit_expense_for_approval(expense.id, org_id, requester.id)
        assert isinstance(exc_info.value, BadRequestError)

    def test_resubmission_rejected(self, workflow, make_expense, approvers, requester, org_id):
        """A cancelled request returns the expense to DRAFT but still blocks resubmission."""
        expense = make_expense("1500")
        request = workflow.submit_expense_for_approval(expense.id, org_id, requester.id)
        workflow.cancel_approval_request(request.id, org_id, requester.id)
        assert expense.status == ExpenseStatus.DRAFT.value

        with pytest.raises(DuplicateApprovalRequestError) as exc_info:
            workflow.submit_expense_for_approval(expense.id, org_id, requester.id)
        assert isinstance(exc_info.value, BadRequestError)

    def test_no_eligible_approvers_logs_warning(
        self, workflow, make_expense, rules, requester, org_id, captured_logs
    ):
        expense = make_expense("1500")

        request = workflow.submit_expense_for_approval(expense.id, org_id, requester.id)

        assert request.tasks == ()
        assert any(
            r["message"] == "approval_request_without_approvers" for r in captured_logs()
        )

    def test_rule_match_count_recorded(self, workflow, make_expense, approvers, rules, requester, org_id):
        expense = make_expense("1500")
        workflow.submit_expense_for_approval(expense.id, org_id, requester.id)

        by_name = {r.name: r for r in rules.list_rules(org_id)}
        assert by_name["High Value"].match_count == 1
        assert by_name["Very High"].match_count == 0

    def test_notification_sent_once_per_approver(
        self, workflow, make_expense, approvers, requester, org_id, notifier
    ):
        manager, admin = approvers
        expense = make_expense("7000")

        request = workflow.submit_expense_for_approval(expense.id, org_id, requester.id)

        assert notifier.requested == [(request.id, [admin.id, manager.id])]


class TestDecisions:

    @pytest.fixture
    def pending(self, workflow, make_expense, approvers, requester, org_id):
        expense = make_expense("1500")
        request = workflow.submit_expense_for_approval(expense.id, org_id, requester.id)
        return expense, request

    def test_single_approval_keeps_request_pending(self, workflow, pending, approvers, org_id):
        expense, request = pending
        manager, _ = approvers

        task = workflow.process_approval_decision(
            request.tasks[0].id, org_id, manager.id, ApprovalDecision.APPROVED, "ok"
        )

        assert task.status == ApprovalTaskStatus.COMPLETED
        assert task.decision == ApprovalDecision.APPROVED
        assert task.comments == "ok"
        refreshed = workflow.get_approval_request(request.id, org_id)
        assert refreshed.status == ApprovalRequestStatus.PENDING
        assert expense.status == ExpenseStatus.PENDING_APPROVAL.value

    def test_all_approvals_approve_expense(
        self, workflow, pending, approvers, org_id, clock, notifier
    ):
        expense, request = pending
        manager, admin = approvers

        clock.advance_hours(2)
        workflow.process_approval_decision(
            request.tasks[0].id, org_id, manager.id, ApprovalDecision.APPROVED
        )
        workflow.process_approval_decision(
            request.tasks[1].id, org_id, admin.id, ApprovalDecision.APPROVED
        )

        refreshed = workflow.get_approval_request(request.id, org_id)
        assert refreshed.status == ApprovalRequestStatus.APPROVED
        assert refreshed.completed_at == clock.now()
        assert expense.status == ExpenseStatus.APPROVED.value
        assert notifier.completed == [(request.id, ApprovalRequestStatus.APPROVED)]
        # Newest first
        assert [h.action for h in refreshed.history] == [
            ApprovalAction.APPROVED,
            ApprovalAction.APPROVED,
            ApprovalAction.SUBMITTED,
        ]
        assert refreshed.history[0].from_status == ApprovalRequestStatus.PENDING
        assert refreshed.history[0].to_status == ApprovalRequestStatus.APPROVED

    def test_one_rejection_rejects(self, workflow, pending, approvers, org_id):
        expense, request = pending
        manager, admin = approvers

        workflow.process_approval_decision(
            request.tasks[0].id, org_id, manager.id, ApprovalDecision.REJECTED, "No receipt"
        )

        refreshed = workflow.get_approval_request(request.id, org_id)
        assert refreshed.status == ApprovalRequestStatus.REJECTED
        assert expense.status == ExpenseStatus.REJECTED.value
        assert refreshed.history[0].action == ApprovalAction.REJECTED

        # The request is terminal: the admin's task can no longer be decided.
        with pytest.raises(TaskNotPendingError):
            workflow.process_approval_decision(
                request.tasks[1].id, org_id, admin.id, ApprovalDecision.APPROVED
            )

    def test_wrong_approver_forbidden(self, workflow, pending, approvers, org_id):
        _, request = pending
        _, admin = approvers
        with pytest.raises(UnauthorizedApproverError):
            workflow.process_approval_decision(
                request.tasks[0].id, org_id, admin.id, ApprovalDecision.APPROVED
            )

    def test_deciding_twice_rejected(self, workflow, pending, approvers, org_id):
        _, request = pending
        manager, _ = approvers
        workflow.process_approval_decision(
            request.tasks[0].id, org_id, manager.id, ApprovalDecision.APPROVED
        )
        with pytest.raises(TaskNotPendingError):
            workflow.process_approval_decision(
                request.tasks[0].id, org_id, manager.id, ApprovalDecision.REJECTED
            )

    def test_failing_notifier_does_not_break_decision(
        self, session, clock, make_expense, approvers, requester, org_id, captured_logs
    ):
        workflow = ApprovalWorkflowService(session, clock, notifier=RecordingNotifier(fail=True))
        manager, admin = approvers
        expense = make_expense("1500")
        request = workflow.submit_expense_for_approval(expense.id, org_id, requester.id)

        workflow.process_approval_decision(
            request.tasks[0].id, org_id, manager.id, ApprovalDecision.REJECTED
        )

        assert expense.status == ExpenseStatus.REJECTED.value
        failures = [r for r in captured_logs() if r["message"] == "approval_notification_failed"]
        assert {r["kind"] for r in failures} == {"requested", "completed"}


class TestBulkDecisions:

    def test_outcomes_per_item(self, workflow, make_expense, approvers, requester, org_id):
        manager, _ = approvers
        first = workflow.submit_expense_for_approval(make_expense("1500").id, org_id, requester.id)
        second = workflow.submit_expense_for_approval(make_expense("2000").id, org_id, requester.id)
        missing = uuid4()
        not_mine = first.tasks[1].id

        result = workflow.process_bulk_approval(
            [first.tasks[0].id, missing, not_mine, second.tasks[0].id],
            org_id,
            manager.id,
            ApprovalDecision.APPROVED,
        )

        outcomes = [item.outcome for item in result.items]
        assert outcomes == [
            BulkOutcome.SUCCESS,
            BulkOutcome.SKIPPED,
            BulkOutcome.FAILED,
            BulkOutcome.SUCCESS,
        ]
        assert result.success_count == 2
        assert result.outcome_for(missing).code == "APPROVAL_TASK_NOT_FOUND"

    def test_already_decided_is_skipped(self, workflow, make_expense, approvers, requester, org_id):
        manager, _ = approvers
        request = workflow.submit_expense_for_approval(make_expense("1500").id, org_id, requester.id)
        task_id = request.tasks[0].id
        workflow.process_approval_decision(task_id, org_id, manager.id, ApprovalDecision.APPROVED)

        result = workflow.process_bulk_approval(
            [task_id], org_id, manager.id, ApprovalDecision.APPROVED
        )

        assert result.items[0].outcome == BulkOutcome.SKIPPED


class TestCancellationAndExpiry:

    def test_cancel_pending(self, workflow, make_expense, approvers, requester, org_id):
        expense = make_expense("1500")
        request = workflow.submit_expense_for_approval(expense.id, org_id, requester.id)

        cancelled = workflow.cancel_approval_request(
            request.id, org_id, requester.id, reason="Duplicate claim"
        )

        assert cancelled.status == ApprovalRequestStatus.CANCELLED
        assert all(t.status == ApprovalTaskStatus.SKIPPED for t in cancelled.tasks)
        assert expense.status == ExpenseStatus.DRAFT.value
        assert cancelled.history[0].action == ApprovalAction.CANCELLED
        assert cancelled.history[0].comments == "Duplicate claim"

    def test_cancel_approved_rejected(self, workflow, make_expense, approvers, requester, org_id):
        """Only pending requests can be cancelled."""
        manager, admin = approvers
        request = workflow.submit_expense_for_approval(make_expense("1500").id, org_id, requester.id)
        for task, approver in zip(request.tasks, (manager, admin)):
            workflow.process_approval_decision(task.id, org_id, approver.id, ApprovalDecision.APPROVED)

        with pytest.raises(ApprovalRequestNotPendingError) as exc_info:
            workflow.cancel_approval_request(request.id, org_id, requester.id)
        assert isinstance(exc_info.value, BadRequestError)

    def test_expire_overdue_tasks(self, workflow, make_expense, approvers, requester, org_id, clock):
        request = workflow.submit_expense_for_approval(make_expense("1500").id, org_id, requester.id)

        clock.advance_hours(23)
        assert workflow.expire_overdue_tasks(org_id) == 0

        clock.advance_hours(2)
        assert workflow.expire_overdue_tasks(org_id) == 2

        refreshed = workflow.get_approval_request(request.id, org_id)
        assert refreshed.status == ApprovalRequestStatus.PENDING
        assert all(t.status == ApprovalTaskStatus.EXPIRED for t in refreshed.tasks)
