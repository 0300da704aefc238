"""
Tests for approval ORM models.

Covers:
- Append-only approval history (update and delete refused)
- One approval request per expense at the database level
- Stored rule JSON round trip into typed records
"""

from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from smefin_kernel.domain.approval import (
    ApprovalAction,
    ApprovalCondition,
    ApprovalRuleDefinition,
    RuleAction,
)
from smefin_kernel.domain.organization import UserRole
from smefin_kernel.exceptions import ImmutabilityViolationError, RuleValidationError
from smefin_kernel.models import (
    ApprovalHistoryModel,
    ApprovalRequestModel,
    ApprovalRuleModel,
)
from smefin_kernel.services.approval_rule_service import ApprovalRuleService
from smefin_kernel.services.approval_workflow_service import ApprovalWorkflowService


@pytest.fixture
def submitted(session, clock, org_id, make_user, make_expense, requester):
    ApprovalRuleService(session, clock).create_rule(org_id, {
        "name": "All",
        "conditions": [{"field": "amount", "operator": "gt", "value": 0}],
        "actions": [{"type": "require_approval", "approver_roles": ["MANAGER"]}],
    })
    make_user(UserRole.MANAGER)
    expense = make_expense("500")
    request = ApprovalWorkflowService(session, clock).submit_expense_for_approval(
        expense.id, org_id, requester.id
    )
    return expense, request


class TestApprovalHistoryImmutability:

    def _history(self, session, request_id) -> ApprovalHistoryModel:
        return session.execute(
            select(ApprovalHistoryModel).where(
                ApprovalHistoryModel.approval_request_id == request_id
            )
        ).scalar_one()

    def test_update_refused(self, session, submitted):
        _, request = submitted
        history = self._history(session, request.id)
        assert history.action == ApprovalAction.SUBMITTED.value

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            with session.begin_nested():
                history.comments = "rewritten"
                session.flush()
        assert exc_info.value.entity_type == "ApprovalHistory"

    def test_delete_refused(self, session, submitted):
        _, request = submitted
        history = self._history(session, request.id)

        with pytest.raises(ImmutabilityViolationError):
            with session.begin_nested():
                session.delete(history)
                session.flush()


class TestApprovalRequestConstraints:

    def test_one_request_per_expense(self, session, submitted, org_id, requester, clock):
        expense, _ = submitted

        with pytest.raises(IntegrityError):
            with session.begin_nested():
                session.add(ApprovalRequestModel(
                    organization_id=org_id,
                    expense_id=expense.id,
                    requester_id=requester.id,
                    status="PENDING",
                    priority="NORMAL",
                    total_amount=Decimal("500"),
                    currency="ZMW",
                    submitted_at=clock.now(),
                ))
                session.flush()


class TestApprovalRuleModel:

    def test_definition_round_trip(self, session, org_id):
        definition = ApprovalRuleDefinition(
            name="Vendors",
            conditions=(
                ApprovalCondition.from_dict(
                    {"field": "vendor", "operator": "in", "value": ["Zesco", "Airtel"]}
                ),
            ),
            actions=(RuleAction.from_dict(
                {"type": "require_approval", "approver_roles": ["ADMIN"]}
            ),),
        )
        model = ApprovalRuleModel(organization_id=org_id, match_count=0)
        model.apply_definition(definition)
        session.add(model)
        session.flush()

        record = model.to_dto()

        assert record.conditions == definition.conditions
        assert record.actions == definition.actions

    def test_corrupt_json_raises_on_read(self, session, org_id):
        model = ApprovalRuleModel(
            organization_id=org_id, name="Bad", priority=0, is_active=True,
            conditions=[{"field": "amount", "operator": "gt"}],
            actions=[{"type": "notify"}], match_count=0,
        )
        session.add(model)
        session.flush()

        with pytest.raises(RuleValidationError):
            model.to_dto()
