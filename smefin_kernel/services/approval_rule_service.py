"""
smefin_kernel.services.approval_rule_service -- Approval rule CRUD and evaluation.

Responsibility:
    ``ApprovalRuleService`` creates, reads, updates and deletes approval
    rules, validating conditions and actions at write time.
    ``ApprovalRulesEngine`` loads an organization's active rules and
    evaluates an expense context against them through the pure engine in
    ``smefin_engines.approval``.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/, engines.

Invariants enforced:
    - Stored conditions/actions are always the JSON form of a validated
      ``ApprovalRuleDefinition``.
    - Rule names are unique per organization.
    - Match statistics are best effort: a failure to record them is logged
      and never fails the evaluation.

Failure modes:
    - RuleValidationError on invalid definitions.
    - ApprovalRuleNameExistsError on duplicate names.
    - ApprovalRuleNotFoundError on unknown ids (or ids of another org).
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from smefin_config import get_active_config
from smefin_engines.approval import evaluate_rules
from smefin_kernel.domain.approval import (
    ApprovalRequirement,
    ApprovalRuleDefinition,
    ApprovalRuleRecord,
    ExpenseContext,
)
from smefin_kernel.exceptions import (
    ApprovalRuleNameExistsError,
    ApprovalRuleNotFoundError,
    RuleValidationError,
)
from smefin_kernel.logging_config import get_logger
from smefin_kernel.models.approval import ApprovalRuleModel
from smefin_kernel.services.base import BaseService

logger = get_logger("services.approval_rules")


class ApprovalRuleService(BaseService):
    """Write-side management of approval rules."""

    def _load(self, rule_id: UUID, organization_id: UUID) -> ApprovalRuleModel:
        model = self.session.execute(
            select(ApprovalRuleModel).where(
                ApprovalRuleModel.id == rule_id,
                ApprovalRuleModel.organization_id == organization_id,
            )
        ).scalar_one_or_none()
        if model is None:
            raise ApprovalRuleNotFoundError(str(rule_id))
        return model

    def _name_taken(
        self, organization_id: UUID, name: str, exclude_id: UUID | None = None
    ) -> bool:
        stmt = select(func.count()).select_from(ApprovalRuleModel).where(
            ApprovalRuleModel.organization_id == organization_id,
            func.lower(ApprovalRuleModel.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(ApprovalRuleModel.id != exclude_id)
        return self.session.execute(stmt).scalar_one() > 0

    def create_rule(
        self, organization_id: UUID, data: dict[str, Any] | ApprovalRuleDefinition
    ) -> ApprovalRuleRecord:
        definition = (
            data if isinstance(data, ApprovalRuleDefinition)
            else ApprovalRuleDefinition.from_dict(data)
        )
        if self._name_taken(organization_id, definition.name):
            raise ApprovalRuleNameExistsError(definition.name)

        now = self.clock.now()
        model = ApprovalRuleModel(
            organization_id=organization_id,
            created_at=now,
            updated_at=now,
            match_count=0,
        )
        model.apply_definition(definition)
        self.session.add(model)
        self.session.flush()

        logger.info(
            "approval_rule_created",
            extra={
                "organization_id": str(organization_id),
                "rule_id": str(model.id),
                "rule_name": model.name,
                "priority": model.priority,
            },
        )
        return model.to_dto()

    def get_rule(self, rule_id: UUID, organization_id: UUID) -> ApprovalRuleRecord:
        return self._load(rule_id, organization_id).to_dto()

    def list_rules(
        self, organization_id: UUID, include_inactive: bool = False
    ) -> list[ApprovalRuleRecord]:
        """Rules in evaluation order: priority desc, then oldest first, then id."""
        stmt = select(ApprovalRuleModel).where(
            ApprovalRuleModel.organization_id == organization_id
        )
        if not include_inactive:
            stmt = stmt.where(ApprovalRuleModel.is_active.is_(True))
        stmt = stmt.order_by(
            ApprovalRuleModel.priority.desc(),
            ApprovalRuleModel.created_at.asc(),
            ApprovalRuleModel.id,
        )
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def update_rule(
        self, rule_id: UUID, organization_id: UUID, changes: dict[str, Any]
    ) -> ApprovalRuleRecord:
        """Apply a partial update.  The merged rule is re-validated as a whole."""
        model = self._load(rule_id, organization_id)
        merged: dict[str, Any] = {
            "name": model.name,
            "description": model.description,
            "priority": model.priority,
            "is_active": model.is_active,
            "conditions": model.conditions,
            "actions": model.actions,
        }
        unknown = set(changes) - set(merged)
        if unknown:
            raise RuleValidationError([f"unknown field: {k}" for k in sorted(unknown)])
        merged.update(changes)
        definition = ApprovalRuleDefinition.from_dict(merged)

        if definition.name.lower() != model.name.lower() and self._name_taken(
            organization_id, definition.name, exclude_id=model.id
        ):
            raise ApprovalRuleNameExistsError(definition.name)

        model.apply_definition(definition)
        model.updated_at = self.clock.now()
        self.session.flush()

        logger.info(
            "approval_rule_updated",
            extra={
                "organization_id": str(organization_id),
                "rule_id": str(model.id),
                "fields": sorted(changes),
            },
        )
        return model.to_dto()

    def delete_rule(self, rule_id: UUID, organization_id: UUID) -> None:
        model = self._load(rule_id, organization_id)
        self.session.delete(model)
        self.session.flush()
        logger.info(
            "approval_rule_deleted",
            extra={"organization_id": str(organization_id), "rule_id": str(rule_id)},
        )

    def default_rules(self) -> list[ApprovalRuleDefinition]:
        """Template rules for a new organization.  Not persisted."""
        return [
            ApprovalRuleDefinition.from_dict(template.data)
            for template in get_active_config().approval_rules
        ]

    def install_default_rules(self, organization_id: UUID) -> list[ApprovalRuleRecord]:
        """Persist the template rules, skipping names that already exist."""
        created = []
        for definition in self.default_rules():
            if self._name_taken(organization_id, definition.name):
                continue
            created.append(self.create_rule(organization_id, definition))
        return created


class ApprovalRulesEngine(BaseService):
    """Evaluates an expense against the stored rules of its organization."""

    def active_rules(self, organization_id: UUID) -> list[ApprovalRuleRecord]:
        """Active rules in evaluation order.

        A stored rule that no longer parses (an unknown field or operator
        written before validation existed) is logged and left out, so it
        never matches.
        """
        models = self.session.execute(
            select(ApprovalRuleModel)
            .where(
                ApprovalRuleModel.organization_id == organization_id,
                ApprovalRuleModel.is_active.is_(True),
            )
            .order_by(
                ApprovalRuleModel.priority.desc(),
                ApprovalRuleModel.created_at.asc(),
                ApprovalRuleModel.id,
            )
        ).scalars()

        rules = []
        for model in models:
            try:
                rules.append(model.to_dto())
            except RuleValidationError as exc:
                logger.warning(
                    "approval_rule_unparseable",
                    extra={
                        "organization_id": str(organization_id),
                        "rule_id": str(model.id),
                        "errors": exc.errors,
                    },
                )
        return rules

    def evaluate_expense(self, context: ExpenseContext) -> list[ApprovalRequirement]:
        rules = self.active_rules(context.organization_id)
        requirements, matched = evaluate_rules(rules, context)

        logger.info(
            "approval_rules_evaluated",
            extra={
                "organization_id": str(context.organization_id),
                "expense_id": str(context.expense_id),
                "rules_evaluated": len(rules),
                "rules_matched": [r.name for r in matched],
                "requirement_count": len(requirements),
            },
        )

        if matched:
            self._record_matches([r.id for r in matched])
        return requirements

    def _record_matches(self, rule_ids: list[UUID]) -> None:
        now = self.clock.now()
        try:
            with self.session.begin_nested():
                self.session.execute(
                    update(ApprovalRuleModel)
                    .where(ApprovalRuleModel.id.in_(rule_ids))
                    .values(
                        match_count=ApprovalRuleModel.match_count + 1,
                        last_matched_at=now,
                    )
                    .execution_options(synchronize_session="fetch")
                )
        except SQLAlchemyError:
            logger.warning(
                "approval_rule_match_stats_failed",
                extra={"rule_ids": [str(r) for r in rule_ids]},
                exc_info=True,
            )
