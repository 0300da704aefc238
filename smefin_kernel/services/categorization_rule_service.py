"""
smefin_kernel.services.categorization_rule_service -- Categorization rule CRUD.

Responsibility:
    Create, read, update and delete categorization rules; install the
    configured default rules; report per-rule acceptance statistics.

Architecture position:
    Kernel > Services.

Invariants enforced:
    - A rule's category exists in the rule's organization and is not deleted.
    - Rule names are unique per organization (case-insensitive).
    - Conditions are validated against the rule type at write time,
      including regex compilation of description patterns.

Failure modes:
    - CategoryNotFoundError, RuleNameExistsError, InvalidRuleConditionsError,
      CategorizationRuleNotFoundError.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update

from smefin_config import get_active_config
from smefin_kernel.domain.categorization import (
    CategorizationConfidence,
    CategorizationRuleRecord,
    CategorizationRuleType,
    RuleStats,
    validate_rule_conditions,
)
from smefin_kernel.exceptions import (
    CategorizationRuleNotFoundError,
    CategoryNotFoundError,
    InvalidRuleConditionsError,
    RuleNameExistsError,
    RuleValidationError,
)
from smefin_kernel.logging_config import get_logger
from smefin_kernel.models.categorization import (
    CategorizationRuleModel,
    TransactionCategorySuggestionModel,
)
from smefin_kernel.models.category import CategoryModel
from smefin_kernel.services.base import BaseService

logger = get_logger("services.categorization_rules")

_UPDATABLE_FIELDS = frozenset({
    "category_id",
    "name",
    "description",
    "rule_type",
    "conditions",
    "confidence",
    "priority",
    "is_active",
})


def _parse_rule_type(value: Any) -> CategorizationRuleType:
    try:
        return CategorizationRuleType(value)
    except ValueError:
        raise InvalidRuleConditionsError(str(value), "unknown rule type") from None


def _parse_confidence(value: Any) -> CategorizationConfidence:
    try:
        return CategorizationConfidence(value)
    except ValueError:
        raise RuleValidationError([f"unknown confidence: {value}"]) from None


def _parse_priority(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise RuleValidationError([f"priority must be an integer, got {value!r}"])
    return value


class CategorizationRuleService(BaseService):

    def _load(self, rule_id: UUID, organization_id: UUID) -> CategorizationRuleModel:
        model = self.session.execute(
            select(CategorizationRuleModel).where(
                CategorizationRuleModel.id == rule_id,
                CategorizationRuleModel.organization_id == organization_id,
            )
        ).scalar_one_or_none()
        if model is None:
            raise CategorizationRuleNotFoundError(str(rule_id))
        return model

    def _require_category(self, category_id: UUID, organization_id: UUID) -> CategoryModel:
        category = self.session.execute(
            select(CategoryModel).where(
                CategoryModel.id == category_id,
                CategoryModel.organization_id == organization_id,
                CategoryModel.deleted_at.is_(None),
            )
        ).scalar_one_or_none()
        if category is None:
            raise CategoryNotFoundError(str(category_id))
        return category

    def _name_taken(
        self, organization_id: UUID, name: str, exclude_id: UUID | None = None
    ) -> bool:
        stmt = select(func.count()).select_from(CategorizationRuleModel).where(
            CategorizationRuleModel.organization_id == organization_id,
            func.lower(CategorizationRuleModel.name) == name.strip().lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(CategorizationRuleModel.id != exclude_id)
        return self.session.execute(stmt).scalar_one() > 0

    def create_rule(
        self, organization_id: UUID, data: dict[str, Any]
    ) -> CategorizationRuleRecord:
        """Create a rule.

        ``data`` keys: category_id, name, rule_type, conditions, and optionally
        confidence (default MEDIUM), priority (default 0), description,
        is_active (default True).
        """
        name = (data.get("name") or "").strip()
        if not name:
            raise RuleValidationError(["Rule name is required"])
        rule_type = _parse_rule_type(data.get("rule_type"))
        conditions = validate_rule_conditions(rule_type, data.get("conditions") or {})
        confidence = _parse_confidence(
            data.get("confidence", CategorizationConfidence.MEDIUM.value)
        )
        priority = _parse_priority(data.get("priority", 0))
        self._require_category(data.get("category_id"), organization_id)
        if self._name_taken(organization_id, name):
            raise RuleNameExistsError(name)

        now = self.clock.now()
        model = CategorizationRuleModel(
            organization_id=organization_id,
            category_id=data["category_id"],
            name=name,
            description=data.get("description"),
            rule_type=rule_type.value,
            conditions=conditions.to_dict(),
            confidence=confidence.value,
            priority=priority,
            is_active=bool(data.get("is_active", True)),
            match_count=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(model)
        self.session.flush()

        logger.info(
            "categorization_rule_created",
            extra={
                "organization_id": str(organization_id),
                "rule_id": str(model.id),
                "rule_type": rule_type.value,
                "category_id": str(model.category_id),
            },
        )
        return model.to_dto()

    def get_rule(self, rule_id: UUID, organization_id: UUID) -> CategorizationRuleRecord:
        return self._load(rule_id, organization_id).to_dto()

    def list_rules(
        self,
        organization_id: UUID,
        category_id: UUID | None = None,
        rule_type: CategorizationRuleType | None = None,
        is_active: bool | None = None,
        search: str | None = None,
    ) -> list[CategorizationRuleRecord]:
        stmt = select(CategorizationRuleModel).where(
            CategorizationRuleModel.organization_id == organization_id
        )
        if category_id is not None:
            stmt = stmt.where(CategorizationRuleModel.category_id == category_id)
        if rule_type is not None:
            stmt = stmt.where(CategorizationRuleModel.rule_type == rule_type.value)
        if is_active is not None:
            stmt = stmt.where(CategorizationRuleModel.is_active.is_(is_active))
        if search:
            stmt = stmt.where(
                CategorizationRuleModel.name.icontains(search.strip(), autoescape=True)
            )
        stmt = stmt.order_by(
            CategorizationRuleModel.priority.desc(),
            CategorizationRuleModel.created_at.asc(),
            CategorizationRuleModel.id,
        )
        return [m.to_dto() for m in self.session.execute(stmt).unique().scalars()]

    def update_rule(
        self, rule_id: UUID, organization_id: UUID, changes: dict[str, Any]
    ) -> CategorizationRuleRecord:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise RuleValidationError([f"unknown field: {k}" for k in sorted(unknown)])
        model = self._load(rule_id, organization_id)

        if "name" in changes:
            name = (changes["name"] or "").strip()
            if not name:
                raise RuleValidationError(["Rule name is required"])
            if name.lower() != model.name.lower() and self._name_taken(
                organization_id, name, exclude_id=model.id
            ):
                raise RuleNameExistsError(name)
            model.name = name
        if "category_id" in changes:
            self._require_category(changes["category_id"], organization_id)
            model.category_id = changes["category_id"]
        if "rule_type" in changes or "conditions" in changes:
            rule_type = _parse_rule_type(changes.get("rule_type", model.rule_type))
            conditions = validate_rule_conditions(
                rule_type, changes.get("conditions", model.conditions) or {}
            )
            model.rule_type = rule_type.value
            model.conditions = conditions.to_dict()
        if "confidence" in changes:
            model.confidence = _parse_confidence(changes["confidence"]).value
        if "priority" in changes:
            model.priority = _parse_priority(changes["priority"])
        if "description" in changes:
            model.description = changes["description"]
        if "is_active" in changes:
            model.is_active = bool(changes["is_active"])

        model.updated_at = self.clock.now()
        self.session.flush()
        self.session.refresh(model, ["category"])

        logger.info(
            "categorization_rule_updated",
            extra={
                "organization_id": str(organization_id),
                "rule_id": str(rule_id),
                "fields": sorted(changes),
            },
        )
        return model.to_dto()

    def delete_rule(self, rule_id: UUID, organization_id: UUID) -> None:
        """Hard delete.  Stored suggestions keep their row with rule_id cleared."""
        model = self._load(rule_id, organization_id)
        self.session.execute(
            update(TransactionCategorySuggestionModel)
            .where(TransactionCategorySuggestionModel.rule_id == model.id)
            .values(rule_id=None)
        )
        self.session.delete(model)
        self.session.flush()
        logger.info(
            "categorization_rule_deleted",
            extra={"organization_id": str(organization_id), "rule_id": str(rule_id)},
        )

    def create_default_rules(self, organization_id: UUID) -> list[CategorizationRuleRecord]:
        """Install configured default rules.

        A template is skipped when its category (matched by exact name among
        active categories) does not exist or its rule name is taken.
        """
        categories = {
            c.name: c.id
            for c in self.session.execute(
                select(CategoryModel).where(
                    CategoryModel.organization_id == organization_id,
                    CategoryModel.is_active.is_(True),
                    CategoryModel.deleted_at.is_(None),
                )
            ).scalars()
        }

        created = []
        for template in get_active_config().categorization_rules:
            category_id = categories.get(template.category)
            if category_id is None or self._name_taken(organization_id, template.name):
                continue
            created.append(
                self.create_rule(
                    organization_id,
                    {
                        "category_id": category_id,
                        "name": template.name,
                        "description": template.description,
                        "rule_type": template.rule_type,
                        "conditions": template.conditions,
                        "confidence": template.confidence,
                        "priority": template.priority,
                    },
                )
            )
        logger.info(
            "categorization_default_rules_installed",
            extra={"organization_id": str(organization_id), "created": len(created)},
        )
        return created

    def rule_stats(self, rule_id: UUID, organization_id: UUID) -> RuleStats:
        """Suggestion and acceptance counts for one rule.

        ``accuracy`` is accepted / (accepted + rejected) as a percentage, or
        None before any suggestion of the rule has been decided.
        """
        model = self._load(rule_id, organization_id)
        suggestion = TransactionCategorySuggestionModel
        total, accepted, rejected = self.session.execute(
            select(
                func.count(suggestion.id),
                func.count(suggestion.id).filter(suggestion.is_accepted.is_(True)),
                func.count(suggestion.id).filter(suggestion.is_accepted.is_(False)),
            ).where(
                suggestion.rule_id == model.id,
                suggestion.organization_id == organization_id,
            )
        ).one()
        decided = accepted + rejected
        return RuleStats(
            rule_id=model.id,
            match_count=model.match_count,
            suggestion_count=total,
            accepted_count=accepted,
            rejected_count=rejected,
            accuracy=round(accepted / decided * 100, 2) if decided else None,
            last_matched_at=model.last_matched_at,
        )
