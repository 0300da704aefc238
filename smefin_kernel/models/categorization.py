"""
Module: smefin_kernel.models.categorization
Responsibility: ORM persistence for categorization rules and the
    per-transaction category suggestions the engine produces.

Architecture position: Kernel > Models.

Invariants enforced:
    - rule_type and confidence only hold known enum values.
    - Suggestions outlive the rule that produced them: rule_id is SET NULL
      when a rule is deleted, so acceptance history stays countable.
    - At most one suggestion per (transaction, category).
    - is_accepted is tri-state: NULL (undecided), TRUE, FALSE.
"""

from __future__ import annotations

from datetime import datetime
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
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from smefin_kernel.db.base import OrganizationScoped, TrackedBase, UUIDString
from smefin_kernel.domain.categorization import (
    CategorizationConfidence,
    CategorizationRuleRecord,
    CategorizationRuleType,
    StoredSuggestion,
)

_CONFIDENCE_CHECK = "('LOW', 'MEDIUM', 'HIGH', 'VERY_HIGH')"


class CategorizationRuleModel(OrganizationScoped, TrackedBase):
    """Rule mapping transaction facts to a category.

    ``conditions`` holds the JSON form of the condition class matching
    ``rule_type``.
    """

    __tablename__ = "categorization_rules"

    __table_args__ = (
        CheckConstraint(
            "rule_type IN ('KEYWORD_MATCH', 'AMOUNT_RANGE', 'COUNTERPARTY_MATCH', "
            "'DESCRIPTION_PATTERN', 'COMBINED_RULE')",
            name="ck_categorization_rules_valid_type",
        ),
        CheckConstraint(
            f"confidence IN {_CONFIDENCE_CHECK}",
            name="ck_categorization_rules_valid_confidence",
        ),
        Index(
            "ix_categorization_rules_org_active_priority",
            "organization_id", "is_active", "priority",
        ),
    )

    category_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("categories.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    rule_type: Mapped[str] = mapped_column(String(30), nullable=False)
    conditions: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    confidence: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CategorizationConfidence.MEDIUM.value
    )
    priority: Mapped[int] = mapped_column(nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    match_count: Mapped[int] = mapped_column(nullable=False, default=0)
    last_matched_at: Mapped[datetime | None] = mapped_column(nullable=True)

    category = relationship("CategoryModel", lazy="joined")

    def __repr__(self) -> str:
        return f"<CategorizationRule {self.name} type={self.rule_type}>"

    def to_dto(self) -> CategorizationRuleRecord:
        return CategorizationRuleRecord(
            id=self.id,
            organization_id=self.organization_id,
            category_id=self.category_id,
            name=self.name,
            rule_type=CategorizationRuleType(self.rule_type),
            conditions=dict(self.conditions or {}),
            confidence=CategorizationConfidence(self.confidence),
            priority=self.priority,
            is_active=self.is_active,
            description=self.description,
            category_name=self.category.name if self.category is not None else None,
            match_count=self.match_count,
            last_matched_at=self.last_matched_at,
        )


class TransactionCategorySuggestionModel(OrganizationScoped, TrackedBase):
    """A stored suggestion and, once decided, its acceptance."""

    __tablename__ = "transaction_category_suggestions"

    __table_args__ = (
        CheckConstraint(
            f"confidence IN {_CONFIDENCE_CHECK}",
            name="ck_category_suggestions_valid_confidence",
        ),
        UniqueConstraint(
            "transaction_id", "category_id",
            name="uq_category_suggestions_transaction_category",
        ),
        Index(
            "ix_category_suggestions_org_transaction", "organization_id", "transaction_id",
        ),
        Index("ix_category_suggestions_rule", "rule_id"),
    )

    transaction_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("transactions.id"), nullable=False
    )
    category_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("categories.id"), nullable=False
    )
    rule_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("categorization_rules.id", ondelete="SET NULL"),
        nullable=True,
    )
    confidence: Mapped[str] = mapped_column(String(20), nullable=False)
    score: Mapped[float] = mapped_column(nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_accepted: Mapped[bool | None] = mapped_column(nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    accepted_by_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("users.id"), nullable=True
    )

    def to_dto(self) -> StoredSuggestion:
        return StoredSuggestion(
            id=self.id,
            transaction_id=self.transaction_id,
            category_id=self.category_id,
            confidence=CategorizationConfidence(self.confidence),
            score=self.score,
            reason=self.reason,
            rule_id=self.rule_id,
            is_accepted=self.is_accepted,
            accepted_at=self.accepted_at,
            accepted_by_id=self.accepted_by_id,
        )
