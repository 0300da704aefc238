"""
Module: smefin_kernel.models.category
Responsibility: ORM persistence for the per-organization category tree.

Architecture position: Kernel > Models.

Invariants enforced:
    - Categories form a forest through parent_id.  Cycles are refused by
      CategoryService before a parent is assigned.
    - Categories are soft-deleted (deleted_at); a deleted category keeps its
      row so historical transactions still resolve their category name.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from smefin_kernel.db.base import OrganizationScoped, TrackedBase, UUIDString
from smefin_kernel.domain.categorization import CategoryRecord, CategoryType


class CategoryModel(OrganizationScoped, TrackedBase):
    __tablename__ = "categories"

    __table_args__ = (
        CheckConstraint(
            "type IN ('INCOME', 'EXPENSE', 'ASSET', 'LIABILITY', 'EQUITY')",
            name="ck_categories_valid_type",
        ),
        Index("ix_categories_org_parent", "organization_id", "parent_id"),
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str | None] = mapped_column(String(20), nullable=True)
    icon: Mapped[str | None] = mapped_column(String(50), nullable=True)
    parent_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("categories.id"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    is_system: Mapped[bool] = mapped_column(nullable=False, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    parent = relationship(
        "CategoryModel", remote_side="CategoryModel.id", lazy="select"
    )

    def __repr__(self) -> str:
        return f"<Category {self.name} type={self.type} parent={self.parent_id}>"

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dto(self) -> CategoryRecord:
        return CategoryRecord(
            id=self.id,
            organization_id=self.organization_id,
            name=self.name,
            type=CategoryType(self.type),
            parent_id=self.parent_id,
            description=self.description,
            color=self.color,
            icon=self.icon,
            is_active=self.is_active,
            is_system=self.is_system,
        )
