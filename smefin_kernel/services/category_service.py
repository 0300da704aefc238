"""
smefin_kernel.services.category_service -- Category tree management.

Responsibility:
    Create, read, update and soft-delete categories; build the category
    hierarchy and ancestor paths; install default categories; re-run
    categorization for a category's transactions.

Architecture position:
    Kernel > Services.

Invariants enforced:
    - Names are unique among the non-deleted siblings of one parent
      (case-insensitive).
    - The parent graph stays a forest: re-parenting walks the new parent's
      ancestors and refuses a move under the category itself or one of its
      descendants.
    - A category with active children, or referenced by live transactions,
      cannot be deleted.

Failure modes:
    - CategoryNotFoundError, CategoryNameExistsError,
      CircularCategoryDependencyError, InvalidCategoryHierarchyError,
      CategoryInUseError.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from smefin_config import get_active_config
from smefin_kernel.domain.categorization import (
    CategoryNode,
    CategoryRecord,
    CategoryType,
    RecategorizationSummary,
)
from smefin_kernel.domain.clock import Clock
from smefin_kernel.exceptions import (
    CategoryInUseError,
    CategoryNameExistsError,
    CategoryNotFoundError,
    CircularCategoryDependencyError,
    InvalidCategoryHierarchyError,
    RuleValidationError,
    SmeFinError,
)
from smefin_kernel.logging_config import get_logger
from smefin_kernel.models.category import CategoryModel
from smefin_kernel.models.organization import TransactionModel
from smefin_kernel.services.base import BaseService
from smefin_kernel.services.categorization_service import (
    TransactionCategorizationService,
)

logger = get_logger("services.categories")

_UPDATABLE_FIELDS = frozenset({
    "name", "type", "description", "color", "icon", "parent_id", "is_active",
})


def _parse_type(value: Any) -> CategoryType:
    try:
        return CategoryType(value)
    except ValueError:
        raise RuleValidationError([f"unknown category type: {value}"]) from None


class CategoryService(BaseService):

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        categorization: TransactionCategorizationService | None = None,
    ):
        super().__init__(session, clock)
        self.categorization = categorization or TransactionCategorizationService(
            session, self.clock
        )

    def _load(self, category_id: UUID, organization_id: UUID) -> CategoryModel:
        model = self.session.execute(
            select(CategoryModel).where(
                CategoryModel.id == category_id,
                CategoryModel.organization_id == organization_id,
                CategoryModel.deleted_at.is_(None),
            )
        ).scalar_one_or_none()
        if model is None:
            raise CategoryNotFoundError(str(category_id))
        return model

    def is_category_name_available(
        self,
        organization_id: UUID,
        name: str,
        parent_id: UUID | None = None,
        exclude_id: UUID | None = None,
    ) -> bool:
        stmt = select(func.count()).select_from(CategoryModel).where(
            CategoryModel.organization_id == organization_id,
            func.lower(CategoryModel.name) == name.strip().lower(),
            CategoryModel.deleted_at.is_(None),
        )
        if parent_id is None:
            stmt = stmt.where(CategoryModel.parent_id.is_(None))
        else:
            stmt = stmt.where(CategoryModel.parent_id == parent_id)
        if exclude_id is not None:
            stmt = stmt.where(CategoryModel.id != exclude_id)
        return self.session.execute(stmt).scalar_one() == 0

    def create_category(self, organization_id: UUID, data: dict[str, Any]) -> CategoryRecord:
        name = (data.get("name") or "").strip()
        if not name:
            raise RuleValidationError(["Category name is required"])
        category_type = _parse_type(data.get("type"))
        parent_id = data.get("parent_id")
        if parent_id is not None:
            self._load(parent_id, organization_id)
        if not self.is_category_name_available(organization_id, name, parent_id):
            raise CategoryNameExistsError(name, str(parent_id) if parent_id else None)

        now = self.clock.now()
        model = CategoryModel(
            organization_id=organization_id,
            name=name,
            type=category_type.value,
            description=data.get("description"),
            color=data.get("color"),
            icon=data.get("icon"),
            parent_id=parent_id,
            is_active=bool(data.get("is_active", True)),
            is_system=bool(data.get("is_system", False)),
            created_at=now,
            updated_at=now,
        )
        self.session.add(model)
        self.session.flush()

        logger.info(
            "category_created",
            extra={
                "organization_id": str(organization_id),
                "category_id": str(model.id),
                "category_name": name,
                "parent_id": str(parent_id) if parent_id else None,
            },
        )
        return model.to_dto()

    def get_category(self, category_id: UUID, organization_id: UUID) -> CategoryRecord:
        return self._load(category_id, organization_id).to_dto()

    def list_categories(
        self,
        organization_id: UUID,
        type: CategoryType | None = None,
        parent_id: UUID | None = None,
        is_active: bool | None = None,
        search: str | None = None,
    ) -> list[CategoryRecord]:
        stmt = select(CategoryModel).where(
            CategoryModel.organization_id == organization_id,
            CategoryModel.deleted_at.is_(None),
        )
        if type is not None:
            stmt = stmt.where(CategoryModel.type == type.value)
        if parent_id is not None:
            stmt = stmt.where(CategoryModel.parent_id == parent_id)
        if is_active is not None:
            stmt = stmt.where(CategoryModel.is_active.is_(is_active))
        if search:
            term = search.strip()
            stmt = stmt.where(
                CategoryModel.name.icontains(term, autoescape=True)
                | CategoryModel.description.icontains(term, autoescape=True)
            )
        stmt = stmt.order_by(CategoryModel.name.asc(), CategoryModel.id)
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def update_category(
        self, category_id: UUID, organization_id: UUID, changes: dict[str, Any]
    ) -> CategoryRecord:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise RuleValidationError([f"unknown field: {k}" for k in sorted(unknown)])
        model = self._load(category_id, organization_id)

        parent_id = changes.get("parent_id", model.parent_id)
        if "parent_id" in changes and parent_id != model.parent_id:
            self._check_parent(model.id, parent_id, organization_id)

        name = (changes.get("name", model.name) or "").strip()
        if not name:
            raise RuleValidationError(["Category name is required"])
        if (
            name.lower() != model.name.lower() or parent_id != model.parent_id
        ) and not self.is_category_name_available(
            organization_id, name, parent_id, exclude_id=model.id
        ):
            raise CategoryNameExistsError(name, str(parent_id) if parent_id else None)

        model.name = name
        model.parent_id = parent_id
        if "type" in changes:
            model.type = _parse_type(changes["type"]).value
        for field_name in ("description", "color", "icon"):
            if field_name in changes:
                setattr(model, field_name, changes[field_name])
        if "is_active" in changes:
            model.is_active = bool(changes["is_active"])
        model.updated_at = self.clock.now()
        self.session.flush()

        logger.info(
            "category_updated",
            extra={
                "organization_id": str(organization_id),
                "category_id": str(category_id),
                "fields": sorted(changes),
            },
        )
        return model.to_dto()

    def _check_parent(
        self, category_id: UUID, parent_id: UUID | None, organization_id: UUID
    ) -> None:
        """Refuse a parent that is the category itself or one of its descendants."""
        if parent_id is None:
            return
        if parent_id == category_id:
            raise CircularCategoryDependencyError(str(category_id), str(parent_id))

        seen: set[UUID] = set()
        current = self._load(parent_id, organization_id)
        while current.parent_id is not None:
            if current.parent_id == category_id:
                raise CircularCategoryDependencyError(str(category_id), str(parent_id))
            if current.parent_id in seen:
                break
            seen.add(current.parent_id)
            current = self.session.get(CategoryModel, current.parent_id)
            if current is None:
                break

    def delete_category(self, category_id: UUID, organization_id: UUID) -> None:
        """Soft delete."""
        model = self._load(category_id, organization_id)

        children = self.session.execute(
            select(func.count()).select_from(CategoryModel).where(
                CategoryModel.parent_id == category_id,
                CategoryModel.deleted_at.is_(None),
            )
        ).scalar_one()
        if children:
            raise InvalidCategoryHierarchyError(
                str(category_id), "Cannot delete a category that has child categories"
            )

        in_use = self.session.execute(
            select(func.count()).select_from(TransactionModel).where(
                TransactionModel.category_id == category_id,
                TransactionModel.deleted_at.is_(None),
            )
        ).scalar_one()
        if in_use:
            raise CategoryInUseError(str(category_id), in_use)

        now = self.clock.now()
        model.deleted_at = now
        model.updated_at = now
        self.session.flush()
        logger.info(
            "category_deleted",
            extra={"organization_id": str(organization_id), "category_id": str(category_id)},
        )

    def get_hierarchy(
        self, organization_id: UUID, type: CategoryType | None = None
    ) -> list[CategoryNode]:
        """Category forest, siblings by name.

        A category whose parent is deleted or filtered out becomes a root.
        """
        stmt = select(CategoryModel).where(
            CategoryModel.organization_id == organization_id,
            CategoryModel.deleted_at.is_(None),
        )
        if type is not None:
            stmt = stmt.where(CategoryModel.type == type.value)
        models = list(
            self.session.execute(
                stmt.order_by(CategoryModel.name.asc(), CategoryModel.id)
            ).scalars()
        )
        ids = {m.id for m in models}
        children: dict[UUID | None, list[CategoryModel]] = {}
        for m in models:
            parent = m.parent_id if m.parent_id in ids else None
            children.setdefault(parent, []).append(m)

        def build(model: CategoryModel, level: int, path: tuple[str, ...]) -> CategoryNode:
            own_path = path + (model.name,)
            return CategoryNode(
                id=model.id,
                name=model.name,
                type=CategoryType(model.type),
                parent_id=model.parent_id,
                level=level,
                path=own_path,
                color=model.color,
                icon=model.icon,
                is_active=model.is_active,
                children=tuple(
                    build(child, level + 1, own_path)
                    for child in children.get(model.id, ())
                ),
            )

        return [build(root, 0, ()) for root in children.get(None, ())]

    def get_category_path(
        self, category_id: UUID, organization_id: UUID
    ) -> list[CategoryRecord]:
        """Ancestors from the root down to the category itself."""
        model = self._load(category_id, organization_id)
        path = [model]
        seen = {model.id}
        while model.parent_id is not None and model.parent_id not in seen:
            parent = self.session.get(CategoryModel, model.parent_id)
            if parent is None or parent.organization_id != organization_id:
                break
            seen.add(parent.id)
            path.append(parent)
            model = parent
        return [m.to_dto() for m in reversed(path)]

    def create_default_categories(self, organization_id: UUID) -> list[CategoryRecord]:
        """Install configured root categories, skipping names already used."""
        created = []
        for template in get_active_config().categories:
            if not self.is_category_name_available(organization_id, template.name):
                continue
            created.append(
                self.create_category(
                    organization_id,
                    {
                        "name": template.name,
                        "type": template.type,
                        "color": template.color,
                        "icon": template.icon,
                        "description": template.description,
                        "is_system": True,
                    },
                )
            )
        logger.info(
            "default_categories_created",
            extra={"organization_id": str(organization_id), "created": len(created)},
        )
        return created

    def recategorize_transactions(
        self, category_id: UUID, organization_id: UUID
    ) -> RecategorizationSummary:
        """Re-run categorization with auto-apply over the category's transactions."""
        self._load(category_id, organization_id)
        transaction_ids = list(
            self.session.execute(
                select(TransactionModel.id).where(
                    TransactionModel.organization_id == organization_id,
                    TransactionModel.category_id == category_id,
                    TransactionModel.deleted_at.is_(None),
                )
            ).scalars()
        )

        recategorized = 0
        for transaction_id in transaction_ids:
            try:
                with self.session.begin_nested():
                    result = self.categorization.categorize_transaction(
                        transaction_id, organization_id, auto_apply=True
                    )
            except SmeFinError:
                logger.warning(
                    "transaction_recategorization_failed",
                    extra={"transaction_id": str(transaction_id)},
                    exc_info=True,
                )
                continue
            if result.is_auto_applied:
                recategorized += 1

        logger.info(
            "category_transactions_recategorized",
            extra={
                "organization_id": str(organization_id),
                "category_id": str(category_id),
                "processed": len(transaction_ids),
                "recategorized": recategorized,
            },
        )
        return RecategorizationSummary(
            processed=len(transaction_ids), recategorized=recategorized
        )
