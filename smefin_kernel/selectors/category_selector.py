"""
Module: smefin_kernel.selectors.category_selector
Responsibility: Read-only category statistics and analytics.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Read-only: no mutations.
    - Deleted categories and deleted transactions are never counted.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import aliased

from smefin_kernel.domain.categorization import (
    CategoryAnalytics,
    CategoryStats,
    CategoryType,
    TopCategory,
)
from smefin_kernel.models.category import CategoryModel
from smefin_kernel.models.organization import TransactionModel
from smefin_kernel.selectors.base import BaseSelector

TOP_CATEGORY_LIMIT = 5


class CategorySelector(BaseSelector):

    def uncategorized_count(self, organization_id: UUID) -> int:
        return self.session.execute(
            select(func.count(TransactionModel.id)).where(
                TransactionModel.organization_id == organization_id,
                TransactionModel.category_id.is_(None),
                TransactionModel.deleted_at.is_(None),
            )
        ).scalar_one()

    def categories_with_stats(self, organization_id: UUID) -> list[CategoryStats]:
        """Every live category with usage figures, ordered by name."""
        usage = dict(
            (category_id, (count, total, last_used))
            for category_id, count, total, last_used in self.session.execute(
                select(
                    TransactionModel.category_id,
                    func.count(TransactionModel.id),
                    func.sum(TransactionModel.amount),
                    func.max(TransactionModel.transaction_date),
                )
                .where(
                    TransactionModel.organization_id == organization_id,
                    TransactionModel.category_id.is_not(None),
                    TransactionModel.deleted_at.is_(None),
                )
                .group_by(TransactionModel.category_id)
            ).all()
        )

        child = aliased(CategoryModel)
        children = dict(
            self.session.execute(
                select(child.parent_id, func.count(child.id))
                .where(
                    child.organization_id == organization_id,
                    child.parent_id.is_not(None),
                    child.deleted_at.is_(None),
                )
                .group_by(child.parent_id)
            ).all()
        )

        categories = self.session.execute(
            select(CategoryModel)
            .where(
                CategoryModel.organization_id == organization_id,
                CategoryModel.deleted_at.is_(None),
            )
            .order_by(CategoryModel.name.asc(), CategoryModel.id)
        ).scalars()

        stats = []
        for model in categories:
            count, total, last_used = usage.get(model.id, (0, None, None))
            stats.append(
                CategoryStats(
                    category=model.to_dto(),
                    transaction_count=count,
                    total_amount=Decimal(total) if total is not None else Decimal("0"),
                    children_count=children.get(model.id, 0),
                    last_used=last_used,
                )
            )
        return stats

    def analytics(self, organization_id: UUID) -> CategoryAnalytics:
        """Category counts by type and the most used categories.

        ``percentage`` is the category's share of all live transactions
        (categorized and uncategorized), rounded to a whole number.
        """
        by_type = dict(
            self.session.execute(
                select(CategoryModel.type, func.count(CategoryModel.id))
                .where(
                    CategoryModel.organization_id == organization_id,
                    CategoryModel.deleted_at.is_(None),
                )
                .group_by(CategoryModel.type)
            ).all()
        )

        tx_count = func.count(TransactionModel.id).label("tx_count")
        top_rows = self.session.execute(
            select(CategoryModel.id, CategoryModel.name, tx_count)
            .join(TransactionModel, TransactionModel.category_id == CategoryModel.id)
            .where(
                CategoryModel.organization_id == organization_id,
                CategoryModel.deleted_at.is_(None),
                TransactionModel.deleted_at.is_(None),
            )
            .group_by(CategoryModel.id, CategoryModel.name)
            .order_by(tx_count.desc(), CategoryModel.name.asc())
            .limit(TOP_CATEGORY_LIMIT)
        ).all()

        categorized = self.session.execute(
            select(func.count(TransactionModel.id)).where(
                TransactionModel.organization_id == organization_id,
                TransactionModel.category_id.is_not(None),
                TransactionModel.deleted_at.is_(None),
            )
        ).scalar_one()
        uncategorized = self.uncategorized_count(organization_id)
        total_transactions = categorized + uncategorized

        return CategoryAnalytics(
            total_categories=sum(by_type.values()),
            categories_by_type={t.value: by_type.get(t.value, 0) for t in CategoryType},
            categorized_transactions=categorized,
            uncategorized_transactions=uncategorized,
            top_categories=tuple(
                TopCategory(
                    category_id=category_id,
                    name=name,
                    transaction_count=count,
                    percentage=(
                        round(count / total_transactions * 100)
                        if total_transactions else 0
                    ),
                )
                for category_id, name, count in top_rows
            ),
        )
