"""
Module: smefin_kernel.models.organization
Responsibility: ORM persistence for the collaborator entities the engines
    read and update: users (approver resolution), expenses (approval
    subject) and bank transactions (categorization subject).

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ only.

Invariants enforced:
    - Every row is organization scoped.
    - Status columns only hold known enum values (CHECK constraints).
    - Transactions are soft-deleted (deleted_at); every read path filters
      them out.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from smefin_kernel.db.base import OrganizationScoped, TrackedBase, UUIDString
from smefin_kernel.domain.categorization import TransactionFacts
from smefin_kernel.domain.organization import (
    DEFAULT_CURRENCY,
    ExpenseStatus,
    UserRole,
    UserStatus,
)


def _enum_check(column: str, enum_cls, name: str) -> CheckConstraint:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return CheckConstraint(f"{column} IN ({values})", name=name)


class UserModel(OrganizationScoped, TrackedBase):
    """Organization member.  Role and status drive approver resolution."""

    __tablename__ = "users"

    __table_args__ = (
        _enum_check("role", UserRole, "ck_users_valid_role"),
        _enum_check("status", UserStatus, "ck_users_valid_status"),
        Index("ix_users_org_role_status", "organization_id", "role", "status"),
    )

    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    role: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UserRole.USER.value
    )
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=UserStatus.ACTIVE.value
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or self.email

    def __repr__(self) -> str:
        return f"<User {self.email} role={self.role} status={self.status}>"


class ExpenseModel(OrganizationScoped, TrackedBase):
    """Expense claim.  Only DRAFT expenses may be submitted for approval."""

    __tablename__ = "expenses"

    __table_args__ = (
        _enum_check("status", ExpenseStatus, "ck_expenses_valid_status"),
        CheckConstraint("amount >= 0", name="ck_expenses_amount_non_negative"),
        Index("ix_expenses_org_status", "organization_id", "status"),
    )

    submitted_by_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("users.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default=DEFAULT_CURRENCY
    )
    expense_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    vendor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(30), nullable=True)
    category_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("categories.id"), nullable=True
    )
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=ExpenseStatus.DRAFT.value
    )

    submitted_by: Mapped[UserModel] = relationship("UserModel", lazy="joined")

    def __repr__(self) -> str:
        return f"<Expense {self.id} {self.amount} {self.currency} status={self.status}>"


class TransactionModel(OrganizationScoped, TrackedBase):
    """Bank or mobile-money transaction awaiting (or carrying) a category."""

    __tablename__ = "transactions"

    __table_args__ = (
        Index("ix_transactions_org_category", "organization_id", "category_id"),
        Index("ix_transactions_org_date", "organization_id", "transaction_date"),
    )

    transaction_date: Mapped[datetime] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default=DEFAULT_CURRENCY
    )
    transaction_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    counterparty_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    category_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("categories.id"), nullable=True
    )
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    category = relationship("CategoryModel", lazy="joined")

    def __repr__(self) -> str:
        return f"<Transaction {self.id} {self.amount} category={self.category_id}>"

    def to_facts(self) -> TransactionFacts:
        return TransactionFacts(
            transaction_id=self.id,
            amount=self.amount,
            description=self.description,
            counterparty_name=self.counterparty_name,
            reference=self.reference,
        )
