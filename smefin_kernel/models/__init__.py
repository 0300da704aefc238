"""ORM models for the SME finance kernel."""

from smefin_kernel.models.approval import (
    ApprovalHistoryModel,
    ApprovalRequestModel,
    ApprovalRuleModel,
    ApprovalTaskModel,
)
from smefin_kernel.models.categorization import (
    CategorizationRuleModel,
    TransactionCategorySuggestionModel,
)
from smefin_kernel.models.category import CategoryModel
from smefin_kernel.models.organization import ExpenseModel, TransactionModel, UserModel

__all__ = [
    "UserModel",
    "ExpenseModel",
    "TransactionModel",
    "CategoryModel",
    "ApprovalRuleModel",
    "ApprovalRequestModel",
    "ApprovalTaskModel",
    "ApprovalHistoryModel",
    "CategorizationRuleModel",
    "TransactionCategorySuggestionModel",
]
