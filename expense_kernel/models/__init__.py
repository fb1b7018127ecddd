"""ORM models for the expense kernel."""

from expense_kernel.models.approval import ApprovalDecisionModel
from expense_kernel.models.expense import ExpenseItemModel, ExpenseModel
from expense_kernel.models.user import UserModel

__all__ = [
    "ApprovalDecisionModel",
    "ExpenseItemModel",
    "ExpenseModel",
    "UserModel",
]
