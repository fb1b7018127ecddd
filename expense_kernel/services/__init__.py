"""Kernel services -- flush-only write operations."""

from expense_kernel.services.approval_chain_service import ApprovalChainService
from expense_kernel.services.expense_store import ExpenseStore
from expense_kernel.services.override_service import OverrideService
from expense_kernel.services.user_service import UserService

__all__ = [
    "ApprovalChainService",
    "ExpenseStore",
    "OverrideService",
    "UserService",
]
