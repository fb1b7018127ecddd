"""Read-only selectors."""

from expense_kernel.selectors.expense_selector import ExpenseSelector

__all__ = ["ExpenseSelector"]
