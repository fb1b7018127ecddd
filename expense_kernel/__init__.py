"""
Expense Approval Kernel

The rule evaluator and approval-chain state machine behind expense
approval:
- Manager-hierarchy approver routing
- Percentage / specific-approver / hybrid step rules
- Append-only decision ledger
- Per-expense serialized, atomic transitions
- Administrative override
"""

__version__ = "0.1.0"
