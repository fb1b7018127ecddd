"""
expense_engines -- Pure computation for expense approval.

Two engines, both zero-I/O and deterministic:

- ``approver_resolver``: who must decide at a step.
- ``rule_evaluator``: whether a step's decisions satisfy its rule.

The approval chain service composes them; nothing here touches the
database, the clock, or logging.
"""

from expense_engines.approver_resolver import decision_maker, resolve_step
from expense_engines.rule_evaluator import (
    evaluate,
    required_approvals,
    validate_rule,
)

__all__ = [
    "decision_maker",
    "evaluate",
    "required_approvals",
    "resolve_step",
    "validate_rule",
]
