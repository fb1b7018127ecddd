"""
Domain layer - pure value objects for expense approval.

Nothing in this package performs I/O; services and engines build on it.
"""

from expense_kernel.domain.approval import (
    APPROVER_ROLES,
    EXPENSE_TRANSITIONS,
    OVERRIDE_STEP_INDEX,
    TERMINAL_EXPENSE_STATUSES,
    ApprovalDecisionRecord,
    ApprovalPolicy,
    ApprovalRule,
    ApprovalStep,
    ApprovalStepPolicy,
    ApproverSource,
    DecisionOutcome,
    DecisionResult,
    EvaluationState,
    ExpenseItem,
    ExpenseSnapshot,
    ExpenseStatus,
    ExpenseTransitionEvent,
    HybridRule,
    IdentityProvider,
    NotificationSink,
    OrgChart,
    PercentageRule,
    RuleKind,
    SpecificApproverRule,
    StepEvaluation,
    TransitionResult,
    UserRecord,
    UserRole,
)
from expense_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = [
    "APPROVER_ROLES",
    "EXPENSE_TRANSITIONS",
    "OVERRIDE_STEP_INDEX",
    "TERMINAL_EXPENSE_STATUSES",
    "ApprovalDecisionRecord",
    "ApprovalPolicy",
    "ApprovalRule",
    "ApprovalStep",
    "ApprovalStepPolicy",
    "ApproverSource",
    "DecisionOutcome",
    "DecisionResult",
    "EvaluationState",
    "ExpenseItem",
    "ExpenseSnapshot",
    "ExpenseStatus",
    "ExpenseTransitionEvent",
    "HybridRule",
    "IdentityProvider",
    "NotificationSink",
    "OrgChart",
    "PercentageRule",
    "RuleKind",
    "SpecificApproverRule",
    "StepEvaluation",
    "TransitionResult",
    "UserRecord",
    "UserRole",
    "Clock",
    "DeterministicClock",
    "SystemClock",
]
