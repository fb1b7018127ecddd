"""
Approval domain types (``expense_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for the expense approval engine.  Defines the expense
lifecycle state machine, the tagged approval-rule variant, approval
policies, ledger decision records, evaluation results, and the protocols
for the collaborators the engine consumes (org chart, identity,
notifications).

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.  May
import only from ``utils/hashing``.

Invariants enforced
-------------------
* Lifecycle state machine -- ``EXPENSE_TRANSITIONS`` defines the only
  valid status transitions.  Terminal states have no outgoing edges.
* Rules are a closed tagged variant -- every rule carries a ``kind`` tag
  and only the fields that kind needs.
* Policy snapshot -- ``policy_to_dict`` / ``policy_from_dict`` are exact
  inverses and ``policy_fingerprint`` is stable, so an in-flight expense
  keeps evaluating against the policy it was submitted under.
* Ledger records are frozen; pending approvers are a computed view.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Protocol, Union
from uuid import UUID

from expense_kernel.utils.hashing import hash_payload


# =========================================================================
# Users
# =========================================================================


class UserRole(str, Enum):
    """Organization roles."""

    EMPLOYEE = "Employee"
    MANAGER = "Manager"
    ADMIN = "Admin"


APPROVER_ROLES: frozenset[UserRole] = frozenset({
    UserRole.MANAGER,
    UserRole.ADMIN,
})


@dataclass(frozen=True)
class UserRecord:
    """Directory entry for a user.

    ``manager_id`` is a weak reference by identifier; the manager is
    looked up through the org chart, never embedded.
    """

    user_id: UUID
    display_name: str
    role: UserRole
    organization_id: UUID
    manager_id: UUID | None = None
    email: str = ""
    default_currency: str = "USD"
    is_active: bool = True

    @property
    def can_approve(self) -> bool:
        return self.is_active and self.role in APPROVER_ROLES


# =========================================================================
# Expense Status Lifecycle
# =========================================================================


class ExpenseStatus(str, Enum):
    """Expense lifecycle states."""

    DRAFT = "Draft"
    PENDING_APPROVAL = "PendingApproval"
    APPROVED = "Approved"
    REJECTED = "Rejected"


# PENDING_APPROVAL -> PENDING_APPROVAL is the step advance.
# DRAFT -> APPROVED/REJECTED is reachable only through override.
EXPENSE_TRANSITIONS: dict[ExpenseStatus, frozenset[ExpenseStatus]] = {
    ExpenseStatus.DRAFT: frozenset({
        ExpenseStatus.PENDING_APPROVAL,
        ExpenseStatus.APPROVED,
        ExpenseStatus.REJECTED,
    }),
    ExpenseStatus.PENDING_APPROVAL: frozenset({
        ExpenseStatus.PENDING_APPROVAL,
        ExpenseStatus.APPROVED,
        ExpenseStatus.REJECTED,
    }),
    ExpenseStatus.APPROVED: frozenset(),
    ExpenseStatus.REJECTED: frozenset(),
}

TERMINAL_EXPENSE_STATUSES: frozenset[ExpenseStatus] = frozenset({
    ExpenseStatus.APPROVED,
    ExpenseStatus.REJECTED,
})


def is_valid_transition(current: ExpenseStatus, target: ExpenseStatus) -> bool:
    """Check a status change against ``EXPENSE_TRANSITIONS``."""
    return target in EXPENSE_TRANSITIONS.get(current, frozenset())


class DecisionOutcome(str, Enum):
    """What an approver (or an overriding admin) decided."""

    APPROVED = "Approved"
    REJECTED = "Rejected"

    def as_status(self) -> ExpenseStatus:
        if self is DecisionOutcome.APPROVED:
            return ExpenseStatus.APPROVED
        return ExpenseStatus.REJECTED


# Ledger step marker for administrative overrides.
OVERRIDE_STEP_INDEX = -1


# =========================================================================
# Rules (tagged variant)
# =========================================================================


class RuleKind(str, Enum):
    PERCENTAGE = "percentage"
    SPECIFIC = "specific"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class PercentageRule:
    """Approved once ``threshold`` percent of the approver set approves."""

    threshold: Decimal
    kind: RuleKind = field(default=RuleKind.PERCENTAGE, init=False)


@dataclass(frozen=True)
class SpecificApproverRule:
    """The designated approver's decision alone settles the step."""

    approver_id: UUID
    kind: RuleKind = field(default=RuleKind.SPECIFIC, init=False)


@dataclass(frozen=True)
class HybridRule:
    """Satisfied when either the percentage or the specific path approves."""

    threshold: Decimal
    approver_id: UUID
    kind: RuleKind = field(default=RuleKind.HYBRID, init=False)


ApprovalRule = Union[PercentageRule, SpecificApproverRule, HybridRule]


def designated_approver(rule: ApprovalRule) -> UUID | None:
    """Return the specific approver a rule names, if any."""
    if rule.kind is RuleKind.PERCENTAGE:
        return None
    return rule.approver_id


# =========================================================================
# Policies
# =========================================================================


class ApproverSource(str, Enum):
    """Where a step's approver set comes from."""

    MANAGER_CHAIN = "manager_chain"
    FIXED_PANEL = "fixed_panel"
    ORG_ADMINS = "org_admins"


@dataclass(frozen=True)
class ApprovalStepPolicy:
    """Rule and approver source for one step of the chain."""

    rule: ApprovalRule
    approver_source: ApproverSource = ApproverSource.MANAGER_CHAIN
    panel: tuple[UUID, ...] = ()


@dataclass(frozen=True)
class ApprovalPolicy:
    """A named, versioned approval policy.

    ``category=None`` marks the organization default; a category policy
    takes precedence for expenses in that category.
    """

    policy_name: str
    version: int
    organization_id: UUID
    steps: tuple[ApprovalStepPolicy, ...]
    category: str | None = None
    allow_self_approval: bool = False

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def step(self, step_index: int) -> ApprovalStepPolicy:
        """Return the 1-based step definition."""
        if step_index < 1 or step_index > len(self.steps):
            raise IndexError(
                f"Policy {self.policy_name} has no step {step_index}"
            )
        return self.steps[step_index - 1]


def rule_to_dict(rule: ApprovalRule) -> dict[str, Any]:
    if rule.kind is RuleKind.PERCENTAGE:
        return {"kind": rule.kind.value, "threshold": str(rule.threshold)}
    if rule.kind is RuleKind.SPECIFIC:
        return {"kind": rule.kind.value, "approver_id": str(rule.approver_id)}
    return {
        "kind": rule.kind.value,
        "threshold": str(rule.threshold),
        "approver_id": str(rule.approver_id),
    }


def rule_from_dict(data: dict[str, Any]) -> ApprovalRule:
    kind = RuleKind(data["kind"])
    if kind is RuleKind.PERCENTAGE:
        return PercentageRule(threshold=Decimal(str(data["threshold"])))
    if kind is RuleKind.SPECIFIC:
        return SpecificApproverRule(approver_id=UUID(str(data["approver_id"])))
    return HybridRule(
        threshold=Decimal(str(data["threshold"])),
        approver_id=UUID(str(data["approver_id"])),
    )


def policy_to_dict(policy: ApprovalPolicy) -> dict[str, Any]:
    """Serialize a policy for the expense's policy snapshot."""
    return {
        "policy_name": policy.policy_name,
        "version": policy.version,
        "organization_id": str(policy.organization_id),
        "category": policy.category,
        "allow_self_approval": policy.allow_self_approval,
        "steps": [
            {
                "rule": rule_to_dict(step.rule),
                "approver_source": step.approver_source.value,
                "panel": [str(p) for p in step.panel],
            }
            for step in policy.steps
        ],
    }


def policy_from_dict(data: dict[str, Any]) -> ApprovalPolicy:
    return ApprovalPolicy(
        policy_name=data["policy_name"],
        version=int(data["version"]),
        organization_id=UUID(str(data["organization_id"])),
        category=data.get("category"),
        allow_self_approval=bool(data.get("allow_self_approval", False)),
        steps=tuple(
            ApprovalStepPolicy(
                rule=rule_from_dict(step["rule"]),
                approver_source=ApproverSource(step["approver_source"]),
                panel=tuple(UUID(str(p)) for p in step.get("panel", ())),
            )
            for step in data["steps"]
        ),
    )


def policy_fingerprint(policy: ApprovalPolicy) -> str:
    """SHA-256 over the canonical policy snapshot."""
    return hash_payload(policy_to_dict(policy))


# =========================================================================
# Expenses
# =========================================================================


_CENT = Decimal("0.01")


@dataclass(frozen=True)
class ExpenseItem:
    """One line of an expense.  ``amount`` is in the expense currency."""

    description: str
    amount: Decimal
    original_amount: Decimal
    currency: str
    exchange_rate: Decimal = Decimal("1")

    @classmethod
    def from_original(
        cls,
        description: str,
        original_amount: Decimal,
        currency: str,
        exchange_rate: Decimal = Decimal("1"),
    ) -> ExpenseItem:
        """Build an item, converting with a caller-supplied rate."""
        amount = (Decimal(original_amount) * Decimal(exchange_rate)).quantize(
            _CENT, rounding=ROUND_HALF_UP,
        )
        return cls(
            description=description,
            amount=amount,
            original_amount=Decimal(original_amount),
            currency=currency,
            exchange_rate=Decimal(exchange_rate),
        )


@dataclass(frozen=True)
class ExpenseSnapshot:
    """Immutable view of an expense and its chain position."""

    expense_id: UUID
    owner_id: UUID
    organization_id: UUID
    title: str
    currency: str
    status: ExpenseStatus
    description: str = ""
    category: str | None = None
    items: tuple[ExpenseItem, ...] = ()
    current_step: int = 0
    total_steps: int = 0
    policy_name: str | None = None
    policy_version: int | None = None
    policy_hash: str | None = None
    current_approver_ids: tuple[UUID, ...] = ()
    current_required_approver: UUID | None = None
    submitted_at: datetime | None = None
    decided_at: datetime | None = None
    version: int = 1

    @property
    def total_amount(self) -> Decimal:
        return sum((item.amount for item in self.items), Decimal("0"))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXPENSE_STATUSES


# =========================================================================
# Ledger
# =========================================================================


@dataclass(frozen=True)
class ApprovalDecisionRecord:
    """Record of a single approval decision. Immutable."""

    decision_id: UUID
    expense_id: UUID
    step_index: int
    approver_id: UUID
    decision: DecisionOutcome
    comment: str = ""
    decided_at: datetime | None = None
    sequence: int = 0

    @property
    def is_override(self) -> bool:
        return self.step_index == OVERRIDE_STEP_INDEX


@dataclass(frozen=True)
class ApprovalStep:
    """Derived view of one step: who may decide and what they decided."""

    step_index: int
    approver_ids: tuple[UUID, ...]
    rule: ApprovalRule
    decisions: tuple[ApprovalDecisionRecord, ...] = ()

    @property
    def decided_approver_ids(self) -> frozenset[UUID]:
        return frozenset(d.approver_id for d in self.decisions)

    @property
    def pending_approver_ids(self) -> tuple[UUID, ...]:
        decided = self.decided_approver_ids
        return tuple(a for a in self.approver_ids if a not in decided)

    @property
    def required_approver(self) -> UUID | None:
        """Who the step is waiting on.

        The designated approver while undecided, otherwise the first
        undecided member of the set.
        """
        specific = designated_approver(self.rule)
        if specific is not None and specific not in self.decided_approver_ids:
            return specific
        pending = self.pending_approver_ids
        return pending[0] if pending else None


# =========================================================================
# Evaluation Result
# =========================================================================


class EvaluationState(str, Enum):
    SATISFIED = "satisfied"
    UNSATISFIED = "unsatisfied"
    PENDING = "pending"


@dataclass(frozen=True)
class StepEvaluation:
    """Result of scoring a step's decisions against its rule.

    ``outcome`` is set only when ``state`` is SATISFIED.  UNSATISFIED means
    the rule can never be met with the given approver set.
    """

    state: EvaluationState
    outcome: DecisionOutcome | None = None
    approved_count: int = 0
    rejected_count: int = 0
    required_approvals: int = 0
    reason: str = ""

    @property
    def is_approved(self) -> bool:
        return (
            self.state is EvaluationState.SATISFIED
            and self.outcome is DecisionOutcome.APPROVED
        )

    @property
    def is_rejected(self) -> bool:
        return (
            self.state is EvaluationState.SATISFIED
            and self.outcome is DecisionOutcome.REJECTED
        )

    @property
    def is_pending(self) -> bool:
        return self.state is EvaluationState.PENDING


# =========================================================================
# Transition Results and Notifications
# =========================================================================


@dataclass(frozen=True)
class ExpenseTransitionEvent:
    """Notification payload emitted for every state transition."""

    expense_id: UUID
    from_state: ExpenseStatus
    to_state: ExpenseStatus
    actor_id: UUID
    from_step: int = 0
    to_step: int = 0
    occurred_at: datetime | None = None


@dataclass(frozen=True)
class DecisionResult:
    """Outcome of a ``decide`` call.

    ``duplicate=True`` marks an idempotent retry: nothing was appended and
    no transition happened.
    """

    expense: ExpenseSnapshot
    decision: ApprovalDecisionRecord | None = None
    evaluation: StepEvaluation | None = None
    duplicate: bool = False
    transitions: tuple[ExpenseTransitionEvent, ...] = ()


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of ``submit`` and ``override``."""

    expense: ExpenseSnapshot
    transitions: tuple[ExpenseTransitionEvent, ...] = ()
    decision: ApprovalDecisionRecord | None = None


# =========================================================================
# Collaborator Protocols
# =========================================================================


class OrgChart(Protocol):
    """Read-only org-chart lookups, snapshot-consistent per resolution."""

    def get_user(self, user_id: UUID) -> UserRecord | None:
        ...

    def manager_of(self, user_id: UUID) -> UserRecord | None:
        ...

    def list_admins(self, organization_id: UUID) -> tuple[UserRecord, ...]:
        ...


class IdentityProvider(Protocol):
    """Identity and role ground truth supplied by the surrounding app."""

    def current_user(self) -> UserRecord:
        ...

    def has_role(self, user: UserRecord, role: UserRole) -> bool:
        ...


class NotificationSink(Protocol):
    """Fire-and-forget receiver of transition events."""

    def publish(self, event: ExpenseTransitionEvent) -> None:
        ...
