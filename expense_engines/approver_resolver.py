"""
expense_engines.approver_resolver -- Who must decide at a given step.

Responsibility:
    Produce the ordered, de-duplicated, non-empty approver set for one
    step of an expense's approval chain from the policy snapshot, the
    org chart, and the decisions already in the ledger.

Architecture position:
    Engines -- pure calculation layer.  Reads the org chart through the
    ``OrgChart`` protocol only; holds no state between calls.

Invariants enforced:
    - Deterministic and idempotent: the same expense, step, org-chart
      snapshot and ledger always yield the same tuple.
    - Every returned user is active and holds the Manager or Admin role.
    - Specific/Hybrid rules always find their designated approver in the
      set (appended when the source did not produce it).

Failure modes:
    - NoApproverFoundError when the manager chain ends (owner or previous
      decision-maker has no manager) or a source yields nobody.
    - InvalidApproverRoleError when a resolved user is unknown, inactive,
      or an Employee.
    - UserNotFoundError when the expense owner is not in the org chart.
"""

from __future__ import annotations

from typing import Sequence
from uuid import UUID

from expense_kernel.domain.approval import (
    ApprovalDecisionRecord,
    ApprovalPolicy,
    ApproverSource,
    DecisionOutcome,
    ExpenseSnapshot,
    OrgChart,
    UserRecord,
    designated_approver,
)
from expense_kernel.exceptions import (
    InvalidApproverRoleError,
    NoApproverFoundError,
    UserNotFoundError,
)


def resolve_step(
    expense: ExpenseSnapshot,
    step_index: int,
    org_chart: OrgChart,
    policy: ApprovalPolicy,
    decisions: Sequence[ApprovalDecisionRecord] = (),
) -> tuple[UUID, ...]:
    """Resolve the approver set for ``step_index`` (1-based).

    Args:
        expense: The expense being routed.
        step_index: Step to resolve.
        org_chart: Org-chart snapshot.
        policy: The policy snapshot the expense was submitted under.
        decisions: Ledger decisions for the expense, in ledger order.
            Needed for manager-chain steps after the first.

    Returns:
        Ordered tuple of approver user ids.
    """
    step_policy = policy.step(step_index)
    owner = org_chart.get_user(expense.owner_id)
    if owner is None:
        raise UserNotFoundError(str(expense.owner_id))

    if step_policy.approver_source is ApproverSource.MANAGER_CHAIN:
        candidates = _manager_chain(
            expense, step_index, org_chart, policy, decisions, owner,
        )
    elif step_policy.approver_source is ApproverSource.FIXED_PANEL:
        candidates = tuple(step_policy.panel)
    elif step_policy.approver_source is ApproverSource.ORG_ADMINS:
        admins = sorted(
            (a for a in org_chart.list_admins(owner.organization_id) if a.is_active),
            key=lambda a: (a.display_name, str(a.user_id)),
        )
        candidates = tuple(a.user_id for a in admins)
    else:
        raise InvalidApproverRoleError(
            str(expense.owner_id), None,
            f"unknown approver source {step_policy.approver_source}",
        )

    specific = designated_approver(step_policy.rule)
    if specific is not None and specific not in candidates:
        candidates = candidates + (specific,)

    approvers = _dedupe(candidates)
    if not approvers:
        raise NoApproverFoundError(
            str(expense.expense_id), step_index, str(owner.user_id),
        )

    for approver_id in approvers:
        _check_approver(org_chart, approver_id)

    return approvers


def decision_maker(
    decisions: Sequence[ApprovalDecisionRecord],
    step_index: int,
) -> UUID | None:
    """The approver whose Approved decision completed ``step_index``.

    A step stops accepting decisions once it is satisfied, so the last
    approval recorded for the step is the deciding one.
    """
    deciding: UUID | None = None
    for d in decisions:
        if d.step_index == step_index and d.decision is DecisionOutcome.APPROVED:
            deciding = d.approver_id
    return deciding


def _manager_chain(
    expense: ExpenseSnapshot,
    step_index: int,
    org_chart: OrgChart,
    policy: ApprovalPolicy,
    decisions: Sequence[ApprovalDecisionRecord],
    owner: UserRecord,
) -> tuple[UUID, ...]:
    if step_index == 1:
        anchor_id = owner.user_id
    else:
        anchor_id = decision_maker(decisions, step_index - 1)
        if anchor_id is None:
            # Previous step completed without decisions (threshold 0).
            anchor_id = resolve_step(
                expense, step_index - 1, org_chart, policy, decisions,
            )[0]

    manager = org_chart.manager_of(anchor_id)
    if manager is not None:
        return (manager.user_id,)

    if step_index == 1 and policy.allow_self_approval and owner.can_approve:
        return (owner.user_id,)

    raise NoApproverFoundError(str(expense.expense_id), step_index, str(anchor_id))


def _check_approver(org_chart: OrgChart, approver_id: UUID) -> None:
    user = org_chart.get_user(approver_id)
    if user is None:
        raise InvalidApproverRoleError(str(approver_id), None, "unknown user")
    if not user.is_active:
        raise InvalidApproverRoleError(str(approver_id), user.role.value, "inactive user")
    if not user.can_approve:
        raise InvalidApproverRoleError(
            str(approver_id), user.role.value, "role cannot approve",
        )


def _dedupe(ids: Sequence[UUID]) -> tuple[UUID, ...]:
    seen: set[UUID] = set()
    ordered: list[UUID] = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            ordered.append(i)
    return tuple(ordered)
