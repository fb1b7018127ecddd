"""
Module: expense_kernel.selectors.expense_selector
Responsibility: Read-only queries over expenses and the approval ledger:
    an owner's expenses, a manager's team, an approver's inbox, the
    decision history of one expense, and the derived view of its current
    step.
Architecture position: Kernel > Selectors.  May import from models/,
    domain/, and selectors/base.py.  MUST NOT import from services/.

Invariants enforced:
    - Read-only: No mutations performed on any queried data.
    - DTO convention: returns ExpenseSnapshot / ApprovalDecisionRecord /
      ApprovalStep, never ORM models.
    - Pending approvers are derived from the snapshotted approver set and
      the ledger; nothing stores them.
    - History is in ledger order (``sequence``).

Failure modes:
    - Returns None or an empty list when nothing matches.
"""

from __future__ import annotations

from collections import defaultdict
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from expense_kernel.domain.approval import (
    ApprovalDecisionRecord,
    ApprovalStep,
    ExpenseSnapshot,
    ExpenseStatus,
    policy_from_dict,
)
from expense_kernel.models.approval import ApprovalDecisionModel
from expense_kernel.models.expense import ExpenseModel
from expense_kernel.models.user import UserModel
from expense_kernel.selectors.base import BaseSelector


class ExpenseSelector(BaseSelector[ExpenseModel]):
    """
    Selector for expense and approval-ledger queries.

    Guarantees:
        - Read-only.
        - Multi-expense results are ordered by creation time, then id.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    def _decisions(self, expense_id: UUID) -> tuple[ApprovalDecisionRecord, ...]:
        rows = self.session.execute(
            select(ApprovalDecisionModel)
            .where(ApprovalDecisionModel.expense_id == expense_id)
            .order_by(ApprovalDecisionModel.sequence)
        ).scalars().all()
        return tuple(r.to_dto() for r in rows)

    def _decisions_by_expense(
        self, expense_ids: list[UUID],
    ) -> dict[UUID, tuple[ApprovalDecisionRecord, ...]]:
        """Ledger entries for many expenses in one query, keyed by expense."""
        grouped: dict[UUID, list[ApprovalDecisionRecord]] = defaultdict(list)
        if expense_ids:
            rows = self.session.execute(
                select(ApprovalDecisionModel)
                .where(ApprovalDecisionModel.expense_id.in_(expense_ids))
                .order_by(ApprovalDecisionModel.expense_id, ApprovalDecisionModel.sequence)
            ).scalars()
            for row in rows:
                record = row.to_dto()
                grouped[record.expense_id].append(record)
        return {k: tuple(v) for k, v in grouped.items()}

    def _step_view(
        self,
        model: ExpenseModel,
        decisions: tuple[ApprovalDecisionRecord, ...],
    ) -> ApprovalStep | None:
        if model.status != ExpenseStatus.PENDING_APPROVAL.value:
            return None
        policy = policy_from_dict(model.policy_snapshot)
        return ApprovalStep(
            step_index=model.current_step,
            approver_ids=model.approver_ids,
            rule=policy.step(model.current_step).rule,
            decisions=tuple(
                d for d in decisions if d.step_index == model.current_step
            ),
        )

    def _to_dto(
        self,
        model: ExpenseModel,
        decisions: tuple[ApprovalDecisionRecord, ...] | None = None,
    ) -> ExpenseSnapshot:
        if decisions is None:
            decisions = self._decisions(model.id)
        step = self._step_view(model, decisions)
        return model.to_dto(
            required_approver=step.required_approver if step else None,
        )

    def _list(self, stmt) -> list[ExpenseSnapshot]:
        stmt = stmt.order_by(ExpenseModel.created_at, ExpenseModel.id)
        models = list(self.session.execute(stmt).scalars())
        ledgers = self._decisions_by_expense(
            [m.id for m in models if m.status == ExpenseStatus.PENDING_APPROVAL.value],
        )
        return [self._to_dto(m, ledgers.get(m.id, ())) for m in models]

    def get(self, expense_id: UUID) -> ExpenseSnapshot | None:
        model = self.session.get(ExpenseModel, expense_id)
        if model is None:
            return None
        return self._to_dto(model)

    def list_for_owner(
        self, owner_id: UUID, status: ExpenseStatus | None = None,
    ) -> list[ExpenseSnapshot]:
        """The owner's own expenses, optionally filtered by status."""
        stmt = select(ExpenseModel).where(ExpenseModel.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(ExpenseModel.status == ExpenseStatus(status).value)
        return self._list(stmt)

    def list_for_team(
        self, manager_id: UUID, status: ExpenseStatus | None = None,
    ) -> list[ExpenseSnapshot]:
        """Expenses owned by the manager's direct reports."""
        stmt = (
            select(ExpenseModel)
            .join(UserModel, UserModel.id == ExpenseModel.owner_id)
            .where(UserModel.manager_id == manager_id)
        )
        if status is not None:
            stmt = stmt.where(ExpenseModel.status == ExpenseStatus(status).value)
        return self._list(stmt)

    def list_for_organization(
        self, organization_id: UUID, status: ExpenseStatus | None = None,
    ) -> list[ExpenseSnapshot]:
        stmt = select(ExpenseModel).where(
            ExpenseModel.organization_id == organization_id,
        )
        if status is not None:
            stmt = stmt.where(ExpenseModel.status == ExpenseStatus(status).value)
        return self._list(stmt)

    def pending_for_approver(self, approver_id: UUID) -> list[ExpenseSnapshot]:
        """The approver's inbox.

        Pending expenses whose current approver set contains
        ``approver_id`` and on whose current step they have not decided.
        """
        approver = self.session.get(UserModel, approver_id)
        if approver is None:
            return []
        stmt = (
            select(ExpenseModel)
            .where(
                ExpenseModel.organization_id == approver.organization_id,
                ExpenseModel.status == ExpenseStatus.PENDING_APPROVAL.value,
            )
            .order_by(ExpenseModel.submitted_at, ExpenseModel.id)
        )
        candidates = [
            m for m in self.session.execute(stmt).scalars()
            if approver_id in m.approver_ids
        ]
        ledgers = self._decisions_by_expense([m.id for m in candidates])
        inbox: list[ExpenseSnapshot] = []
        for model in candidates:
            step = self._step_view(model, ledgers.get(model.id, ()))
            if approver_id in step.pending_approver_ids:
                inbox.append(model.to_dto(required_approver=step.required_approver))
        return inbox

    def approval_history(self, expense_id: UUID) -> list[ApprovalDecisionRecord]:
        """Every ledger entry for the expense, overrides included."""
        return list(self._decisions(expense_id))

    def current_step(self, expense_id: UUID) -> ApprovalStep | None:
        """Derived view of the current step; None unless PendingApproval."""
        model = self.session.get(ExpenseModel, expense_id)
        if model is None:
            return None
        return self._step_view(model, self._decisions(expense_id))
