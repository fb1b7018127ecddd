"""
expense_kernel.services.expense_store -- Persistence contract for expenses.

Responsibility:
    Load an expense (optionally under a row lock), its policy snapshot and
    its decision ledger; append ledger entries; flush expense updates.
    Every other kernel service reaches the expense tables through here.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/, utils/.

Invariants enforced:
    - Policy snapshot tamper evidence: the stored snapshot is re-hashed on
      every load and must match ``policy_hash``.
    - Ledger order: decisions are returned ordered by their per-expense
      ``sequence``; ``next_sequence`` is only meaningful under the expense
      row lock.
    - Lost updates surface as OptimisticLockError, never silently.

Failure modes:
    - ExpenseNotFoundError for an unknown expense id.
    - PolicySnapshotTamperedError when the snapshot hash does not verify.
    - OptimisticLockError when a concurrent writer bumped ``version``.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from expense_kernel.domain.approval import (
    ApprovalDecisionRecord,
    ApprovalPolicy,
    ApprovalStep,
    ExpenseSnapshot,
    ExpenseStatus,
    policy_from_dict,
)
from expense_kernel.exceptions import (
    ExpenseNotFoundError,
    OptimisticLockError,
    PolicySnapshotTamperedError,
)
from expense_kernel.logging_config import get_logger
from expense_kernel.models.approval import ApprovalDecisionModel
from expense_kernel.models.expense import ExpenseModel
from expense_kernel.services.base import BaseService
from expense_kernel.utils.hashing import hash_payload

logger = get_logger("services.expense_store")


class ExpenseStore(BaseService[ExpenseModel]):
    """Expense row + decision ledger access within the caller's transaction."""

    def __init__(self, session: Session):
        super().__init__(session)

    # -----------------------------------------------------------------
    # Expense rows
    # -----------------------------------------------------------------

    def get_model(self, expense_id: UUID, for_update: bool = False) -> ExpenseModel:
        """Load the ORM row.

        With ``for_update=True`` the row is locked (SELECT ... FOR UPDATE)
        and refreshed from the database, so preconditions checked against it
        hold until the transaction ends.
        """
        stmt = select(ExpenseModel).where(ExpenseModel.id == expense_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        model = self.session.execute(stmt).scalar_one_or_none()
        if model is None:
            raise ExpenseNotFoundError(str(expense_id))
        return model

    def load_expense(self, expense_id: UUID, for_update: bool = False) -> ExpenseSnapshot:
        """Load the expense as a frozen snapshot with its approver pointer."""
        model = self.get_model(expense_id, for_update=for_update)
        return self.snapshot(model)

    def snapshot(
        self,
        model: ExpenseModel,
        decisions: tuple[ApprovalDecisionRecord, ...] | None = None,
    ) -> ExpenseSnapshot:
        """Build the DTO, deriving ``current_required_approver`` from the ledger."""
        if model.status != ExpenseStatus.PENDING_APPROVAL.value:
            return model.to_dto()
        if decisions is None:
            decisions = self.list_decisions(model.id)
        step = self.current_step_view(model, decisions)
        return model.to_dto(required_approver=step.required_approver)

    def current_step_view(
        self,
        model: ExpenseModel,
        decisions: tuple[ApprovalDecisionRecord, ...],
    ) -> ApprovalStep:
        """The derived view of the step the expense is currently at."""
        policy = self.load_policy(model)
        return ApprovalStep(
            step_index=model.current_step,
            approver_ids=model.approver_ids,
            rule=policy.step(model.current_step).rule,
            decisions=tuple(
                d for d in decisions if d.step_index == model.current_step
            ),
        )

    def load_policy(self, model: ExpenseModel) -> ApprovalPolicy:
        """Return the policy the expense was submitted under.

        Raises:
            PolicySnapshotTamperedError: stored snapshot no longer hashes to
                ``policy_hash``.
        """
        if model.policy_snapshot is None:
            raise PolicySnapshotTamperedError(str(model.id), model.policy_hash, None)
        computed = hash_payload(model.policy_snapshot)
        if computed != model.policy_hash:
            logger.error(
                "policy_snapshot_tampered",
                extra={
                    "expense_id": str(model.id),
                    "expected_hash": model.policy_hash,
                    "computed_hash": computed,
                },
            )
            raise PolicySnapshotTamperedError(str(model.id), model.policy_hash, computed)
        return policy_from_dict(model.policy_snapshot)

    def add_expense(self, model: ExpenseModel) -> ExpenseModel:
        self.session.add(model)
        self.session.flush()
        return model

    def save_expense(
        self,
        model: ExpenseModel,
        new_decision: ApprovalDecisionRecord | None = None,
    ) -> None:
        """Flush the expense update together with an optional ledger append.

        Raises:
            OptimisticLockError: the row was modified by another transaction.
        """
        if new_decision is not None:
            self.session.add(ApprovalDecisionModel.from_dto(new_decision))
        try:
            self.session.flush()
        except StaleDataError as exc:
            raise OptimisticLockError("Expense", str(model.id)) from exc

    # -----------------------------------------------------------------
    # Ledger
    # -----------------------------------------------------------------

    def list_decisions(self, expense_id: UUID) -> tuple[ApprovalDecisionRecord, ...]:
        """All ledger entries for the expense, in ledger order."""
        rows = self.session.execute(
            select(ApprovalDecisionModel)
            .where(ApprovalDecisionModel.expense_id == expense_id)
            .order_by(ApprovalDecisionModel.sequence)
        ).scalars().all()
        return tuple(r.to_dto() for r in rows)

    def next_sequence(self, expense_id: UUID) -> int:
        current = self.session.execute(
            select(func.max(ApprovalDecisionModel.sequence)).where(
                ApprovalDecisionModel.expense_id == expense_id,
            )
        ).scalar_one()
        return (current or 0) + 1
