"""
Module: expense_kernel.models.approval
Responsibility: ORM persistence for the approval decision ledger.

Architecture position: Kernel > Models.  May import from db/base.py and
    kernel exceptions only.

Invariants enforced:
    - Append-only: decisions are never updated or deleted (ORM listeners).
    - One decision per approver per step: UNIQUE(expense_id, step_index,
      approver_id).
    - Total order per expense: ``sequence`` is assigned by the chain service
      under the expense row lock and is UNIQUE per expense, so ledger order
      never depends on timestamp resolution.
    - Overrides are recorded with step_index = -1.

Failure modes:
    - IntegrityError on a second decision by the same approver for the same
      step, or on a sequence collision from an unserialized writer.
    - ImmutabilityViolationError on UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from expense_kernel.db.base import Base, UUIDString
from expense_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from expense_kernel.domain.approval import ApprovalDecisionRecord


class ApprovalDecisionModel(Base):
    """Persistent approval decision record. Append-only.

    ``approver_id`` is a weak reference: the ledger must outlive changes to
    the user directory.
    """

    __tablename__ = "approval_decisions"

    __table_args__ = (
        CheckConstraint(
            "decision IN ('Approved', 'Rejected')",
            name="ck_approval_decisions_valid_decision",
        ),
        UniqueConstraint(
            "expense_id", "step_index", "approver_id",
            name="uq_approval_decisions_step_approver",
        ),
        UniqueConstraint(
            "expense_id", "sequence",
            name="uq_approval_decisions_sequence",
        ),
        Index("ix_approval_decisions_approver", "approver_id"),
    )

    expense_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("expenses.id"), nullable=False,
    )
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    comment: Mapped[str] = mapped_column(Text, default="", nullable=False)
    decided_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ApprovalDecision {self.id} "
            f"expense={self.expense_id} step={self.step_index} "
            f"decision={self.decision}>"
        )

    def to_dto(self) -> ApprovalDecisionRecord:
        """Convert ORM model to frozen domain DTO."""
        from expense_kernel.domain.approval import (
            ApprovalDecisionRecord as DecisionDTO,
            DecisionOutcome,
        )

        return DecisionDTO(
            decision_id=self.id,
            expense_id=self.expense_id,
            step_index=self.step_index,
            approver_id=self.approver_id,
            decision=DecisionOutcome(self.decision),
            comment=self.comment,
            decided_at=self.decided_at,
            sequence=self.sequence,
        )

    @classmethod
    def from_dto(cls, dto: ApprovalDecisionRecord) -> ApprovalDecisionModel:
        """Create ORM model from domain DTO."""
        return cls(
            id=dto.decision_id,
            expense_id=dto.expense_id,
            step_index=dto.step_index,
            approver_id=dto.approver_id,
            decision=dto.decision.value,
            comment=dto.comment,
            decided_at=dto.decided_at,
            sequence=dto.sequence,
        )


# =============================================================================
# ORM-Level Immutability for Decisions (Append-Only)
# =============================================================================


@event.listens_for(ApprovalDecisionModel, "before_update")
def prevent_decision_update(mapper, connection, target):
    """Prevent updates to approval decision records."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalDecision",
        entity_id=str(target.id),
        reason="Approval decisions are immutable -- cannot modify",
    )


@event.listens_for(ApprovalDecisionModel, "before_delete")
def prevent_decision_delete(mapper, connection, target):
    """Prevent deletion of approval decision records."""
    raise ImmutabilityViolationError(
        entity_type="ApprovalDecision",
        entity_id=str(target.id),
        reason="Approval decisions are immutable -- cannot delete",
    )
