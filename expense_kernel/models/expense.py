"""
Module: expense_kernel.models.expense
Responsibility: ORM persistence for expenses and their line items, including
    the approval-chain position and the policy snapshot taken at submission.
Architecture position: Kernel > Models.  May import from db/base.py and
    kernel exceptions only.

Invariants enforced:
    - status is one of Draft / PendingApproval / Approved / Rejected
      (check constraint); transitions are enforced by the chain service.
    - Terminal expenses are frozen: once a flushed row is Approved or
      Rejected, no further UPDATE is accepted (ORM listener).
    - Optimistic concurrency: ``version`` is the mapper's version_id_col,
      so a concurrent write to the same row raises StaleDataError.
    - policy_snapshot / policy_hash are written once at submission; the
      store verifies the hash every time the snapshot is read back.
    - Line items are write-once.

Failure modes:
    - ImmutabilityViolationError on UPDATE of a terminal expense, on DELETE
      of a non-draft expense, and on UPDATE of a line item.
    - StaleDataError on concurrent modification (mapped to
      OptimisticLockError by the store).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from expense_kernel.db.base import Base, TrackedBase, UUIDString
from expense_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from expense_kernel.domain.approval import ExpenseItem, ExpenseSnapshot

_TERMINAL_STATUSES = frozenset({"Approved", "Rejected"})


class ExpenseModel(TrackedBase):
    """
    An expense report moving through its approval chain.

    Contract:
        ``current_step`` is 0 while in Draft and after override from Draft,
        1..total_steps while PendingApproval, and keeps the last step index
        once the chain finishes.  ``current_approver_ids`` holds the
        approver set resolved on entry to ``current_step``.

    Guarantees:
        - created_by_id equals owner_id.
        - version increases on every flushed UPDATE.
    """

    __tablename__ = "expenses"

    __table_args__ = (
        CheckConstraint(
            "status IN ('Draft', 'PendingApproval', 'Approved', 'Rejected')",
            name="ck_expenses_valid_status",
        ),
        CheckConstraint("current_step >= 0", name="ck_expenses_step_non_negative"),
        Index("idx_expenses_owner_status", "owner_id", "status"),
        Index("idx_expenses_org_status", "organization_id", "status"),
    )

    owner_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("users.id"), nullable=False,
    )
    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="Draft")

    # Chain position
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_approver_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    # Policy snapshot (write-once at submission)
    policy_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    policy_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    policy_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    policy_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    submitted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    decided_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    items: Mapped[list["ExpenseItemModel"]] = relationship(
        "ExpenseItemModel",
        back_populates="expense",
        order_by="ExpenseItemModel.line_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Expense {self.id} {self.title!r} status={self.status}>"

    @property
    def approver_ids(self) -> tuple[UUID, ...]:
        return tuple(UUID(a) for a in (self.current_approver_ids or ()))

    def to_dto(self, required_approver: UUID | None = None) -> ExpenseSnapshot:
        """Convert ORM model to frozen domain DTO.

        ``required_approver`` is derived from the ledger, so the caller
        supplies it.
        """
        from expense_kernel.domain.approval import ExpenseSnapshot, ExpenseStatus

        return ExpenseSnapshot(
            expense_id=self.id,
            owner_id=self.owner_id,
            organization_id=self.organization_id,
            title=self.title,
            currency=self.currency,
            status=ExpenseStatus(self.status),
            description=self.description,
            category=self.category,
            items=tuple(i.to_dto() for i in self.items),
            current_step=self.current_step,
            total_steps=self.total_steps,
            policy_name=self.policy_name,
            policy_version=self.policy_version,
            policy_hash=self.policy_hash,
            current_approver_ids=self.approver_ids,
            current_required_approver=required_approver,
            submitted_at=self.submitted_at,
            decided_at=self.decided_at,
            version=self.version,
        )


class ExpenseItemModel(Base):
    """One line of an expense.  Write-once."""

    __tablename__ = "expense_items"

    __table_args__ = (
        UniqueConstraint("expense_id", "line_number", name="uq_expense_items_line"),
    )

    expense_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("expenses.id"), nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    original_amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("1"))

    expense: Mapped["ExpenseModel"] = relationship(
        "ExpenseModel", back_populates="items",
    )

    def to_dto(self) -> ExpenseItem:
        from expense_kernel.domain.approval import ExpenseItem

        return ExpenseItem(
            description=self.description,
            amount=self.amount,
            original_amount=self.original_amount,
            currency=self.currency,
            exchange_rate=self.exchange_rate,
        )

    @classmethod
    def from_dto(cls, dto: ExpenseItem, line_number: int) -> ExpenseItemModel:
        return cls(
            line_number=line_number,
            description=dto.description,
            amount=dto.amount,
            original_amount=dto.original_amount,
            currency=dto.currency,
            exchange_rate=dto.exchange_rate,
        )


# =============================================================================
# ORM-Level Immutability
# =============================================================================


def _persisted_status(target: ExpenseModel) -> str:
    history = inspect(target).attrs.status.history
    if history.deleted:
        return history.deleted[0]
    return target.status


@event.listens_for(ExpenseModel, "before_update")
def prevent_terminal_expense_update(mapper, connection, target):
    """Approved and Rejected expenses accept no further changes."""
    previous = _persisted_status(target)
    if previous in _TERMINAL_STATUSES:
        raise ImmutabilityViolationError(
            entity_type="Expense",
            entity_id=str(target.id),
            reason=f"Expense is {previous} -- cannot modify",
        )


@event.listens_for(ExpenseModel, "before_delete")
def prevent_submitted_expense_delete(mapper, connection, target):
    """Only drafts may be deleted."""
    previous = _persisted_status(target)
    if previous != "Draft":
        raise ImmutabilityViolationError(
            entity_type="Expense",
            entity_id=str(target.id),
            reason=f"Expense is {previous} -- cannot delete",
        )


@event.listens_for(ExpenseItemModel, "before_update")
def prevent_item_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ExpenseItem",
        entity_id=str(target.id),
        reason="Expense items are write-once -- cannot modify",
    )
