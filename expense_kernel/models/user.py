"""
Module: expense_kernel.models.user
Responsibility: ORM persistence for organization members: their role and
    their reporting line.  User rows are the source the database-backed org
    chart reads from when resolving approvers.
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/, or outer layers.

Invariants enforced:
    - role is one of Employee / Manager / Admin (check constraint).
    - manager_id is a self-reference by identifier; the service layer keeps
      the reporting graph acyclic and same-organization.
    - Users are deactivated, never deleted, so historical decisions keep a
      resolvable approver.

Failure modes:
    - IntegrityError on duplicate email within an organization.
    - ImmutabilityViolationError on DELETE.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from expense_kernel.db.base import TrackedBase, UUIDString
from expense_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from expense_kernel.domain.approval import UserRecord


class UserModel(TrackedBase):
    """
    A member of an organization.

    Guarantees:
        - email is unique within an organization.
        - is_active=False users never appear in a resolved approver set.
    """

    __tablename__ = "users"

    __table_args__ = (
        CheckConstraint(
            "role IN ('Employee', 'Manager', 'Admin')",
            name="ck_users_valid_role",
        ),
        UniqueConstraint("organization_id", "email", name="uq_users_org_email"),
        Index("idx_users_org_role", "organization_id", "role"),
        Index("idx_users_manager", "manager_id"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="Employee")
    manager_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("users.id"),
        nullable=True,
    )
    default_currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="USD",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<User {self.display_name} ({self.role})>"

    def to_dto(self) -> UserRecord:
        """Convert ORM model to frozen domain DTO."""
        from expense_kernel.domain.approval import UserRecord, UserRole

        return UserRecord(
            user_id=self.id,
            display_name=self.display_name,
            role=UserRole(self.role),
            organization_id=self.organization_id,
            manager_id=self.manager_id,
            email=self.email,
            default_currency=self.default_currency,
            is_active=self.is_active,
        )

    @classmethod
    def from_dto(cls, dto: UserRecord, created_by_id: UUID) -> UserModel:
        """Create ORM model from domain DTO."""
        return cls(
            id=dto.user_id,
            organization_id=dto.organization_id,
            display_name=dto.display_name,
            email=dto.email,
            role=dto.role.value,
            manager_id=dto.manager_id,
            default_currency=dto.default_currency,
            is_active=dto.is_active,
            created_by_id=created_by_id,
        )


@event.listens_for(UserModel, "before_delete")
def prevent_user_delete(mapper, connection, target):
    """Users are deactivated, not deleted."""
    raise ImmutabilityViolationError(
        entity_type="User",
        entity_id=str(target.id),
        reason="Users cannot be deleted -- deactivate instead",
    )
