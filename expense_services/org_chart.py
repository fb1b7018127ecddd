"""
expense_services.org_chart -- Org-chart collaborators.

``DatabaseOrgChart`` reads the user directory through the caller's session
and memoizes lookups, so one approver resolution sees one consistent
snapshot even if the directory changes underneath it.  ``StaticOrgChart``
serves a fixed set of records.
"""

from __future__ import annotations

from collections.abc import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from expense_kernel.domain.approval import UserRecord, UserRole
from expense_kernel.models.user import UserModel


class DatabaseOrgChart:
    """OrgChart over the ``users`` table.  Lives for one transaction."""

    def __init__(self, session: Session) -> None:
        self._session = session
        self._users: dict[UUID, UserRecord | None] = {}
        self._admins: dict[UUID, tuple[UserRecord, ...]] = {}

    def get_user(self, user_id: UUID) -> UserRecord | None:
        if user_id not in self._users:
            model = self._session.get(UserModel, user_id)
            self._users[user_id] = model.to_dto() if model is not None else None
        return self._users[user_id]

    def manager_of(self, user_id: UUID) -> UserRecord | None:
        user = self.get_user(user_id)
        if user is None or user.manager_id is None:
            return None
        return self.get_user(user.manager_id)

    def list_admins(self, organization_id: UUID) -> tuple[UserRecord, ...]:
        if organization_id not in self._admins:
            rows = self._session.execute(
                select(UserModel)
                .where(
                    UserModel.organization_id == organization_id,
                    UserModel.role == UserRole.ADMIN.value,
                    UserModel.is_active.is_(True),
                )
                .order_by(UserModel.display_name, UserModel.id)
            ).scalars()
            admins = tuple(r.to_dto() for r in rows)
            for admin in admins:
                self._users.setdefault(admin.user_id, admin)
            self._admins[organization_id] = admins
        return self._admins[organization_id]


class StaticOrgChart:
    """OrgChart over an in-memory set of user records."""

    def __init__(self, users: Iterable[UserRecord] = ()) -> None:
        self._users: dict[UUID, UserRecord] = {u.user_id: u for u in users}

    def add(self, user: UserRecord) -> None:
        self._users[user.user_id] = user

    def get_user(self, user_id: UUID) -> UserRecord | None:
        return self._users.get(user_id)

    def manager_of(self, user_id: UUID) -> UserRecord | None:
        user = self._users.get(user_id)
        if user is None or user.manager_id is None:
            return None
        return self._users.get(user.manager_id)

    def list_admins(self, organization_id: UUID) -> tuple[UserRecord, ...]:
        return tuple(
            sorted(
                (
                    u for u in self._users.values()
                    if u.organization_id == organization_id
                    and u.role is UserRole.ADMIN
                    and u.is_active
                ),
                key=lambda u: (u.display_name, str(u.user_id)),
            )
        )
