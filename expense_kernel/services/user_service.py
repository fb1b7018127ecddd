"""
Service layer for user administration.

Admins create users, change roles, assign managers, and deactivate users.
The reporting graph these operations maintain is what the approver
resolver walks, so every change keeps it resolvable: Employees always have
a manager, managers are active Managers or Admins of the same
organization, and there are no cycles.

Returns UserRecord DTOs instead of ORM entities.
"""

from __future__ import annotations

from uuid import UUID, uuid4

from sqlalchemy import select

from expense_kernel.domain.approval import APPROVER_ROLES, UserRecord, UserRole
from expense_kernel.exceptions import (
    AdminRoleRequiredError,
    InvalidManagerError,
    ManagerCycleError,
    ManagerRequiredError,
    UserNotFoundError,
)
from expense_kernel.logging_config import get_logger
from expense_kernel.models.user import UserModel
from expense_kernel.services.base import BaseService

logger = get_logger("services.user")


class UserService(BaseService[UserModel]):
    """
    Admin-only maintenance of users and the reporting graph.

    All mutating methods take the acting user's id first and refuse with
    AdminRoleRequiredError unless that user is an active Admin of the
    target's organization.
    """

    def _get(self, user_id: UUID) -> UserModel:
        user = self.session.get(UserModel, user_id)
        if user is None:
            raise UserNotFoundError(str(user_id))
        return user

    def _require_admin(
        self, actor_id: UUID, action: str, organization_id: UUID | None = None,
    ) -> UserModel:
        actor = self.session.get(UserModel, actor_id)
        if (
            actor is None
            or not actor.is_active
            or actor.role != UserRole.ADMIN.value
            or (organization_id is not None and actor.organization_id != organization_id)
        ):
            logger.warning(
                "admin_action_denied",
                extra={"actor_id": str(actor_id), "action": action},
            )
            raise AdminRoleRequiredError(str(actor_id), action)
        return actor

    def _check_manager(
        self, user_id: UUID, organization_id: UUID, manager_id: UUID,
    ) -> UserModel:
        if manager_id == user_id:
            raise ManagerCycleError(str(user_id), str(manager_id))
        manager = self.session.get(UserModel, manager_id)
        if manager is None:
            raise InvalidManagerError(str(user_id), str(manager_id), "unknown user")
        if not manager.is_active:
            raise InvalidManagerError(str(user_id), str(manager_id), "inactive user")
        if UserRole(manager.role) not in APPROVER_ROLES:
            raise InvalidManagerError(
                str(user_id), str(manager_id), f"role {manager.role} cannot approve",
            )
        if manager.organization_id != organization_id:
            raise InvalidManagerError(
                str(user_id), str(manager_id), "different organization",
            )

        # Walk up from the proposed manager; reaching user_id closes a loop.
        seen: set[UUID] = set()
        cursor: UserModel | None = manager
        while cursor is not None and cursor.manager_id is not None:
            if cursor.manager_id == user_id:
                raise ManagerCycleError(str(user_id), str(manager_id))
            if cursor.id in seen:
                break
            seen.add(cursor.id)
            cursor = self.session.get(UserModel, cursor.manager_id)
        return manager

    def _direct_reports(self, manager_id: UUID) -> list[UserModel]:
        return list(
            self.session.execute(
                select(UserModel).where(
                    UserModel.manager_id == manager_id,
                    UserModel.is_active.is_(True),
                )
            ).scalars()
        )

    def get_user(self, user_id: UUID) -> UserRecord:
        """
        Get user by ID.

        Raises:
            UserNotFoundError: If the user doesn't exist.
        """
        return self._get(user_id).to_dto()

    def bootstrap_admin(
        self,
        organization_id: UUID,
        display_name: str,
        email: str,
        default_currency: str = "USD",
    ) -> UserRecord:
        """Create the first Admin of an organization.

        The record is its own creator; there is no one to authorize it.
        """
        user_id = uuid4()
        model = UserModel(
            id=user_id,
            organization_id=organization_id,
            display_name=display_name,
            email=email,
            role=UserRole.ADMIN.value,
            default_currency=default_currency,
            is_active=True,
            created_by_id=user_id,
        )
        self.session.add(model)
        self.session.flush()
        logger.info(
            "organization_bootstrapped",
            extra={"organization_id": str(organization_id), "user_id": str(user_id)},
        )
        return model.to_dto()

    def create_user(
        self,
        actor_id: UUID,
        display_name: str,
        email: str,
        role: UserRole = UserRole.EMPLOYEE,
        manager_id: UUID | None = None,
        default_currency: str | None = None,
    ) -> UserRecord:
        """
        Create a user in the acting Admin's organization.

        Raises:
            AdminRoleRequiredError: actor is not an active Admin.
            ManagerRequiredError: an Employee without a manager.
            InvalidManagerError / ManagerCycleError: unusable manager.
        """
        actor = self._require_admin(actor_id, "create_user")
        role = UserRole(role)
        user_id = uuid4()

        if manager_id is not None:
            self._check_manager(user_id, actor.organization_id, manager_id)
        elif role is UserRole.EMPLOYEE:
            raise ManagerRequiredError(str(user_id))

        model = UserModel(
            id=user_id,
            organization_id=actor.organization_id,
            display_name=display_name,
            email=email,
            role=role.value,
            manager_id=manager_id,
            default_currency=default_currency or actor.default_currency,
            is_active=True,
            created_by_id=actor.id,
        )
        self.session.add(model)
        self.session.flush()

        logger.info(
            "user_created",
            extra={
                "user_id": str(user_id),
                "role": role.value,
                "manager_id": str(manager_id) if manager_id else None,
                "actor_id": str(actor_id),
            },
        )
        return model.to_dto()

    def change_role(self, actor_id: UUID, user_id: UUID, role: UserRole) -> UserRecord:
        """
        Change a user's role.

        Demoting to Employee requires an existing manager and no active
        direct reports (they would be left with a non-approving manager).
        """
        user = self._get(user_id)
        self._require_admin(actor_id, "change_role", user.organization_id)
        role = UserRole(role)

        if role is UserRole.EMPLOYEE:
            if user.manager_id is None:
                raise ManagerRequiredError(str(user_id))
            reports = self._direct_reports(user.id)
            if reports:
                raise InvalidManagerError(
                    str(reports[0].id), str(user_id), "manager would lose approver role",
                )

        previous = user.role
        user.role = role.value
        user.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "user_role_changed",
            extra={
                "user_id": str(user_id),
                "from_role": previous,
                "to_role": role.value,
                "actor_id": str(actor_id),
            },
        )
        return user.to_dto()

    def assign_manager(
        self, actor_id: UUID, user_id: UUID, manager_id: UUID | None,
    ) -> UserRecord:
        """
        Set (or clear, for non-Employees) a user's manager.
        """
        user = self._get(user_id)
        self._require_admin(actor_id, "assign_manager", user.organization_id)

        if manager_id is None:
            if user.role == UserRole.EMPLOYEE.value:
                raise ManagerRequiredError(str(user_id))
        else:
            self._check_manager(user.id, user.organization_id, manager_id)

        user.manager_id = manager_id
        user.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "user_manager_assigned",
            extra={
                "user_id": str(user_id),
                "manager_id": str(manager_id) if manager_id else None,
                "actor_id": str(actor_id),
            },
        )
        return user.to_dto()

    def deactivate_user(self, actor_id: UUID, user_id: UUID) -> UserRecord:
        """
        Deactivate a user.  Users with active direct reports must have
        them reassigned first.
        """
        user = self._get(user_id)
        self._require_admin(actor_id, "deactivate_user", user.organization_id)

        reports = self._direct_reports(user.id)
        if reports:
            raise InvalidManagerError(
                str(reports[0].id), str(user_id), "manager is being deactivated",
            )

        user.is_active = False
        user.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "user_deactivated",
            extra={"user_id": str(user_id), "actor_id": str(actor_id)},
        )
        return user.to_dto()
