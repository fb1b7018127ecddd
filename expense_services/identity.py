"""
expense_services.identity -- Identity collaborator.

The surrounding application authenticates users; this module only carries
the result.  ``bind_current_user`` attaches a user to the current context
(thread or task) and ``DirectoryIdentityProvider`` reads it back and
answers role questions from the user directory record.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

from expense_kernel.domain.approval import UserRecord, UserRole
from expense_kernel.logging_config import LogContext

_current_user: ContextVar[UserRecord | None] = ContextVar(
    "expense_current_user", default=None,
)


@contextmanager
def bind_current_user(user: UserRecord) -> Iterator[UserRecord]:
    """Make ``user`` the current user for the enclosed block."""
    token = _current_user.set(user)
    try:
        with LogContext.bind(actor_id=str(user.user_id)):
            yield user
    finally:
        _current_user.reset(token)


class DirectoryIdentityProvider:
    """IdentityProvider backed by the bound user and directory roles."""

    def current_user(self) -> UserRecord:
        """
        Raises:
            RuntimeError: no user is bound to the current context.
        """
        user = _current_user.get()
        if user is None:
            raise RuntimeError("No current user. Use bind_current_user() first.")
        return user

    def has_role(self, user: UserRecord, role: UserRole) -> bool:
        return user.is_active and user.role is UserRole(role)
