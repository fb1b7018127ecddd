"""
expense_services.approval_engine -- Transactional façade over the kernel.

Responsibility:
    Expose the callable operations (``create_expense``, ``submit``,
    ``decide``, ``override``, plus user administration and queries) to any
    transport layer.  Each mutating call runs in its own transaction,
    serialized per expense, with notifications published after commit.

Architecture position:
    Services -- the top of the stack.  Constructs kernel services per
    transaction, selects the policy from ``expense_config``, and owns
    commit/rollback.

Invariants enforced:
    - One transaction per operation: the ledger append and the expense
      update it causes commit together or not at all.
    - Transitions on the same expense never interleave: an in-process
      keyed lock around the transaction, plus the row lock and version
      column inside it.
    - Notifications go out only for committed transitions and never
      affect the caller's result.

Failure modes:
    - Every kernel error propagates unchanged after rollback.
    - Any other database error surfaces as PersistenceFailureError after
      rollback.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from typing import TypeVar
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from expense_config import CompiledPolicySet, get_active_policy_set, validate_policy_approvers
from expense_kernel.db.engine import get_session_factory
from expense_kernel.domain.approval import (
    ApprovalDecisionRecord,
    ApprovalStep,
    DecisionOutcome,
    DecisionResult,
    ExpenseItem,
    ExpenseSnapshot,
    ExpenseStatus,
    IdentityProvider,
    NotificationSink,
    OrgChart,
    UserRecord,
    UserRole,
)
from expense_kernel.domain.clock import Clock, SystemClock
from expense_kernel.exceptions import ExpenseKernelError, PersistenceFailureError
from expense_kernel.logging_config import LogContext, get_logger
from expense_kernel.selectors.expense_selector import ExpenseSelector
from expense_kernel.services.approval_chain_service import ApprovalChainService
from expense_kernel.services.expense_store import ExpenseStore
from expense_kernel.services.override_service import OverrideService
from expense_kernel.services.user_service import UserService
from expense_services.identity import DirectoryIdentityProvider
from expense_services.locks import KeyedLock
from expense_services.notifications import LoggingNotificationSink, publish_all
from expense_services.org_chart import DatabaseOrgChart

logger = get_logger("services.approval_engine")

T = TypeVar("T")


class ExpenseApprovalEngine:
    """Entry point for the expense approval workflow.

    Contract:
        Receives a session factory and optional collaborators.  Every public
        method opens, commits, and closes its own session.

    Guarantees:
        - Mutations on one expense are serialized within this process.
        - Results are frozen DTOs, safe to use after the session closes.

    Non-goals:
        - Does NOT authenticate callers; ``IdentityProvider`` is trusted.
        - Does NOT retry; callers decide whether to retry
          OptimisticLockError or PersistenceFailureError.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        policy_set: CompiledPolicySet | None = None,
        clock: Clock | None = None,
        identity: IdentityProvider | None = None,
        sinks: Iterable[NotificationSink] | None = None,
        locks: KeyedLock | None = None,
        org_chart_factory: Callable[[Session], OrgChart] = DatabaseOrgChart,
    ) -> None:
        self._session_factory = session_factory or get_session_factory()
        self._policy_set = policy_set
        self._clock = clock or SystemClock()
        self._identity = identity or DirectoryIdentityProvider()
        self._sinks = tuple(sinks) if sinks is not None else (LoggingNotificationSink(),)
        self._locks = locks or KeyedLock()
        self._org_chart_factory = org_chart_factory

    @property
    def policy_set(self) -> CompiledPolicySet:
        if self._policy_set is None:
            self._policy_set = get_active_policy_set()
        return self._policy_set

    # -----------------------------------------------------------------
    # Transaction plumbing
    # -----------------------------------------------------------------

    @contextmanager
    def _transaction(
        self, operation: str, expense_id: UUID | None = None,
    ) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except ExpenseKernelError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error(
                "persistence_failure",
                extra={
                    "operation": operation,
                    "expense_id": str(expense_id) if expense_id else None,
                },
                exc_info=True,
            )
            raise PersistenceFailureError(
                operation, str(expense_id) if expense_id else None, str(exc),
            ) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _run_on_expense(
        self,
        operation: str,
        expense_id: UUID,
        work: Callable[[Session, OrgChart], T],
    ) -> T:
        with LogContext.bind(expense_id=str(expense_id)):
            with self._locks.hold(expense_id):
                with self._transaction(operation, expense_id) as session:
                    result = work(session, self._org_chart_factory(session))
            publish_all(self._sinks, result.transitions)
        return result

    # -----------------------------------------------------------------
    # Expense operations
    # -----------------------------------------------------------------

    def create_expense(
        self,
        owner_id: UUID,
        title: str,
        items: Sequence[ExpenseItem] = (),
        currency: str | None = None,
        description: str = "",
        category: str | None = None,
    ) -> ExpenseSnapshot:
        """Create a Draft expense owned by ``owner_id``."""
        with self._transaction("create_expense") as session:
            chain = ApprovalChainService(
                session, self._org_chart_factory(session), self._clock,
            )
            return chain.create_expense(
                owner_id,
                title,
                items=items,
                currency=currency,
                description=description,
                category=category,
            )

    def submit(self, expense_id: UUID, actor_id: UUID | None = None) -> ExpenseSnapshot:
        """Submit a Draft for approval under the policy for its scope."""

        def work(session: Session, org_chart: OrgChart):
            expense = ExpenseStore(session).load_expense(expense_id)
            policy = self.policy_set.policy_for(
                expense.organization_id, expense.category,
            )
            validate_policy_approvers(policy, org_chart)
            chain = ApprovalChainService(session, org_chart, self._clock)
            return chain.submit(expense_id, policy, actor_id=actor_id)

        return self._run_on_expense("submit", expense_id, work).expense

    def decide(
        self,
        expense_id: UUID,
        approver_id: UUID,
        decision: DecisionOutcome,
        comment: str = "",
    ) -> DecisionResult:
        """Record an approver's decision on the current step."""
        decision = DecisionOutcome(decision)

        def work(session: Session, org_chart: OrgChart) -> DecisionResult:
            chain = ApprovalChainService(session, org_chart, self._clock)
            return chain.decide(expense_id, approver_id, decision, comment)

        with LogContext.bind(actor_id=str(approver_id)):
            return self._run_on_expense("decide", expense_id, work)

    def approve(self, expense_id: UUID, approver_id: UUID, comment: str = "") -> DecisionResult:
        return self.decide(expense_id, approver_id, DecisionOutcome.APPROVED, comment)

    def reject(self, expense_id: UUID, approver_id: UUID, comment: str = "") -> DecisionResult:
        return self.decide(expense_id, approver_id, DecisionOutcome.REJECTED, comment)

    def override(
        self,
        expense_id: UUID,
        forced_status: ExpenseStatus,
        admin_id: UUID | None = None,
        comment: str = "",
    ) -> ExpenseSnapshot:
        """Force an expense to Approved or Rejected.

        ``admin_id`` defaults to the identity provider's current user.
        """
        if admin_id is None:
            admin_id = self._identity.current_user().user_id

        def work(session: Session, org_chart: OrgChart):
            service = OverrideService(session, org_chart, self._identity, self._clock)
            return service.override(expense_id, admin_id, forced_status, comment)

        with LogContext.bind(actor_id=str(admin_id)):
            return self._run_on_expense("override", expense_id, work).expense

    # -----------------------------------------------------------------
    # User administration
    # -----------------------------------------------------------------

    def bootstrap_admin(
        self,
        organization_id: UUID,
        display_name: str,
        email: str,
        default_currency: str = "USD",
    ) -> UserRecord:
        with self._transaction("bootstrap_admin") as session:
            return UserService(session).bootstrap_admin(
                organization_id, display_name, email, default_currency,
            )

    def create_user(
        self,
        actor_id: UUID,
        display_name: str,
        email: str,
        role: UserRole = UserRole.EMPLOYEE,
        manager_id: UUID | None = None,
        default_currency: str | None = None,
    ) -> UserRecord:
        with self._transaction("create_user") as session:
            return UserService(session).create_user(
                actor_id, display_name, email, role, manager_id, default_currency,
            )

    def change_role(self, actor_id: UUID, user_id: UUID, role: UserRole) -> UserRecord:
        with self._transaction("change_role") as session:
            return UserService(session).change_role(actor_id, user_id, role)

    def assign_manager(
        self, actor_id: UUID, user_id: UUID, manager_id: UUID | None,
    ) -> UserRecord:
        with self._transaction("assign_manager") as session:
            return UserService(session).assign_manager(actor_id, user_id, manager_id)

    def deactivate_user(self, actor_id: UUID, user_id: UUID) -> UserRecord:
        with self._transaction("deactivate_user") as session:
            return UserService(session).deactivate_user(actor_id, user_id)

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    def get_expense(self, expense_id: UUID) -> ExpenseSnapshot | None:
        with self._transaction("get_expense", expense_id) as session:
            return ExpenseSelector(session).get(expense_id)

    def list_for_owner(
        self, owner_id: UUID, status: ExpenseStatus | None = None,
    ) -> list[ExpenseSnapshot]:
        with self._transaction("list_for_owner") as session:
            return ExpenseSelector(session).list_for_owner(owner_id, status)

    def list_for_team(
        self, manager_id: UUID, status: ExpenseStatus | None = None,
    ) -> list[ExpenseSnapshot]:
        with self._transaction("list_for_team") as session:
            return ExpenseSelector(session).list_for_team(manager_id, status)

    def list_for_organization(
        self, organization_id: UUID, status: ExpenseStatus | None = None,
    ) -> list[ExpenseSnapshot]:
        with self._transaction("list_for_organization") as session:
            return ExpenseSelector(session).list_for_organization(organization_id, status)

    def pending_for_approver(self, approver_id: UUID) -> list[ExpenseSnapshot]:
        with self._transaction("pending_for_approver") as session:
            return ExpenseSelector(session).pending_for_approver(approver_id)

    def approval_history(self, expense_id: UUID) -> list[ApprovalDecisionRecord]:
        with self._transaction("approval_history", expense_id) as session:
            return ExpenseSelector(session).approval_history(expense_id)

    def current_step(self, expense_id: UUID) -> ApprovalStep | None:
        with self._transaction("current_step", expense_id) as session:
            return ExpenseSelector(session).current_step(expense_id)
