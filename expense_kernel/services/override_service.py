"""
expense_kernel.services.override_service -- Administrative override.

Responsibility:
    Let an Admin force a non-terminal expense straight to Approved or
    Rejected, bypassing approver resolution and rule evaluation, while
    leaving a ledger entry that records who forced what.

Architecture position:
    Kernel > Services.  Flush-only; uses ``ExpenseStore`` for row access and
    the ``IdentityProvider`` collaborator for the role check.

Invariants enforced:
    - Only users the identity provider confirms as Admin may override.
    - Legal from Draft or PendingApproval; terminal expenses are immutable.
    - The forced status is terminal.
    - The override is itself a ledger entry (step_index = -1).

Failure modes:
    - OverrideNotPermittedError for unknown, inactive, or non-admin actors.
    - ExpenseAlreadyFinalizedError for terminal expenses.
    - InvalidExpenseTransitionError for a non-terminal forced status.
"""

from __future__ import annotations

from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from expense_kernel.domain.approval import (
    OVERRIDE_STEP_INDEX,
    TERMINAL_EXPENSE_STATUSES,
    ApprovalDecisionRecord,
    DecisionOutcome,
    ExpenseStatus,
    ExpenseTransitionEvent,
    IdentityProvider,
    OrgChart,
    TransitionResult,
    UserRole,
    is_valid_transition,
)
from expense_kernel.domain.clock import Clock, SystemClock
from expense_kernel.exceptions import (
    ExpenseAlreadyFinalizedError,
    InvalidExpenseTransitionError,
    OverrideNotPermittedError,
)
from expense_kernel.logging_config import get_logger
from expense_kernel.services.expense_store import ExpenseStore

logger = get_logger("services.override")


class OverrideService:
    """Admin-forced terminal transitions."""

    def __init__(
        self,
        session: Session,
        org_chart: OrgChart,
        identity: IdentityProvider,
        clock: Clock | None = None,
    ) -> None:
        self._store = ExpenseStore(session)
        self._org_chart = org_chart
        self._identity = identity
        self._clock = clock or SystemClock()

    def override(
        self,
        expense_id: UUID,
        admin_id: UUID,
        forced_status: ExpenseStatus,
        comment: str = "",
    ) -> TransitionResult:
        """Force ``expense_id`` to ``forced_status``."""
        forced_status = ExpenseStatus(forced_status)
        admin = self._org_chart.get_user(admin_id)
        if (
            admin is None
            or not admin.is_active
            or not self._identity.has_role(admin, UserRole.ADMIN)
        ):
            logger.warning(
                "override_denied",
                extra={"expense_id": str(expense_id), "actor_id": str(admin_id)},
            )
            raise OverrideNotPermittedError(str(expense_id), str(admin_id))

        model = self._store.get_model(expense_id, for_update=True)
        current = ExpenseStatus(model.status)
        if current in TERMINAL_EXPENSE_STATUSES:
            raise ExpenseAlreadyFinalizedError(str(expense_id), current.value)
        if forced_status not in TERMINAL_EXPENSE_STATUSES or not is_valid_transition(
            current, forced_status,
        ):
            raise InvalidExpenseTransitionError(
                str(expense_id), current.value, forced_status.value,
            )

        now = self._clock.now()
        outcome = (
            DecisionOutcome.APPROVED
            if forced_status is ExpenseStatus.APPROVED
            else DecisionOutcome.REJECTED
        )
        record = ApprovalDecisionRecord(
            decision_id=uuid4(),
            expense_id=expense_id,
            step_index=OVERRIDE_STEP_INDEX,
            approver_id=admin_id,
            decision=outcome,
            comment=comment,
            decided_at=now,
            sequence=self._store.next_sequence(expense_id),
        )

        step = model.current_step
        model.status = forced_status.value
        model.decided_at = now
        self._store.save_expense(model, new_decision=record)

        logger.info(
            "expense_overridden",
            extra={
                "expense_id": str(expense_id),
                "actor_id": str(admin_id),
                "from_status": current.value,
                "to_status": forced_status.value,
                "step_index": step,
            },
        )

        event = ExpenseTransitionEvent(
            expense_id=expense_id,
            from_state=current,
            to_state=forced_status,
            actor_id=admin_id,
            from_step=step,
            to_step=step,
            occurred_at=now,
        )
        return TransitionResult(
            expense=model.to_dto(),
            transitions=(event,),
            decision=record,
        )
