"""
expense_kernel.services.approval_chain_service -- Expense approval chain.

Responsibility:
    Drive an expense from Draft through its approval steps to Approved or
    Rejected: snapshot the policy at submission, resolve each step's
    approver set on entry, record decisions in the append-only ledger,
    evaluate the step's rule, and advance or finalize.

Architecture position:
    Kernel > Services.  Composes the pure engines
    (``expense_engines.approver_resolver``, ``expense_engines.rule_evaluator``)
    with ``ExpenseStore``.  Flush-only: the caller owns the transaction and
    the per-expense serialization around it.

Invariants enforced:
    - Lifecycle state machine: every status change is checked against
      ``EXPENSE_TRANSITIONS``.
    - PendingApproval implies 1 <= current_step <= total_steps and a
      non-empty approver set snapshotted on step entry.
    - Decision preconditions, re-checked under the row lock, in order:
      terminal, draft, membership in the current set (or a decision of
      the same approver on an earlier step), prior decision.
    - Identical retries are no-ops; a changed decision is refused.
    - A step whose rule is met with no decisions (threshold 0) is passed
      through on entry.
    - At most one terminal transition per expense.

Failure modes:
    - ExpenseNotFoundError, ExpenseAlreadyFinalizedError,
      InvalidExpenseTransitionError, EmptyExpenseError.
    - UnauthorizedApproverError, ConflictingDecisionError.
    - NoApproverFoundError / InvalidApproverRoleError from the resolver.
    - InvalidRuleConfigurationError when a rule can never be satisfied.
    - PolicySnapshotTamperedError, OptimisticLockError from the store.
"""

from __future__ import annotations

from datetime import datetime
from typing import Sequence
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from expense_engines.approver_resolver import resolve_step
from expense_engines.rule_evaluator import evaluate, validate_rule
from expense_kernel.domain.approval import (
    TERMINAL_EXPENSE_STATUSES,
    ApprovalDecisionRecord,
    ApprovalPolicy,
    DecisionOutcome,
    DecisionResult,
    EvaluationState,
    ExpenseItem,
    ExpenseSnapshot,
    ExpenseStatus,
    ExpenseTransitionEvent,
    OrgChart,
    TransitionResult,
    is_valid_transition,
    policy_to_dict,
)
from expense_kernel.domain.clock import Clock, SystemClock
from expense_kernel.exceptions import (
    ConflictingDecisionError,
    EmptyExpenseError,
    ExpenseAlreadyFinalizedError,
    InvalidExpenseTransitionError,
    InvalidRuleConfigurationError,
    UnauthorizedApproverError,
    UserNotFoundError,
)
from expense_kernel.logging_config import get_logger
from expense_kernel.models.expense import ExpenseItemModel, ExpenseModel
from expense_kernel.services.expense_store import ExpenseStore
from expense_kernel.utils.hashing import hash_payload

logger = get_logger("services.approval_chain")


class ApprovalChainService:
    """Submission, decisions, and step progression for expenses."""

    def __init__(
        self,
        session: Session,
        org_chart: OrgChart,
        clock: Clock | None = None,
    ) -> None:
        self._session = session
        self._store = ExpenseStore(session)
        self._org_chart = org_chart
        self._clock = clock or SystemClock()

    # -----------------------------------------------------------------
    # Drafting
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
        """Create a Draft expense.

        ``currency`` defaults to the owner's default currency.
        """
        owner = self._org_chart.get_user(owner_id)
        if owner is None or not owner.is_active:
            raise UserNotFoundError(str(owner_id))

        model = ExpenseModel(
            owner_id=owner.user_id,
            organization_id=owner.organization_id,
            title=title,
            description=description,
            category=category,
            currency=currency or owner.default_currency,
            status=ExpenseStatus.DRAFT.value,
            current_step=0,
            total_steps=0,
            created_by_id=owner.user_id,
        )
        for line_number, item in enumerate(items, start=1):
            model.items.append(ExpenseItemModel.from_dto(item, line_number))

        self._store.add_expense(model)

        logger.info(
            "expense_created",
            extra={
                "expense_id": str(model.id),
                "owner_id": str(owner.user_id),
                "item_count": len(model.items),
                "currency": model.currency,
            },
        )
        return model.to_dto()

    # -----------------------------------------------------------------
    # Submission
    # -----------------------------------------------------------------

    def submit(
        self,
        expense_id: UUID,
        policy: ApprovalPolicy,
        actor_id: UUID | None = None,
    ) -> TransitionResult:
        """Draft -> PendingApproval(step 1) under ``policy``.

        The policy is serialized onto the expense; later policy changes do
        not affect this expense.
        """
        model = self._store.get_model(expense_id, for_update=True)
        status = ExpenseStatus(model.status)
        if status in TERMINAL_EXPENSE_STATUSES:
            raise ExpenseAlreadyFinalizedError(str(expense_id), status.value)
        if status is not ExpenseStatus.DRAFT:
            raise InvalidExpenseTransitionError(
                str(expense_id), status.value, ExpenseStatus.PENDING_APPROVAL.value,
            )
        if not model.items:
            raise EmptyExpenseError(str(expense_id))
        if policy.total_steps == 0:
            raise InvalidRuleConfigurationError(
                policy.policy_name, "policy defines no approval steps",
            )
        for step in policy.steps:
            validate_rule(step.rule)

        now = self._clock.now()
        actor = actor_id or model.owner_id
        snapshot = policy_to_dict(policy)

        model.policy_name = policy.policy_name
        model.policy_version = policy.version
        model.policy_snapshot = snapshot
        model.policy_hash = hash_payload(snapshot)
        model.total_steps = policy.total_steps
        model.submitted_at = now

        events = [
            self._set_status(model, ExpenseStatus.PENDING_APPROVAL, actor, now, to_step=1),
        ]
        events.extend(self._enter_step(model, 1, policy, (), actor, now))
        self._store.save_expense(model)

        logger.info(
            "expense_submitted",
            extra={
                "expense_id": str(expense_id),
                "policy_name": policy.policy_name,
                "policy_version": policy.version,
                "total_steps": policy.total_steps,
                "status": model.status,
                "current_step": model.current_step,
            },
        )
        return TransitionResult(
            expense=self._store.snapshot(model, ()),
            transitions=tuple(events),
        )

    # -----------------------------------------------------------------
    # Decisions
    # -----------------------------------------------------------------

    def decide(
        self,
        expense_id: UUID,
        approver_id: UUID,
        decision: DecisionOutcome,
        comment: str = "",
    ) -> DecisionResult:
        """Record ``approver_id``'s decision on the current step.

        Preconditions are re-evaluated on the locked row, so two approvers
        racing on the same expense see each other's effects.
        """
        model = self._store.get_model(expense_id, for_update=True)
        status = ExpenseStatus(model.status)

        if status in TERMINAL_EXPENSE_STATUSES:
            raise ExpenseAlreadyFinalizedError(str(expense_id), status.value)
        if status is not ExpenseStatus.PENDING_APPROVAL:
            raise InvalidExpenseTransitionError(
                str(expense_id), status.value, decision.as_status().value,
            )

        step_index = model.current_step
        approvers = model.approver_ids
        ledger = self._store.list_decisions(expense_id)
        if approver_id in approvers:
            prior = next(
                (
                    d for d in ledger
                    if d.step_index == step_index and d.approver_id == approver_id
                ),
                None,
            )
        else:
            # A retry of the decision that advanced the chain arrives after
            # the step has moved on.
            prior = next(
                (
                    d for d in reversed(ledger)
                    if 1 <= d.step_index < step_index and d.approver_id == approver_id
                ),
                None,
            )
            if prior is None:
                logger.warning(
                    "approval_decision_unauthorized",
                    extra={
                        "expense_id": str(expense_id),
                        "approver_id": str(approver_id),
                        "step_index": step_index,
                    },
                )
                raise UnauthorizedApproverError(
                    str(expense_id), str(approver_id), step_index,
                )

        if prior is not None:
            if prior.decision is decision and prior.comment == comment:
                logger.info(
                    "approval_decision_duplicate",
                    extra={
                        "expense_id": str(expense_id),
                        "approver_id": str(approver_id),
                        "step_index": prior.step_index,
                    },
                )
                return DecisionResult(
                    expense=self._store.snapshot(model, ledger),
                    decision=prior,
                    duplicate=True,
                )
            raise ConflictingDecisionError(
                str(expense_id),
                str(approver_id),
                prior.step_index,
                prior.decision.value,
                decision.value,
            )

        policy = self._store.load_policy(model)
        now = self._clock.now()
        record = ApprovalDecisionRecord(
            decision_id=uuid4(),
            expense_id=expense_id,
            step_index=step_index,
            approver_id=approver_id,
            decision=decision,
            comment=comment,
            decided_at=now,
            sequence=self._store.next_sequence(expense_id),
        )
        ledger = ledger + (record,)

        rule = policy.step(step_index).rule
        evaluation = evaluate(
            rule,
            [d for d in ledger if d.step_index == step_index],
            approvers,
        )
        if evaluation.state is EvaluationState.UNSATISFIED:
            raise InvalidRuleConfigurationError(rule.kind.value, evaluation.reason)

        events: list[ExpenseTransitionEvent] = []
        if evaluation.is_rejected:
            events.append(
                self._set_status(model, ExpenseStatus.REJECTED, approver_id, now),
            )
        elif evaluation.is_approved:
            if step_index >= model.total_steps:
                events.append(
                    self._set_status(model, ExpenseStatus.APPROVED, approver_id, now),
                )
            else:
                events.append(
                    self._set_status(
                        model, ExpenseStatus.PENDING_APPROVAL, approver_id, now,
                        to_step=step_index + 1,
                    )
                )
                events.extend(
                    self._enter_step(
                        model, step_index + 1, policy, ledger, approver_id, now,
                    )
                )

        self._store.save_expense(model, new_decision=record)

        logger.info(
            "approval_decision_recorded",
            extra={
                "expense_id": str(expense_id),
                "approver_id": str(approver_id),
                "step_index": step_index,
                "decision": decision.value,
                "evaluation": evaluation.state.value,
                "approved_count": evaluation.approved_count,
                "required_approvals": evaluation.required_approvals,
                "status": model.status,
            },
        )
        return DecisionResult(
            expense=self._store.snapshot(model, ledger),
            decision=record,
            evaluation=evaluation,
            transitions=tuple(events),
        )

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _enter_step(
        self,
        model: ExpenseModel,
        step_index: int,
        policy: ApprovalPolicy,
        ledger: tuple[ApprovalDecisionRecord, ...],
        actor_id: UUID,
        now: datetime,
    ) -> list[ExpenseTransitionEvent]:
        """Resolve and snapshot the approver set for ``step_index``.

        Steps already satisfied with no decisions are passed through until
        a step needs a decision or the chain completes.
        """
        events: list[ExpenseTransitionEvent] = []
        while True:
            model.current_step = step_index
            approvers = resolve_step(
                model.to_dto(), step_index, self._org_chart, policy, ledger,
            )
            model.current_approver_ids = [str(a) for a in approvers]

            rule = policy.step(step_index).rule
            evaluation = evaluate(rule, (), approvers)
            if evaluation.state is EvaluationState.UNSATISFIED:
                raise InvalidRuleConfigurationError(rule.kind.value, evaluation.reason)

            logger.info(
                "expense_step_entered",
                extra={
                    "expense_id": str(model.id),
                    "step_index": step_index,
                    "approver_count": len(approvers),
                    "rule_kind": rule.kind.value,
                },
            )

            if not evaluation.is_approved:
                return events

            if step_index >= policy.total_steps:
                events.append(
                    self._set_status(model, ExpenseStatus.APPROVED, actor_id, now),
                )
                return events

            events.append(
                self._set_status(
                    model, ExpenseStatus.PENDING_APPROVAL, actor_id, now,
                    to_step=step_index + 1,
                )
            )
            step_index += 1

    def _set_status(
        self,
        model: ExpenseModel,
        target: ExpenseStatus,
        actor_id: UUID,
        now: datetime,
        to_step: int | None = None,
    ) -> ExpenseTransitionEvent:
        current = ExpenseStatus(model.status)
        if not is_valid_transition(current, target):
            raise InvalidExpenseTransitionError(str(model.id), current.value, target.value)

        from_step = model.current_step
        model.status = target.value
        if to_step is not None:
            model.current_step = to_step

        if target in TERMINAL_EXPENSE_STATUSES:
            model.decided_at = now
            logger.info(
                "expense_finalized",
                extra={
                    "expense_id": str(model.id),
                    "status": target.value,
                    "step_index": model.current_step,
                    "actor_id": str(actor_id),
                },
            )
        elif current is ExpenseStatus.PENDING_APPROVAL:
            logger.info(
                "expense_step_advanced",
                extra={
                    "expense_id": str(model.id),
                    "from_step": from_step,
                    "to_step": model.current_step,
                },
            )

        return ExpenseTransitionEvent(
            expense_id=model.id,
            from_state=current,
            to_state=target,
            actor_id=actor_id,
            from_step=from_step,
            to_step=model.current_step,
            occurred_at=now,
        )
