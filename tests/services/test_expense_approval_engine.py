"""
End-to-end tests for ExpenseApprovalEngine.

Each engine call commits its own transaction, so these tests observe what
a transport layer would: committed state, published notifications, and
typed failures that leave nothing behind.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from expense_kernel.db.engine import session_scope
from expense_kernel.domain.approval import (
    OVERRIDE_STEP_INDEX,
    ApprovalPolicy,
    ApprovalStepPolicy,
    ApproverSource,
    DecisionOutcome,
    ExpenseItem,
    ExpenseStatus,
    HybridRule,
    PercentageRule,
    SpecificApproverRule,
)
from expense_kernel.exceptions import (
    ApprovalPolicyNotFoundError,
    ConflictingDecisionError,
    ExpenseAlreadyFinalizedError,
    InvalidApproverRoleError,
    NoApproverFoundError,
    OverrideNotPermittedError,
    PersistenceFailureError,
    PolicySnapshotTamperedError,
    UnauthorizedApproverError,
)
from expense_kernel.models.expense import ExpenseModel
from expense_services.approval_engine import ExpenseApprovalEngine
from expense_services.identity import bind_current_user
from expense_services.notifications import LoggingNotificationSink

ALL = PercentageRule(threshold=Decimal("100"))
ITEMS = (ExpenseItem.from_original("Client dinner", Decimal("185.40"), "USD"),)


def _panel_step(rule, *members):
    return ApprovalStepPolicy(
        rule=rule,
        approver_source=ApproverSource.FIXED_PANEL,
        panel=tuple(m.user_id for m in members),
    )


def _submit(engine, owner, **kwargs):
    draft = engine.create_expense(owner.user_id, "Client dinner", items=ITEMS, **kwargs)
    return engine.submit(draft.expense_id)


class TestScenarios:
    def test_percentage_step_waits_for_threshold(self, make_engine, make_policy, org):
        """Two-person panel at 60%: one approval is not enough, two are."""
        m1, m2 = org.manager, org.peer_manager
        engine = make_engine(make_policy(_panel_step(PercentageRule(threshold=Decimal("60")), m1, m2)))
        expense = _submit(engine, org.employee)

        first = engine.approve(expense.expense_id, m1.user_id)
        assert first.expense.status is ExpenseStatus.PENDING_APPROVAL
        assert first.expense.current_step == 1

        second = engine.approve(expense.expense_id, m2.user_id)
        assert second.expense.status is ExpenseStatus.APPROVED

    def test_fifty_percent_of_two_rounds_up_to_one_approval(self, make_engine, make_policy, org):
        """required = ceil(50 * 2 / 100) = 1, so the first approval settles the step."""
        m1, m2 = org.manager, org.peer_manager
        engine = make_engine(make_policy(_panel_step(PercentageRule(threshold=Decimal("50")), m1, m2)))
        expense = _submit(engine, org.employee)

        result = engine.approve(expense.expense_id, m1.user_id)

        assert result.expense.status is ExpenseStatus.APPROVED

    def test_specific_approver_rejection_wins(self, make_engine, make_policy, org):
        m1, m2 = org.manager, org.peer_manager
        engine = make_engine(
            make_policy(_panel_step(SpecificApproverRule(approver_id=m1.user_id), m1, m2)),
        )
        expense = _submit(engine, org.employee)

        other = engine.approve(expense.expense_id, m2.user_id)
        assert other.expense.status is ExpenseStatus.PENDING_APPROVAL

        designated = engine.reject(expense.expense_id, m1.user_id, "not in budget")
        assert designated.expense.status is ExpenseStatus.REJECTED

        history = engine.approval_history(expense.expense_id)
        assert [(d.approver_id, d.decision) for d in history] == [
            (m2.user_id, DecisionOutcome.APPROVED),
            (m1.user_id, DecisionOutcome.REJECTED),
        ]

    def test_second_step_goes_to_deciders_manager(self, make_engine, make_policy, org, notifications):
        m1 = org.manager
        engine = make_engine(
            make_policy(
                ApprovalStepPolicy(rule=SpecificApproverRule(approver_id=m1.user_id)),
                ApprovalStepPolicy(rule=ALL),
            )
        )
        expense = _submit(engine, org.employee)
        assert expense.current_approver_ids == (m1.user_id,)

        advanced = engine.approve(expense.expense_id, m1.user_id)
        assert advanced.expense.current_step == 2
        assert advanced.expense.current_approver_ids == (org.director.user_id,)

        final = engine.reject(expense.expense_id, org.director.user_id)
        assert final.expense.status is ExpenseStatus.REJECTED

        events = notifications.for_expense(expense.expense_id)
        assert [(e.from_state, e.to_state, e.from_step, e.to_step) for e in events] == [
            (ExpenseStatus.DRAFT, ExpenseStatus.PENDING_APPROVAL, 0, 1),
            (ExpenseStatus.PENDING_APPROVAL, ExpenseStatus.PENDING_APPROVAL, 1, 2),
            (ExpenseStatus.PENDING_APPROVAL, ExpenseStatus.REJECTED, 2, 2),
        ]
        assert [e.actor_id for e in events] == [
            org.employee.user_id, m1.user_id, org.director.user_id,
        ]

    def test_override_then_late_decision_fails(self, make_engine, make_policy, org):
        engine = make_engine(make_policy())
        expense = _submit(engine, org.employee)

        forced = engine.override(
            expense.expense_id, ExpenseStatus.REJECTED, admin_id=org.admin.user_id,
        )
        assert forced.status is ExpenseStatus.REJECTED

        with pytest.raises(ExpenseAlreadyFinalizedError):
            engine.approve(expense.expense_id, org.manager.user_id)

        (entry,) = engine.approval_history(expense.expense_id)
        assert entry.step_index == OVERRIDE_STEP_INDEX
        assert entry.approver_id == org.admin.user_id


class TestHybridCommutativity:
    @pytest.fixture
    def hybrid_engine(self, make_engine, make_policy, org):
        rule = HybridRule(threshold=Decimal("100"), approver_id=org.director.user_id)
        return make_engine(make_policy(_panel_step(rule, org.manager, org.peer_manager)))

    def test_specific_path_first(self, hybrid_engine, org):
        expense = _submit(hybrid_engine, org.employee)

        result = hybrid_engine.approve(expense.expense_id, org.director.user_id)

        assert result.expense.status is ExpenseStatus.APPROVED

    def test_percentage_path_first(self, hybrid_engine, org):
        expense = _submit(hybrid_engine, org.employee)

        hybrid_engine.approve(expense.expense_id, org.manager.user_id)
        hybrid_engine.approve(expense.expense_id, org.peer_manager.user_id)
        result = hybrid_engine.approve(expense.expense_id, org.director.user_id)

        assert result.expense.status is ExpenseStatus.APPROVED


class TestIdempotence:
    def test_identical_decision_twice(self, make_engine, make_policy, org, notifications):
        m1, m2 = org.manager, org.peer_manager
        engine = make_engine(make_policy(_panel_step(ALL, m1, m2)))
        expense = _submit(engine, org.employee)

        engine.approve(expense.expense_id, m1.user_id, "fine")
        before = len(notifications.events)
        retry = engine.approve(expense.expense_id, m1.user_id, "fine")

        assert retry.duplicate
        assert len(engine.approval_history(expense.expense_id)) == 1
        assert len(notifications.events) == before
        assert engine.get_expense(expense.expense_id).version == retry.expense.version

    def test_changed_decision_conflicts(self, make_engine, make_policy, org):
        m1, m2 = org.manager, org.peer_manager
        engine = make_engine(make_policy(_panel_step(ALL, m1, m2)))
        expense = _submit(engine, org.employee)
        engine.approve(expense.expense_id, m1.user_id)

        with pytest.raises(ConflictingDecisionError):
            engine.reject(expense.expense_id, m1.user_id)

    def test_retry_after_finalization_reports_finalized(self, make_engine, make_policy, org):
        engine = make_engine(make_policy())
        expense = _submit(engine, org.employee)
        engine.approve(expense.expense_id, org.manager.user_id)

        with pytest.raises(ExpenseAlreadyFinalizedError):
            engine.approve(expense.expense_id, org.manager.user_id)

    def test_retry_after_step_advanced_is_noop(self, make_engine, make_policy, org, notifications):
        engine = make_engine(
            make_policy(ApprovalStepPolicy(rule=ALL), ApprovalStepPolicy(rule=ALL)),
        )
        expense = _submit(engine, org.employee)
        advanced = engine.approve(expense.expense_id, org.manager.user_id, "ok")
        assert advanced.expense.current_step == 2
        before = len(notifications.events)

        retry = engine.approve(expense.expense_id, org.manager.user_id, "ok")

        assert retry.duplicate
        assert retry.decision.step_index == 1
        assert retry.expense.current_step == 2
        assert retry.expense.current_approver_ids == (org.director.user_id,)
        assert len(engine.approval_history(expense.expense_id)) == 1
        assert len(notifications.events) == before

    def test_changed_decision_after_step_advanced_conflicts(self, make_engine, make_policy, org):
        engine = make_engine(
            make_policy(ApprovalStepPolicy(rule=ALL), ApprovalStepPolicy(rule=ALL)),
        )
        expense = _submit(engine, org.employee)
        engine.approve(expense.expense_id, org.manager.user_id, "ok")

        with pytest.raises(ConflictingDecisionError) as exc_info:
            engine.reject(expense.expense_id, org.manager.user_id, "ok")

        assert exc_info.value.step_index == 1
        assert engine.get_expense(expense.expense_id).status is ExpenseStatus.PENDING_APPROVAL


class TestAtomicity:
    def test_failed_step_entry_records_nothing(self, make_engine, make_policy, org):
        steps = [ApprovalStepPolicy(rule=ALL) for _ in range(4)]
        engine = make_engine(make_policy(*steps))
        expense = _submit(engine, org.employee)
        engine.approve(expense.expense_id, org.manager.user_id)
        engine.approve(expense.expense_id, org.director.user_id)

        with pytest.raises(NoApproverFoundError):
            engine.approve(expense.expense_id, org.admin.user_id)

        current = engine.get_expense(expense.expense_id)
        assert current.status is ExpenseStatus.PENDING_APPROVAL
        assert current.current_step == 3
        assert current.current_approver_ids == (org.admin.user_id,)
        assert len(engine.approval_history(expense.expense_id)) == 2

    def test_commit_failure_is_persistence_failure(
        self, make_engine, make_policy, org, monkeypatch, captured_logs,
    ):
        engine = make_engine(make_policy())
        expense = _submit(engine, org.employee)

        def failing_commit(self):
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

        with monkeypatch.context() as m:
            m.setattr(Session, "commit", failing_commit)
            with pytest.raises(PersistenceFailureError) as exc_info:
                engine.approve(expense.expense_id, org.manager.user_id)

        assert exc_info.value.operation == "decide"
        assert exc_info.value.expense_id == str(expense.expense_id)
        assert engine.get_expense(expense.expense_id).status is ExpenseStatus.PENDING_APPROVAL
        assert engine.approval_history(expense.expense_id) == []
        assert any(r["message"] == "persistence_failure" for r in captured_logs())

    def test_tampered_snapshot_is_refused(self, make_engine, make_policy, org):
        engine = make_engine(make_policy())
        expense = _submit(engine, org.employee)

        with session_scope() as s:
            model = s.get(ExpenseModel, expense.expense_id)
            snapshot = dict(model.policy_snapshot)
            snapshot["allow_self_approval"] = True
            model.policy_snapshot = snapshot

        with pytest.raises(PolicySnapshotTamperedError):
            engine.approve(expense.expense_id, org.manager.user_id)


class TestNotifications:
    def test_failing_sink_does_not_fail_transition(
        self, make_engine, make_policy, org, notifications, captured_logs,
    ):
        class ExplodingSink:
            def publish(self, event):
                raise RuntimeError("mail server down")

        engine = make_engine(make_policy(), sinks=(ExplodingSink(), notifications))

        expense = _submit(engine, org.employee)

        assert expense.status is ExpenseStatus.PENDING_APPROVAL
        assert len(notifications.for_expense(expense.expense_id)) == 1
        failures = [r for r in captured_logs() if r["message"] == "notification_failed"]
        assert failures[0]["sink"] == "ExplodingSink"

    def test_refused_decision_publishes_nothing(self, make_engine, make_policy, org, notifications):
        engine = make_engine(make_policy())
        expense = _submit(engine, org.employee)
        notifications.clear()

        with pytest.raises(UnauthorizedApproverError):
            engine.approve(expense.expense_id, org.peer_manager.user_id)

        assert notifications.events == []

    def test_logging_sink_writes_transitions(self, make_engine, make_policy, org, captured_logs):
        engine = make_engine(make_policy(), sinks=(LoggingNotificationSink(),))
        expense = _submit(engine, org.employee)

        engine.approve(expense.expense_id, org.manager.user_id)

        transitions = [r for r in captured_logs() if r["message"] == "expense_transition"]
        assert [(t["from_state"], t["to_state"]) for t in transitions] == [
            ("Draft", "PendingApproval"),
            ("PendingApproval", "Approved"),
        ]
        assert transitions[1]["actor_id"] == str(org.manager.user_id)


class TestOverride:
    def test_override_uses_bound_identity(self, make_engine, make_policy, org):
        engine = make_engine(make_policy())
        expense = _submit(engine, org.employee)

        with bind_current_user(org.second_admin):
            forced = engine.override(expense.expense_id, ExpenseStatus.APPROVED, comment="CFO ok")

        assert forced.status is ExpenseStatus.APPROVED
        (entry,) = engine.approval_history(expense.expense_id)
        assert entry.approver_id == org.second_admin.user_id
        assert entry.comment == "CFO ok"

    def test_override_without_identity_raises(self, make_engine, make_policy, org):
        engine = make_engine(make_policy())
        expense = _submit(engine, org.employee)

        with pytest.raises(RuntimeError):
            engine.override(expense.expense_id, ExpenseStatus.APPROVED)

    def test_manager_cannot_override(self, make_engine, make_policy, org):
        engine = make_engine(make_policy())
        expense = _submit(engine, org.employee)

        with bind_current_user(org.manager):
            with pytest.raises(OverrideNotPermittedError):
                engine.override(expense.expense_id, ExpenseStatus.APPROVED)

        assert engine.get_expense(expense.expense_id).status is ExpenseStatus.PENDING_APPROVAL


class TestPolicySelection:
    def test_category_policy_preferred(self, make_engine, make_policy, org):
        default = make_policy(name="default")
        travel = make_policy(
            ApprovalStepPolicy(rule=ALL), ApprovalStepPolicy(rule=ALL),
            name="travel", category="travel",
        )
        engine = make_engine(default, travel)

        plain = _submit(engine, org.employee)
        trip = _submit(engine, org.employee, category="travel")

        assert (plain.policy_name, plain.total_steps) == ("default", 1)
        assert (trip.policy_name, trip.total_steps) == ("travel", 2)

    def test_no_policy_for_organization(self, make_engine, org):
        elsewhere = ApprovalPolicy(
            policy_name="elsewhere",
            version=1,
            organization_id=uuid4(),
            steps=(ApprovalStepPolicy(rule=ALL),),
        )
        engine = make_engine(elsewhere)
        draft = engine.create_expense(org.employee.user_id, "Lunch", items=ITEMS)

        with pytest.raises(ApprovalPolicyNotFoundError):
            engine.submit(draft.expense_id)

        assert engine.get_expense(draft.expense_id).status is ExpenseStatus.DRAFT

    def test_specific_rule_naming_employee_refused(self, make_engine, make_policy, org):
        rule = SpecificApproverRule(approver_id=org.employee.user_id)
        engine = make_engine(make_policy(ApprovalStepPolicy(rule=rule)))
        draft = engine.create_expense(org.peer_manager.user_id, "Books", items=ITEMS)

        with pytest.raises(InvalidApproverRoleError):
            engine.submit(draft.expense_id)

    def test_bundled_policies(self, session_factory, deterministic_clock, org, notifications):
        engine = ExpenseApprovalEngine(
            session_factory=session_factory,
            clock=deterministic_clock,
            sinks=(notifications,),
        )

        equipment = _submit(engine, org.employee, category="equipment")
        assert equipment.policy_name == "equipment"

        engine.approve(equipment.expense_id, org.manager.user_id)
        step_two = engine.current_step(equipment.expense_id)
        assert step_two.step_index == 2
        assert step_two.approver_ids == (org.admin.user_id, org.second_admin.user_id)

        done = engine.approve(equipment.expense_id, org.second_admin.user_id)
        assert done.expense.status is ExpenseStatus.APPROVED
