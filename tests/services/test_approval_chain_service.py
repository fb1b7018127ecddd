"""
Tests for ApprovalChainService.

Exercises submission, decisions and step progression at the flush level,
against the database-backed org chart.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from expense_kernel.domain.approval import (
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
    ConflictingDecisionError,
    EmptyExpenseError,
    ExpenseAlreadyFinalizedError,
    ExpenseNotFoundError,
    InvalidExpenseTransitionError,
    InvalidRuleConfigurationError,
    NoApproverFoundError,
    UnauthorizedApproverError,
    UserNotFoundError,
)
from expense_kernel.services.approval_chain_service import ApprovalChainService
from expense_kernel.services.expense_store import ExpenseStore
from expense_services.org_chart import DatabaseOrgChart

ALL = PercentageRule(threshold=Decimal("100"))
ITEMS = (ExpenseItem.from_original("Hotel", Decimal("240.00"), "USD"),)


@pytest.fixture
def chain(session, org, deterministic_clock):
    return ApprovalChainService(session, DatabaseOrgChart(session), deterministic_clock)


def _draft(chain, owner, items=ITEMS, **kwargs):
    return chain.create_expense(owner.user_id, "Offsite", items=items, **kwargs)


class TestCreateExpense:
    def test_creates_draft_with_owner_defaults(self, chain, org, taxi_items):
        expense = _draft(chain, org.employee, items=taxi_items)

        assert expense.status is ExpenseStatus.DRAFT
        assert expense.owner_id == org.employee.user_id
        assert expense.organization_id == org.organization_id
        assert expense.currency == "USD"
        assert expense.current_step == 0
        assert [i.description for i in expense.items] == ["Taxi to airport", "Dinner"]
        assert expense.total_amount == Decimal("129.30")

    def test_explicit_currency_and_category(self, chain, org):
        expense = _draft(chain, org.employee, currency="EUR", category="travel")

        assert expense.currency == "EUR"
        assert expense.category == "travel"

    def test_unknown_owner_raises(self, chain):
        with pytest.raises(UserNotFoundError):
            chain.create_expense(uuid4(), "Ghost expense", items=ITEMS)


class TestSubmit:
    def test_submit_enters_first_step(self, chain, org, make_policy):
        draft = _draft(chain, org.employee)

        result = chain.submit(draft.expense_id, make_policy())

        expense = result.expense
        assert expense.status is ExpenseStatus.PENDING_APPROVAL
        assert expense.current_step == 1
        assert expense.total_steps == 1
        assert expense.current_approver_ids == (org.manager.user_id,)
        assert expense.current_required_approver == org.manager.user_id
        assert expense.policy_name == "test-policy"
        assert expense.policy_hash is not None
        assert expense.submitted_at is not None

        (event,) = result.transitions
        assert event.from_state is ExpenseStatus.DRAFT
        assert event.to_state is ExpenseStatus.PENDING_APPROVAL
        assert event.to_step == 1
        assert event.actor_id == org.employee.user_id

    def test_submit_without_items_raises(self, chain, org, make_policy):
        draft = _draft(chain, org.employee, items=())

        with pytest.raises(EmptyExpenseError):
            chain.submit(draft.expense_id, make_policy())

    def test_submit_twice_raises(self, chain, org, make_policy):
        draft = _draft(chain, org.employee)
        chain.submit(draft.expense_id, make_policy())

        with pytest.raises(InvalidExpenseTransitionError):
            chain.submit(draft.expense_id, make_policy())

    def test_submit_unknown_expense_raises(self, chain, make_policy):
        with pytest.raises(ExpenseNotFoundError):
            chain.submit(uuid4(), make_policy())

    def test_submit_with_bad_threshold_raises(self, chain, org, make_policy):
        draft = _draft(chain, org.employee)
        policy = make_policy(ApprovalStepPolicy(rule=PercentageRule(threshold=Decimal("120"))))

        with pytest.raises(InvalidRuleConfigurationError):
            chain.submit(draft.expense_id, policy)

    def test_owner_without_manager_cannot_submit(self, chain, org, make_policy):
        draft = _draft(chain, org.second_admin)

        with pytest.raises(NoApproverFoundError):
            chain.submit(draft.expense_id, make_policy())

    def test_self_approval_policy_routes_to_owner(self, chain, org, make_policy):
        draft = _draft(chain, org.second_admin)

        result = chain.submit(draft.expense_id, make_policy(allow_self_approval=True))

        assert result.expense.current_approver_ids == (org.second_admin.user_id,)

    def test_zero_threshold_policy_approves_on_submit(self, chain, org, make_policy):
        draft = _draft(chain, org.employee)
        policy = make_policy(ApprovalStepPolicy(rule=PercentageRule(threshold=Decimal("0"))))

        result = chain.submit(draft.expense_id, policy)

        assert result.expense.status is ExpenseStatus.APPROVED
        assert [e.to_state for e in result.transitions] == [
            ExpenseStatus.PENDING_APPROVAL,
            ExpenseStatus.APPROVED,
        ]

    def test_zero_threshold_step_passes_through_to_next(self, chain, org, make_policy):
        draft = _draft(chain, org.employee)
        policy = make_policy(
            ApprovalStepPolicy(rule=PercentageRule(threshold=Decimal("0"))),
            ApprovalStepPolicy(rule=ALL),
        )

        result = chain.submit(draft.expense_id, policy)

        assert result.expense.status is ExpenseStatus.PENDING_APPROVAL
        assert result.expense.current_step == 2
        assert result.expense.current_approver_ids == (org.director.user_id,)


class TestDecide:
    def _submitted(self, chain, org, policy):
        draft = _draft(chain, org.employee)
        return chain.submit(draft.expense_id, policy).expense

    def test_single_step_approval(self, chain, org, make_policy):
        expense = self._submitted(chain, org, make_policy())

        result = chain.decide(
            expense.expense_id, org.manager.user_id, DecisionOutcome.APPROVED, "ok",
        )

        assert result.expense.status is ExpenseStatus.APPROVED
        assert result.expense.decided_at is not None
        assert result.decision.comment == "ok"
        assert result.decision.sequence == 1
        assert result.evaluation.is_approved
        assert not result.duplicate
        assert result.transitions[-1].to_state is ExpenseStatus.APPROVED

    def test_rejection_finalizes(self, chain, org, make_policy):
        expense = self._submitted(chain, org, make_policy())

        result = chain.decide(expense.expense_id, org.manager.user_id, DecisionOutcome.REJECTED)

        assert result.expense.status is ExpenseStatus.REJECTED

    def test_two_step_chain_advances_up_the_hierarchy(self, chain, org, make_policy):
        policy = make_policy(ApprovalStepPolicy(rule=ALL), ApprovalStepPolicy(rule=ALL))
        expense = self._submitted(chain, org, policy)

        first = chain.decide(expense.expense_id, org.manager.user_id, DecisionOutcome.APPROVED)

        assert first.expense.status is ExpenseStatus.PENDING_APPROVAL
        assert first.expense.current_step == 2
        assert first.expense.current_approver_ids == (org.director.user_id,)
        (advance,) = first.transitions
        assert (advance.from_step, advance.to_step) == (1, 2)

        second = chain.decide(expense.expense_id, org.director.user_id, DecisionOutcome.APPROVED)

        assert second.expense.status is ExpenseStatus.APPROVED
        assert second.decision.sequence == 2

    def test_chain_running_out_raises(self, chain, org, make_policy):
        policy = make_policy(*(ApprovalStepPolicy(rule=ALL) for _ in range(4)))
        expense = self._submitted(chain, org, policy)
        chain.decide(expense.expense_id, org.manager.user_id, DecisionOutcome.APPROVED)
        chain.decide(expense.expense_id, org.director.user_id, DecisionOutcome.APPROVED)

        with pytest.raises(NoApproverFoundError):
            chain.decide(expense.expense_id, org.admin.user_id, DecisionOutcome.APPROVED)

    def test_non_member_is_unauthorized(self, chain, org, make_policy):
        expense = self._submitted(chain, org, make_policy())

        with pytest.raises(UnauthorizedApproverError) as exc_info:
            chain.decide(expense.expense_id, org.peer_manager.user_id, DecisionOutcome.APPROVED)

        assert exc_info.value.step_index == 1

    def test_owner_cannot_approve_own_expense(self, chain, org, make_policy):
        expense = self._submitted(chain, org, make_policy())

        with pytest.raises(UnauthorizedApproverError):
            chain.decide(expense.expense_id, org.employee.user_id, DecisionOutcome.APPROVED)

    def test_draft_cannot_be_decided(self, chain, org):
        draft = _draft(chain, org.employee)

        with pytest.raises(InvalidExpenseTransitionError):
            chain.decide(draft.expense_id, org.manager.user_id, DecisionOutcome.APPROVED)

    def test_identical_retry_is_a_no_op(self, chain, org, make_policy, session):
        policy = ApprovalStepPolicy(
            rule=PercentageRule(threshold=Decimal("100")),
            approver_source=ApproverSource.FIXED_PANEL,
            panel=(org.manager.user_id, org.peer_manager.user_id),
        )
        draft = _draft(chain, org.employee)
        expense = chain.submit(draft.expense_id, make_policy(policy)).expense

        first = chain.decide(expense.expense_id, org.manager.user_id, DecisionOutcome.APPROVED, "ok")
        again = chain.decide(expense.expense_id, org.manager.user_id, DecisionOutcome.APPROVED, "ok")

        assert again.duplicate
        assert again.decision.decision_id == first.decision.decision_id
        assert again.transitions == ()
        assert len(ExpenseStore(session).list_decisions(expense.expense_id)) == 1

    def test_changed_decision_conflicts(self, chain, org, make_policy):
        policy = ApprovalStepPolicy(
            rule=PercentageRule(threshold=Decimal("100")),
            approver_source=ApproverSource.FIXED_PANEL,
            panel=(org.manager.user_id, org.peer_manager.user_id),
        )
        draft = _draft(chain, org.employee)
        expense = chain.submit(draft.expense_id, make_policy(policy)).expense
        chain.decide(expense.expense_id, org.manager.user_id, DecisionOutcome.APPROVED)

        with pytest.raises(ConflictingDecisionError) as exc_info:
            chain.decide(expense.expense_id, org.manager.user_id, DecisionOutcome.REJECTED)

        assert exc_info.value.recorded == "Approved"
        assert exc_info.value.attempted == "Rejected"

    def test_decision_after_finalization_raises(self, chain, org, make_policy):
        expense = self._submitted(chain, org, make_policy())
        chain.decide(expense.expense_id, org.manager.user_id, DecisionOutcome.APPROVED)

        with pytest.raises(ExpenseAlreadyFinalizedError):
            chain.decide(expense.expense_id, org.manager.user_id, DecisionOutcome.APPROVED)

    def test_specific_rule_waits_for_designated_approver(self, chain, org, make_policy):
        step = ApprovalStepPolicy(rule=SpecificApproverRule(approver_id=org.director.user_id))
        expense = self._submitted(chain, org, make_policy(step))

        assert expense.current_approver_ids == (org.manager.user_id, org.director.user_id)
        assert expense.current_required_approver == org.director.user_id

        by_manager = chain.decide(expense.expense_id, org.manager.user_id, DecisionOutcome.APPROVED)
        assert by_manager.expense.status is ExpenseStatus.PENDING_APPROVAL

        by_director = chain.decide(expense.expense_id, org.director.user_id, DecisionOutcome.APPROVED)
        assert by_director.expense.status is ExpenseStatus.APPROVED

    def test_hybrid_rejection_by_designated_leaves_step_open(self, chain, org, make_policy):
        step = ApprovalStepPolicy(
            rule=HybridRule(threshold=Decimal("50"), approver_id=org.director.user_id),
            approver_source=ApproverSource.FIXED_PANEL,
            panel=(org.manager.user_id, org.peer_manager.user_id),
        )
        draft = _draft(chain, org.employee)
        expense = chain.submit(draft.expense_id, make_policy(step)).expense
        assert len(expense.current_approver_ids) == 3

        rejected = chain.decide(expense.expense_id, org.director.user_id, DecisionOutcome.REJECTED)
        assert rejected.expense.status is ExpenseStatus.PENDING_APPROVAL

        approved = chain.decide(expense.expense_id, org.manager.user_id, DecisionOutcome.APPROVED)
        assert approved.expense.status is ExpenseStatus.PENDING_APPROVAL

        done = chain.decide(expense.expense_id, org.peer_manager.user_id, DecisionOutcome.APPROVED)
        assert done.expense.status is ExpenseStatus.APPROVED

    def test_policy_snapshot_is_used_after_submission(self, chain, org, make_policy, session):
        expense = self._submitted(chain, org, make_policy(name="frozen"))
        model = ExpenseStore(session).get_model(expense.expense_id)

        assert model.policy_snapshot["policy_name"] == "frozen"
        assert ExpenseStore(session).load_policy(model).policy_name == "frozen"

