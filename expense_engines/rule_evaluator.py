"""
expense_engines.rule_evaluator -- Pure approval rule evaluation engine.

Responsibility:
    Score the decisions recorded for one approval step against the step's
    rule and report SATISFIED (Approved/Rejected), UNSATISFIED, or PENDING.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import expense_kernel/domain/ types and kernel exceptions.

Invariants enforced:
    - Percentage: Approved as soon as ``ceil(threshold/100 * N)`` approvals
      are recorded, never earlier; Rejected as soon as the threshold is
      out of reach (``rejected > N - required``).
    - Specific: only the designated approver's decision counts.
    - Hybrid: either path approving approves the step; the step is
      rejected only when neither path can still approve.  One rejected
      path next to a pending path stays PENDING.
    - Purity: no clock access, no I/O, no database.  Arithmetic is exact
      (Decimal), never float.

Failure modes:
    - InvalidRuleConfigurationError from ``validate_rule`` for thresholds
      outside 0-100 or a missing designated approver.
    - UNSATISFIED result (not an exception) when the rule can never be met
      with the approver set it was given.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Iterable, Sequence
from uuid import UUID

from expense_kernel.domain.approval import (
    ApprovalDecisionRecord,
    ApprovalRule,
    DecisionOutcome,
    EvaluationState,
    HybridRule,
    PercentageRule,
    RuleKind,
    SpecificApproverRule,
    StepEvaluation,
)
from expense_kernel.exceptions import InvalidRuleConfigurationError

_HUNDRED = Decimal("100")


def validate_rule(rule: ApprovalRule) -> None:
    """Reject malformed rules before they are attached to a policy.

    Raises:
        InvalidRuleConfigurationError: threshold outside [0, 100], a
            non-numeric threshold, or a Specific/Hybrid rule without an
            approver.
    """
    if rule.kind in (RuleKind.PERCENTAGE, RuleKind.HYBRID):
        try:
            threshold = Decimal(rule.threshold)
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidRuleConfigurationError(
                rule.kind.value, f"threshold {rule.threshold!r} is not a number",
            )
        if not threshold.is_finite() or threshold < 0 or threshold > _HUNDRED:
            raise InvalidRuleConfigurationError(
                rule.kind.value, f"threshold {threshold} outside 0-100",
            )
    if rule.kind in (RuleKind.SPECIFIC, RuleKind.HYBRID):
        if rule.approver_id is None:
            raise InvalidRuleConfigurationError(
                rule.kind.value, "no designated approver",
            )


def required_approvals(threshold: Decimal, approver_count: int) -> int:
    """Smallest approval count that meets ``threshold`` percent of the set."""
    needed = (Decimal(threshold) * approver_count / _HUNDRED).to_integral_value(
        rounding=ROUND_CEILING,
    )
    return int(needed)


def evaluate(
    rule: ApprovalRule,
    decisions: Iterable[ApprovalDecisionRecord],
    approver_set: Sequence[UUID],
) -> StepEvaluation:
    """Evaluate one step.

    Args:
        rule: The step's rule.
        decisions: Ledger decisions for this expense and step, in ledger
            order.  Decisions from outside ``approver_set`` are ignored
            (the chain rejects them before they reach the ledger).
        approver_set: The step's resolved approver set.

    Returns:
        StepEvaluation.
    """
    votes = _votes_by_approver(decisions, approver_set)

    if rule.kind is RuleKind.PERCENTAGE:
        return _evaluate_percentage(rule, votes, approver_set)
    if rule.kind is RuleKind.SPECIFIC:
        return _evaluate_specific(rule, votes, approver_set)
    if rule.kind is RuleKind.HYBRID:
        return _evaluate_hybrid(rule, votes, approver_set)
    raise InvalidRuleConfigurationError(str(rule.kind), "unknown rule kind")


def _votes_by_approver(
    decisions: Iterable[ApprovalDecisionRecord],
    approver_set: Sequence[UUID],
) -> dict[UUID, DecisionOutcome]:
    """First in-set decision per approver."""
    members = set(approver_set)
    votes: dict[UUID, DecisionOutcome] = {}
    for d in decisions:
        if d.approver_id in members and d.approver_id not in votes:
            votes[d.approver_id] = d.decision
    return votes


def _tally(votes: dict[UUID, DecisionOutcome]) -> tuple[int, int]:
    approved = sum(1 for v in votes.values() if v is DecisionOutcome.APPROVED)
    rejected = sum(1 for v in votes.values() if v is DecisionOutcome.REJECTED)
    return approved, rejected


def _evaluate_percentage(
    rule: PercentageRule | HybridRule,
    votes: dict[UUID, DecisionOutcome],
    approver_set: Sequence[UUID],
) -> StepEvaluation:
    n = len(set(approver_set))
    approved, rejected = _tally(votes)

    if n == 0:
        return StepEvaluation(
            state=EvaluationState.UNSATISFIED,
            reason="Empty approver set",
        )

    required = required_approvals(rule.threshold, n)

    if approved >= required:
        return StepEvaluation(
            state=EvaluationState.SATISFIED,
            outcome=DecisionOutcome.APPROVED,
            approved_count=approved,
            rejected_count=rejected,
            required_approvals=required,
            reason=f"{approved}/{n} approved, threshold {rule.threshold}% met",
        )

    # Early termination: even if every undecided approver approves,
    # the threshold is out of reach.
    if rejected > n - required:
        return StepEvaluation(
            state=EvaluationState.SATISFIED,
            outcome=DecisionOutcome.REJECTED,
            approved_count=approved,
            rejected_count=rejected,
            required_approvals=required,
            reason=f"{rejected}/{n} rejected, threshold {rule.threshold}% unreachable",
        )

    return StepEvaluation(
        state=EvaluationState.PENDING,
        approved_count=approved,
        rejected_count=rejected,
        required_approvals=required,
        reason=f"{approved}/{required} approvals",
    )


def _evaluate_specific(
    rule: SpecificApproverRule | HybridRule,
    votes: dict[UUID, DecisionOutcome],
    approver_set: Sequence[UUID],
) -> StepEvaluation:
    approved, rejected = _tally(votes)

    if rule.approver_id not in set(approver_set):
        return StepEvaluation(
            state=EvaluationState.UNSATISFIED,
            approved_count=approved,
            rejected_count=rejected,
            required_approvals=1,
            reason=f"Designated approver {rule.approver_id} not in approver set",
        )

    vote = votes.get(rule.approver_id)
    if vote is None:
        return StepEvaluation(
            state=EvaluationState.PENDING,
            approved_count=approved,
            rejected_count=rejected,
            required_approvals=1,
            reason=f"Awaiting {rule.approver_id}",
        )

    return StepEvaluation(
        state=EvaluationState.SATISFIED,
        outcome=vote,
        approved_count=approved,
        rejected_count=rejected,
        required_approvals=1,
        reason=f"{vote.value} by designated approver {rule.approver_id}",
    )


def _evaluate_hybrid(
    rule: HybridRule,
    votes: dict[UUID, DecisionOutcome],
    approver_set: Sequence[UUID],
) -> StepEvaluation:
    by_percentage = _evaluate_percentage(rule, votes, approver_set)
    by_approver = _evaluate_specific(rule, votes, approver_set)
    approved, rejected = _tally(votes)

    for path in (by_percentage, by_approver):
        if path.is_approved:
            return StepEvaluation(
                state=EvaluationState.SATISFIED,
                outcome=DecisionOutcome.APPROVED,
                approved_count=approved,
                rejected_count=rejected,
                required_approvals=by_percentage.required_approvals,
                reason=f"Hybrid approved: {path.reason}",
            )

    def _dead(path: StepEvaluation) -> bool:
        return path.is_rejected or path.state is EvaluationState.UNSATISFIED

    if _dead(by_percentage) and _dead(by_approver):
        if (
            by_percentage.state is EvaluationState.UNSATISFIED
            and by_approver.state is EvaluationState.UNSATISFIED
        ):
            return StepEvaluation(
                state=EvaluationState.UNSATISFIED,
                approved_count=approved,
                rejected_count=rejected,
                reason="Neither hybrid path can be satisfied",
            )
        return StepEvaluation(
            state=EvaluationState.SATISFIED,
            outcome=DecisionOutcome.REJECTED,
            approved_count=approved,
            rejected_count=rejected,
            required_approvals=by_percentage.required_approvals,
            reason="Hybrid rejected on both paths",
        )

    # A single rejected path does not end the step while the other is open.
    return StepEvaluation(
        state=EvaluationState.PENDING,
        approved_count=approved,
        rejected_count=rejected,
        required_approvals=by_percentage.required_approvals,
        reason=f"Hybrid pending: {by_percentage.reason}; {by_approver.reason}",
    )
