"""
Configuration Compiler -- PolicySetDef -> CompiledPolicySet.

The compiler validates the policy set and produces a frozen runtime
artifact of domain ``ApprovalPolicy`` objects.  The CompiledPolicySet is
the only object the approval engine accepts for policy selection.

Compilation validates:
  - Every rule is well-formed (threshold 0-100, designated approver set)
  - Approver sources are known; fixed panels are non-empty and only
    fixed panels carry members
  - Every policy has at least one step
  - No two policies claim the same (organization, category) scope
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from expense_config.schema import (
    ApprovalPolicyDef,
    ApprovalRuleDef,
    ApprovalStepDef,
    PolicySetDef,
)
from expense_engines.rule_evaluator import validate_rule
from expense_kernel.domain.approval import (
    ApprovalPolicy,
    ApprovalRule,
    ApprovalStepPolicy,
    ApproverSource,
    HybridRule,
    OrgChart,
    PercentageRule,
    RuleKind,
    SpecificApproverRule,
    designated_approver,
    policy_to_dict,
)
from expense_kernel.exceptions import (
    ApprovalPolicyNotFoundError,
    InvalidApproverRoleError,
    InvalidRuleConfigurationError,
)
from expense_kernel.utils.hashing import hash_payload

# Scope marker for policies that apply to any organization.
ANY_ORGANIZATION = UUID(int=0)


# ---------------------------------------------------------------------------
# Compiled type (frozen, runtime-ready)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompiledPolicySet:
    """Validated, frozen runtime artifact.

    Attributes:
        config_id: Source configuration identifier
        config_version: Source configuration version
        checksum: Matches source PolicySetDef
        policies: Validated domain policies
        canonical_fingerprint: Deterministic hash of all compiled policies
    """

    config_id: str
    config_version: int
    checksum: str
    policies: tuple[ApprovalPolicy, ...]
    canonical_fingerprint: str
    _index: dict[tuple[UUID, str | None], ApprovalPolicy] = field(
        default_factory=dict, repr=False, compare=False,
    )

    def policy_for(
        self, organization_id: UUID, category: str | None = None,
    ) -> ApprovalPolicy:
        """Select the policy for an expense.

        Lookup order: the organization's category policy, the
        organization's default, the global category policy, the global
        default.  Global policies are returned bound to
        ``organization_id``.

        Raises:
            ApprovalPolicyNotFoundError: nothing matches.
        """
        candidates = []
        if category is not None:
            candidates.append((organization_id, category))
        candidates.append((organization_id, None))
        if category is not None:
            candidates.append((ANY_ORGANIZATION, category))
        candidates.append((ANY_ORGANIZATION, None))

        for key in candidates:
            policy = self._index.get(key)
            if policy is not None:
                if policy.organization_id == ANY_ORGANIZATION:
                    return replace(policy, organization_id=organization_id)
                return policy
        raise ApprovalPolicyNotFoundError(str(organization_id), category)


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------


def compile_policy_set(policy_set: PolicySetDef) -> CompiledPolicySet:
    """Compile and validate a policy set.

    Raises:
        InvalidRuleConfigurationError: any validation failure.
    """
    policies: list[ApprovalPolicy] = []
    index: dict[tuple[UUID, str | None], ApprovalPolicy] = {}

    for policy_def in policy_set.policies:
        policy = compile_policy(policy_def)
        key = (policy.organization_id, policy.category)
        if key in index:
            raise InvalidRuleConfigurationError(
                policy.policy_name,
                f"scope already claimed by {index[key].policy_name} "
                f"(organization={policy_def.organization_id or '*'}, "
                f"category={policy.category or '*'})",
            )
        index[key] = policy
        policies.append(policy)

    return CompiledPolicySet(
        config_id=policy_set.config_id,
        config_version=policy_set.version,
        checksum=policy_set.checksum,
        policies=tuple(policies),
        canonical_fingerprint=_fingerprint(policies),
        _index=index,
    )


def compile_policy(policy_def: ApprovalPolicyDef) -> ApprovalPolicy:
    """Compile one policy definition into a domain ``ApprovalPolicy``."""
    if not policy_def.steps:
        raise InvalidRuleConfigurationError(
            policy_def.policy_name, "policy defines no approval steps",
        )
    organization_id = (
        _parse_uuid(policy_def.organization_id, policy_def.policy_name)
        if policy_def.organization_id is not None
        else ANY_ORGANIZATION
    )
    return ApprovalPolicy(
        policy_name=policy_def.policy_name,
        version=policy_def.version,
        organization_id=organization_id,
        steps=tuple(
            _compile_step(step, policy_def.policy_name) for step in policy_def.steps
        ),
        category=policy_def.category,
        allow_self_approval=policy_def.allow_self_approval,
    )


def _compile_step(step: ApprovalStepDef, policy_name: str) -> ApprovalStepPolicy:
    try:
        source = ApproverSource(step.approver_source)
    except ValueError:
        raise InvalidRuleConfigurationError(
            policy_name, f"unknown approver source {step.approver_source!r}",
        )

    panel = tuple(_parse_uuid(p, policy_name) for p in step.panel)
    if source is ApproverSource.FIXED_PANEL and not panel:
        raise InvalidRuleConfigurationError(policy_name, "fixed_panel step has no members")
    if source is not ApproverSource.FIXED_PANEL and panel:
        raise InvalidRuleConfigurationError(
            policy_name, f"{source.value} step must not list a panel",
        )

    rule = _compile_rule(step.rule, policy_name)
    validate_rule(rule)
    return ApprovalStepPolicy(rule=rule, approver_source=source, panel=panel)


def _compile_rule(rule_def: ApprovalRuleDef, policy_name: str) -> ApprovalRule:
    try:
        kind = RuleKind(rule_def.kind)
    except ValueError:
        raise InvalidRuleConfigurationError(
            policy_name, f"unknown rule kind {rule_def.kind!r}",
        )

    threshold = None
    if kind in (RuleKind.PERCENTAGE, RuleKind.HYBRID):
        if rule_def.threshold is None:
            raise InvalidRuleConfigurationError(kind.value, "threshold is required")
        try:
            threshold = Decimal(rule_def.threshold)
        except InvalidOperation:
            raise InvalidRuleConfigurationError(
                kind.value, f"threshold {rule_def.threshold!r} is not a number",
            )

    approver_id = None
    if kind in (RuleKind.SPECIFIC, RuleKind.HYBRID):
        if rule_def.approver_id is None:
            raise InvalidRuleConfigurationError(kind.value, "no designated approver")
        approver_id = _parse_uuid(rule_def.approver_id, policy_name)

    if kind is RuleKind.PERCENTAGE:
        return PercentageRule(threshold=threshold)
    if kind is RuleKind.SPECIFIC:
        return SpecificApproverRule(approver_id=approver_id)
    return HybridRule(threshold=threshold, approver_id=approver_id)


def _parse_uuid(value: Any, policy_name: str) -> UUID:
    try:
        return UUID(str(value))
    except ValueError:
        raise InvalidRuleConfigurationError(
            policy_name, f"{value!r} is not a valid identifier",
        )


def _fingerprint(policies: list[ApprovalPolicy]) -> str:
    return hash_payload(
        sorted(
            (policy_to_dict(p) for p in policies),
            key=lambda d: (d["organization_id"], d["category"] or "", d["policy_name"]),
        )
    )


# ---------------------------------------------------------------------------
# Runtime validation against the org chart
# ---------------------------------------------------------------------------


def validate_policy_approvers(policy: ApprovalPolicy, org_chart: OrgChart) -> None:
    """Check every user a policy names can approve.

    Designated approvers and fixed-panel members must be active Managers
    or Admins.  Manager-chain and org-admin steps are checked when they are
    resolved.

    Raises:
        InvalidApproverRoleError: a named user is unknown, inactive, or an
            Employee.
    """
    for step in policy.steps:
        named = list(step.panel)
        specific = designated_approver(step.rule)
        if specific is not None:
            named.append(specific)
        for user_id in named:
            user = org_chart.get_user(user_id)
            if user is None:
                raise InvalidApproverRoleError(str(user_id), None, "unknown user")
            if not user.can_approve:
                raise InvalidApproverRoleError(
                    str(user_id),
                    user.role.value,
                    "inactive user" if not user.is_active else "role cannot approve",
                )
