"""
Approval policy set schema.

Defines the human-authored, reviewable source artifact for approval
configuration.  YAML files are parsed into these types by the loader and
compiled into a CompiledPolicySet by the compiler.

Key distinction:
  PolicySetDef      = source artifact (human-authored, versioned)
  CompiledPolicySet = runtime artifact (validated domain policies, frozen)
"""

from __future__ import annotations

from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Rules and steps
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApprovalRuleDef:
    """YAML-authored step rule.

    ``threshold`` is kept as a string so Decimal parsing happens once, in
    the compiler.
    """

    kind: str
    threshold: str | None = None
    approver_id: str | None = None


@dataclass(frozen=True)
class ApprovalStepDef:
    """One step: a rule and where its approvers come from."""

    rule: ApprovalRuleDef
    approver_source: str = "manager_chain"
    panel: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApprovalPolicyDef:
    """YAML-authored approval policy.

    ``organization_id=None`` applies to every organization without a
    policy of its own; ``category=None`` is the default for its scope.
    """

    policy_name: str
    steps: tuple[ApprovalStepDef, ...]
    version: int = 1
    organization_id: str | None = None
    category: str | None = None
    allow_self_approval: bool = False
    description: str = ""


@dataclass(frozen=True)
class PolicySetDef:
    """A versioned collection of approval policies."""

    config_id: str
    version: int
    policies: tuple[ApprovalPolicyDef, ...]
    checksum: str = ""
