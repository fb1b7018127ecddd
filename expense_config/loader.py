"""
Configuration Loader (``expense_config.loader``).

Responsibility
--------------
Loads YAML policy-set files and parses them into typed
``expense_config.schema`` dataclass instances.  Runtime callers go
through ``expense_config.get_active_policy_set()`` instead.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  No dependency on kernel
services or engines.

Invariants enforced
-------------------
* No silent defaults for required fields: ``policy_name``, ``steps`` and
  each step's ``rule.kind`` must be present.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` is a deterministic SHA-256 over the raw document.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Wrong shapes  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from expense_config.schema import (
    ApprovalPolicyDef,
    ApprovalRuleDef,
    ApprovalStepDef,
    PolicySetDef,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def parse_rule(data: dict[str, Any]) -> ApprovalRuleDef:
    """Parse an ``ApprovalRuleDef``; ``kind`` is required."""
    if not isinstance(data, dict):
        raise ValueError(f"rule must be a mapping, got {data!r}")
    return ApprovalRuleDef(
        kind=str(data["kind"]),
        threshold=_optional_str(data.get("threshold")),
        approver_id=_optional_str(data.get("approver_id")),
    )


def parse_step(data: dict[str, Any]) -> ApprovalStepDef:
    return ApprovalStepDef(
        rule=parse_rule(data["rule"]),
        approver_source=str(data.get("approver_source", "manager_chain")),
        panel=tuple(str(p) for p in data.get("panel") or ()),
    )


def parse_policy(data: dict[str, Any]) -> ApprovalPolicyDef:
    """
    Parse an ``ApprovalPolicyDef`` from a dict.

    Raises:
        KeyError: if ``policy_name`` or ``steps`` is missing.
        ValueError: if ``steps`` is not a list.
    """
    steps = data["steps"]
    if not isinstance(steps, list):
        raise ValueError(
            f"policy {data.get('policy_name')!r}: steps must be a list"
        )
    return ApprovalPolicyDef(
        policy_name=str(data["policy_name"]),
        steps=tuple(parse_step(s) for s in steps),
        version=int(data.get("version", 1)),
        organization_id=_optional_str(data.get("organization_id")),
        category=_optional_str(data.get("category")),
        allow_self_approval=bool(data.get("allow_self_approval", False)),
        description=str(data.get("description", "")),
    )


def parse_policy_set(data: dict[str, Any]) -> PolicySetDef:
    """Parse a whole policy-set document."""
    return PolicySetDef(
        config_id=str(data["config_id"]),
        version=int(data.get("version", 1)),
        policies=tuple(parse_policy(p) for p in data.get("policies") or ()),
        checksum=compute_checksum(data),
    )


def load_policy_set(path: Path) -> PolicySetDef:
    """Load and parse a policy-set YAML file."""
    return parse_policy_set(load_yaml_file(Path(path)))
