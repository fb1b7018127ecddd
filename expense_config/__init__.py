"""
expense_config -- single public entrypoint for approval configuration.

Responsibility:
    Provides the ONLY way to obtain approval policies at runtime through
    ``get_active_policy_set()``.  Returns a ``CompiledPolicySet`` -- the
    sole runtime artifact.  YAML loading is internal tooling.

Architecture position:
    Configuration -- sits above ``expense_kernel`` / ``expense_engines``
    and below ``expense_services``.  The kernel MUST NEVER import from
    ``expense_config``.

Invariants enforced:
    - Single entrypoint: all runtime policy configuration flows through
      ``get_active_policy_set()``.
    - Build-time validation: every rule and step is validated before a
      set is produced.
    - Deterministic compilation: the same YAML always produces the same
      checksum and canonical fingerprint.

Failure modes:
    - ``FileNotFoundError`` -- the configured file does not exist.
    - ``KeyError`` / ``ValueError`` -- structural problems in the YAML.
    - ``InvalidRuleConfigurationError`` -- a rule or step fails validation.

Audit relevance:
    Every successful ``get_active_policy_set()`` call emits an
    ``EXPENSE_POLICY_CONFIG_TRACE`` log entry with the config id, version,
    checksum, fingerprint, and policy count.  Together with the policy
    hash stored on every submitted expense this ties each approval back to
    the exact policy that governed it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from expense_config.compiler import (
    ANY_ORGANIZATION,
    CompiledPolicySet,
    compile_policy_set,
    validate_policy_approvers,
)
from expense_config.loader import load_policy_set

_logger = logging.getLogger("expense_kernel.config")

# Bundled configuration
_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"

CONFIG_PATH_ENV = "EXPENSE_POLICY_CONFIG"


def get_active_policy_set(config_path: Path | str | None = None) -> CompiledPolicySet:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: Policy-set YAML file.  Defaults to the
            ``EXPENSE_POLICY_CONFIG`` environment variable, then the
            bundled ``sets/default.yaml``.

    Returns:
        CompiledPolicySet.
    """
    path = Path(
        config_path
        or os.environ.get(CONFIG_PATH_ENV)
        or _DEFAULT_CONFIG_PATH
    )

    policy_set = load_policy_set(path)
    compiled = compile_policy_set(policy_set)

    _logger.info(
        "EXPENSE_POLICY_CONFIG_TRACE",
        extra={
            "trace_type": "EXPENSE_POLICY_CONFIG_TRACE",
            "config_path": str(path),
            "config_set_id": compiled.config_id,
            "config_set_version": compiled.config_version,
            "checksum": compiled.checksum,
            "canonical_fingerprint": compiled.canonical_fingerprint,
            "policy_count": len(compiled.policies),
        },
    )
    return compiled


__all__ = [
    "ANY_ORGANIZATION",
    "CONFIG_PATH_ENV",
    "CompiledPolicySet",
    "compile_policy_set",
    "get_active_policy_set",
    "validate_policy_approvers",
]
