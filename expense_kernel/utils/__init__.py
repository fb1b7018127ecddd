"""Utility modules for the expense kernel."""

from expense_kernel.utils.hashing import canonicalize_json, hash_payload

__all__ = [
    "hash_payload",
    "canonicalize_json",
]
