"""Allowlist-based redaction of off-ledger metadata for the public timeline.

Every field shown publicly must be listed. ``root`` and ``salt`` from the
metadata store are never listed: before reveal they are the provider's
secret, and after reveal the ledger's own values are shown instead.
"""

from __future__ import annotations

from typing import Any

SAFE_SUBMISSION_FIELDS: frozenset[str] = frozenset({
    "batch_id",
    "provider_address",
    "commit_index",
    "commit_hash",
    "storage_bucket",
    "storage_path",
    "encrypted_uri_hash",
    "created_at",
})

SECRET_SUBMISSION_FIELDS: frozenset[str] = frozenset({
    "root",
    "salt",
    "payload",
    "plaintext",
})


def redact(row: dict[str, Any], allowlist: frozenset[str] = SAFE_SUBMISSION_FIELDS) -> dict[str, Any]:
    """Keep only allowlisted keys with non-None values."""
    return {k: v for k, v in row.items() if k in allowlist and v is not None}


def contains_secret(row: dict[str, Any]) -> bool:
    """True if any secret field survived redaction."""
    return bool(set(row.keys()) & SECRET_SUBMISSION_FIELDS)


__all__ = ["SAFE_SUBMISSION_FIELDS", "SECRET_SUBMISSION_FIELDS", "contains_secret", "redact"]
