"""Seed-driven selection of the revision that counts for scoring.

    selected_index = uint256(keccak256(seed || provider)) mod commit_count

``seed`` is the 32-byte value the operator reveals after locking
randomness; ``provider`` is the 20-byte address. Pure function of public
post-reveal state, so any observer can recompute it.
"""

from __future__ import annotations

from calibra.errors import SeedNotRevealedError, ValidationError

from .hashing import address_bytes, bytes32_from_hex, keccak256
from .models import BatchInfo


def selected_index(seed: str, provider: str, commit_count: int) -> int:
    """Index of the scored revision for ``provider``.

    Raises:
        ValidationError: commit_count < 1 or malformed seed/provider.
    """
    if commit_count < 1:
        raise ValidationError("provider has no commits", code="no_commits")
    digest = keccak256(bytes32_from_hex(seed, "seed") + address_bytes(provider))
    return int.from_bytes(digest, "big") % commit_count


def selected_index_for_batch(batch: BatchInfo, provider: str, commit_count: int) -> int:
    """Selection gated on the batch having a revealed seed."""
    if not batch.seed_revealed or not batch.seed:
        raise SeedNotRevealedError(f"seed not revealed for {batch.batch_hash}")
    return selected_index(batch.seed, provider, commit_count)


__all__ = ["selected_index", "selected_index_for_batch"]
