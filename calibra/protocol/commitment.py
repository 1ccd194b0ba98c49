"""Commitment building and reveal verification.

    root        = keccak256(canonical_bytes)
    salt        = 32 random bytes, fresh per submission
    commit_hash = keccak256(batch_hash || root || salt)

The three inputs are fixed-width 32-byte values, concatenated in that
order. Only commit_hash goes on the ledger at commit time; root and salt
stay private until reveal.
"""

from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass

from calibra.errors import AlreadyRevealedError, CommitmentMismatchError, ValidationError

from .hashing import bytes32_from_hex, keccak256, to_hex
from .models import Commitment

SALT_BYTES = 32


def _as_bytes32(value: bytes | str, field: str) -> bytes:
    if isinstance(value, bytes):
        if len(value) != 32:
            raise ValidationError(f"{field} must be 32 bytes", code=f"invalid_{field}")
        return value
    return bytes32_from_hex(value, field)


@dataclass(frozen=True)
class CommitmentParts:
    root: str
    salt: str
    commit_hash: str


def compute_root(canonical_bytes: bytes) -> str:
    return to_hex(keccak256(canonical_bytes))


def generate_salt() -> str:
    return to_hex(secrets.token_bytes(SALT_BYTES))


def compute_commit_hash(batch_hash: bytes | str, root: bytes | str, salt: bytes | str) -> str:
    packed = (
        _as_bytes32(batch_hash, "batch_hash")
        + _as_bytes32(root, "root")
        + _as_bytes32(salt, "salt")
    )
    return to_hex(keccak256(packed))


def build_commitment(batch_hash: str, canonical_bytes: bytes) -> CommitmentParts:
    """Derive root, a fresh salt and the commit hash for one submission."""
    root = compute_root(canonical_bytes)
    salt = generate_salt()
    return CommitmentParts(
        root=root,
        salt=salt,
        commit_hash=compute_commit_hash(batch_hash, root, salt),
    )


def verify_commitment(
    batch_hash: bytes | str,
    root: bytes | str,
    salt: bytes | str,
    commit_hash: bytes | str,
) -> bool:
    """True iff keccak256(batch_hash || root || salt) == commit_hash."""
    try:
        expected = bytes.fromhex(compute_commit_hash(batch_hash, root, salt)[2:])
        actual = _as_bytes32(commit_hash, "commit_hash")
    except ValidationError:
        return False
    return hmac.compare_digest(expected, actual)


def verify_reveal(commitment: Commitment, batch_hash: str, root: str, salt: str) -> None:
    """Check a provider-supplied (root, salt) against a stored commitment.

    A failed check leaves the index unrevealed; the provider may retry with
    the correct values while the reveal window is open.

    Raises:
        AlreadyRevealedError: the index was already revealed.
        CommitmentMismatchError: the values do not reproduce the commit hash.
    """
    if commitment.revealed:
        raise AlreadyRevealedError(f"commit index {commitment.index} already revealed")
    if not verify_commitment(batch_hash, root, salt, commitment.commit_hash):
        raise CommitmentMismatchError(
            f"reveal for index {commitment.index} does not match commit hash"
        )


__all__ = [
    "SALT_BYTES",
    "CommitmentParts",
    "build_commitment",
    "compute_commit_hash",
    "compute_root",
    "generate_salt",
    "verify_commitment",
    "verify_reveal",
]
