"""Commit-reveal protocol primitives.

Pure, stateless building blocks shared by the submission service, the
operator's finalization flow and public auditors:

- canonical: order-invariant payload serialization
- commitment: root / salt / commit hash, reveal verification
- envelope: AES-256-GCM envelopes behind an injected key provider
- selector: seed-driven choice of the scored revision
- finalizer: equal-split payouts and the hashed scoring record
"""

from .canonical import CanonicalizationPolicy, CanonicalPayload, canonicalize
from .commitment import build_commitment, compute_commit_hash, verify_commitment, verify_reveal
from .envelope import EnvKeyProvider, KeyProvider, StaticKeyProvider, decrypt, encrypt
from .finalizer import build_finalize_params, compute_payouts
from .hashing import batch_id_to_hash, keccak256
from .selector import selected_index

__all__ = [
    "CanonicalPayload",
    "CanonicalizationPolicy",
    "EnvKeyProvider",
    "KeyProvider",
    "StaticKeyProvider",
    "batch_id_to_hash",
    "build_commitment",
    "build_finalize_params",
    "canonicalize",
    "compute_commit_hash",
    "compute_payouts",
    "decrypt",
    "encrypt",
    "keccak256",
    "selected_index",
    "verify_commitment",
    "verify_reveal",
]
