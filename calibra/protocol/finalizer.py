"""Deterministic payout computation and the canonical scoring record.

Equal split over a deduplicated, address-sorted provider set:

    base = bounty // n
    r    = bounty - base * n      (0 <= r < n)
    payout[i] = base + (1 if i < r else 0)

so sum(payouts) == bounty exactly. The scoring record is serialized with a
fixed key order and hashed over its exact UTF-8 bytes; that hash, the
provider list, the selected indices and the payouts are the only inputs to
the ledger's finalize transition.
"""

from __future__ import annotations

import json
from typing import Iterable, Mapping

from calibra.errors import AlreadyFinalizedError, SeedNotRevealedError, ValidationError

from .hashing import compute_hash, normalize_address
from .models import (
    SCORING_METHOD_EQUAL_SPLIT,
    BatchInfo,
    FinalizeParams,
    ScoringRecord,
)


def normalize_providers(providers: Iterable[str]) -> list[str]:
    """Lowercase, deduplicate and sort provider addresses."""
    return sorted({normalize_address(p, "provider") for p in providers})


def compute_payouts(bounty: int, n_providers: int) -> list[int]:
    """Equal split of ``bounty`` base units with the remainder to the first r."""
    if bounty < 0:
        raise ValidationError("bounty must be non-negative", code="invalid_bounty")
    if n_providers < 1:
        raise ValidationError("No providers to pay", code="no_providers")
    base, remainder = divmod(bounty, n_providers)
    return [base + (1 if i < remainder else 0) for i in range(n_providers)]


def serialize_scoring_record(record: ScoringRecord) -> str:
    """Compact JSON in the model's declared field order."""
    return json.dumps(record.model_dump(), separators=(",", ":"), ensure_ascii=False)


def build_finalize_params(
    batch: BatchInfo,
    batch_id: str,
    selected: Mapping[str, int],
    created_at_unix: int,
    scoring: str = SCORING_METHOD_EQUAL_SPLIT,
) -> tuple[FinalizeParams, ScoringRecord]:
    """Compute payouts and the hashed scoring record for a batch.

    Args:
        batch: ledger view of the batch (must have a revealed seed, not finalized).
        batch_id: human batch id bound into the record.
        selected: provider address -> selected commit index.
        created_at_unix: record timestamp (seconds).

    Raises:
        AlreadyFinalizedError: the batch is already finalized.
        SeedNotRevealedError: selection is not defined yet.
        ValidationError: no providers.
    """
    if batch.finalized:
        raise AlreadyFinalizedError(f"batch {batch.batch_hash} already finalized")
    if not batch.seed_revealed:
        raise SeedNotRevealedError(f"seed not revealed for {batch.batch_hash}")

    by_provider = {normalize_address(p, "provider"): idx for p, idx in selected.items()}
    providers = sorted(by_provider)
    payouts = compute_payouts(batch.bounty, len(providers))
    indices = [by_provider[p] for p in providers]

    record = ScoringRecord(
        scoring=scoring,
        batchId=batch_id,
        batchIdHash=batch.batch_hash,
        operator=batch.operator.lower(),
        funder=batch.funder.lower(),
        createdAtUnix=created_at_unix,
        providers=providers,
        selectedCommitIndices=indices,
        payouts=[str(p) for p in payouts],
    )
    scores_json = serialize_scoring_record(record)
    params = FinalizeParams(
        batch_hash=batch.batch_hash,
        providers=providers,
        payouts=payouts,
        selected_indices=indices,
        scores_hash=compute_hash(scores_json),
        scores_json=scores_json,
    )
    return params, record


__all__ = [
    "build_finalize_params",
    "compute_payouts",
    "normalize_providers",
    "serialize_scoring_record",
]
