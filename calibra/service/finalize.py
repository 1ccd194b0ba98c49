"""Operator settlement: prepare finalize parameters, then push them on-ledger.

prepare() is read-only against the ledger and may be re-run until the
batch is finalized (each run replaces the stored parameters). submit()
sends the stored parameters exactly once; a repeat is rejected by the
ledger (or short-circuited here once the row is marked finalized).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import bittensor as bt

from calibra.database.repository import SubmissionRepository, as_utc
from calibra.errors import (
    AlreadyFinalizedError,
    ForbiddenError,
    NotFoundError,
    StateError,
    ValidationError,
)
from calibra.ledger.interface import LedgerClient
from calibra.protocol.finalizer import build_finalize_params, normalize_providers
from calibra.protocol.hashing import batch_id_to_hash, normalize_address, normalize_bytes32
from calibra.protocol.models import BatchInfo, FinalizeParams, ScoringRecord
from calibra.store.interface import EnvelopeStore


@dataclass
class PreparedFinalize:
    batch_id: str
    params: FinalizeParams
    record: ScoringRecord
    skipped: list[str]


class FinalizeService:
    """Builds and submits the one-shot finalize transition for a batch."""

    def __init__(
        self,
        ledger: LedgerClient,
        submissions: SubmissionRepository,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.submissions = submissions
        self._clock = clock

    async def _load_batch(self, operator: str, batch_hash: str) -> BatchInfo:
        batch = await self.ledger.get_batch(batch_hash)
        if batch is None or not batch.exists:
            raise NotFoundError("Batch not found on ledger", code="batch_not_found")
        if not batch.funded:
            raise StateError("Batch not funded", code="not_funded")
        if batch.finalized:
            raise AlreadyFinalizedError("Batch already finalized")
        if operator != batch.operator.lower():
            raise ForbiddenError("Only operator can prepare finalize params")
        return batch

    async def prepare(self, operator: str, batch_id: str, batch_hash: str | None = None) -> PreparedFinalize:
        """Compute payouts and the scoring record from ledger state.

        Providers are taken from the stored submissions; any without a
        ledger commitment (upload only, commit never landed) is skipped.
        """
        operator = normalize_address(operator, "operator")
        derived = batch_id_to_hash(batch_id)
        if batch_hash is not None and normalize_bytes32(batch_hash, "batch_hash") != derived:
            raise ValidationError("batch hash does not match batch id", code="batch_hash_mismatch")
        batch = await self._load_batch(operator, derived)

        rows = await self.submissions.list_for_batch(derived)
        selected: dict[str, int] = {}
        skipped: list[str] = []
        for provider in normalize_providers(r.provider_address for r in rows):
            if await self.ledger.get_commit_count(derived, provider) == 0:
                skipped.append(provider)
                continue
            selected[provider] = await self.ledger.get_selected_commit_index(derived, provider)
        if skipped:
            bt.logging.warning({"calibra_finalize": {"event": "providers_skipped", "batch": derived[:10], "count": len(skipped)}})
        if not selected:
            raise ValidationError("No providers found in submissions", code="no_providers")

        params, record = build_finalize_params(batch, batch_id, selected, int(self._clock()))
        await self.submissions.save_finalize_params(batch_id, params, record.scoring)
        bt.logging.info({
            "calibra_finalize": {
                "event": "prepared",
                "batch": derived[:10],
                "providers": len(params.providers),
                "scores_hash": params.scores_hash,
            }
        })
        return PreparedFinalize(batch_id=batch_id, params=params, record=record, skipped=skipped)

    async def submit(self, operator: str, batch_id: str) -> FinalizeParams:
        """Send the prepared parameters to the ledger and mark the batch finalized."""
        operator = normalize_address(operator, "operator")
        row = await self.submissions.get_finalization(batch_id)
        if row is None:
            raise NotFoundError(f"no prepared finalization for {batch_id}", code="finalization_not_found")
        if row.finalized:
            raise AlreadyFinalizedError(f"batch {batch_id} already finalized")

        stored = row.payouts_json
        params = FinalizeParams(
            batch_hash=row.batch_hash,
            providers=list(stored["providers"]),
            payouts=[int(p) for p in stored["payouts"]],
            selected_indices=[int(i) for i in stored["selectedCommitIndices"]],
            scores_hash=row.scores_hash,
            scores_json=row.scores_json,
        )
        await self.ledger.finalize(
            params.batch_hash,
            operator,
            params.providers,
            params.payouts,
            params.selected_indices,
            params.scores_hash,
        )
        await self.submissions.mark_finalized(batch_id)
        bt.logging.info({"calibra_finalize": {"event": "finalized", "batch": params.batch_hash[:10]}})
        return params

    async def prune(self, store: EnvelopeStore, batch_id: str, now: datetime | None = None) -> bool:
        """Apply envelope retention to a finalized batch. Returns True if pruned."""
        row = await self.submissions.get_finalization(batch_id)
        if row is None or not row.finalized or row.finalized_at is None:
            return False
        return await store.prune_finalized(row.batch_hash, as_utc(row.finalized_at), now=now)


__all__ = ["FinalizeService", "PreparedFinalize"]
