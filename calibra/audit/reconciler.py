"""Read-only reconciliation of ledger commitments with off-ledger metadata.

For every provider the ledger's commitments are the timeline; stored rows
are attached to them by (provider, index), falling back to
(provider, commit_hash) for rows whose index was never recorded.

- A commitment with no stored row is still listed, with
  ``availability="unavailable"``.
- A stored row with no commitment is an orphan (upload succeeded, ledger
  commit did not). Orphans are reported, not treated as corruption.
- Revealed commitments are re-verified against the ledger's own
  (root, salt); nothing secret from the metadata store is exposed.
"""

from __future__ import annotations

from typing import Any, Iterable, Literal

import bittensor as bt
from pydantic import BaseModel, Field

from calibra.database.repository import SubmissionRepository
from calibra.errors import NotFoundError
from calibra.ledger.interface import LedgerClient
from calibra.protocol.commitment import verify_commitment
from calibra.protocol.finalizer import normalize_providers
from calibra.protocol.hashing import normalize_bytes32
from calibra.protocol.models import BatchInfo, Commitment, SubmissionRecord

from .redaction import redact


class TimelineEntry(BaseModel):
    """One ledger commitment with whatever off-ledger metadata matched it."""

    provider: str
    index: int
    commit_hash: str
    committed_at: int
    revealed: bool
    root: str | None = None
    salt: str | None = None
    public_uri_hash: str | None = None
    availability: Literal["available", "unavailable"] = "unavailable"
    matched_by: Literal["index", "commit_hash"] | None = None
    reveal_verified: bool | None = None
    uri_hash_match: bool | None = None
    selected: bool = False
    off_ledger: dict[str, Any] = Field(default_factory=dict)


class ProviderAudit(BaseModel):
    provider: str
    commit_count: int
    selected_index: int | None = None
    commits: list[TimelineEntry] = Field(default_factory=list)


class AuditReport(BaseModel):
    batch_hash: str
    funded: bool
    seed_revealed: bool
    finalized: bool
    window_start: int
    window_end: int
    reveal_deadline: int
    providers: list[ProviderAudit] = Field(default_factory=list)
    orphans: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def unavailable(self) -> list[TimelineEntry]:
        return [c for p in self.providers for c in p.commits if c.availability == "unavailable"]


def _public_row(row: SubmissionRecord) -> dict[str, Any]:
    return redact(row.model_dump(mode="json"))


def reconcile_commitments(
    batch: BatchInfo,
    provider: str,
    commitments: list[Commitment],
    rows: Iterable[SubmissionRecord],
    selected_index: int | None = None,
) -> tuple[ProviderAudit, list[SubmissionRecord]]:
    """Join one provider's commitments to its rows. Returns the unmatched rows too."""
    rows = list(rows)
    by_index: dict[int, SubmissionRecord] = {}
    by_hash: dict[str, SubmissionRecord] = {}
    for row in rows:
        if row.commit_index is not None:
            by_index.setdefault(row.commit_index, row)
        by_hash.setdefault(row.commit_hash, row)

    used: set[int] = set()
    entries: list[TimelineEntry] = []
    for c in commitments:
        entry = TimelineEntry(
            provider=provider,
            index=c.index,
            commit_hash=c.commit_hash,
            committed_at=c.committed_at,
            revealed=c.revealed,
            root=c.root if c.revealed else None,
            salt=c.salt if c.revealed else None,
            public_uri_hash=c.public_uri_hash if c.revealed else None,
            selected=selected_index == c.index,
        )
        if c.revealed and c.root and c.salt:
            entry.reveal_verified = verify_commitment(batch.batch_hash, c.root, c.salt, c.commit_hash)

        row = by_index.get(c.index)
        matched_by = "index"
        if row is None or row.commit_hash != c.commit_hash:
            row = by_hash.get(c.commit_hash)
            matched_by = "commit_hash"
        if row is not None and id(row) not in used:
            used.add(id(row))
            entry.availability = "available"
            entry.matched_by = matched_by
            entry.off_ledger = _public_row(row)
            if not c.revealed:
                entry.uri_hash_match = row.encrypted_uri_hash == c.encrypted_uri_hash
        entries.append(entry)

    orphans = [r for r in rows if id(r) not in used]
    audit = ProviderAudit(
        provider=provider,
        commit_count=len(commitments),
        selected_index=selected_index,
        commits=entries,
    )
    return audit, orphans


class AuditReconciler:
    """Builds the public audit timeline of a batch. Never writes."""

    def __init__(self, ledger: LedgerClient, submissions: SubmissionRepository):
        self.ledger = ledger
        self.submissions = submissions

    async def build_report(self, batch_hash: str, extra_providers: Iterable[str] = ()) -> AuditReport:
        batch_hash = normalize_bytes32(batch_hash, "batch_hash")
        batch = await self.ledger.get_batch(batch_hash)
        if batch is None or not batch.exists:
            raise NotFoundError("Batch not found on ledger", code="batch_not_found")

        rows = await self.submissions.list_for_batch(batch_hash)
        rows_by_provider: dict[str, list[SubmissionRecord]] = {}
        for row in rows:
            rows_by_provider.setdefault(row.provider_address, []).append(row)

        report = AuditReport(
            batch_hash=batch_hash,
            funded=batch.funded,
            seed_revealed=batch.seed_revealed,
            finalized=batch.finalized,
            window_start=batch.window_start,
            window_end=batch.window_end,
            reveal_deadline=batch.reveal_deadline,
        )
        for provider in normalize_providers([*rows_by_provider, *extra_providers]):
            count = await self.ledger.get_commit_count(batch_hash, provider)
            commitments = [await self.ledger.get_commit(batch_hash, provider, i) for i in range(count)]
            selected = None
            if batch.seed_revealed and count > 0:
                selected = await self.ledger.get_selected_commit_index(batch_hash, provider)
            audit, orphans = reconcile_commitments(
                batch, provider, commitments, rows_by_provider.get(provider, []), selected,
            )
            report.providers.append(audit)
            report.orphans.extend(_public_row(r) for r in orphans)

        bt.logging.info({
            "calibra_audit": {
                "event": "report_built",
                "batch": batch_hash[:10],
                "providers": len(report.providers),
                "unavailable": len(report.unavailable),
                "orphans": len(report.orphans),
            }
        })
        return report


__all__ = [
    "AuditReconciler",
    "AuditReport",
    "ProviderAudit",
    "TimelineEntry",
    "reconcile_commitments",
]
