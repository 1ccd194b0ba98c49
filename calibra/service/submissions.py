"""Provider-side submission flow: upload, commit, read, reveal.

Ordering is fixed and never reversed:

    canonicalize -> commit values -> encrypt -> store envelope
        -> insert metadata row -> (later) ledger commit -> record index

Envelope writes and ledger writes share no transaction. An envelope whose
ledger commit never lands is an orphan: harmless, reported by the audit
reconciler, never treated as corruption. Nothing here retries a write.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import bittensor as bt

from calibra.database.repository import SubmissionRepository
from calibra.errors import (
    CalibraError,
    EnvelopeIntegrityError,
    ExternalDependencyError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from calibra.ledger.interface import LedgerClient
from calibra.protocol.canonical import CanonicalizationPolicy, canonicalize, parse_canonical
from calibra.protocol.commitment import build_commitment, compute_root, verify_reveal
from calibra.protocol.envelope import KeyProvider, decrypt, encrypt, envelope_ciphertext, parse_envelope
from calibra.protocol.hashing import (
    batch_id_to_hash,
    compute_hash,
    keccak256,
    normalize_address,
    normalize_bytes32,
    to_hex,
)
from calibra.protocol.models import (
    ForecastEntry,
    RevealItem,
    SubmissionReceipt,
    SubmissionRecord,
)
from calibra.protocol.selector import selected_index_for_batch
from calibra.store.interface import EnvelopeStore, build_object_path


def public_uri_for(bucket: str, path: str) -> str:
    return f"sb://{bucket}/{path}"


@dataclass
class ReadResult:
    """Decrypted latest submission of a provider, for an authorized viewer."""

    record: SubmissionRecord
    entries: list[ForecastEntry]
    payload: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class CommitResult:
    commit_index: int
    already_set: bool


class SubmissionService:
    """Wires the protocol primitives to the ledger, the store and the db."""

    def __init__(
        self,
        ledger: LedgerClient,
        store: EnvelopeStore,
        submissions: SubmissionRepository,
        keys: KeyProvider,
        policy: CanonicalizationPolicy = CanonicalizationPolicy.STRICT,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.store = store
        self.submissions = submissions
        self.keys = keys
        self.policy = policy
        self._clock = clock

    # -- upload --

    async def upload(
        self,
        batch_id: str,
        batch_hash: str,
        provider: str,
        payload: Any,
    ) -> SubmissionReceipt:
        """Canonicalize, seal and store a forecast; record its commit values.

        Returns the receipt the provider needs to commit and later reveal.
        Nothing touches the ledger here.
        """
        batch_id = (batch_id or "").strip()
        if not batch_id:
            raise ValidationError("Missing batchId", code="invalid_batch_id")
        batch_hash = normalize_bytes32(batch_hash, "batch_hash")
        if batch_id_to_hash(batch_id) != batch_hash:
            raise ValidationError("batch hash does not match batch id", code="batch_hash_mismatch")
        provider = normalize_address(provider, "provider")

        canonical = canonicalize(payload, self.policy)
        if canonical.dropped:
            bt.logging.warning({"calibra_submit": {"event": "leaves_dropped", "provider": provider[:10], "dropped": len(canonical.dropped)}})
        data = canonical.canonical_bytes
        parts = build_commitment(batch_hash, data)
        sealed = encrypt(self.keys, data)

        now_ms = int(self._clock() * 1000)
        path = build_object_path(batch_hash, provider, now_ms)
        await self.store.put(path, sealed.to_bytes())

        record = await self.submissions.insert_submission(SubmissionRecord(
            batch_id=batch_id,
            batch_hash=batch_hash,
            provider_address=provider,
            commit_hash=parts.commit_hash,
            root=parts.root,
            salt=parts.salt,
            storage_bucket=self.store.bucket,
            storage_path=path,
            encrypted_uri_hash=sealed.encrypted_uri_hash,
            created_at=datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc),
        ))
        bt.logging.info({
            "calibra_submit": {
                "event": "uploaded",
                "batch": batch_hash[:10],
                "provider": provider[:10],
                "entries": len(canonical.entries),
                "submission_id": record.id,
            }
        })
        return SubmissionReceipt(
            batch_id=batch_id,
            batch_hash=batch_hash,
            provider=provider,
            root=parts.root,
            salt=parts.salt,
            commit_hash=parts.commit_hash,
            encrypted_uri_hash=sealed.encrypted_uri_hash,
            storage_bucket=self.store.bucket,
            storage_path=path,
        )

    # -- commit --

    async def commit(self, receipt: SubmissionReceipt) -> SubmissionReceipt:
        """Anchor the receipt's commit hash on the ledger and record the index."""
        try:
            index = await self.ledger.commit(
                receipt.batch_hash, receipt.provider, receipt.commit_hash, receipt.encrypted_uri_hash,
            )
        except CalibraError as e:
            # The stored envelope stays behind as an orphan.
            bt.logging.warning({
                "calibra_submit": {
                    "event": "commit_failed",
                    "provider": receipt.provider[:10],
                    "path": receipt.storage_path,
                    "error": e.code,
                }
            })
            raise

        result = await self.set_commit_index(
            receipt.batch_hash, receipt.provider, receipt.commit_hash, index,
        )
        return receipt.model_copy(update={"commit_index": result.commit_index})

    async def set_commit_index(
        self,
        batch_hash: str,
        provider: str,
        commit_hash: str,
        commit_index: int,
    ) -> CommitResult:
        """Record a ledger index against the matching submission row.

        The claimed index is checked against the ledger before it is stored.
        """
        commitment = await self.ledger.get_commit(batch_hash, provider, commit_index)
        if commitment.commit_hash != normalize_bytes32(commit_hash, "commit_hash"):
            raise ValidationError(
                f"ledger commit {commit_index} has a different hash", code="commit_hash_mismatch",
            )
        try:
            result = await self.submissions.set_commit_index(batch_hash, provider, commit_hash, commit_index)
        except ExternalDependencyError:
            bt.logging.error({"calibra_submit": {"event": "index_not_recorded", "provider": provider[:10], "index": commit_index}})
            raise
        bt.logging.info({
            "calibra_submit": {
                "event": "index_recorded",
                "provider": provider[:10],
                "index": result.commit_index,
                "already_set": result.already_set,
            }
        })
        return CommitResult(result.commit_index, result.already_set)

    # -- read --

    async def read(self, viewer: str, batch_hash: str, provider: str) -> ReadResult:
        """Decrypt a provider's latest submission for the operator, funder or provider."""
        viewer = normalize_address(viewer, "viewer")
        provider = normalize_address(provider, "provider")
        batch = await self.ledger.get_batch(batch_hash)
        if batch is None or not batch.exists:
            raise NotFoundError("Batch not found on ledger", code="batch_not_found")
        if viewer not in (batch.operator.lower(), batch.funder.lower(), provider):
            bt.logging.warning({"calibra_submit": {"event": "read_denied", "viewer": viewer[:10]}})
            raise ForbiddenError("Not authorized")

        record = await self.submissions.latest_for_provider(batch_hash, provider)
        if record is None:
            raise NotFoundError("Submission not found", code="submission_not_found")
        raw = await self.store.get(record.storage_path)
        if raw is None:
            raise NotFoundError("Envelope missing from store", code="envelope_not_found")

        envelope = parse_envelope(raw)
        if to_hex(keccak256(envelope_ciphertext(envelope))) != record.encrypted_uri_hash:
            raise EnvelopeIntegrityError("ciphertext does not match encrypted uri hash")
        plaintext = decrypt(self.keys, envelope)
        if compute_root(plaintext) != record.root:
            raise EnvelopeIntegrityError("decrypted payload does not match committed root")

        entries = parse_canonical(plaintext)
        return ReadResult(
            record=record,
            entries=entries,
            payload=[e.model_dump() for e in entries],
        )

    # -- reveal --

    async def reveal(self, batch_hash: str, provider: str, indices: list[int]) -> list[RevealItem]:
        """Reveal (root, salt) for the given ledger indices in one call.

        Each item is checked against the ledger commitment first; a
        mismatch aborts before anything is sent and no slot is consumed.
        """
        batch_hash = normalize_bytes32(batch_hash, "batch_hash")
        provider = normalize_address(provider, "provider")
        if not indices:
            raise ValidationError("nothing to reveal", code="empty_reveal")

        rows = await self.submissions.list_for_provider(batch_hash, provider)
        by_index = {r.commit_index: r for r in rows if r.commit_index is not None}
        by_hash = {r.commit_hash: r for r in rows}

        items: list[RevealItem] = []
        for index in indices:
            commitment = await self.ledger.get_commit(batch_hash, provider, index)
            row = by_index.get(index)
            if row is None or row.commit_hash != commitment.commit_hash:
                row = by_hash.get(commitment.commit_hash)
            if row is None:
                raise NotFoundError(f"no stored submission for commit {index}", code="submission_not_found")
            verify_reveal(commitment, batch_hash, row.root, row.salt)
            items.append(RevealItem(
                index=index,
                root=row.root,
                salt=row.salt,
                public_uri_hash=compute_hash(public_uri_for(row.storage_bucket, row.storage_path)),
            ))

        await self.ledger.reveal_commits(batch_hash, provider, items)
        bt.logging.info({"calibra_submit": {"event": "revealed", "provider": provider[:10], "indices": list(indices)}})
        return items

    async def reveal_selected(self, batch_hash: str, provider: str) -> RevealItem:
        """Reveal only the revision the seed selected for this provider."""
        batch = await self.ledger.get_batch(batch_hash)
        if batch is None or not batch.exists:
            raise NotFoundError("Batch not found on ledger", code="batch_not_found")
        count = await self.ledger.get_commit_count(batch_hash, provider)
        index = selected_index_for_batch(batch, provider, count)
        items = await self.reveal(batch_hash, provider, [index])
        return items[0]


__all__ = ["CommitResult", "ReadResult", "SubmissionService", "public_uri_for"]
