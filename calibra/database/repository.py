"""Repositories over the metadata tables.

All addresses and hashes are stored lowercase. Database failures surface
as ExternalDependencyError("database", <operation>); state conflicts
(ambiguous rows, finalized batches) as StateError subclasses.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import bittensor as bt
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from calibra.errors import AlreadyFinalizedError, ExternalDependencyError, NotFoundError, StateError
from calibra.protocol.hashing import normalize_address, normalize_bytes32
from calibra.protocol.models import FinalizeParams, SubmissionRecord

from .manager import Database
from .schema import AuthNonce, BatchFinalization, Submission


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _record(row: Submission) -> SubmissionRecord:
    record = SubmissionRecord.model_validate(row, from_attributes=True)
    record.created_at = as_utc(record.created_at)
    return record


@dataclass
class CommitIndexResult:
    submission_id: int
    commit_index: int
    already_set: bool


@dataclass
class StoredNonce:
    address: str
    nonce: str
    expires_at: datetime


class SubmissionRepository:
    """Read/write access to ``submissions`` and ``batch_finalizations``."""

    def __init__(self, db: Database):
        self.db = db

    async def insert_submission(self, record: SubmissionRecord) -> SubmissionRecord:
        row = Submission(
            batch_id=record.batch_id,
            batch_hash=normalize_bytes32(record.batch_hash, "batch_hash"),
            provider_address=normalize_address(record.provider_address, "provider"),
            commit_index=record.commit_index,
            commit_hash=normalize_bytes32(record.commit_hash, "commit_hash"),
            root=normalize_bytes32(record.root, "root"),
            salt=normalize_bytes32(record.salt, "salt"),
            storage_bucket=record.storage_bucket,
            storage_path=record.storage_path,
            encrypted_uri_hash=normalize_bytes32(record.encrypted_uri_hash, "encrypted_uri_hash"),
            created_at=record.created_at,
        )
        try:
            async with self.db.session() as session:
                session.add(row)
                await session.flush()
                return _record(row)
        except SQLAlchemyError as e:
            raise ExternalDependencyError("database", "insert_submission", str(e), retryable=False) from e

    async def set_commit_index(
        self,
        batch_hash: str,
        provider: str,
        commit_hash: str,
        commit_index: int,
    ) -> CommitIndexResult:
        """Record the ledger index for the row matching ``commit_hash``.

        Idempotent: a row that already carries an index is left untouched
        and its existing index is returned.
        """
        if commit_index < 0:
            raise StateError("commit index must be non-negative", code="invalid_commit_index")
        batch_hash = normalize_bytes32(batch_hash, "batch_hash")
        provider = normalize_address(provider, "provider")
        commit_hash = normalize_bytes32(commit_hash, "commit_hash")
        try:
            async with self.db.session() as session:
                rows = (
                    await session.execute(
                        select(Submission).where(
                            Submission.batch_hash == batch_hash,
                            Submission.provider_address == provider,
                            Submission.commit_hash == commit_hash,
                        )
                    )
                ).scalars().all()
                if not rows:
                    raise NotFoundError("no submission matches this commit hash", code="submission_not_found")
                if len(rows) > 1:
                    raise StateError("multiple submissions match this commit hash", code="ambiguous_submission")
                row = rows[0]
                if row.commit_index is not None:
                    return CommitIndexResult(row.id, row.commit_index, already_set=True)
                row.commit_index = commit_index
                return CommitIndexResult(row.id, commit_index, already_set=False)
        except SQLAlchemyError as e:
            raise ExternalDependencyError("database", "set_commit_index", str(e)) from e

    async def list_for_batch(self, batch_hash: str) -> list[SubmissionRecord]:
        batch_hash = normalize_bytes32(batch_hash, "batch_hash")
        stmt = (
            select(Submission)
            .where(Submission.batch_hash == batch_hash)
            .order_by(Submission.created_at, Submission.id)
        )
        return await self._select(stmt, "list_for_batch")

    async def list_for_provider(self, batch_hash: str, provider: str) -> list[SubmissionRecord]:
        stmt = (
            select(Submission)
            .where(
                Submission.batch_hash == normalize_bytes32(batch_hash, "batch_hash"),
                Submission.provider_address == normalize_address(provider, "provider"),
            )
            .order_by(Submission.created_at, Submission.id)
        )
        return await self._select(stmt, "list_for_provider")

    async def latest_for_provider(self, batch_hash: str, provider: str) -> SubmissionRecord | None:
        stmt = (
            select(Submission)
            .where(
                Submission.batch_hash == normalize_bytes32(batch_hash, "batch_hash"),
                Submission.provider_address == normalize_address(provider, "provider"),
            )
            .order_by(Submission.created_at.desc(), Submission.id.desc())
            .limit(1)
        )
        rows = await self._select(stmt, "latest_for_provider")
        return rows[0] if rows else None

    async def _select(self, stmt, operation: str) -> list[SubmissionRecord]:
        try:
            async with self.db.session() as session:
                rows = (await session.execute(stmt)).scalars().all()
                return [_record(r) for r in rows]
        except SQLAlchemyError as e:
            raise ExternalDependencyError("database", operation, str(e)) from e

    # -- finalization --

    async def save_finalize_params(
        self,
        batch_id: str,
        params: FinalizeParams,
        scoring_method: str,
        created_at: datetime | None = None,
    ) -> None:
        """Store (or replace) the prepared parameters of a not-yet-finalized batch."""
        created_at = created_at or datetime.now(timezone.utc)
        payouts = {
            "providers": list(params.providers),
            "selectedCommitIndices": list(params.selected_indices),
            "payouts": [str(p) for p in params.payouts],
            "scoresHash": params.scores_hash,
        }
        try:
            async with self.db.session() as session:
                row = await session.get(BatchFinalization, batch_id)
                if row is not None and row.finalized:
                    raise AlreadyFinalizedError(f"batch {batch_id} already finalized")
                if row is None:
                    row = BatchFinalization(batch_id=batch_id)
                    session.add(row)
                row.batch_hash = params.batch_hash
                row.finalized = False
                row.scoring_method = scoring_method
                row.payouts_json = payouts
                row.scores_hash = params.scores_hash
                row.scores_json = params.scores_json
                row.created_at = created_at
        except SQLAlchemyError as e:
            raise ExternalDependencyError("database", "save_finalize_params", str(e)) from e
        bt.logging.info({"calibra_db": {"event": "finalize_params_saved", "batch_id": batch_id}})

    async def mark_finalized(self, batch_id: str, finalized_at: datetime | None = None) -> None:
        finalized_at = finalized_at or datetime.now(timezone.utc)
        try:
            async with self.db.session() as session:
                row = await session.get(BatchFinalization, batch_id)
                if row is None:
                    raise NotFoundError(f"no prepared finalization for {batch_id}", code="finalization_not_found")
                row.finalized = True
                row.finalized_at = finalized_at
        except SQLAlchemyError as e:
            raise ExternalDependencyError("database", "mark_finalized", str(e)) from e

    async def get_finalization(self, batch_id: str) -> BatchFinalization | None:
        try:
            async with self.db.session() as session:
                return await session.get(BatchFinalization, batch_id)
        except SQLAlchemyError as e:
            raise ExternalDependencyError("database", "get_finalization", str(e)) from e


class NonceRepository:
    """At most one live login nonce per address."""

    def __init__(self, db: Database):
        self.db = db

    async def upsert(self, address: str, nonce: str, expires_at: datetime) -> None:
        address = normalize_address(address)
        now = datetime.now(timezone.utc)
        try:
            async with self.db.session() as session:
                row = await session.get(AuthNonce, address)
                if row is None:
                    session.add(AuthNonce(address=address, nonce=nonce, expires_at=expires_at, updated_at=now))
                else:
                    row.nonce = nonce
                    row.expires_at = expires_at
                    row.updated_at = now
        except SQLAlchemyError as e:
            raise ExternalDependencyError("database", "upsert_nonce", str(e)) from e

    async def get(self, address: str) -> StoredNonce | None:
        address = normalize_address(address)
        try:
            async with self.db.session() as session:
                row = await session.get(AuthNonce, address)
                if row is None:
                    return None
                return StoredNonce(row.address, row.nonce, as_utc(row.expires_at))
        except SQLAlchemyError as e:
            raise ExternalDependencyError("database", "get_nonce", str(e)) from e

    async def consume(self, address: str, nonce: str) -> bool:
        """Delete the nonce if it is still the live one. False if already used."""
        address = normalize_address(address)
        try:
            async with self.db.session() as session:
                result = await session.execute(
                    delete(AuthNonce).where(AuthNonce.address == address, AuthNonce.nonce == nonce)
                )
                return (result.rowcount or 0) > 0
        except SQLAlchemyError as e:
            raise ExternalDependencyError("database", "consume_nonce", str(e)) from e


__all__ = [
    "CommitIndexResult",
    "NonceRepository",
    "StoredNonce",
    "SubmissionRepository",
    "as_utc",
]
