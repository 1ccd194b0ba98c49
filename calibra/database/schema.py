"""Off-ledger metadata tables: submissions, auth nonces, finalizations."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Submission(Base):
    """One stored envelope and the commitment values derived from it.

    ``commit_index`` stays NULL until the provider's ledger commit lands
    and the index is recorded.
    """

    __tablename__ = "submissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(String, nullable=False)
    batch_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    provider_address: Mapped[str] = mapped_column(String(42), nullable=False)
    commit_index: Mapped[int | None] = mapped_column(
        Integer,
        comment="Ledger commit index, set after the commit transaction",
    )
    commit_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    root: Mapped[str] = mapped_column(String(66), nullable=False)
    salt: Mapped[str] = mapped_column(String(66), nullable=False, comment="Secret until reveal")
    storage_bucket: Mapped[str] = mapped_column(String, nullable=False)
    storage_path: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    encrypted_uri_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_submissions_batch_provider", "batch_hash", "provider_address"),
        Index("ix_submissions_commit_hash", "batch_hash", "provider_address", "commit_hash"),
    )


class AuthNonce(Base):
    """Single-use login nonce, at most one live nonce per address."""

    __tablename__ = "auth_nonces"

    address: Mapped[str] = mapped_column(String(42), primary_key=True)
    nonce: Mapped[str] = mapped_column(String(66), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class BatchFinalization(Base):
    """Prepared (then submitted) finalize parameters, one row per batch."""

    __tablename__ = "batch_finalizations"

    batch_id: Mapped[str] = mapped_column(String, primary_key=True)
    batch_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    finalized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    scoring_method: Mapped[str] = mapped_column(String, nullable=False)
    payouts_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    scores_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    scores_json: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


__all__ = ["AuthNonce", "Base", "BatchFinalization", "Submission"]
