"""Pydantic models for batches, commitments, envelopes and settlement.

Ledger-owned state (BatchInfo, ProviderSummary, Commitment) mirrors what
the ledger exposes; the core never mutates it directly. Off-ledger state
(SubmissionRecord) mirrors the metadata database. Settlement artifacts
(ScoringRecord, FinalizeParams) are produced once per batch.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Version tags - bump on breaking changes to the wire formats
# ---------------------------------------------------------------------------

ENVELOPE_VERSION = 1
ENVELOPE_ALGORITHM = "A256GCM"
SCORING_RECORD_VERSION = 1
SCORING_METHOD_EQUAL_SPLIT = "mvp_equal_split"


# ---------------------------------------------------------------------------
# Ledger state
# ---------------------------------------------------------------------------


class BatchPhase(str, Enum):
    """Ledger-enforced lifecycle of a batch."""

    PREWINDOW = "prewindow"
    COMMIT = "commit"
    REVEAL = "reveal"
    POSTREVEAL = "postreveal"
    FINALIZED = "finalized"


class BatchInfo(BaseModel):
    """Batch as seen through ``LedgerClient.get_batch``.

    Times are unix seconds. ``seed`` is only populated once revealed.
    """

    batch_hash: str
    exists: bool = True
    operator: str
    funder: str
    window_start: int
    window_end: int
    reveal_deadline: int
    seed_hash: str | None = None
    randomness_locked: bool = False
    seed_revealed: bool = False
    seed: str | None = None
    funded: bool = False
    finalized: bool = False
    bounty: int = Field(default=0, ge=0)
    join_bond: int = Field(default=0, ge=0)


class ProviderSummary(BaseModel):
    """Per-provider state for one batch."""

    provider: str
    joined: bool = False
    joined_at: int | None = None
    commit_count: int = 0
    revealed_count: int = 0
    last_commit_at: int | None = None
    bond: int = 0
    payout: int = 0


class Commitment(BaseModel):
    """One on-ledger commitment row, keyed by (batch, provider, index).

    ``root``/``salt``/``public_uri_hash`` are None until revealed.
    """

    provider: str
    index: int = Field(ge=0)
    commit_hash: str
    committed_at: int
    revealed: bool = False
    root: str | None = None
    salt: str | None = None
    encrypted_uri_hash: str
    public_uri_hash: str | None = None


class RevealItem(BaseModel):
    """One entry of a ``reveal_commits`` call."""

    index: int = Field(ge=0)
    root: str
    salt: str
    public_uri_hash: str


# ---------------------------------------------------------------------------
# Payloads and envelopes
# ---------------------------------------------------------------------------


class ForecastEntry(BaseModel):
    """Canonical forecast for one schedule item: label -> percent."""

    schedule_key: str
    probabilities: dict[str, float]


class EnvelopeV1(BaseModel):
    """Encrypted at-rest representation of a canonical payload."""

    v: Literal[1] = ENVELOPE_VERSION
    alg: Literal["A256GCM"] = ENVELOPE_ALGORITHM
    iv_b64: str
    ct_b64: str


# ---------------------------------------------------------------------------
# Off-ledger submission metadata
# ---------------------------------------------------------------------------


class SubmissionRecord(BaseModel):
    """Off-ledger metadata for one stored envelope."""

    id: int | None = None
    batch_id: str
    batch_hash: str
    provider_address: str
    commit_index: int | None = None
    commit_hash: str
    root: str
    salt: str
    storage_bucket: str
    storage_path: str
    encrypted_uri_hash: str
    created_at: datetime


class SubmissionReceipt(BaseModel):
    """Returned to a provider after upload; needed later to commit and reveal."""

    batch_id: str
    batch_hash: str
    provider: str
    root: str
    salt: str
    commit_hash: str
    encrypted_uri_hash: str
    storage_bucket: str
    storage_path: str
    commit_index: int | None = None

    @property
    def public_uri(self) -> str:
        return f"sb://{self.storage_bucket}/{self.storage_path}"


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


class ScoringRecord(BaseModel):
    """Canonical scoring record. Field order here is the serialized order."""

    v: int = SCORING_RECORD_VERSION
    scoring: str = SCORING_METHOD_EQUAL_SPLIT
    batchId: str
    batchIdHash: str
    operator: str
    funder: str
    createdAtUnix: int
    providers: list[str]
    selectedCommitIndices: list[int]
    payouts: list[str]


class FinalizeParams(BaseModel):
    """The only inputs the ledger's finalize transition accepts."""

    batch_hash: str
    providers: list[str]
    payouts: list[int]
    selected_indices: list[int]
    scores_hash: str
    scores_json: str


__all__ = [
    "ENVELOPE_ALGORITHM",
    "ENVELOPE_VERSION",
    "SCORING_METHOD_EQUAL_SPLIT",
    "SCORING_RECORD_VERSION",
    "BatchInfo",
    "BatchPhase",
    "Commitment",
    "EnvelopeV1",
    "FinalizeParams",
    "ForecastEntry",
    "ProviderSummary",
    "RevealItem",
    "ScoringRecord",
    "SubmissionReceipt",
    "SubmissionRecord",
]
