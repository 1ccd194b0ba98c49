"""Shared fixtures: a controllable clock, keys, addresses and a batch."""

from __future__ import annotations

from dataclasses import dataclass

import pytest
from eth_account import Account

from calibra.audit.reconciler import AuditReconciler
from calibra.database.manager import Database
from calibra.database.repository import SubmissionRepository
from calibra.ledger.memory import InMemoryLedger
from calibra.protocol.envelope import StaticKeyProvider, generate_key
from calibra.protocol.hashing import batch_id_to_hash
from calibra.service.finalize import FinalizeService
from calibra.service.submissions import SubmissionService
from calibra.store.filesystem import FilesystemEnvelopeStore

WINDOW_START = 1_000_000
WINDOW_END = WINDOW_START + 3600
REVEAL_DEADLINE = WINDOW_END + 3600


class FakeClock:
    """Unix seconds, advanced by hand."""

    def __init__(self, t: float = WINDOW_START - 60):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def set(self, t: float) -> None:
        self.t = t


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def keys():
    return StaticKeyProvider(generate_key())


@pytest.fixture
def operator():
    return Account.create()


@pytest.fixture
def provider_a():
    return Account.create()


@pytest.fixture
def provider_b():
    return Account.create()


@pytest.fixture
def batch_id():
    return "batch-2026-03-01-JFK"


@pytest.fixture
def batch_hash(batch_id):
    return batch_id_to_hash(batch_id)


@pytest.fixture
def ledger(clock, operator, batch_hash):
    """In-memory ledger with one batch created by ``operator`` (not yet funded)."""
    ledger = InMemoryLedger(clock=clock)
    ledger.create_batch(
        batch_hash,
        operator=operator.address,
        window_start=WINDOW_START,
        window_end=WINDOW_END,
        reveal_deadline=REVEAL_DEADLINE,
    )
    return ledger


async def open_database() -> Database:
    """Fresh in-memory metadata database with the schema created."""
    db = Database("sqlite+aiosqlite://")
    await db.create_all()
    return db


PAYLOAD = [
    {"schedule_key": "JFK-0900", "probabilities": {"on_time": 70, "delayed": 30}},
    {"schedule_key": "JFK-0930", "probabilities": {"on_time": 55.5, "delayed": 44.5}},
]


@dataclass
class Harness:
    """Services wired over the in-memory ledger, a tmp store and a memory db."""

    ledger: InMemoryLedger
    store: FilesystemEnvelopeStore
    repo: SubmissionRepository
    service: SubmissionService
    finalizer: FinalizeService
    auditor: AuditReconciler


async def open_harness(ledger, keys, clock, data_dir) -> Harness:
    db = await open_database()
    repo = SubmissionRepository(db)
    store = FilesystemEnvelopeStore(str(data_dir), bucket="calibra-submissions")
    return Harness(
        ledger=ledger,
        store=store,
        repo=repo,
        service=SubmissionService(ledger, store, repo, keys, clock=clock),
        finalizer=FinalizeService(ledger, repo, clock=clock),
        auditor=AuditReconciler(ledger, repo),
    )
