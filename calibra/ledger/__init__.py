"""Ledger boundary: the authoritative record of batches and commitments.

- interface: LedgerClient protocol consumed by the core
- phase: prewindow -> commit -> reveal -> postreveal -> finalized
- memory: reference phase machine for tests and local development
- web3_client: the deployed contract over JSON-RPC
"""

from .interface import LedgerClient
from .memory import InMemoryLedger
from .phase import batch_phase, require_phase

__all__ = ["InMemoryLedger", "LedgerClient", "batch_phase", "require_phase"]
