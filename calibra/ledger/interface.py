"""LedgerClient protocol - the system of record for batches and commitments.

Implementations: InMemoryLedger (reference phase machine, tests, local
dev) and Web3LedgerClient (deployed contract). The ledger is the single
arbiter of ordering and phase checks; callers treat its answers as
authoritative and never retry state errors blindly.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from calibra.protocol.models import BatchInfo, Commitment, ProviderSummary, RevealItem


@runtime_checkable
class LedgerClient(Protocol):
    """Abstract ledger surface consumed by the protocol core."""

    async def get_batch(self, batch_hash: str) -> BatchInfo | None:
        """Fetch a batch, or None if it does not exist."""
        ...

    async def join(self, batch_hash: str, sender: str) -> None:
        """Post the join bond for ``sender``."""
        ...

    async def commit(
        self, batch_hash: str, sender: str, commit_hash: str, encrypted_uri_hash: str,
    ) -> int:
        """Anchor a commitment. Returns the new commit index."""
        ...

    async def reveal_commits(
        self, batch_hash: str, sender: str, items: list[RevealItem],
    ) -> None:
        """Reveal (root, salt) for the given indices. All-or-nothing."""
        ...

    async def lock_randomness(self, batch_hash: str, sender: str) -> None:
        ...

    async def reveal_seed(self, batch_hash: str, sender: str, seed: str) -> None:
        ...

    async def get_commit_count(self, batch_hash: str, provider: str) -> int:
        ...

    async def get_commit(self, batch_hash: str, provider: str, index: int) -> Commitment:
        ...

    async def get_selected_commit_index(self, batch_hash: str, provider: str) -> int:
        ...

    async def get_provider_summary(self, batch_hash: str, provider: str) -> ProviderSummary:
        ...

    async def finalize(
        self,
        batch_hash: str,
        sender: str,
        providers: list[str],
        payouts: list[int],
        selected_indices: list[int],
        scores_hash: str,
    ) -> None:
        """One-shot settlement. A second call must fail."""
        ...


__all__ = ["LedgerClient"]
