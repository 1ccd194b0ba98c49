"""EnvelopeStore protocol - pluggable off-ledger object storage.

Implementations: FilesystemEnvelopeStore (local tree), HTTPEnvelopeStore
(storage REST API). Objects are write-once; paths follow

    {batch_hash}/{provider_address}/{epoch_millis}-{random_suffix}.json
"""

from __future__ import annotations

import secrets
import time
from datetime import datetime
from typing import Protocol, runtime_checkable

from calibra.protocol.hashing import normalize_address, normalize_bytes32


def build_object_path(batch_hash: str, provider: str, epoch_millis: int | None = None) -> str:
    """Append-only object path for a new envelope."""
    if epoch_millis is None:
        epoch_millis = int(time.time() * 1000)
    return (
        f"{normalize_bytes32(batch_hash, 'batch_hash')}/"
        f"{normalize_address(provider, 'provider')}/"
        f"{epoch_millis}-{secrets.token_hex(8)}.json"
    )


@runtime_checkable
class EnvelopeStore(Protocol):
    """Abstract interface for reading/writing envelope objects."""

    bucket: str

    async def put(self, path: str, data: bytes) -> str:
        """Write a new object. Raises StoreConflictError if it exists."""
        ...

    async def get(self, path: str) -> bytes | None:
        """Fetch an object, or None if missing."""
        ...

    async def list(self, prefix: str) -> list[str]:
        """List object paths under a prefix, sorted."""
        ...

    async def delete(self, path: str) -> bool:
        """Remove an object (retention only). Returns True if it existed."""
        ...

    async def prune_finalized(
        self, batch_hash: str, finalized_at: datetime, now: datetime | None = None,
    ) -> bool:
        """Drop a finalized batch's envelopes once the retention window has passed."""
        ...


__all__ = ["EnvelopeStore", "build_object_path"]
