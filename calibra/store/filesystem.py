"""Filesystem-based EnvelopeStore implementation.

Writes envelope JSON to a local directory tree:
  {data_dir}/envelopes/{bucket}/{batch_hash}/{provider}/{millis}-{suffix}.json

Objects are write-once (exclusive create). Retention: envelopes of a
batch may be pruned once the batch is finalized and the retention window
has passed; nothing else ever deletes.
"""

from __future__ import annotations

import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath

import bittensor as bt

from calibra.errors import StoreConflictError, ValidationError
from calibra.protocol.hashing import normalize_bytes32


def _safe_relative(path: str) -> PurePosixPath:
    rel = PurePosixPath(path)
    if rel.is_absolute() or ".." in rel.parts or not rel.parts:
        raise ValidationError(f"invalid object path: {path}", code="invalid_path")
    return rel


class FilesystemEnvelopeStore:
    """Local filesystem EnvelopeStore implementation."""

    def __init__(self, data_dir: str, bucket: str = "calibra-submissions", retention_days: int = 30):
        self.bucket = bucket
        self.base = Path(data_dir) / "envelopes" / bucket
        self.retention_days = retention_days
        self.base.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        return self.base.joinpath(*_safe_relative(path).parts)

    async def put(self, path: str, data: bytes) -> str:
        """Write an envelope. Never overwrites."""
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(target, "xb") as f:
                f.write(data)
        except FileExistsError as e:
            raise StoreConflictError(path) from e
        return path

    async def get(self, path: str) -> bytes | None:
        target = self._resolve(path)
        if not target.is_file():
            return None
        return target.read_bytes()

    async def list(self, prefix: str) -> list[str]:
        root = self._resolve(prefix) if prefix.strip("/") else self.base
        if not root.exists():
            return []
        return sorted(
            p.relative_to(self.base).as_posix()
            for p in root.rglob("*.json")
            if p.is_file()
        )

    async def delete(self, path: str) -> bool:
        target = self._resolve(path)
        if not target.is_file():
            return False
        target.unlink()
        return True

    async def prune_finalized(
        self,
        batch_hash: str,
        finalized_at: datetime,
        now: datetime | None = None,
    ) -> bool:
        """Remove a finalized batch's envelopes after the retention window.

        Returns True if the batch directory was removed.
        """
        now = now or datetime.now(timezone.utc)
        if now < finalized_at + timedelta(days=self.retention_days):
            return False
        batch_dir = self.base / normalize_bytes32(batch_hash, "batch_hash")
        if not batch_dir.exists():
            return False
        shutil.rmtree(batch_dir)
        bt.logging.info({"calibra_store": {"event": "pruned", "batch": batch_hash[:10]}})
        return True


__all__ = ["FilesystemEnvelopeStore"]
