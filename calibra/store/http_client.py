"""HTTP-based EnvelopeStore client for a Supabase-style storage API.

Routes used (relative to ``base_url``):
  POST   /storage/v1/object/{bucket}/{path}      upload (x-upsert: false)
  GET    /storage/v1/object/{bucket}/{path}      download
  POST   /storage/v1/object/list/{bucket}        list one folder level
  DELETE /storage/v1/object/{bucket}             delete by prefixes

Reads are retried with backoff on transport errors. Uploads are sent
exactly once: a lost response could otherwise duplicate an envelope.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import bittensor as bt
import httpx

from calibra.errors import ExternalDependencyError, StoreConflictError
from calibra.protocol.hashing import normalize_bytes32

from .filesystem import _safe_relative


class HTTPEnvelopeStore:
    """Remote object storage client."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str = "calibra-submissions",
        timeout: float = 30.0,
        max_retries: int = 3,
        retention_days: int = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self._headers = {"Authorization": f"Bearer {service_key}", "apikey": service_key}
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport, headers=self._headers)
        self._max_retries = max_retries
        self.retention_days = retention_days

    async def close(self) -> None:
        await self._client.aclose()

    def _object_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{_safe_relative(path).as_posix()}"

    async def _read(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Idempotent request with retry."""
        for attempt in range(self._max_retries):
            try:
                return await self._client.request(method, url, **kwargs)
            except httpx.TransportError as e:
                if attempt == self._max_retries - 1:
                    raise ExternalDependencyError("store", method.lower(), str(e)) from e
                wait = 2 ** attempt
                bt.logging.warning({"calibra_store_http": {"retry": attempt, "wait": wait, "error": str(e)}})
                await asyncio.sleep(wait)
        raise ExternalDependencyError("store", method.lower(), "max retries exceeded")

    # -- EnvelopeStore interface --

    async def put(self, path: str, data: bytes) -> str:
        try:
            resp = await self._client.post(
                self._object_url(path),
                content=data,
                headers={"content-type": "application/json", "x-upsert": "false"},
            )
        except httpx.TransportError as e:
            raise ExternalDependencyError("store", "put", str(e), retryable=False) from e

        if resp.status_code == 409 or (resp.status_code == 400 and "exists" in resp.text.lower()):
            raise StoreConflictError(path)
        if resp.status_code >= 400:
            raise ExternalDependencyError("store", "put", f"{resp.status_code} {resp.text}", retryable=False)
        return path

    async def get(self, path: str) -> bytes | None:
        resp = await self._read("GET", self._object_url(path))
        if resp.status_code in (400, 404):
            return None
        if resp.status_code >= 400:
            raise ExternalDependencyError("store", "get", f"{resp.status_code} {resp.text}")
        return resp.content

    async def list(self, prefix: str) -> list[str]:
        prefix = prefix.strip("/")
        out: list[str] = []
        pending = [prefix]
        while pending:
            folder = pending.pop()
            resp = await self._read(
                "POST",
                f"{self.base_url}/storage/v1/object/list/{self.bucket}",
                json={"prefix": folder, "limit": 1000, "offset": 0},
            )
            if resp.status_code >= 400:
                raise ExternalDependencyError("store", "list", f"{resp.status_code} {resp.text}")
            for item in resp.json():
                name = f"{folder}/{item['name']}" if folder else item["name"]
                # Folders come back without an object id.
                if item.get("id") is None:
                    pending.append(name)
                else:
                    out.append(name)
        return sorted(out)

    async def delete(self, path: str) -> bool:
        resp = await self._read(
            "DELETE",
            f"{self.base_url}/storage/v1/object/{self.bucket}",
            json={"prefixes": [_safe_relative(path).as_posix()]},
        )
        if resp.status_code >= 400:
            raise ExternalDependencyError("store", "delete", f"{resp.status_code} {resp.text}")
        return bool(resp.json())

    async def prune_finalized(
        self,
        batch_hash: str,
        finalized_at: datetime,
        now: datetime | None = None,
    ) -> bool:
        now = now or datetime.now(timezone.utc)
        if now < finalized_at + timedelta(days=self.retention_days):
            return False
        paths = await self.list(normalize_bytes32(batch_hash, "batch_hash"))
        if not paths:
            return False
        resp = await self._read(
            "DELETE",
            f"{self.base_url}/storage/v1/object/{self.bucket}",
            json={"prefixes": paths},
        )
        if resp.status_code >= 400:
            raise ExternalDependencyError("store", "prune", f"{resp.status_code} {resp.text}")
        bt.logging.info({"calibra_store_http": {"event": "pruned", "batch": batch_hash[:10], "objects": len(paths)}})
        return True


__all__ = ["HTTPEnvelopeStore"]
