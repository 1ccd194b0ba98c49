"""Bounded-concurrency refresh of externally sourced values.

External data sources are rate limited, so refreshes run through a small
worker pool. A failed fetch never clears what was known before: the
previous value for that key is carried over unchanged.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping

import bittensor as bt

DEFAULT_CONCURRENCY = 6
MIN_CONCURRENCY = 4
MAX_CONCURRENCY = 8

Fetcher = Callable[[str], Awaitable[Any]]


def clamp_concurrency(value: int | None) -> int:
    if value is None:
        return DEFAULT_CONCURRENCY
    return max(MIN_CONCURRENCY, min(MAX_CONCURRENCY, int(value)))


@dataclass
class RefreshResult:
    """Merged values plus per-key bookkeeping."""

    values: dict[str, Any] = field(default_factory=dict)
    updated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.updated) + len(self.failed)


async def refresh_all(
    keys: Iterable[str],
    fetch: Fetcher,
    previous: Mapping[str, Any] | None = None,
    concurrency: int | None = DEFAULT_CONCURRENCY,
) -> RefreshResult:
    """Fetch every key with at most ``concurrency`` requests in flight.

    Args:
        keys: keys to refresh; duplicates and blanks are ignored.
        fetch: async callable returning the fresh value for a key.
        previous: last known values, kept for keys whose fetch fails.
        concurrency: pool size, clamped to [4, 8].
    """
    previous = dict(previous or {})
    targets = list(dict.fromkeys(k.strip() for k in keys if k and k.strip()))
    semaphore = asyncio.Semaphore(clamp_concurrency(concurrency))
    result = RefreshResult(values=dict(previous))

    async def refresh_one(key: str) -> tuple[str, bool, Any]:
        async with semaphore:
            try:
                return key, True, await fetch(key)
            except Exception as e:
                bt.logging.warning({"calibra_enrichment": {"event": "fetch_failed", "key": key, "error": str(e)}})
                return key, False, None

    for key, ok, value in await asyncio.gather(*(refresh_one(k) for k in targets)):
        if ok:
            result.values[key] = value
            result.updated.append(key)
        else:
            result.failed.append(key)

    bt.logging.info({
        "calibra_enrichment": {
            "event": "refreshed",
            "attempted": result.attempted,
            "updated": len(result.updated),
            "failed": len(result.failed),
        }
    })
    return result


__all__ = [
    "DEFAULT_CONCURRENCY",
    "Fetcher",
    "RefreshResult",
    "clamp_concurrency",
    "refresh_all",
]
