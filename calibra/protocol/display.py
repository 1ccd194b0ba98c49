"""Display-only reducers over off-ledger submission rows.

These answer "what did each provider submit most recently" for UIs. They
must never feed payouts; the scored revision comes from the selector.
"""

from __future__ import annotations

from typing import Iterable

from .models import SubmissionRecord


def latest_by_provider(records: Iterable[SubmissionRecord]) -> dict[str, SubmissionRecord]:
    """Most recent row per provider (ties broken by row id)."""
    latest: dict[str, SubmissionRecord] = {}
    for rec in records:
        prev = latest.get(rec.provider_address)
        if prev is None or (rec.created_at, rec.id or 0) >= (prev.created_at, prev.id or 0):
            latest[rec.provider_address] = rec
    return dict(sorted(latest.items()))


__all__ = ["latest_by_provider"]
