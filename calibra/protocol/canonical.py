"""Forecast payload canonicalization.

The canonical bytes are what gets hashed into the commitment root and what
gets encrypted into the envelope, so any permutation of the same logical
input must produce byte-identical output:

- schedule keys and labels are stripped; entries with an empty key or an
  empty probability map are dropped
- values are finite percentages in [0, 100], rounded half-up to 2 decimals
- entries are sorted by key, labels sorted within each entry (code point
  order, locale independent)
- compact JSON, no incidental whitespace, UTF-8, integral values without a
  trailing ``.0``
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from calibra.errors import PayloadValidationError

from .models import ForecastEntry

MIN_PERCENT = 0.0
MAX_PERCENT = 100.0


class CanonicalizationPolicy(str, Enum):
    """What to do with a non-finite or out-of-range leaf value.

    STRICT rejects the whole submission. LENIENT drops the leaf and records
    it in ``CanonicalPayload.dropped``.
    """

    STRICT = "strict"
    LENIENT = "lenient"


@dataclass(frozen=True)
class CanonicalPayload:
    entries: list[ForecastEntry]
    canonical_json: str
    dropped: list[str] = field(default_factory=list)

    @property
    def canonical_bytes(self) -> bytes:
        return self.canonical_json.encode("utf-8")


def _parse_percent(raw: Any) -> float | None:
    """Coerce a leaf to a float, or None if it is not a usable number."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str) and raw.strip():
        try:
            value = float(raw.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(value) or value < MIN_PERCENT or value > MAX_PERCENT:
        return None
    return value


def round_percent(value: float) -> float:
    """Round half-up to 2 decimals (values are non-negative)."""
    return math.floor(value * 100 + 0.5) / 100


def _json_number(value: float) -> int | float:
    return int(value) if value.is_integer() else value


def _iter_entries(payload: Any) -> Iterable[tuple[Any, Any]]:
    if isinstance(payload, Mapping):
        return list(payload.items())
    if isinstance(payload, (list, tuple)):
        pairs = []
        for row in payload:
            if isinstance(row, ForecastEntry):
                pairs.append((row.schedule_key, row.probabilities))
            elif isinstance(row, Mapping):
                pairs.append((row.get("schedule_key"), row.get("probabilities")))
            else:
                pairs.append((None, None))
        return pairs
    raise PayloadValidationError("payload must be an array")


def canonicalize(
    payload: Any,
    policy: CanonicalizationPolicy = CanonicalizationPolicy.STRICT,
) -> CanonicalPayload:
    """Canonicalize a forecast payload.

    Accepts the wire shape ``[{"schedule_key", "probabilities"}, ...]``, a
    mapping ``{schedule_key: {label: value}}`` or a list of ForecastEntry.

    Raises:
        PayloadValidationError: malformed payload, duplicate schedule keys or labels,
            an invalid leaf under STRICT, or nothing left after filtering.
    """
    problems: list[str] = []
    dropped: list[str] = []
    rows: dict[str, dict[str, float]] = {}

    for raw_key, raw_probs in _iter_entries(payload):
        key = raw_key.strip() if isinstance(raw_key, str) else ""
        if not key:
            continue
        if not isinstance(raw_probs, Mapping):
            continue

        probs: dict[str, float] = {}
        seen_labels: set[str] = set()
        for raw_label, raw_value in raw_probs.items():
            label = str(raw_label if raw_label is not None else "").strip()
            if not label:
                continue
            if label in seen_labels:
                # Same reason as duplicate schedule keys below.
                raise PayloadValidationError(f"duplicate label: {key}/{label}", [f"duplicate {key}/{label}"])
            seen_labels.add(label)
            value = _parse_percent(raw_value)
            if value is None:
                problems.append(f"{key}/{label}: {raw_value!r} is not a percentage in [0, 100]")
                dropped.append(f"{key}/{label}")
                continue
            probs[label] = round_percent(value)

        if not probs:
            continue
        if key in rows:
            # Two rows for one key would make the sort order input-dependent.
            raise PayloadValidationError(f"duplicate schedule_key: {key}", [f"duplicate {key}"])
        rows[key] = dict(sorted(probs.items()))

    if problems and policy is CanonicalizationPolicy.STRICT:
        raise PayloadValidationError("payload contains invalid values", problems)

    if not rows:
        raise PayloadValidationError("Empty payload")

    entries = [
        ForecastEntry(schedule_key=key, probabilities=rows[key])
        for key in sorted(rows)
    ]
    wire = [
        {
            "schedule_key": e.schedule_key,
            "probabilities": {k: _json_number(v) for k, v in e.probabilities.items()},
        }
        for e in entries
    ]
    canonical_json = json.dumps(wire, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    return CanonicalPayload(entries=entries, canonical_json=canonical_json, dropped=dropped)


def parse_canonical(data: bytes) -> list[ForecastEntry]:
    """Parse decrypted canonical bytes back into entries."""
    rows = json.loads(data.decode("utf-8"))
    return [ForecastEntry(**row) for row in rows]


__all__ = [
    "CanonicalPayload",
    "CanonicalizationPolicy",
    "canonicalize",
    "parse_canonical",
    "round_percent",
]
