"""Batch phase machine.

    prewindow   t <  window_start
    commit      window_start <= t < window_end
    reveal      window_end <= t <= reveal_deadline
    postreveal  t >  reveal_deadline
    finalized   terminal, set by the operator's finalize transition
"""

from __future__ import annotations

from calibra.errors import PhaseError, ValidationError
from calibra.protocol.models import BatchInfo, BatchPhase

# Which actions each phase accepts.
COMMIT_PHASES = (BatchPhase.COMMIT,)
REVEAL_PHASES = (BatchPhase.REVEAL,)
JOIN_PHASES = (BatchPhase.PREWINDOW, BatchPhase.COMMIT, BatchPhase.REVEAL)
FINALIZE_PHASES = (BatchPhase.POSTREVEAL,)


def validate_windows(window_start: int, window_end: int, reveal_deadline: int) -> None:
    if window_start is None or window_end is None or reveal_deadline is None:
        raise ValidationError("Missing window bounds", code="invalid_window")
    if not window_start < window_end <= reveal_deadline:
        raise ValidationError(
            "window must satisfy window_start < window_end <= reveal_deadline",
            code="invalid_window",
        )


def batch_phase(batch: BatchInfo, now: int) -> BatchPhase:
    if batch.finalized:
        return BatchPhase.FINALIZED
    if now < batch.window_start:
        return BatchPhase.PREWINDOW
    if now < batch.window_end:
        return BatchPhase.COMMIT
    if now <= batch.reveal_deadline:
        return BatchPhase.REVEAL
    return BatchPhase.POSTREVEAL


def require_phase(
    batch: BatchInfo, now: int, action: str, allowed: tuple[BatchPhase, ...],
) -> BatchPhase:
    """Return the current phase or raise PhaseError if ``action`` is not allowed."""
    phase = batch_phase(batch, now)
    if phase not in allowed:
        raise PhaseError(action, phase.value, tuple(p.value for p in allowed))
    return phase


__all__ = [
    "COMMIT_PHASES",
    "FINALIZE_PHASES",
    "JOIN_PHASES",
    "REVEAL_PHASES",
    "batch_phase",
    "require_phase",
    "validate_windows",
]
