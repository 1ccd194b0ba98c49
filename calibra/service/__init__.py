"""Stateful flows over the protocol core: submissions, settlement, enrichment."""

from .enrichment import RefreshResult, refresh_all
from .finalize import FinalizeService, PreparedFinalize
from .submissions import CommitResult, ReadResult, SubmissionService

__all__ = [
    "CommitResult",
    "FinalizeService",
    "PreparedFinalize",
    "ReadResult",
    "RefreshResult",
    "SubmissionService",
    "refresh_all",
]
