"""Off-ledger metadata persistence (SQLAlchemy async)."""

from .manager import Database
from .repository import CommitIndexResult, NonceRepository, StoredNonce, SubmissionRepository
from .schema import AuthNonce, Base, BatchFinalization, Submission

__all__ = [
    "AuthNonce",
    "Base",
    "BatchFinalization",
    "CommitIndexResult",
    "Database",
    "NonceRepository",
    "StoredNonce",
    "Submission",
    "SubmissionRepository",
]
