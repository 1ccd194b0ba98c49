"""Error hierarchy for the commit-reveal protocol core.

Every error carries a stable ``code`` (used in API responses and logs) and
the HTTP status the API layer maps it to. Categories:

- Validation: malformed input, reported synchronously, never retried.
- Auth: missing/expired nonce or signature mismatch. Re-request a nonce.
- Integrity: envelope authentication or commitment mismatch. Hard failure.
- External dependency: ledger, store or database unavailable.
- State: wrong phase, already revealed/joined/finalized. Re-check state.
"""

from __future__ import annotations


class CalibraError(Exception):
    """Base class for all protocol errors."""

    code: str = "calibra_error"
    http_status: int = 500

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.code)
        if code is not None:
            self.code = code

    @property
    def detail(self) -> str:
        return str(self)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(CalibraError):
    code = "invalid_request"
    http_status = 400


class PayloadValidationError(ValidationError):
    """A forecast payload failed canonicalization."""

    code = "invalid_payload"

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = list(problems or [])


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class AuthError(CalibraError):
    code = "unauthorized"
    http_status = 401


class NonceMissingError(AuthError):
    code = "missing_nonce"


class NonceExpiredError(AuthError):
    code = "nonce_expired"


class SignatureMismatchError(AuthError):
    code = "bad_signature"


class ForbiddenError(CalibraError):
    code = "forbidden"
    http_status = 403


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------


class IntegrityError(CalibraError):
    code = "integrity_failure"
    http_status = 422


class EnvelopeIntegrityError(IntegrityError):
    """Envelope could not be authenticated or parsed. No plaintext is returned."""

    code = "envelope_integrity"


class CommitmentMismatchError(IntegrityError):
    """A revealed (root, salt) does not reproduce the stored commit hash."""

    code = "commitment_mismatch"


# ---------------------------------------------------------------------------
# External dependencies
# ---------------------------------------------------------------------------


class ExternalDependencyError(CalibraError):
    """A collaborator (ledger, store, database) failed.

    ``retryable`` is a hint for the caller. The core never retries writes
    that could duplicate a commitment or an envelope.
    """

    code = "dependency_unavailable"
    http_status = 502

    def __init__(
        self,
        dependency: str,
        operation: str,
        message: str = "",
        *,
        retryable: bool = True,
    ):
        super().__init__(f"{dependency}.{operation} failed: {message}" if message else f"{dependency}.{operation} failed")
        self.dependency = dependency
        self.operation = operation
        self.retryable = retryable


class StoreConflictError(ExternalDependencyError):
    """Write-once object path already exists."""

    code = "store_conflict"
    http_status = 409

    def __init__(self, path: str):
        super().__init__("store", "put", f"object already exists: {path}", retryable=False)
        self.path = path


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class StateError(CalibraError):
    code = "invalid_state"
    http_status = 409


class NotFoundError(StateError):
    code = "not_found"
    http_status = 404


class PhaseError(StateError):
    code = "wrong_phase"

    def __init__(self, action: str, phase: str, allowed: tuple[str, ...] = ()):
        allowed_str = "/".join(allowed) if allowed else "none"
        super().__init__(f"{action} not allowed in phase {phase} (allowed: {allowed_str})")
        self.action = action
        self.phase = phase


class AlreadyJoinedError(StateError):
    code = "already_joined"


class AlreadyRevealedError(StateError):
    code = "already_revealed"


class AlreadyFinalizedError(StateError):
    code = "already_finalized"


class SeedNotRevealedError(StateError):
    code = "seed_not_revealed"


__all__ = [
    "AlreadyFinalizedError",
    "AlreadyJoinedError",
    "AlreadyRevealedError",
    "AuthError",
    "CalibraError",
    "CommitmentMismatchError",
    "EnvelopeIntegrityError",
    "ExternalDependencyError",
    "ForbiddenError",
    "IntegrityError",
    "NonceExpiredError",
    "NonceMissingError",
    "NotFoundError",
    "PayloadValidationError",
    "PhaseError",
    "SeedNotRevealedError",
    "SignatureMismatchError",
    "StateError",
    "StoreConflictError",
    "ValidationError",
]
