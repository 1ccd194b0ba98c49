"""Public, read-only audit of a batch's commit-reveal history."""

from .reconciler import AuditReconciler, AuditReport, ProviderAudit, TimelineEntry, reconcile_commitments
from .redaction import SAFE_SUBMISSION_FIELDS, contains_secret, redact

__all__ = [
    "SAFE_SUBMISSION_FIELDS",
    "AuditReconciler",
    "AuditReport",
    "ProviderAudit",
    "TimelineEntry",
    "contains_secret",
    "reconcile_commitments",
    "redact",
]
