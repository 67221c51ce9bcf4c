"""
Audit trail for gatekeeper.

Buffered, size-rotated, queryable audit events with json/csv/xml export.
"""

from .listener import AuditEventListener
from .logger import AuditLogger, infer_category, infer_severity
from .models import AuditEvent, AuditQuery, AuditStatistics, Category, Severity
from .storage import AuditFileStorage

__all__ = [
    "AuditLogger",
    "AuditEventListener",
    "AuditFileStorage",
    "AuditEvent",
    "AuditQuery",
    "AuditStatistics",
    "Category",
    "Severity",
    "infer_category",
    "infer_severity",
]
