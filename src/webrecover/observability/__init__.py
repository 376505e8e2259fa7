"""Observability module for webrecover.

Provides the append-only audit log and its statistics.
"""

from .audit import AuditLog
from .models import AuditEvent, AuditEventType, AuditFilter

__all__ = [
    # Log
    "AuditLog",
    # Models
    "AuditEvent",
    "AuditEventType",
    "AuditFilter",
]
