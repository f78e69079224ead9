"""
Persistence layer for audit trails and replay.
"""

from .audit_store import AuditStore

__all__ = ["AuditStore"]
