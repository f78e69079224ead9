"""
System failure error classifications for unrecoverable errors.

These exceptions represent system-level failures that typically require
operator intervention to resolve.
"""

from typing import Optional, Dict, Any


class SystemFailureError(Exception):
    """Base class for unrecoverable system failures."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}
        self.recoverable = False


class RegistryCorruptionError(SystemFailureError):
    """Two different plans produced the same fingerprint."""

    def __init__(self, message: str, fingerprint: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.fingerprint = fingerprint


class StateTransitionError(SystemFailureError):
    """Event is not defined for the instance's current lifecycle state."""

    def __init__(self, message: str, current_state: Optional[str] = None,
                 attempted_transition: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.current_state = current_state
        self.attempted_transition = attempted_transition


class PersistenceError(SystemFailureError):
    """Database or file system persistence failures."""

    def __init__(self, message: str, operation: Optional[str] = None,
                 target: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation
        self.target = target
