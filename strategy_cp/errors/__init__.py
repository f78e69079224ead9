"""
Error classification system for the compiler and control plane.

This module provides a structured exception hierarchy for the errors that
can occur while compiling strategy specs, storing plans and coordinating
strategy instances across workers.
"""

from .compilation import (
    CompilationError,
    MalformedSpecError,
)
from .system_failures import (
    SystemFailureError,
    RegistryCorruptionError,
    StateTransitionError,
    PersistenceError,
)
from .recovery import (
    RecoverableError,
    AssignmentError,
    ConcurrencyConflict,
)
from .lookup import (
    PlanNotFoundError,
    InstanceNotFoundError,
    WorkerNotFoundError,
)

__all__ = [
    # Compilation Errors
    "CompilationError",
    "MalformedSpecError",
    # System Failures
    "SystemFailureError",
    "RegistryCorruptionError",
    "StateTransitionError",
    "PersistenceError",
    # Recovery Categories
    "RecoverableError",
    "AssignmentError",
    "ConcurrencyConflict",
    # Lookups
    "PlanNotFoundError",
    "InstanceNotFoundError",
    "WorkerNotFoundError",
]
