"""
Compilation error classifications for strategy spec processing.

These exceptions are reported back to the submitter together with the full
diagnostic list. They are never fatal to the system.
"""

from typing import Any, Dict, Optional, Sequence


class CompilationError(Exception):
    """A spec could not be compiled into an execution plan."""

    def __init__(self, message: str, diagnostics: Optional[Sequence[Any]] = None,
                 context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.diagnostics = list(diagnostics or [])
        self.context = context or {}
        self.recoverable = True


class MalformedSpecError(CompilationError):
    """Spec payload is structurally invalid and cannot be parsed."""

    def __init__(self, message: str, location: Optional[str] = None,
                 raw_data: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.location = location
        self.raw_data = raw_data
