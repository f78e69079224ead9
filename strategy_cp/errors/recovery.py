"""
Recoverable error classifications.

These errors are handled inside the control plane: assignment failures are
retried with backoff and concurrency conflicts become no-ops.
"""

from typing import Optional


class RecoverableError(Exception):
    """Base for errors that can be recovered from automatically."""

    def __init__(self, message: str, retry_count: int = 0,
                 max_retries: int = 3, **kwargs):
        super().__init__(message)
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.recoverable = True


class AssignmentError(RecoverableError):
    """No eligible worker could take the instance."""

    def __init__(self, message: str, instance_id: Optional[str] = None,
                 requirements: Optional[frozenset] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.instance_id = instance_id
        self.requirements = requirements or frozenset()

    @property
    def exhausted(self) -> bool:
        return self.retry_count >= self.max_retries


class ConcurrencyConflict(RecoverableError):
    """Instance left the expected prior state before the transition ran."""

    def __init__(self, message: str, instance_id: Optional[str] = None,
                 expected_state: Optional[str] = None,
                 actual_state: Optional[str] = None, **kwargs):
        super().__init__(message, max_retries=0, **kwargs)
        self.instance_id = instance_id
        self.expected_state = expected_state
        self.actual_state = actual_state
