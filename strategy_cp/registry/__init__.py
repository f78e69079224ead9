"""Content-addressed plan registry."""

from .plan_registry import AttemptRecord, PlanRegistry

__all__ = ["AttemptRecord", "PlanRegistry"]
