"""Execution worker tracking and assignment."""

from .tracker import Worker, WorkerTracker

__all__ = ["Worker", "WorkerTracker"]
