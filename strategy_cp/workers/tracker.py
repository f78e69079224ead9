"""
Worker registry, assignment and heartbeat tracking.

Workers advertise capability tags and report liveness through heartbeats.
A worker silent for longer than the staleness threshold is presumed failed
and is never selected for new work.
"""

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterable, Optional

from ..compiler.normalize import normalize_tag
from ..errors import WorkerNotFoundError
from ..logging.config import get_logger
from ..utils.time import SystemClock, elapsed_seconds

logger = get_logger(__name__)


@dataclass(frozen=True)
class Worker:
    """Snapshot of one execution worker."""
    worker_id: str
    capabilities: frozenset[str]
    registered_at: datetime
    last_heartbeat: datetime
    # Instances assigned or offered to this worker
    instances: frozenset[str] = field(default_factory=frozenset)
    last_assigned_at: Optional[datetime] = None

    @property
    def load(self) -> int:
        return len(self.instances)

    def satisfies(self, requirements: Iterable[str]) -> bool:
        return set(requirements) <= self.capabilities


class WorkerTracker:
    """
    Tracks registered workers and their load.

    Args:
        staleness_threshold_seconds: Heartbeat silence before a worker is stale
        max_load_per_worker: Maximum assigned plus offered instances per worker
        clock: Time source, defaults to wall-clock time
    """

    def __init__(self, staleness_threshold_seconds: float = 30.0,
                 max_load_per_worker: int = 4, clock=None):
        self.logger = logger
        self.staleness_threshold_seconds = staleness_threshold_seconds
        self.max_load_per_worker = max_load_per_worker
        self.clock = clock or SystemClock()
        self._workers: dict[str, Worker] = {}
        self._lock = threading.Lock()

    def register(self, worker_id: str, capabilities: Iterable[str] = ()) -> Worker:
        """Register a worker, or refresh capabilities of a known one."""
        tags = frozenset(t for t in (normalize_tag(c) for c in capabilities) if t)
        now = self.clock.now()
        with self._lock:
            existing = self._workers.get(worker_id)
            if existing is not None:
                worker = replace(existing, capabilities=tags, last_heartbeat=now)
            else:
                worker = Worker(
                    worker_id=worker_id,
                    capabilities=tags,
                    registered_at=now,
                    last_heartbeat=now,
                )
            self._workers[worker_id] = worker

        self.logger.info(
            "Worker registered",
            worker_id=worker_id,
            capabilities=sorted(tags),
            reregistered=existing is not None,
        )
        return worker

    def deregister(self, worker_id: str) -> frozenset[str]:
        """
        Remove a worker.

        Returns:
            Instances the worker was holding
        """
        with self._lock:
            worker = self._workers.pop(worker_id, None)
        if worker is None:
            raise WorkerNotFoundError(worker_id)

        self.logger.info("Worker deregistered", worker_id=worker_id, instances=sorted(worker.instances))
        return worker.instances

    def get(self, worker_id: str) -> Worker:
        with self._lock:
            try:
                return self._workers[worker_id]
            except KeyError:
                raise WorkerNotFoundError(worker_id) from None

    def is_registered(self, worker_id: str) -> bool:
        with self._lock:
            return worker_id in self._workers

    def heartbeat(self, worker_id: str) -> datetime:
        """Record worker liveness and return the heartbeat time."""
        now = self.clock.now()
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                raise WorkerNotFoundError(worker_id)
            self._workers[worker_id] = replace(worker, last_heartbeat=now)
        return now

    def is_stale(self, worker: Worker, now: Optional[datetime] = None) -> bool:
        now = now or self.clock.now()
        return elapsed_seconds(worker.last_heartbeat, now) > self.staleness_threshold_seconds

    def select(self, requirements: Iterable[str] = ()) -> Optional[Worker]:
        """
        Pick the best eligible worker for a plan.

        Eligible workers cover every requirement, have spare capacity and are
        not stale. Among those the least loaded wins; ties go to the worker
        that has waited longest since its last assignment (never assigned
        first), then to the lowest worker id.
        """
        needed = frozenset(requirements)
        now = self.clock.now()
        with self._lock:
            candidates = [
                w for w in self._workers.values()
                if w.satisfies(needed)
                and w.load < self.max_load_per_worker
                and not self.is_stale(w, now)
            ]
        if not candidates:
            return None

        def rank(worker: Worker):
            assigned = worker.last_assigned_at
            return (
                worker.load,
                assigned is not None,
                assigned.timestamp() if assigned is not None else 0.0,
                worker.worker_id,
            )

        return min(candidates, key=rank)

    def assign(self, worker_id: str, instance_id: str) -> Worker:
        """Count an instance against a worker's load."""
        now = self.clock.now()
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                raise WorkerNotFoundError(worker_id)
            worker = replace(
                worker,
                instances=worker.instances | {instance_id},
                last_assigned_at=now,
            )
            self._workers[worker_id] = worker

        self.logger.debug("Instance assigned", worker_id=worker_id, instance_id=instance_id, load=worker.load)
        return worker

    def release(self, worker_id: Optional[str], instance_id: str) -> None:
        """Drop an instance from a worker's load. Unknown workers are ignored."""
        if worker_id is None:
            return
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None or instance_id not in worker.instances:
                return
            self._workers[worker_id] = replace(worker, instances=worker.instances - {instance_id})

        self.logger.debug("Instance released", worker_id=worker_id, instance_id=instance_id)

    def holds(self, worker_id: str, instance_id: str) -> bool:
        with self._lock:
            worker = self._workers.get(worker_id)
            return worker is not None and instance_id in worker.instances

    def stale_workers(self) -> list[Worker]:
        """Workers whose last heartbeat is older than the staleness threshold."""
        now = self.clock.now()
        with self._lock:
            workers = list(self._workers.values())
        return sorted(
            (w for w in workers if self.is_stale(w, now)),
            key=lambda w: w.worker_id,
        )

    def snapshot(self) -> list[dict]:
        """Worker summary for status reports."""
        now = self.clock.now()
        with self._lock:
            workers = sorted(self._workers.values(), key=lambda w: w.worker_id)
        return [
            {
                "worker_id": w.worker_id,
                "capabilities": sorted(w.capabilities),
                "load": w.load,
                "instances": sorted(w.instances),
                "stale": self.is_stale(w, now),
                "last_heartbeat": w.last_heartbeat.isoformat(),
            }
            for w in workers
        ]
