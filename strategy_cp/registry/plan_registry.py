"""
Content-addressed plan registry.

Plans are stored by fingerprint and reference counted. Identical content
compiled twice shares one entry; different content under one fingerprint is
registry corruption and is fatal. The registry also keeps spec version
history, plan lineage and the compilation audit log.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from ..data.spec_parser import spec_to_dict
from ..errors import PlanNotFoundError, RegistryCorruptionError
from ..logging.config import get_logger
from ..models.plan import CompilationResult, ExecutionPlan
from ..models.spec import StrategySpec
from ..utils.time import SystemClock

logger = get_logger(__name__)


@dataclass
class _Entry:
    plan: ExecutionPlan
    refcount: int = 0


@dataclass(frozen=True)
class AttemptRecord:
    """One compilation attempt, successful or not."""
    timestamp: datetime
    strategy_id: str
    version: int
    fingerprint: Optional[str]
    diagnostics: tuple[dict[str, str], ...] = field(default_factory=tuple)

    @property
    def success(self) -> bool:
        return self.fingerprint is not None


class PlanRegistry:
    """
    Thread-safe registry of compiled plans.

    Args:
        audit_store: Optional AuditStore mirroring plans, specs and attempts
        clock: Time source for audit timestamps
    """

    def __init__(self, audit_store=None, clock=None):
        self.logger = logger
        self.audit_store = audit_store
        self.clock = clock or SystemClock()
        self._plans: dict[str, _Entry] = {}
        self._lineage: dict[str, list[tuple[str, int]]] = {}
        self._by_version: dict[tuple[str, int], str] = {}
        self._specs: dict[str, list[StrategySpec]] = {}
        self._attempts: list[AttemptRecord] = []
        self._lock = threading.Lock()
        self._closed = False

    # Plans

    def put(self, plan: ExecutionPlan) -> str:
        """
        Insert a plan or take another reference to an identical one.

        Raises:
            RegistryCorruptionError: Same fingerprint, different content
        """
        with self._lock:
            self._ensure_open()
            entry = self._plans.get(plan.fingerprint)
            if entry is None:
                entry = _Entry(plan=plan)
                self._plans[plan.fingerprint] = entry
                created = True
            elif entry.plan != plan:
                self.logger.critical(
                    "Fingerprint collision between different plans",
                    fingerprint=plan.fingerprint,
                )
                raise RegistryCorruptionError(
                    f"Fingerprint {plan.fingerprint} already maps to different content",
                    fingerprint=plan.fingerprint,
                )
            else:
                created = False
            entry.refcount += 1
            refcount = entry.refcount

        if created and self.audit_store is not None:
            self.audit_store.record_plan(plan)

        self.logger.debug(
            "Plan stored",
            fingerprint=plan.fingerprint,
            created=created,
            refcount=refcount,
        )
        return plan.fingerprint

    def get(self, fingerprint: str) -> ExecutionPlan:
        with self._lock:
            entry = self._plans.get(fingerprint)
        if entry is None:
            raise PlanNotFoundError(fingerprint)
        return entry.plan

    def contains(self, fingerprint: str) -> bool:
        with self._lock:
            return fingerprint in self._plans

    def refcount(self, fingerprint: str) -> int:
        with self._lock:
            entry = self._plans.get(fingerprint)
        if entry is None:
            raise PlanNotFoundError(fingerprint)
        return entry.refcount

    def release(self, fingerprint: str) -> int:
        """Drop one reference and return the remaining count."""
        with self._lock:
            entry = self._plans.get(fingerprint)
            if entry is None:
                raise PlanNotFoundError(fingerprint)
            entry.refcount = max(0, entry.refcount - 1)
            return entry.refcount

    def collect_garbage(self, protected: Iterable[str] = ()) -> list[str]:
        """
        Remove unreferenced plans.

        Args:
            protected: Fingerprints to keep even at zero references

        Returns:
            Removed fingerprints
        """
        keep = set(protected)
        with self._lock:
            removed = [
                fp for fp, entry in self._plans.items()
                if entry.refcount == 0 and fp not in keep
            ]
            for fp in removed:
                del self._plans[fp]

        if removed:
            self.logger.info("Collected unreferenced plans", count=len(removed), fingerprints=removed)
        return sorted(removed)

    def fingerprints(self) -> list[str]:
        with self._lock:
            return sorted(self._plans)

    # Lineage

    def record_lineage(self, strategy_id: str, version: int, fingerprint: str) -> None:
        """Remember which spec version produced a plan."""
        with self._lock:
            sources = self._lineage.setdefault(fingerprint, [])
            if (strategy_id, version) not in sources:
                sources.append((strategy_id, version))
            self._by_version[(strategy_id, version)] = fingerprint

    def lineage(self, fingerprint: str) -> list[tuple[str, int]]:
        """Spec versions that compiled to the fingerprint, oldest first."""
        with self._lock:
            return list(self._lineage.get(fingerprint, []))

    def fingerprint_for(self, strategy_id: str, version: int) -> Optional[str]:
        with self._lock:
            return self._by_version.get((strategy_id, version))

    # Spec versions

    def record_spec(self, spec: StrategySpec) -> bool:
        """
        Append a spec version to its strategy's history.

        Returns:
            False if this exact version was already recorded
        """
        with self._lock:
            history = self._specs.setdefault(spec.strategy_id, [])
            if any(s.version == spec.version for s in history):
                return False
            history.append(spec)

        if self.audit_store is not None:
            self.audit_store.record_spec(spec.strategy_id, spec.version, spec.author, spec_to_dict(spec))
        return True

    def get_spec(self, strategy_id: str, version: int) -> Optional[StrategySpec]:
        with self._lock:
            for spec in self._specs.get(strategy_id, []):
                if spec.version == version:
                    return spec
        return None

    def spec_history(self, strategy_id: str) -> list[StrategySpec]:
        with self._lock:
            return list(self._specs.get(strategy_id, []))

    def latest_version(self, strategy_id: str) -> Optional[int]:
        with self._lock:
            history = self._specs.get(strategy_id)
            return max(s.version for s in history) if history else None

    # Audit

    def record_attempt(self, spec: StrategySpec, result: CompilationResult) -> AttemptRecord:
        """Append a compilation attempt to the audit log."""
        record = AttemptRecord(
            timestamp=self.clock.now(),
            strategy_id=spec.strategy_id,
            version=spec.version,
            fingerprint=result.fingerprint,
            diagnostics=tuple(d.to_dict() for d in result.diagnostics),
        )
        with self._lock:
            self._attempts.append(record)

        if self.audit_store is not None:
            self.audit_store.record_attempt(
                record.strategy_id, record.version, record.fingerprint, list(record.diagnostics)
            )
        return record

    def audit_log(self, strategy_id: Optional[str] = None) -> list[AttemptRecord]:
        with self._lock:
            attempts = list(self._attempts)
        if strategy_id is not None:
            attempts = [a for a in attempts if a.strategy_id == strategy_id]
        return attempts

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "plans": len(self._plans),
                "referenced": sum(1 for e in self._plans.values() if e.refcount > 0),
                "strategies": len(self._specs),
                "attempts": len(self._attempts),
            }

    def close(self) -> None:
        """Drop all in-memory state; later inserts are refused."""
        with self._lock:
            self._closed = True
            self._plans.clear()
            self._lineage.clear()
            self._by_version.clear()
        self.logger.info("Plan registry closed")

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Plan registry is closed")
