"""
Lifecycle data models for strategy instances.

Instances are immutable snapshots; every change produces a new snapshot
through one of the with_* helpers, and every recorded transition appends
a TransitionRecord to the instance history.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class LifecycleState(str, Enum):
    """Strategy instance lifecycle states."""
    DRAFT = "draft"
    VALIDATED = "validated"
    DEPLOYING = "deploying"
    ACTIVE = "active"
    PAUSED = "paused"
    RETIRED = "retired"
    FAILED = "failed"


class LifecycleEvent(str, Enum):
    """Events that drive lifecycle transitions."""
    COMPILE_SUCCEEDED = "compile_succeeded"
    COMPILE_FAILED = "compile_failed"
    DEPLOY_REQUESTED = "deploy_requested"
    WORKER_ACCEPTED = "worker_accepted"
    DEPLOY_TIMEOUT = "deploy_timeout"
    HEARTBEAT_MISSED = "heartbeat_missed"
    HEALTH_CRITICAL = "health_critical"
    PAUSE_REQUESTED = "pause_requested"
    RESUME_REQUESTED = "resume_requested"
    PLAN_UPDATED = "plan_updated"
    RETIRE_REQUESTED = "retire_requested"
    FATAL_ERROR = "fatal_error"


class HealthSeverity(str, Enum):
    """Severity of an external health signal."""
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class HealthSignal:
    """Health score pushed by an external health collaborator."""
    instance_id: str
    severity: HealthSeverity
    score: Optional[float] = None
    reason: str = ""
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class OutcomeEvent:
    """Trade or execution outcome reported for an instance."""
    instance_id: str
    plan_fingerprint: str
    timestamp: datetime
    payload: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class TransitionRecord:
    """One entry of an instance's lifecycle history."""
    timestamp: datetime
    prior_state: LifecycleState
    event: LifecycleEvent
    new_state: LifecycleState
    cause: str = ""
    plan_fingerprint: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "prior_state": self.prior_state.value,
            "event": self.event.value,
            "new_state": self.new_state.value,
            "cause": self.cause,
            "plan_fingerprint": self.plan_fingerprint,
        }


@dataclass(frozen=True)
class PendingOffer:
    """Deployment offer waiting for the worker to accept."""
    worker_id: str
    deadline: datetime


@dataclass(frozen=True)
class StrategyInstance:
    """Runtime snapshot of one deployed strategy."""

    instance_id: str
    state: LifecycleState = LifecycleState.DRAFT
    plan_fingerprint: Optional[str] = None
    spec_version: Optional[int] = None

    # Assignment
    assigned_worker: Optional[str] = None
    last_heartbeat: Optional[datetime] = None
    pending_offer: Optional[PendingOffer] = None

    # Deploy retry tracking
    deploy_attempts: int = 0
    deploy_deadline: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None

    last_health: Optional[HealthSignal] = None
    pause_cause: Optional[LifecycleEvent] = None
    history: tuple[TransitionRecord, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.state in (LifecycleState.RETIRED, LifecycleState.FAILED)

    def with_state(self, new_state: LifecycleState, **changes: Any) -> "StrategyInstance":
        """Create new snapshot with updated lifecycle state and fields."""
        return replace(self, state=new_state, **changes)

    def with_record(self, record: TransitionRecord) -> "StrategyInstance":
        """Append a transition record to the history."""
        return replace(self, history=self.history + (record,))

    def with_heartbeat(self, timestamp: datetime) -> "StrategyInstance":
        return replace(self, last_heartbeat=timestamp)

    def with_health(self, signal: HealthSignal) -> "StrategyInstance":
        return replace(self, last_health=signal)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "state": self.state.value,
            "plan_fingerprint": self.plan_fingerprint,
            "spec_version": self.spec_version,
            "assigned_worker": self.assigned_worker,
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
            "deploy_attempts": self.deploy_attempts,
            "pause_cause": self.pause_cause.value if self.pause_cause else None,
            "history_length": len(self.history),
        }
