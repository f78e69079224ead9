"""
Control plane coordinator.

Owns the lifecycle of every strategy instance:

    spec -> compile -> registry -> Validated -> Deploying -> Active
                                        ^            |          |
                                        |   timeout  |          | heartbeat loss,
                                        +------------+          | health, pause
                                                                v
                                          Retired <------- Paused

External collaborators push health signals, outcomes and pause requests;
workers push heartbeats and accept offers. sweep() runs one periodic
assignment and liveness cycle.
"""

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from .compiler import Compiler
from .config.defaults import DefaultConfig, get_default_config
from .config.loader import ConfigLoader
from .config.validation import ConfigValidator
from .data.spec_parser import parse_spec
from .errors import (
    AssignmentError,
    RegistryCorruptionError,
)
from .logging.config import get_logger
from .models.plan import CompilationResult, Diagnostic
from .models.spec import StrategySpec
from .persistence.audit_store import AuditStore
from .registry.plan_registry import PlanRegistry
from .state.models import (
    HealthSeverity,
    HealthSignal,
    LifecycleEvent,
    LifecycleState,
    OutcomeEvent,
    PendingOffer,
    StrategyInstance,
    TransitionRecord,
)
from .state.runtime import InstanceStore
from .utils.time import SystemClock, elapsed_seconds
from .workers.tracker import WorkerTracker

logger = get_logger(__name__)

S = LifecycleState
E = LifecycleEvent

_LIVE_STATES = (S.ACTIVE, S.DEPLOYING)


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of submitting a spec version."""
    instance_id: str
    compilation: CompilationResult
    instance: Optional[StrategyInstance] = None
    duplicate: bool = False

    @property
    def success(self) -> bool:
        return self.compilation.success

    @property
    def fingerprint(self) -> Optional[str]:
        return self.compilation.fingerprint

    @property
    def diagnostics(self) -> list[Diagnostic]:
        return self.compilation.diagnostics


@dataclass(frozen=True)
class OutcomeRecord:
    """Outcome event as stored in the outcome log."""
    event: OutcomeEvent
    expected_fingerprint: Optional[str]
    flagged: bool


@dataclass(frozen=True)
class HaltStatus:
    """Global halt flag."""
    halted: bool = False
    reason: str = ""
    operator: Optional[str] = None
    since: Optional[datetime] = None


@dataclass
class SweepReport:
    """What one sweep cycle did."""
    paused: list[str] = field(default_factory=list)
    offered: list[str] = field(default_factory=list)
    timed_out: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    resumed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    collected: list[str] = field(default_factory=list)


class ControlPlane:
    """
    Coordinates compilation, plan storage, lifecycle and worker assignment.

    All stores are injected (or built from configuration) and owned by this
    object; close() tears them down.
    """

    def __init__(
        self,
        config: Optional[DefaultConfig] = None,
        clock=None,
        registry: Optional[PlanRegistry] = None,
        instances: Optional[InstanceStore] = None,
        workers: Optional[WorkerTracker] = None,
        audit_store: Optional[AuditStore] = None,
        compiler: Optional[Compiler] = None,
    ) -> None:
        self.logger = logger
        self.config = config or get_default_config()
        self.params = self.config.control_plane
        self.clock = clock or SystemClock()

        if audit_store is None and self.config.persistence.enabled:
            audit_store = AuditStore(self.config.persistence.db_path)
        self.audit_store = audit_store

        self.compiler = compiler or Compiler(self.config.compiler)
        self.registry = registry or PlanRegistry(audit_store=audit_store, clock=self.clock)
        self.instances = instances or InstanceStore(clock=self.clock)
        self.workers = workers or WorkerTracker(
            staleness_threshold_seconds=self.params.staleness_threshold_seconds,
            max_load_per_worker=self.config.workers.max_load_per_worker,
            clock=self.clock,
        )

        if self.audit_store is not None:
            self.instances.add_listener(self._persist_transition)

        self._halt = HaltStatus()
        self._halt_lock = threading.Lock()
        self._log_lock = threading.Lock()
        self._outcomes: list[OutcomeRecord] = []
        self._health_log: list[HealthSignal] = []
        self._closed = False

        self.logger.info(
            "Control plane initialized",
            compiler_version=self.compiler.version,
            staleness_threshold=self.params.staleness_threshold_seconds,
            persistence=self.audit_store is not None,
        )

    @classmethod
    def from_config_dir(cls, config_dir=None, overrides: Optional[dict[str, Any]] = None,
                        clock=None) -> "ControlPlane":
        """
        Build a control plane from YAML configuration.

        Raises:
            ValueError: If the merged configuration is invalid
        """
        loader = ConfigLoader.create(config_dir)
        errors = ConfigValidator.validate_config(loader.merge_config(overrides))
        if errors:
            messages = [f"{err.field}: {err.message} (got: {err.value})" for err in errors]
            raise ValueError("Invalid configuration: " + "; ".join(messages))
        return cls(config=loader.load(overrides), clock=clock)

    # Spec submission

    def submit_spec(self, spec: Union[StrategySpec, str, bytes, dict]) -> SubmissionResult:
        """
        Compile a spec version and move its instance accordingly.

        Raw payloads are parsed first; structural problems raise
        MalformedSpecError. Compilation errors are returned as diagnostics
        and leave the instance's current plan untouched.

        Raises:
            MalformedSpecError: Raw payload cannot be parsed
            RegistryCorruptionError: Fingerprint collision (instance fails)
        """
        if not isinstance(spec, StrategySpec):
            spec = parse_spec(spec)

        instance_id = spec.strategy_id.strip()
        if instance_id != spec.strategy_id:
            spec = replace(spec, strategy_id=instance_id)

        if not instance_id:
            return SubmissionResult(instance_id, self.compiler.compile(spec))

        latest = self.registry.latest_version(instance_id)
        if latest is not None and spec.version <= latest:
            return self._resubmission(instance_id, spec, latest)

        self.instances.get_or_create(instance_id)
        with self.instances.locked(instance_id) as current:
            if current.is_terminal:
                self.instances.reset(instance_id)

        result = self.compiler.compile(spec)
        self.registry.record_attempt(spec, result)

        if not result.success:
            with self.instances.locked(instance_id) as current:
                if current.state == S.DRAFT:
                    current = self.instances.transition(
                        instance_id, E.COMPILE_FAILED, expected_state=S.DRAFT
                    ) or current
            return SubmissionResult(instance_id, result, current)

        self.registry.record_spec(spec)
        try:
            fingerprint = self.registry.put(result.plan)
        except RegistryCorruptionError as e:
            self._fail(instance_id, f"registry corruption: {e}")
            raise
        self.registry.record_lineage(instance_id, spec.version, fingerprint)

        updated = self._apply_plan(instance_id, fingerprint, spec.version)
        return SubmissionResult(instance_id, result, updated)

    def _resubmission(self, instance_id: str, spec: StrategySpec, latest: int) -> SubmissionResult:
        recorded = self.registry.get_spec(instance_id, spec.version)
        instance = self.instances.find(instance_id)

        if recorded is not None and recorded == spec:
            self.logger.info("Duplicate spec submission", instance_id=instance_id, version=spec.version)
            return SubmissionResult(instance_id, self.compiler.compile(spec), instance, duplicate=True)

        diagnostic = Diagnostic.error(
            "VERSION_NOT_MONOTONIC",
            f"Version {spec.version} is not greater than accepted version {latest}",
            "version",
        )
        result = CompilationResult.failed([diagnostic])
        self.registry.record_attempt(spec, result)
        self.logger.warning(
            "Rejected non-monotonic spec version",
            instance_id=instance_id,
            version=spec.version,
            latest_version=latest,
        )
        return SubmissionResult(instance_id, result, instance)

    def _apply_plan(self, instance_id: str, fingerprint: str, version: int) -> StrategyInstance:
        """Point the instance at a freshly stored plan."""
        with self.instances.locked(instance_id) as current:
            old = current.plan_fingerprint

            if current.spec_version is not None and version < current.spec_version:
                # A newer version was applied concurrently
                self.registry.release(fingerprint)
                return current

            if old == fingerprint:
                # One reference per instance pointer
                self.registry.release(fingerprint)
                self.logger.info(
                    "Recompiled plan unchanged",
                    instance_id=instance_id,
                    fingerprint=fingerprint,
                    spec_version=version,
                )
                return self.instances.update(
                    instance_id, lambda i: i.with_state(i.state, spec_version=version)
                )

            changes = {"plan_fingerprint": fingerprint, "spec_version": version}
            cause = f"spec version {version}"

            if current.state == S.DRAFT:
                updated = self.instances.transition(
                    instance_id, E.COMPILE_SUCCEEDED, expected_state=S.DRAFT, cause=cause, **changes
                )
            elif current.state in (S.VALIDATED, S.PAUSED):
                updated = self.instances.transition(
                    instance_id, E.PLAN_UPDATED, expected_state=current.state, cause=cause, **changes
                )
            else:
                # Deploying or Active: full redeploy of the new plan
                self._release_worker(current)
                updated = self.instances.transition(
                    instance_id, E.PLAN_UPDATED, expected_state=current.state, cause=cause,
                    assigned_worker=None, last_heartbeat=None, pending_offer=None,
                    deploy_attempts=1, deploy_deadline=self._deadline(), next_retry_at=None,
                    **changes,
                )
                if updated is not None:
                    updated = self._offer(instance_id) or updated

            if old is not None:
                self.registry.release(old)
            return updated

    # Operator actions

    def deploy(self, instance_id: str) -> Optional[StrategyInstance]:
        """
        Request deployment of a Validated instance.

        Returns:
            Updated instance, or None while a global halt is in effect

        Raises:
            StateTransitionError: Instance is not Validated
        """
        if self._blocked_by_halt(instance_id, "deploy"):
            return None
        with self.instances.locked(instance_id) as current:
            updated = self.instances.transition(
                instance_id, E.DEPLOY_REQUESTED, expected_state=current.state,
                cause="operator deploy",
                deploy_attempts=1, deploy_deadline=self._deadline(), next_retry_at=None,
            )
            return self._offer(instance_id) or updated

    def resume(self, instance_id: str) -> Optional[StrategyInstance]:
        """
        Resume a Paused instance through a fresh deployment.

        Returns:
            Updated instance, or None while a global halt is in effect
        """
        if self._blocked_by_halt(instance_id, "resume"):
            return None
        return self._resume(instance_id, cause="operator resume")

    def request_pause(self, instance_id: str, reason: str = "") -> Optional[StrategyInstance]:
        """Pause an Active or Deploying instance on external request."""
        with self.instances.locked(instance_id) as current:
            return self._pause(current, E.PAUSE_REQUESTED, reason or "pause requested")

    def retire(self, instance_id: str) -> Optional[StrategyInstance]:
        """Retire a Paused instance. Retired instances are never reactivated."""
        with self.instances.locked(instance_id) as current:
            updated = self.instances.transition(
                instance_id, E.RETIRE_REQUESTED, expected_state=current.state, cause="operator retire"
            )
            if updated is not None and updated.plan_fingerprint is not None:
                self.registry.release(updated.plan_fingerprint)
            return updated

    # Queries

    def get_instance(self, instance_id: str) -> StrategyInstance:
        """Current instance snapshot, after re-checking liveness."""
        self._enforce_liveness(instance_id)
        return self.instances.get(instance_id)

    def list_instances(self, state: Optional[LifecycleState] = None) -> list[StrategyInstance]:
        for instance in self.instances.instances(S.ACTIVE):
            self._enforce_liveness(instance.instance_id)
        return self.instances.instances(state)

    def get_history(self, instance_id: str) -> tuple[TransitionRecord, ...]:
        return self.instances.get(instance_id).history

    def plan_at(self, instance_id: str, timestamp: datetime) -> Optional[str]:
        """Fingerprint of the plan Active for the instance at a point in time."""
        return self.instances.plan_at(instance_id, timestamp)

    # Collaborator signals

    def report_health(self, signal: HealthSignal) -> StrategyInstance:
        """
        Record a health signal. Critical severity pauses an Active instance.

        Raises:
            InstanceNotFoundError: Unknown instance
        """
        if signal.timestamp is None:
            signal = HealthSignal(
                instance_id=signal.instance_id, severity=signal.severity, score=signal.score,
                reason=signal.reason, timestamp=self.clock.now(),
            )

        with self.instances.locked(signal.instance_id) as current:
            with self._log_lock:
                self._health_log.append(signal)
            current = self.instances.update(signal.instance_id, lambda i: i.with_health(signal))

            if signal.severity == HealthSeverity.CRITICAL and current.state == S.ACTIVE:
                self.logger.warning(
                    "Critical health signal",
                    instance_id=signal.instance_id,
                    score=signal.score,
                    reason=signal.reason,
                )
                return self._pause(current, E.HEALTH_CRITICAL, signal.reason or "critical health") or current
            return current

    def health_log(self, instance_id: Optional[str] = None) -> list[HealthSignal]:
        with self._log_lock:
            signals = list(self._health_log)
        if instance_id is not None:
            signals = [s for s in signals if s.instance_id == instance_id]
        return signals

    def report_outcome(self, event: OutcomeEvent) -> OutcomeRecord:
        """
        Append an outcome to the outcome log.

        Outcomes whose fingerprint is not the plan that was Active at the
        event time are flagged, not rejected.
        """
        expected = self.instances.plan_at(event.instance_id, event.timestamp)
        record = OutcomeRecord(
            event=event,
            expected_fingerprint=expected,
            flagged=expected != event.plan_fingerprint,
        )
        with self._log_lock:
            self._outcomes.append(record)

        if self.audit_store is not None:
            self.audit_store.record_outcome(event, record.flagged)

        if record.flagged:
            self.logger.warning(
                "Outcome attributed to inactive plan",
                instance_id=event.instance_id,
                reported_fingerprint=event.plan_fingerprint,
                active_fingerprint=expected,
            )
        return record

    def outcomes(self, instance_id: Optional[str] = None) -> list[OutcomeRecord]:
        with self._log_lock:
            records = list(self._outcomes)
        if instance_id is not None:
            records = [r for r in records if r.event.instance_id == instance_id]
        return records

    # Workers

    def register_worker(self, worker_id: str, capabilities=()) -> None:
        self.workers.register(worker_id, capabilities)

    def deregister_worker(self, worker_id: str) -> list[str]:
        """
        Remove a worker; its Active instances are paused.

        Returns:
            Instances affected
        """
        held = self.workers.deregister(worker_id)
        for instance_id in sorted(held):
            self._handle_lost_worker(instance_id, worker_id, "worker deregistered")
        return sorted(held)

    def worker_heartbeat(self, worker_id: str, instance_id: Optional[str] = None) -> None:
        """
        Record worker liveness, optionally for one instance.

        A heartbeat naming an instance it was offered counts as acceptance.
        Heartbeats for instances held by another worker are ignored.

        Raises:
            WorkerNotFoundError: Unknown worker
        """
        now = self.workers.heartbeat(worker_id)
        targets = [instance_id] if instance_id is not None else sorted(self.workers.get(worker_id).instances)

        for target in targets:
            if self.instances.find(target) is None:
                self.logger.warning("Heartbeat for unknown instance", worker_id=worker_id, instance_id=target)
                continue

            # Holder check and refresh run under one gate
            with self.instances.locked(target) as current:
                if current.state == S.ACTIVE and current.assigned_worker == worker_id:
                    self.instances.update(target, lambda i: i.with_heartbeat(now), expected_state=S.ACTIVE)
                elif (instance_id is not None and current.state == S.DEPLOYING
                      and current.pending_offer is not None
                      and current.pending_offer.worker_id == worker_id):
                    self.accept_assignment(worker_id, target)
                else:
                    self.logger.info(
                        "Heartbeat from non-holder ignored",
                        worker_id=worker_id,
                        instance_id=target,
                        state=current.state.value,
                        holder=current.assigned_worker,
                    )

    def accept_assignment(self, worker_id: str, instance_id: str) -> Optional[StrategyInstance]:
        """
        Worker accepts a pending deployment offer.

        Returns:
            Active instance, or None if there is no live offer for this worker
        """
        with self.instances.locked(instance_id) as current:
            offer = current.pending_offer
            now = self.clock.now()
            if current.state != S.DEPLOYING or offer is None or offer.worker_id != worker_id:
                self.logger.info(
                    "Acceptance without matching offer ignored",
                    worker_id=worker_id,
                    instance_id=instance_id,
                    state=current.state.value,
                )
                return None
            if now > offer.deadline:
                self.logger.info("Acceptance after offer deadline ignored",
                                 worker_id=worker_id, instance_id=instance_id)
                return None

            self.workers.heartbeat(worker_id)
            return self.instances.transition(
                instance_id, E.WORKER_ACCEPTED, expected_state=S.DEPLOYING,
                cause=f"accepted by {worker_id}",
                assigned_worker=worker_id, last_heartbeat=now, pending_offer=None,
                deploy_attempts=0, deploy_deadline=None, next_retry_at=None,
            )

    # Global halt

    @property
    def halted(self) -> bool:
        with self._halt_lock:
            return self._halt.halted

    def halt_status(self) -> HaltStatus:
        with self._halt_lock:
            return self._halt

    def halt_all(self, reason: str, operator: Optional[str] = None) -> list[str]:
        """
        Pause every Active and Deploying instance and block deploy/resume.

        Returns:
            Instances paused by the halt
        """
        with self._halt_lock:
            self._halt = HaltStatus(halted=True, reason=reason, operator=operator, since=self.clock.now())
        self.logger.critical("Global halt engaged", reason=reason, operator=operator)
        if self.audit_store is not None:
            self.audit_store.record_halt("halt", reason, operator)

        paused = []
        for instance_id in self.instances.ids():
            with self.instances.locked(instance_id) as current:
                if current.state in _LIVE_STATES:
                    if self._pause(current, E.PAUSE_REQUESTED, f"global halt: {reason}"):
                        paused.append(instance_id)
        return paused

    def clear_halt(self, operator: str, reason: str) -> None:
        """
        Lift the global halt. Paused instances stay paused until resumed.

        Raises:
            ValueError: If operator or reason is empty
        """
        if not operator or not reason:
            raise ValueError("Clearing a halt requires an operator and a reason")
        with self._halt_lock:
            previous = self._halt
            self._halt = HaltStatus()
        self.logger.warning(
            "Global halt cleared",
            operator=operator,
            reason=reason,
            halted_since=previous.since.isoformat() if previous.since else None,
        )
        if self.audit_store is not None:
            self.audit_store.record_halt("clear", reason, operator)

    # Periodic cycle

    def sweep(self) -> SweepReport:
        """
        Run one assignment and liveness cycle.

        Stale workers lose their instances, Active instances without a fresh
        heartbeat are paused, expired offers time out with backoff, pending
        deployments are offered, due retries are redeployed and instances
        paused by heartbeat loss are resumed when configured.
        """
        report = SweepReport()
        now = self.clock.now()

        for worker in self.workers.stale_workers():
            for instance_id in sorted(worker.instances):
                if self._handle_lost_worker(instance_id, worker.worker_id, "worker heartbeat stale"):
                    report.paused.append(instance_id)

        for instance_id in self.instances.ids():
            with self.instances.locked(instance_id) as current:
                if current.state == S.ACTIVE:
                    if self._enforce_liveness(instance_id) and instance_id not in report.paused:
                        report.paused.append(instance_id)

                elif current.state == S.DEPLOYING:
                    if current.deploy_deadline is not None and now > current.deploy_deadline:
                        updated = self._deploy_timeout(current)
                        if updated is not None and updated.state == S.FAILED:
                            report.failed.append(instance_id)
                        else:
                            report.timed_out.append(instance_id)
                    elif current.pending_offer is None and self._offer(instance_id) is not None:
                        report.offered.append(instance_id)

                elif (current.state == S.VALIDATED and current.next_retry_at is not None
                      and now >= current.next_retry_at and not self.halted):
                    self.instances.transition(
                        instance_id, E.DEPLOY_REQUESTED, expected_state=S.VALIDATED,
                        cause=f"retry attempt {current.deploy_attempts + 1}",
                        deploy_attempts=current.deploy_attempts + 1,
                        deploy_deadline=self._deadline(), next_retry_at=None,
                    )
                    self._offer(instance_id)
                    report.retried.append(instance_id)

                elif (current.state == S.PAUSED and current.pause_cause == E.HEARTBEAT_MISSED
                      and self.params.auto_resume_on_heartbeat_loss and not self.halted
                      and instance_id not in report.paused and self._has_eligible_worker(current)):
                    if self._resume(instance_id, cause="auto resume after heartbeat loss"):
                        report.resumed.append(instance_id)

        report.collected = self.registry.collect_garbage(protected=self.instances.live_fingerprints())
        return report

    def status(self) -> dict[str, Any]:
        """Summary counts for dashboards and scripts."""
        instances = self.list_instances()
        by_state = {state.value: 0 for state in S}
        for instance in instances:
            by_state[instance.state.value] += 1
        workers = self.workers.snapshot()
        halt = self.halt_status()
        return {
            "instances": by_state,
            "workers": len(workers),
            "stale_workers": sum(1 for w in workers if w["stale"]),
            "halted": halt.halted,
            "halt_reason": halt.reason or None,
            "registry": self.registry.stats(),
        }

    def close(self) -> None:
        """Tear down the registry and audit store."""
        if self._closed:
            return
        self._closed = True
        self.registry.close()
        if self.audit_store is not None:
            self.audit_store.close()
        self.logger.info("Control plane closed")

    # Internals. Callers hold the instance gate where noted.

    def _deadline(self) -> datetime:
        return self.clock.now() + timedelta(seconds=self.params.deploy_timeout_seconds)

    def _blocked_by_halt(self, instance_id: str, action: str) -> bool:
        halt = self.halt_status()
        if halt.halted:
            self.logger.warning(
                "Action blocked by global halt",
                instance_id=instance_id,
                action=action,
                halt_reason=halt.reason,
            )
        return halt.halted

    def _has_eligible_worker(self, instance: StrategyInstance) -> bool:
        plan = self.registry.get(instance.plan_fingerprint)
        return self.workers.select(plan.requirements) is not None

    def _offer(self, instance_id: str) -> Optional[StrategyInstance]:
        """Offer a Deploying instance to the best eligible worker (gate held)."""
        current = self.instances.get(instance_id)
        if current.state != S.DEPLOYING or current.pending_offer is not None or self.halted:
            return None

        plan = self.registry.get(current.plan_fingerprint)
        worker = self.workers.select(plan.requirements)
        if worker is None:
            self.logger.info(
                "No eligible worker",
                instance_id=instance_id,
                requirements=sorted(plan.requirements),
                attempt=current.deploy_attempts,
            )
            return None

        self.workers.assign(worker.worker_id, instance_id)
        offer = PendingOffer(
            worker_id=worker.worker_id,
            deadline=current.deploy_deadline or self._deadline(),
        )
        self.logger.info(
            "Deployment offered",
            instance_id=instance_id,
            worker_id=worker.worker_id,
            fingerprint=current.plan_fingerprint,
        )
        return self.instances.update(
            instance_id, lambda i: i.with_state(i.state, pending_offer=offer), expected_state=S.DEPLOYING
        )

    def _resume(self, instance_id: str, cause: str) -> Optional[StrategyInstance]:
        with self.instances.locked(instance_id) as current:
            updated = self.instances.transition(
                instance_id, E.RESUME_REQUESTED, expected_state=current.state, cause=cause,
                pause_cause=None, deploy_attempts=1, deploy_deadline=self._deadline(),
                next_retry_at=None,
            )
            if updated is None:
                return None
            return self._offer(instance_id) or updated

    def _pause(self, current: StrategyInstance, event: LifecycleEvent,
               cause: str) -> Optional[StrategyInstance]:
        """Move an instance to Paused and release its worker (gate held)."""
        updated = self.instances.transition(
            current.instance_id, event, expected_state=current.state, cause=cause,
            assigned_worker=None, last_heartbeat=None, pending_offer=None,
            deploy_deadline=None, next_retry_at=None, pause_cause=event,
        )
        if updated is not None:
            self._release_worker(current)
        return updated

    def _release_worker(self, instance: StrategyInstance) -> None:
        self.workers.release(instance.assigned_worker, instance.instance_id)
        if instance.pending_offer is not None:
            self.workers.release(instance.pending_offer.worker_id, instance.instance_id)

    def _enforce_liveness(self, instance_id: str) -> bool:
        """Pause an Active instance without a live worker. True if paused."""
        with self.instances.locked(instance_id) as current:
            if current.state != S.ACTIVE:
                return False

            reason = None
            if current.assigned_worker is None:
                reason = "no assigned worker"
            elif not self.workers.is_registered(current.assigned_worker):
                reason = "worker deregistered"
            elif current.last_heartbeat is None or elapsed_seconds(
                    current.last_heartbeat, self.clock.now()) > self.params.staleness_threshold_seconds:
                reason = "heartbeat stale"

            if reason is None:
                return False
            return self._pause(current, E.HEARTBEAT_MISSED, reason) is not None

    def _handle_lost_worker(self, instance_id: str, worker_id: str, reason: str) -> bool:
        """Clear a failed worker's hold on an instance. True if it was paused."""
        current = self.instances.find(instance_id)
        if current is None:
            self.workers.release(worker_id, instance_id)
            return False

        with self.instances.locked(instance_id) as current:
            if current.state == S.ACTIVE and current.assigned_worker == worker_id:
                return self._pause(current, E.HEARTBEAT_MISSED, reason) is not None

            if (current.state == S.DEPLOYING and current.pending_offer is not None
                    and current.pending_offer.worker_id == worker_id):
                self.workers.release(worker_id, instance_id)
                self.instances.update(
                    instance_id, lambda i: i.with_state(i.state, pending_offer=None),
                    expected_state=S.DEPLOYING,
                )
                self.logger.info("Offer abandoned", instance_id=instance_id, worker_id=worker_id, reason=reason)
                return False

            self.workers.release(worker_id, instance_id)
            return False

    def _deploy_timeout(self, current: StrategyInstance) -> Optional[StrategyInstance]:
        """Abandon an expired deployment and back off or fail (gate held)."""
        self._release_worker(current)
        attempts = current.deploy_attempts
        plan = self.registry.get(current.plan_fingerprint)

        error = AssignmentError(
            f"Deployment attempt {attempts} for {current.instance_id} timed out",
            instance_id=current.instance_id,
            requirements=plan.requirements,
            retry_count=attempts,
            max_retries=self.params.max_deploy_attempts,
        )
        if error.exhausted:
            self.logger.error(
                "Deployment attempts exhausted",
                instance_id=current.instance_id,
                attempts=attempts,
                requirements=sorted(plan.requirements),
            )
            return self._fail(current.instance_id, str(error))

        backoff = min(
            self.params.backoff_base_seconds * 2 ** (attempts - 1),
            self.params.backoff_max_seconds,
        )
        return self.instances.transition(
            current.instance_id, E.DEPLOY_TIMEOUT, expected_state=S.DEPLOYING,
            cause=str(error),
            pending_offer=None, deploy_deadline=None,
            next_retry_at=self.clock.now() + timedelta(seconds=backoff),
        )

    def _fail(self, instance_id: str, cause: str) -> Optional[StrategyInstance]:
        """Move an instance to Failed and drop its plan reference."""
        with self.instances.locked(instance_id) as current:
            if current.is_terminal:
                return current
            self._release_worker(current)
            updated = self.instances.transition(
                instance_id, E.FATAL_ERROR, expected_state=current.state, cause=cause,
                assigned_worker=None, last_heartbeat=None, pending_offer=None,
                deploy_deadline=None, next_retry_at=None,
            )
            if updated is not None and updated.plan_fingerprint is not None:
                self.registry.release(updated.plan_fingerprint)
            self.logger.critical("Strategy instance failed", instance_id=instance_id, cause=cause)
            return updated

    def _persist_transition(self, instance: StrategyInstance, record: TransitionRecord) -> None:
        self.audit_store.record_transition(instance.instance_id, record)
