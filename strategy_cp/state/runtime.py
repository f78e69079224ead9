"""
Runtime instance store and transition gate.

All lifecycle changes of an instance pass through InstanceStore.transition,
serialized by a per-instance lock. Heartbeat, health, sweep and operator
paths share the same gate, so different instances proceed in parallel while
a single instance never sees two transitions interleave.
"""

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

from ..errors import ConcurrencyConflict, InstanceNotFoundError
from ..logging.config import get_state_logger, log_state_transition
from ..utils.time import SystemClock, ensure_utc
from .machine import is_recorded, next_state
from .models import (
    LifecycleEvent,
    LifecycleState,
    StrategyInstance,
    TransitionRecord,
)

logger = get_state_logger(__name__)

TransitionListener = Callable[[StrategyInstance, TransitionRecord], None]


class InstanceStore:
    """Holds the current snapshot of every strategy instance."""

    def __init__(self, clock=None):
        self.logger = logger
        self.clock = clock or SystemClock()
        self._instances: dict[str, StrategyInstance] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._archived: dict[str, list[StrategyInstance]] = {}
        self._dict_lock = threading.Lock()
        self._listeners: list[TransitionListener] = []

    def add_listener(self, listener: TransitionListener) -> None:
        """Call listener(instance, record) after every recorded transition."""
        self._listeners.append(listener)

    def _lock_for(self, instance_id: str) -> threading.RLock:
        with self._dict_lock:
            if instance_id not in self._instances:
                raise InstanceNotFoundError(instance_id)
            return self._locks[instance_id]

    @contextmanager
    def locked(self, instance_id: str) -> Iterator[StrategyInstance]:
        """Hold the instance gate across a compound read-modify sequence."""
        with self._lock_for(instance_id):
            yield self.get(instance_id)

    def get_or_create(self, instance_id: str) -> StrategyInstance:
        """Get existing instance or create a new Draft one."""
        with self._dict_lock:
            if instance_id not in self._instances:
                self._instances[instance_id] = StrategyInstance(instance_id=instance_id)
                self._locks[instance_id] = threading.RLock()
                self.logger.info(
                    "Created strategy instance",
                    instance_id=instance_id,
                    initial_state=LifecycleState.DRAFT.value,
                )
            return self._instances[instance_id]

    def reset(self, instance_id: str) -> StrategyInstance:
        """
        Archive a terminal instance and start a fresh Draft under the same id.

        Raises:
            ConcurrencyConflict: If the instance is not terminal
        """
        with self._lock_for(instance_id):
            current = self.get(instance_id)
            if not current.is_terminal:
                raise ConcurrencyConflict(
                    f"Instance {instance_id} is {current.state.value}, not terminal",
                    instance_id=instance_id,
                    actual_state=current.state.value,
                )
            fresh = StrategyInstance(instance_id=instance_id)
            with self._dict_lock:
                self._archived.setdefault(instance_id, []).append(current)
                self._instances[instance_id] = fresh
            self.logger.info(
                "Archived terminal instance",
                instance_id=instance_id,
                final_state=current.state.value,
            )
            return fresh

    def archived(self, instance_id: str) -> list[StrategyInstance]:
        with self._dict_lock:
            return list(self._archived.get(instance_id, []))

    def get(self, instance_id: str) -> StrategyInstance:
        with self._dict_lock:
            try:
                return self._instances[instance_id]
            except KeyError:
                raise InstanceNotFoundError(instance_id) from None

    def find(self, instance_id: str) -> Optional[StrategyInstance]:
        with self._dict_lock:
            return self._instances.get(instance_id)

    def instances(self, state: Optional[LifecycleState] = None) -> list[StrategyInstance]:
        with self._dict_lock:
            instances = list(self._instances.values())
        if state is not None:
            instances = [i for i in instances if i.state == state]
        return sorted(instances, key=lambda i: i.instance_id)

    def ids(self) -> list[str]:
        with self._dict_lock:
            return sorted(self._instances)

    def update(self, instance_id: str,
               change: Callable[[StrategyInstance], StrategyInstance],
               expected_state: Optional[LifecycleState] = None) -> Optional[StrategyInstance]:
        """
        Apply a non-lifecycle change (heartbeat, health, offer) under the gate.

        Returns:
            Updated snapshot, or None when the expected state no longer holds
        """
        with self._lock_for(instance_id):
            current = self.get(instance_id)
            if expected_state is not None and current.state != expected_state:
                return None
            updated = change(current)
            self._store(updated)
            return updated

    def transition(
        self,
        instance_id: str,
        event: LifecycleEvent,
        expected_state: Optional[LifecycleState] = None,
        cause: str = "",
        **changes: Any,
    ) -> Optional[StrategyInstance]:
        """
        Apply a lifecycle event to an instance.

        Args:
            instance_id: Instance to transition
            event: Triggering event
            expected_state: State the caller observed; a mismatch is a no-op
            cause: Human readable cause stored in the history
            **changes: Extra instance fields to set with the new state

        Returns:
            New snapshot, or None if the instance moved on concurrently

        Raises:
            InstanceNotFoundError: Unknown instance
            StateTransitionError: Event undefined for the current state
        """
        with self._lock_for(instance_id):
            current = self.get(instance_id)
            try:
                self._check_expected(current, expected_state, event)
            except ConcurrencyConflict as e:
                self.logger.info(
                    "Stale transition ignored",
                    instance_id=instance_id,
                    event=event.value,
                    expected_state=e.expected_state,
                    actual_state=e.actual_state,
                )
                return None

            target = next_state(current.state, event)
            updated = current.with_state(target, **changes)

            record = None
            if is_recorded(current.state, event):
                record = TransitionRecord(
                    timestamp=self.clock.now(),
                    prior_state=current.state,
                    event=event,
                    new_state=target,
                    cause=cause,
                    plan_fingerprint=updated.plan_fingerprint,
                )
                updated = updated.with_record(record)

            self._store(updated)

            log_state_transition(
                self.logger,
                instance_id=instance_id,
                from_state=current.state.value,
                to_state=target.value,
                trigger=event.value,
                context={
                    "cause": cause,
                    "plan_fingerprint": updated.plan_fingerprint,
                    "worker_id": updated.assigned_worker,
                },
            )

            if record is not None:
                for listener in self._listeners:
                    listener(updated, record)

            return updated

    def plan_at(self, instance_id: str, timestamp: datetime) -> Optional[str]:
        """Fingerprint of the plan that was Active at the given time, if any."""
        timestamp = ensure_utc(timestamp)
        instance = self.get(instance_id)
        in_effect = None
        for record in instance.history:
            if record.timestamp > timestamp:
                break
            in_effect = record
        if in_effect is None or in_effect.new_state != LifecycleState.ACTIVE:
            return None
        return in_effect.plan_fingerprint

    def live_fingerprints(self) -> set[str]:
        """Fingerprints held by instances that are not terminal."""
        with self._dict_lock:
            return {
                i.plan_fingerprint for i in self._instances.values()
                if i.plan_fingerprint is not None and not i.is_terminal
            }

    def _store(self, instance: StrategyInstance) -> None:
        with self._dict_lock:
            self._instances[instance.instance_id] = instance

    @staticmethod
    def _check_expected(current: StrategyInstance,
                        expected_state: Optional[LifecycleState],
                        event: LifecycleEvent) -> None:
        if expected_state is not None and current.state != expected_state:
            raise ConcurrencyConflict(
                f"Instance {current.instance_id} left {expected_state.value} before {event.value}",
                instance_id=current.instance_id,
                expected_state=expected_state.value,
                actual_state=current.state.value,
            )
