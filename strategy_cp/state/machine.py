"""
Lifecycle transition table.

Transitions are a total function from (state, event) to the next state or an
explicit rejection. Pairs not listed here raise StateTransitionError.
Retired and Failed are terminal: nothing leaves them.
"""

from ..errors import StateTransitionError
from .models import LifecycleEvent, LifecycleState

S = LifecycleState
E = LifecycleEvent

TERMINAL_STATES = frozenset({S.RETIRED, S.FAILED})

TRANSITIONS: dict[tuple[LifecycleState, LifecycleEvent], LifecycleState] = {
    (S.DRAFT, E.COMPILE_SUCCEEDED): S.VALIDATED,
    (S.DRAFT, E.COMPILE_FAILED): S.DRAFT,
    (S.VALIDATED, E.DEPLOY_REQUESTED): S.DEPLOYING,
    (S.VALIDATED, E.PLAN_UPDATED): S.VALIDATED,
    (S.DEPLOYING, E.WORKER_ACCEPTED): S.ACTIVE,
    (S.DEPLOYING, E.DEPLOY_TIMEOUT): S.VALIDATED,
    (S.DEPLOYING, E.PLAN_UPDATED): S.DEPLOYING,
    (S.DEPLOYING, E.PAUSE_REQUESTED): S.PAUSED,
    (S.ACTIVE, E.HEARTBEAT_MISSED): S.PAUSED,
    (S.ACTIVE, E.HEALTH_CRITICAL): S.PAUSED,
    (S.ACTIVE, E.PAUSE_REQUESTED): S.PAUSED,
    (S.ACTIVE, E.PLAN_UPDATED): S.DEPLOYING,
    (S.PAUSED, E.RESUME_REQUESTED): S.DEPLOYING,
    (S.PAUSED, E.PLAN_UPDATED): S.PAUSED,
    (S.PAUSED, E.RETIRE_REQUESTED): S.RETIRED,
}

for _state in S:
    if _state not in TERMINAL_STATES:
        TRANSITIONS[(_state, E.FATAL_ERROR)] = S.FAILED

# Self-loops that surface diagnostics but leave no trace in the history
UNRECORDED = frozenset({(S.DRAFT, E.COMPILE_FAILED)})


def next_state(current: LifecycleState, event: LifecycleEvent) -> LifecycleState:
    """
    Look up the state an event leads to.

    Raises:
        StateTransitionError: If the event is undefined for the current state
    """
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise StateTransitionError(
            f"Event '{event.value}' is not allowed in state '{current.value}'",
            current_state=current.value,
            attempted_transition=event.value,
        ) from None


def is_allowed(current: LifecycleState, event: LifecycleEvent) -> bool:
    return (current, event) in TRANSITIONS


def is_recorded(current: LifecycleState, event: LifecycleEvent) -> bool:
    return (current, event) not in UNRECORDED


def allowed_events(current: LifecycleState) -> list[LifecycleEvent]:
    """Events accepted in a state, in declaration order."""
    return [event for (state, event) in TRANSITIONS if state == current]
