"""Container lifecycle state machine.

This module exposes:

- ``ContainerState``    — enum of the lifecycle states of one sandbox container.
- ``ContainerEvent``    — enum of events that drive state transitions.
- ``VALID_TRANSITIONS`` — frozenset of (from, to) pairs.
- ``validate_transition`` — pure guard evaluator.
- ``apply_event``       — pure function: state x event → next state.
- ``validate_trace``    — verifies a sequence of ContainerState values.
- ``reachable_from``    — immediate successors of a state.
- ``LifecycleTracker``  — stateful wrapper held by each ``ExecutionContext``.

Normal path::

    PENDING → CREATED → RUNNING → EXECUTED → STOPPING → REMOVED

Abnormal edges: a graceful stop that does not complete within the grace
period escalates ``RUNNING``/``STOPPING → KILLED``; a container that failed
to start (``CREATED``) or was killed goes straight to removal.
Pooled containers return from ``EXECUTED`` to ``RUNNING`` via ``RESET``
once their workspace has been cleared.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

from swarmbox.sandbox.exceptions import SandboxInvariantError

if TYPE_CHECKING:
    from collections.abc import Sequence

# ---------------------------------------------------------------------------
# State and event enumerations
# ---------------------------------------------------------------------------


class ContainerState(StrEnum):
    """Lifecycle states of a sandbox container."""

    PENDING = "pending"
    CREATED = "created"
    RUNNING = "running"
    EXECUTED = "executed"
    STOPPING = "stopping"
    KILLED = "killed"
    REMOVED = "removed"


class ContainerEvent(StrEnum):
    """Events that drive container state transitions."""

    CREATE = "create"
    """Runtime ``create`` succeeded.  Applicable from: PENDING."""

    START = "start"
    """Runtime ``start`` succeeded.  Applicable from: CREATED."""

    EXEC_COMPLETE = "exec_complete"
    """The task command returned (any exit code).  Applicable from: RUNNING."""

    STOP = "stop"
    """Graceful stop requested.  Applicable from: CREATED, RUNNING, EXECUTED."""

    KILL = "kill"
    """Graceful stop failed or timed out.  Applicable from: RUNNING, EXECUTED, STOPPING."""

    REMOVE = "remove"
    """Container removed.  Applicable from: CREATED, STOPPING, KILLED."""

    RESET = "reset"
    """Warm container returned to service after a task.  Applicable from: EXECUTED."""


# ---------------------------------------------------------------------------
# Transition tables
# ---------------------------------------------------------------------------

#: Each event maps to the set of states it may fire from and its target.
_EVENT_TRANSITION: dict[ContainerEvent, tuple[frozenset[ContainerState], ContainerState]] = {
    ContainerEvent.CREATE: (frozenset({ContainerState.PENDING}), ContainerState.CREATED),
    ContainerEvent.START: (frozenset({ContainerState.CREATED}), ContainerState.RUNNING),
    ContainerEvent.EXEC_COMPLETE: (
        frozenset({ContainerState.RUNNING}),
        ContainerState.EXECUTED,
    ),
    ContainerEvent.STOP: (
        frozenset({ContainerState.CREATED, ContainerState.RUNNING, ContainerState.EXECUTED}),
        ContainerState.STOPPING,
    ),
    ContainerEvent.KILL: (
        frozenset({ContainerState.RUNNING, ContainerState.EXECUTED, ContainerState.STOPPING}),
        ContainerState.KILLED,
    ),
    ContainerEvent.REMOVE: (
        frozenset({ContainerState.CREATED, ContainerState.STOPPING, ContainerState.KILLED}),
        ContainerState.REMOVED,
    ),
    ContainerEvent.RESET: (frozenset({ContainerState.EXECUTED}), ContainerState.RUNNING),
}

#: All valid (from_state, to_state) pairs, derived from the event table.
VALID_TRANSITIONS: frozenset[tuple[ContainerState, ContainerState]] = frozenset(
    (src, dst) for sources, dst in _EVENT_TRANSITION.values() for src in sources
)

#: States from which no further transition is possible.
TERMINAL_STATES: frozenset[ContainerState] = frozenset({ContainerState.REMOVED})


# ---------------------------------------------------------------------------
# Pure guard functions
# ---------------------------------------------------------------------------


def validate_transition(from_state: ContainerState, to_state: ContainerState) -> bool:
    """Return ``True`` iff ``from_state → to_state`` is a valid transition.

    Raises
    ------
    SandboxInvariantError
        If the pair is not in ``VALID_TRANSITIONS``.  The message lists the
        valid successors of *from_state*.
    """
    if (from_state, to_state) in VALID_TRANSITIONS:
        return True
    valid_successors = sorted(t.value for f, t in VALID_TRANSITIONS if f == from_state)
    raise SandboxInvariantError(
        invariant="state_transition",
        detail=(
            f"Invalid container transition {from_state.value!r} -> {to_state.value!r}. "
            f"Valid successors of {from_state.value!r}: {valid_successors}"
        ),
    )


def apply_event(state: ContainerState, event: ContainerEvent) -> ContainerState:
    """Apply *event* to *state* and return the resulting next state.

    Pure function.  Raises ``SandboxInvariantError`` if *event* is not
    applicable from *state*.
    """
    sources, next_state = _EVENT_TRANSITION[event]
    if state not in sources:
        raise SandboxInvariantError(
            invariant="state_transition",
            detail=(
                f"Event {event.value!r} requires one of "
                f"{sorted(s.value for s in sources)}, but current state is {state.value!r}"
            ),
        )
    return next_state


def can_apply(state: ContainerState, event: ContainerEvent) -> bool:
    """Return whether *event* is applicable from *state* (never raises)."""
    return state in _EVENT_TRANSITION[event][0]


def validate_trace(trace: Sequence[ContainerState]) -> None:
    """Validate consecutive pairs of *trace*; raise on the first invalid pair.

    A trace of length 0 or 1 is trivially valid.
    """
    for i in range(len(trace) - 1):
        validate_transition(trace[i], trace[i + 1])


def reachable_from(state: ContainerState) -> frozenset[ContainerState]:
    """Return the set of states directly reachable from *state* in one step."""
    return frozenset(t for f, t in VALID_TRANSITIONS if f == state)


# ---------------------------------------------------------------------------
# Stateful wrapper for runtime use
# ---------------------------------------------------------------------------


class LifecycleTracker:
    """Tracks the state of one container and records its history.

    ``state`` evolves only via ``advance()``; the property has no setter.
    A rejected event leaves the state unchanged.

    Usage::

        tracker = LifecycleTracker()
        tracker.advance(ContainerEvent.CREATE)  # PENDING → CREATED
        tracker.advance(ContainerEvent.START)   # CREATED → RUNNING
    """

    __slots__ = ("_history", "_state")

    def __init__(self) -> None:
        self._state: ContainerState = ContainerState.PENDING
        self._history: list[ContainerState] = [ContainerState.PENDING]

    @property
    def state(self) -> ContainerState:
        """Current container state (read-only)."""
        return self._state

    @property
    def history(self) -> tuple[ContainerState, ...]:
        """Every state visited, oldest first."""
        return tuple(self._history)

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def advance(self, event: ContainerEvent) -> ContainerState:
        """Apply *event* to the current state and advance.

        Raises
        ------
        SandboxInvariantError
            If *event* is not applicable from the current state.
        """
        next_state = apply_event(self._state, event)
        self._state = next_state
        self._history.append(next_state)
        return next_state

    def try_advance(self, event: ContainerEvent) -> bool:
        """Advance if *event* is applicable; return whether it was."""
        if not can_apply(self._state, event):
            return False
        self.advance(event)
        return True

    def __repr__(self) -> str:
        return f"LifecycleTracker(state={self._state.value!r})"
