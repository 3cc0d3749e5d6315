"""
RunStateMachine - the orchestrator's run lifecycle.

    NOT_STARTED → RUNNING(i) → RUNNING(i+1) → ... → COMPLETED
                            ↘ FAILED(i)

RUNNING carries the index of the current step. Entering RUNNING requires
the run lock; COMPLETED requires every step to have been passed.
"""

from enum import Enum, auto
from typing import Dict, List, Optional, Set, Tuple


class RunState(Enum):
    """States of one orchestrator run."""

    NOT_STARTED = auto()
    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()


class InvalidTransition(Exception):
    """Raised when a transition is not allowed from the current state."""


class RunStateMachine:
    """Tracks the run state and the current step index.

    Usage:
        sm = RunStateMachine(total_steps=6)
        sm.start(lock_held=True)
        while sm.state is RunState.RUNNING and not sm.at_end:
            ...
            sm.advance()
        sm.complete()
    """

    TRANSITIONS: Dict[RunState, Set[RunState]] = {
        RunState.NOT_STARTED: {RunState.RUNNING},
        RunState.RUNNING: {RunState.RUNNING, RunState.COMPLETED, RunState.FAILED},
        RunState.COMPLETED: set(),
        RunState.FAILED: set(),
    }

    def __init__(self, total_steps: int):
        self.total_steps = total_steps
        self.state = RunState.NOT_STARTED
        self.index = 0
        self.failed_index: Optional[int] = None
        self.history: List[Tuple[RunState, str]] = []

    @property
    def at_end(self) -> bool:
        return self.index >= self.total_steps

    @property
    def is_terminal(self) -> bool:
        return not self.TRANSITIONS[self.state]

    def can_transition_to(self, target: RunState) -> bool:
        return target in self.TRANSITIONS[self.state]

    def start(self, lock_held: bool) -> None:
        """NOT_STARTED → RUNNING(0)."""
        if not lock_held:
            raise InvalidTransition("cannot enter RUNNING without the run lock")
        self._transition(RunState.RUNNING, "started")
        self.index = 0

    def advance(self) -> None:
        """RUNNING(i) → RUNNING(i+1)."""
        if self.state is not RunState.RUNNING or self.at_end:
            raise InvalidTransition(f"cannot advance from {self.describe()}")
        self._transition(RunState.RUNNING, f"step {self.index} passed")
        self.index += 1

    def complete(self) -> None:
        """RUNNING(n) → COMPLETED."""
        if not self.at_end:
            raise InvalidTransition(f"cannot complete at step {self.index} of {self.total_steps}")
        self._transition(RunState.COMPLETED, "all steps passed")

    def fail(self, reason: str) -> None:
        """RUNNING(i) → FAILED(i)."""
        self._transition(RunState.FAILED, reason)
        self.failed_index = self.index

    def describe(self) -> str:
        if self.state is RunState.RUNNING:
            return f"RUNNING({self.index})"
        if self.state is RunState.FAILED:
            return f"FAILED({self.failed_index})"
        return self.state.name

    def _transition(self, target: RunState, reason: str) -> None:
        if not self.can_transition_to(target):
            raise InvalidTransition(f"{self.describe()} → {target.name} not allowed")
        self.history.append((self.state, reason))
        self.state = target
