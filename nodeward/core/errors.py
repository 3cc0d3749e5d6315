"""
Error taxonomy for nodeward.

Three families:
- Fatal-to-run: halts the orchestrator, state stays resumable
- Transient: absorbed by RetryPolicy until its attempt cap
- Configuration: bad or missing settings (CLI exit code 1)

Health signals never raise; an unavailable signal is recorded as a reason
on the HealthSample instead.
"""

from pathlib import Path
from typing import Optional, Sequence


class NodewardError(Exception):
    """Base class for all nodeward errors."""


class ConfigError(NodewardError):
    """Configuration could not be loaded or is invalid."""


class TransientError(NodewardError):
    """A condition expected to clear on its own (DNS, package lock, ...)."""


class FatalRunError(NodewardError):
    """Halts the current orchestrator run."""


class LockHeldError(FatalRunError):
    """Another orchestrator already holds the run lock, or it cannot be taken."""

    def __init__(self, lock_path: Path, holder_pid: Optional[int] = None, reason: Optional[str] = None):
        self.lock_path = Path(lock_path)
        self.holder_pid = holder_pid
        self.reason = reason
        if reason:
            super().__init__(f"Cannot take run lock {self.lock_path}: {reason}")
            return
        holder = f" by pid {holder_pid}" if holder_pid else ""
        super().__init__(
            f"Run lock {self.lock_path} is held{holder}. "
            f"If no provisioning run is active, remove {self.lock_path} and retry."
        )


class MarkerWriteError(FatalRunError):
    """A completion marker could not be persisted."""

    def __init__(self, step_id: str, path: Path, reason: str):
        self.step_id = step_id
        self.path = Path(path)
        super().__init__(f"Cannot write marker for step '{step_id}' at {path}: {reason}")


class StepFetchError(FatalRunError):
    """The step definition could not be retrieved from its source."""

    def __init__(self, step_id: str, reason: str):
        self.step_id = step_id
        super().__init__(f"Cannot fetch definition of step '{step_id}': {reason}")


class StepExecutionError(FatalRunError):
    """A step body (or its postcondition) failed."""

    def __init__(
        self,
        step_id: str,
        reason: str,
        command: Optional[Sequence[str]] = None,
        output_tail: str = "",
    ):
        self.step_id = step_id
        self.reason = reason
        self.command = list(command) if command else None
        self.output_tail = output_tail
        super().__init__(f"Step '{step_id}' failed: {reason}")


class RetryExhaustedError(FatalRunError):
    """A transient condition did not clear within the retry budget."""

    def __init__(self, what: str, attempts: int, last_error: Optional[str] = None):
        self.what = what
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"{what} did not succeed after {attempts} attempts{detail}")


class RunInterrupted(FatalRunError):
    """The run received a termination signal."""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Interrupted by signal {signum}")
