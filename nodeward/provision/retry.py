"""
RetryPolicy - bounded retry with backoff and a per-attempt hook.

Used for every transient condition: name resolution, package-manager lock
contention and dependency-trust convergence. The hook runs between failed
attempts (never after the last one) so a caller can apply a secondary
remediation before trying again.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, TypeVar

from nodeward.core.errors import RetryExhaustedError, TransientError

T = TypeVar("T")

Backoff = Callable[[int], float]


def linear_backoff(base: float) -> Backoff:
    """attempt * base seconds."""
    return lambda attempt: attempt * base


def constant_backoff(delay: float) -> Backoff:
    return lambda attempt: delay


def backoff_for(strategy: str, base: float) -> Backoff:
    """Backoff function for a configured strategy name."""
    if strategy == "linear":
        return linear_backoff(base)
    if strategy == "constant":
        return constant_backoff(base)
    raise ValueError(f"Unknown backoff strategy: {strategy}")


@dataclass
class RetryResult(Generic[T]):
    """Outcome of a retried operation."""

    ok: bool
    attempts: int
    value: Optional[T] = None
    last_error: Optional[str] = None


@dataclass
class RetryPolicy:
    """Retry an operation up to max_attempts times.

    The operation reports failure by returning a falsy value or raising
    TransientError. Any other exception propagates immediately.

    Usage:
        policy = RetryPolicy(max_attempts=10, backoff=linear_backoff(2.0))
        result = policy.run(lambda: resolve("github.com"))
        if not result.ok:
            ...
    """

    max_attempts: int
    backoff: Backoff = field(default_factory=lambda: linear_backoff(1.0))
    on_retry: Optional[Callable[[int, "RetryResult[Any]"], None]] = None
    sleep: Callable[[float], None] = time.sleep
    description: str = "operation"

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def run(self, operation: Callable[[], T]) -> RetryResult[T]:
        """Execute operation until it succeeds or attempts run out."""
        last_error: Optional[str] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                value = operation()
            except TransientError as e:
                value = None
                last_error = str(e) or type(e).__name__
            else:
                if value:
                    return RetryResult(ok=True, attempts=attempt, value=value, last_error=last_error)
                last_error = f"{self.description} reported failure"

            if attempt == self.max_attempts:
                break

            if self.on_retry:
                self.on_retry(attempt, RetryResult(ok=False, attempts=attempt, last_error=last_error))

            delay = self.backoff(attempt)
            if delay > 0:
                self.sleep(delay)

        return RetryResult(ok=False, attempts=self.max_attempts, last_error=last_error)

    def run_or_raise(self, operation: Callable[[], T]) -> T:
        """Like run(), but escalate exhaustion to RetryExhaustedError."""
        result = self.run(operation)
        if not result.ok:
            raise RetryExhaustedError(self.description, result.attempts, result.last_error)
        return result.value
