"""
RemediationController - decide on and apply a bounded restart.

    healthy                      → noop, exit 0 (flag ignored)
    unhealthy, no auto-remediate → noop, exit 2
    unhealthy, auto-remediate    → one restart, then re-sample until healthy
                                   or verify_timeout; exit 0 or 2

A restart is never issued twice by the same apply().
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from nodeward.core.audit import AuditLogger
from nodeward.health.probe import HealthProbe, HealthSample
from nodeward.supervisor.systemd import ServiceSupervisor

EXIT_OK = 0
EXIT_UNHEALTHY = 2


class RemediationDecision(Enum):
    NOOP = "noop"
    RESTART = "restart"


@dataclass
class RemediationOutcome:
    """Result of applying a decision."""

    decision: RemediationDecision
    success: bool
    exit_code: int
    detail: str
    resample: Optional[HealthSample] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "success": self.success,
            "exit_code": self.exit_code,
            "detail": self.detail,
            "resample": self.resample.to_dict() if self.resample else None,
            "attempts": self.attempts,
        }


class RemediationController:
    """Turns health samples into remediation.

    Usage:
        controller = RemediationController(supervisor, probe, verify_timeout=60)
        sample = probe.sample()
        decision = controller.evaluate(sample, auto_remediate=True)
        outcome = controller.apply(decision, sample)
        sys.exit(outcome.exit_code)
    """

    def __init__(
        self,
        supervisor: ServiceSupervisor,
        probe: HealthProbe,
        settle_seconds: float = 5.0,
        verify_timeout: float = 60.0,
        poll_interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        audit: Optional[AuditLogger] = None,
    ):
        self.supervisor = supervisor
        self.probe = probe
        self.settle_seconds = settle_seconds
        self.verify_timeout = verify_timeout
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.clock = clock
        self.audit = audit

    def evaluate(self, sample: HealthSample, auto_remediate: bool) -> RemediationDecision:
        if sample.healthy or not auto_remediate:
            decision = RemediationDecision.NOOP
        else:
            decision = RemediationDecision.RESTART

        self._log(
            "decision",
            {"decision": decision.value, "score": sample.score, "auto_remediate": auto_remediate},
        )
        return decision

    def apply(self, decision: RemediationDecision, sample: HealthSample) -> RemediationOutcome:
        if decision is RemediationDecision.NOOP:
            if sample.healthy:
                return RemediationOutcome(decision, True, EXIT_OK, f"healthy (score {sample.score})")
            return RemediationOutcome(
                decision, False, EXIT_UNHEALTHY, f"unhealthy (score {sample.score}); no remediation requested"
            )

        result = self.supervisor.restart()
        self._log("restart", {"unit": self.supervisor.unit_name, "ok": result.ok, "returncode": result.returncode})
        if not result.ok:
            outcome = RemediationOutcome(
                decision,
                False,
                EXIT_UNHEALTHY,
                f"restart of {self.supervisor.unit_name} failed: {result.tail(5) or result.returncode}",
            )
            self._log("failed", outcome.to_dict())
            return outcome

        return self._verify(decision)

    def check(self, auto_remediate: bool) -> RemediationOutcome:
        """Sample, decide and apply in one call."""
        sample = self.probe.sample()
        return self.apply(self.evaluate(sample, auto_remediate), sample)

    def _verify(self, decision: RemediationDecision) -> RemediationOutcome:
        started = self.clock()
        if self.settle_seconds > 0:
            self.sleep(self.settle_seconds)

        attempts = 0
        resample = None
        while True:
            resample = self.probe.sample()
            attempts += 1
            if resample.healthy:
                outcome = RemediationOutcome(
                    decision,
                    True,
                    EXIT_OK,
                    f"healthy after restart (score {resample.score})",
                    resample=resample,
                    attempts=attempts,
                )
                self._log("verified", outcome.to_dict())
                return outcome

            if self.clock() - started + self.poll_interval > self.verify_timeout:
                break
            self.sleep(self.poll_interval)

        outcome = RemediationOutcome(
            decision,
            False,
            EXIT_UNHEALTHY,
            f"still unhealthy {self.verify_timeout:g}s after restart (score {resample.score})",
            resample=resample,
            attempts=attempts,
        )
        self._log("failed", outcome.to_dict())
        return outcome

    def _log(self, action: str, details: Dict[str, Any]) -> None:
        if self.audit:
            self.audit.log("remediation", action, details)
