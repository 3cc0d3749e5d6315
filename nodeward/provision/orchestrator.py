"""
Orchestrator - runs the ordered provisioning steps under the run lock.

Each step is skipped when its marker exists; otherwise its current body is
fetched, executed and, on success, the marker is set. The first fatal error
halts the run with every completed step still marked, so the next
invocation resumes at the failed step.
"""

import signal
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from nodeward.core.audit import AuditLogger
from nodeward.core.config import NodewardConfig
from nodeward.core.errors import FatalRunError, LockHeldError, RunInterrupted, StepExecutionError
from nodeward.core.shell import CommandRunner
from nodeward.provision.actions import ActionExecutor
from nodeward.provision.fetcher import StepDefinitionFetcher, StepSource, source_for
from nodeward.provision.lock import RunLock
from nodeward.provision.markers import MarkerStore
from nodeward.provision.state_machine import RunState, RunStateMachine
from nodeward.provision.steps import Step
from nodeward.supervisor.systemd import ServiceSupervisor, SystemdSupervisor

# (event, step) where event is one of: skip, start, complete, failed
StepCallback = Callable[[str, Step], None]


@dataclass
class RunReport:
    """Outcome of one orchestrator run."""

    state: RunState
    executed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[FatalRunError] = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.state is RunState.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.name,
            "executed": self.executed,
            "skipped": self.skipped,
            "failed_step": self.failed_step,
            "error": str(self.error) if self.error else None,
            "duration_ms": self.duration_ms,
        }


class Orchestrator:
    """Drives provisioning steps once, resumably.

    Usage:
        orchestrator = build_orchestrator(config)
        report = orchestrator.run()
        if not report.ok:
            ...
    """

    def __init__(
        self,
        step_ids: List[str],
        markers: MarkerStore,
        lock: RunLock,
        fetcher: StepDefinitionFetcher,
        executor: ActionExecutor,
        audit: Optional[AuditLogger] = None,
        on_step: Optional[StepCallback] = None,
        handle_signals: bool = True,
    ):
        self.step_ids = list(step_ids)
        self.markers = markers
        self.lock = lock
        self.fetcher = fetcher
        self.executor = executor
        self.audit = audit
        self.on_step = on_step
        self.handle_signals = handle_signals

    def plan(self) -> List[Step]:
        """The ordered step list with marker references."""
        return [
            Step(
                ordinal=i + 1,
                name=step_id,
                locator=self.fetcher.source.locator(step_id),
                marker_path=self.markers.path_for(step_id),
            )
            for i, step_id in enumerate(self.step_ids)
        ]

    def run(self) -> RunReport:
        """Run all pending steps.

        Fatal errors are captured in the report rather than raised; the
        lock is released on every exit path.
        """
        start = time.time()
        steps = self.plan()
        sm = RunStateMachine(total_steps=len(steps))
        report = RunReport(state=sm.state)

        try:
            token = self.lock.acquire()
        except LockHeldError as e:
            report.error = e
            self._log("run", "failed", {"reason": "lock_held", "error": str(e)})
            return report

        previous_handlers = self._install_signal_handlers()
        try:
            sm.start(lock_held=True)
            self._log("run", "start", {"steps": self.step_ids})

            while not sm.at_end:
                step = steps[sm.index]
                try:
                    try:
                        self._run_step(step, report)
                    except OSError as e:
                        raise StepExecutionError(step.name, f"host error: {e}") from e
                except FatalRunError as e:
                    sm.fail(str(e))
                    report.failed_step = step.name
                    report.error = e
                    self._emit("failed", step)
                    action = "interrupted" if isinstance(e, RunInterrupted) else "failed"
                    self._log("step", "failed", {"step": step.name, "error": str(e)})
                    self._log("run", action, {"step": step.name, "error": str(e)})
                    break
                sm.advance()

            if sm.state is RunState.RUNNING:
                sm.complete()
                self._log(
                    "run",
                    "complete",
                    {"executed": report.executed, "skipped": report.skipped},
                    duration_ms=int((time.time() - start) * 1000),
                )
        except Exception as e:
            if self.audit:
                self.audit.log_error(e, {"step_index": sm.index})
            raise
        finally:
            self._restore_signal_handlers(previous_handlers)
            self.lock.release(token)

        report.state = sm.state
        report.duration_ms = int((time.time() - start) * 1000)
        return report

    def _run_step(self, step: Step, report: RunReport) -> None:
        if self.markers.has(step.name):
            report.skipped.append(step.name)
            self._emit("skip", step)
            self._log("step", "skip", {"step": step.name})
            return

        step_start = time.time()
        self._emit("start", step)
        self._log("step", "start", {"step": step.name, "locator": step.locator})

        definition = self.fetcher.fetch(step.name)
        step.fingerprint = definition.fingerprint
        self.executor.execute(definition)
        self.markers.set(step.name, fingerprint=definition.fingerprint)

        report.executed.append(step.name)
        self._emit("complete", step)
        self._log(
            "step",
            "complete",
            {"step": step.name, "fingerprint": definition.fingerprint},
            duration_ms=int((time.time() - step_start) * 1000),
        )

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _install_signal_handlers(self) -> Dict[int, Any]:
        if not self.handle_signals or threading.current_thread() is not threading.main_thread():
            return {}

        def interrupt(signum, frame):
            raise RunInterrupted(signum)

        previous = {}
        for signum in (signal.SIGTERM, signal.SIGINT):
            previous[signum] = signal.signal(signum, interrupt)
        return previous

    def _restore_signal_handlers(self, previous: Dict[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def _emit(self, event: str, step: Step) -> None:
        if self.on_step:
            self.on_step(event, step)

    def _log(self, category: str, action: str, details: Dict[str, Any], duration_ms: Optional[int] = None) -> None:
        if self.audit:
            self.audit.log(category, action, details, duration_ms=duration_ms)


def build_orchestrator(
    config: NodewardConfig,
    runner: Optional[CommandRunner] = None,
    supervisor: Optional[ServiceSupervisor] = None,
    source: Optional[StepSource] = None,
    audit: Optional[AuditLogger] = None,
    on_step: Optional[StepCallback] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Orchestrator:
    """Wire an Orchestrator from configuration."""
    runner = runner or CommandRunner(default_timeout=config.steps.timeout)
    audit = audit or AuditLogger(config.run_log_path, retention_days=config.audit.retention_days)
    supervisor = supervisor or SystemdSupervisor(config.service.unit_name, runner, audit=audit)
    source = source or source_for(config.steps.source_url, timeout=config.steps.fetch_timeout)

    return Orchestrator(
        step_ids=config.steps.order,
        markers=MarkerStore(config.markers_dir),
        lock=RunLock(config.lock_path, liveness_check=config.lock.liveness_check, audit=audit),
        fetcher=StepDefinitionFetcher(source, config.cache_dir, audit=audit),
        executor=ActionExecutor(config, runner, supervisor, audit=audit, sleep=sleep),
        audit=audit,
        on_step=on_step,
    )
