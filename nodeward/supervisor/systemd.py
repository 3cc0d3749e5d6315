"""
Service supervisor interface and its systemd implementation.

The supervisor's view of the unit is authoritative: both the orchestrator
(service actions) and the health path (status, restart) go through it.
"""

import os
import signal
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, List, Optional

from nodeward.core.audit import AuditLogger
from nodeward.core.shell import CommandResult, CommandRunner
from nodeward.supervisor.unit import UnitDescriptor

SYSTEMCTL_TIMEOUT = 30


class ServiceSupervisor(ABC):
    """Operations nodeward needs from a service supervisor."""

    unit_name: str

    @abstractmethod
    def start(self) -> CommandResult:
        pass

    @abstractmethod
    def stop(self) -> CommandResult:
        pass

    @abstractmethod
    def restart(self) -> CommandResult:
        pass

    @abstractmethod
    def enable(self) -> CommandResult:
        pass

    @abstractmethod
    def unmask(self) -> CommandResult:
        pass

    @abstractmethod
    def daemon_reload(self) -> CommandResult:
        pass

    @abstractmethod
    def is_active(self) -> bool:
        """Whether the supervisor reports the unit as active."""

    @abstractmethod
    def main_pid(self) -> int:
        """Main process id of the unit, 0 when not running."""

    @abstractmethod
    def status_text(self) -> str:
        pass

    @abstractmethod
    def logs(self, lines: int = 50) -> str:
        pass

    @abstractmethod
    def write_unit(self, descriptor: UnitDescriptor, path: Path) -> None:
        pass

    def wait_stopped(
        self,
        wait_seconds: float,
        sleep: Callable[[float], None] = time.sleep,
        poll: float = 1.0,
    ) -> bool:
        """Poll until the unit has no main process or wait_seconds elapse."""
        waited = 0.0
        while True:
            if self.main_pid() == 0:
                return True
            if waited >= wait_seconds:
                return False
            sleep(poll)
            waited += poll


class SystemdSupervisor(ServiceSupervisor):
    """ServiceSupervisor backed by systemctl and journalctl.

    Usage:
        supervisor = SystemdSupervisor("demos-node.service", CommandRunner())
        if not supervisor.is_active():
            supervisor.restart()
    """

    def __init__(
        self,
        unit_name: str,
        runner: Optional[CommandRunner] = None,
        timeout: float = SYSTEMCTL_TIMEOUT,
        audit: Optional[AuditLogger] = None,
    ):
        self.unit_name = unit_name
        self.runner = runner or CommandRunner()
        self.timeout = timeout
        self.audit = audit

    def start(self) -> CommandResult:
        return self._control("start")

    def stop(self) -> CommandResult:
        return self._control("stop")

    def restart(self) -> CommandResult:
        return self._control("restart")

    def enable(self) -> CommandResult:
        return self._systemctl("enable", self.unit_name)

    def unmask(self) -> CommandResult:
        return self._systemctl("unmask", self.unit_name)

    def daemon_reload(self) -> CommandResult:
        return self._systemctl("daemon-reload")

    def is_active(self) -> bool:
        return self._systemctl("is-active", "--quiet", self.unit_name).ok

    def main_pid(self) -> int:
        result = self._systemctl("show", "-p", "MainPID", "--value", self.unit_name)
        if not result.ok:
            return 0
        try:
            return int(result.stdout.strip() or 0)
        except ValueError:
            return 0

    def status_text(self) -> str:
        # Exit code 3 means inactive; the text is still what we want
        result = self._systemctl("status", "--no-pager", self.unit_name)
        return (result.stdout or result.stderr).rstrip()

    def logs(self, lines: int = 50) -> str:
        result = self.runner.run(
            ["journalctl", "-u", self.unit_name, "-n", str(lines), "--no-pager"],
            timeout=self.timeout,
        )
        return (result.stdout or result.stderr).rstrip()

    def write_unit(self, descriptor: UnitDescriptor, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(descriptor.render())
        os.chmod(path, 0o644)

    def _control(self, verb: str) -> CommandResult:
        result = self._systemctl(verb, self.unit_name)
        if self.audit:
            self.audit.log(
                "service",
                verb,
                {"unit": self.unit_name, "ok": result.ok, "returncode": result.returncode},
            )
        return result

    def _systemctl(self, *args: str) -> CommandResult:
        return self.runner.run(["systemctl", *args], timeout=self.timeout)


def find_processes(pattern: str, runner: CommandRunner, timeout: float = 10) -> List[int]:
    """Pids whose full command line matches pattern (pgrep -f)."""
    result = runner.run(["pgrep", "-f", pattern], timeout=timeout)
    pids = []
    if result.returncode != 0:
        return pids
    own = os.getpid()
    for line in result.stdout.split():
        try:
            pid = int(line)
        except ValueError:
            continue
        if pid != own:
            pids.append(pid)
    return pids


def terminate_processes(
    pids: List[int],
    grace: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
    kill: Callable[[int, int], None] = os.kill,
) -> List[int]:
    """SIGTERM each pid, then SIGKILL survivors after grace seconds.

    Returns:
        Pids that had to be force-killed
    """
    for pid in pids:
        try:
            kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            continue

    if not pids:
        return []
    sleep(grace)

    forced = []
    for pid in pids:
        try:
            kill(pid, 0)
        except ProcessLookupError:
            continue
        try:
            kill(pid, signal.SIGKILL)
            forced.append(pid)
        except ProcessLookupError:
            continue
    return forced
