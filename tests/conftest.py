"""
Shared pytest fixtures for nodeward tests.

Provides:
- A configuration rooted in a temporary directory
- FakeRunner: scripted command results, records every call
- FakeSupervisor: in-memory service state
- FakeStepSource: step bodies held in a dict
- Helpers for writing step bodies and config files
"""

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest
import yaml

from nodeward.core.audit import AuditLogger
from nodeward.core.config import NodewardConfig
from nodeward.core.errors import StepFetchError
from nodeward.core.shell import CommandResult, CommandRunner
from nodeward.provision.fetcher import StepSource
from nodeward.provision.steps import fingerprint
from nodeward.supervisor.systemd import ServiceSupervisor
from nodeward.supervisor.unit import UnitDescriptor

ResultSpec = Union[int, CommandResult, Callable[[List[str]], CommandResult]]


# ----------------------------------------------------------------------
# Fakes
# ----------------------------------------------------------------------


class FakeRunner(CommandRunner):
    """CommandRunner that never spawns processes.

    Rules match on an argv prefix; the first matching rule wins. A rule
    with a list of results pops one per call and repeats the last.
    Unmatched commands succeed with empty output.
    """

    def __init__(self):
        super().__init__()
        self.calls: List[Dict[str, Any]] = []
        self._rules: List[Tuple[Tuple[str, ...], List[ResultSpec]]] = []

    def on(self, prefix: Sequence[str], *results: ResultSpec) -> "FakeRunner":
        self._rules.append((tuple(prefix), list(results) or [0]))
        return self

    def run(self, argv, timeout=None, env=None, cwd=None, input=None) -> CommandResult:
        argv = list(argv)
        self.calls.append({"argv": argv, "timeout": timeout, "env": env, "cwd": cwd})

        for prefix, results in self._rules:
            if tuple(argv[: len(prefix)]) == prefix:
                spec = results.pop(0) if len(results) > 1 else results[0]
                return _to_result(spec, argv)
        return CommandResult(argv=argv, returncode=0)

    def commands(self) -> List[List[str]]:
        return [c["argv"] for c in self.calls]

    def count(self, prefix: Sequence[str]) -> int:
        prefix = tuple(prefix)
        return sum(1 for argv in self.commands() if tuple(argv[: len(prefix)]) == prefix)


def _to_result(spec: ResultSpec, argv: List[str]) -> CommandResult:
    if isinstance(spec, CommandResult):
        return CommandResult(
            argv=argv,
            returncode=spec.returncode,
            stdout=spec.stdout,
            stderr=spec.stderr,
            timed_out=spec.timed_out,
        )
    if callable(spec):
        return spec(argv)
    return CommandResult(argv=argv, returncode=spec)


class FakeSupervisor(ServiceSupervisor):
    """In-memory supervisor.

    `after_restart` is a list of (active, pid) states applied on each
    restart; the last one repeats.
    """

    def __init__(self, active: bool = True, pid: int = 4242, restart_ok: bool = True):
        self.unit_name = "demos-node.service"
        self.active = active
        self.pid = pid
        self.restart_ok = restart_ok
        self.after_restart: List[Tuple[bool, int]] = [(True, 4343)]
        self.calls: List[str] = []
        self.pid_sequence: List[int] = []

    def _ok(self, verb: str, ok: bool = True) -> CommandResult:
        self.calls.append(verb)
        return CommandResult(argv=["systemctl", verb, self.unit_name], returncode=0 if ok else 1)

    def start(self):
        self.active = True
        return self._ok("start")

    def stop(self):
        self.active = False
        return self._ok("stop")

    def restart(self):
        if self.restart_ok:
            state = self.after_restart.pop(0) if len(self.after_restart) > 1 else self.after_restart[0]
            self.active, self.pid = state
        return self._ok("restart", self.restart_ok)

    def enable(self):
        return self._ok("enable")

    def unmask(self):
        return self._ok("unmask")

    def daemon_reload(self):
        return self._ok("daemon_reload")

    def is_active(self) -> bool:
        return self.active

    def main_pid(self) -> int:
        if self.pid_sequence:
            return self.pid_sequence.pop(0)
        return self.pid

    def status_text(self) -> str:
        return f"{self.unit_name} - {'active (running)' if self.active else 'inactive (dead)'}"

    def logs(self, lines: int = 50) -> str:
        return "\n".join(f"log line {i}" for i in range(lines))

    def write_unit(self, descriptor: UnitDescriptor, path: Path) -> None:
        self.calls.append("write_unit")
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        Path(path).write_text(descriptor.render())

    def restarts(self) -> int:
        return self.calls.count("restart")


class FakeStepSource(StepSource):
    """Step bodies kept in memory; counts remote traffic."""

    def __init__(self, bodies: Optional[Dict[str, str]] = None):
        self.bodies: Dict[str, str] = dict(bodies or {})
        self.unreachable = False
        self.fingerprint_calls = 0
        self.downloads: List[str] = []
        # Lets a test advertise a fingerprint that does not match the body
        self.advertised: Dict[str, str] = {}

    def locator(self, step_id: str) -> str:
        return f"fake://{step_id}.yaml"

    def remote_fingerprint(self, step_id: str) -> str:
        self.fingerprint_calls += 1
        self._check(step_id)
        return self.advertised.get(step_id) or fingerprint(self.bodies[step_id])

    def download(self, step_id: str) -> str:
        self._check(step_id)
        self.downloads.append(step_id)
        return self.bodies[step_id]

    def _check(self, step_id: str) -> None:
        if self.unreachable:
            raise StepFetchError(step_id, "source unreachable")
        if step_id not in self.bodies:
            raise StepFetchError(step_id, "not found")


def step_body(step_id: str, actions: Optional[List[Dict[str, Any]]] = None, **extra: Any) -> str:
    """YAML text of a step body (defaults to a single `true` command)."""
    data: Dict[str, Any] = {"step": step_id, "actions": actions or [{"type": "run", "command": ["true"]}]}
    data.update(extra)
    return yaml.safe_dump(data, sort_keys=False)


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------


@pytest.fixture
def config_dict(tmp_path: Path) -> Dict[str, Any]:
    """Configuration confined to tmp_path, with instant retries."""
    return {
        "state_dir": str(tmp_path / "state"),
        "service": {
            "unit_path": str(tmp_path / "systemd" / "demos-node.service"),
            "environment_file": str(tmp_path / "etc" / "env"),
            "install_root": str(tmp_path / "bun"),
            "working_directory": str(tmp_path / "node"),
        },
        "steps": {"order": ["alpha", "beta", "gamma"]},
        "repo": {"target_dir": str(tmp_path / "node"), "archive_url": None},
        "retry": {
            "dns": {"attempts": 3, "base_delay": 0},
            "package_lock": {"attempts": 3, "base_delay": 0, "strategy": "constant"},
            "trust": {"attempts": 4, "base_delay": 0},
            "keys": {"attempts": 3, "base_delay": 0},
        },
        "health": {"settle_seconds": 0, "verify_timeout": 10, "poll_interval": 5},
        "audit": {"retention_days": 0},
    }


@pytest.fixture
def config(config_dict: Dict[str, Any]) -> NodewardConfig:
    return NodewardConfig.from_dict(config_dict)


@pytest.fixture
def config_file(tmp_path: Path, config_dict: Dict[str, Any]) -> Path:
    """config_dict written as a YAML file."""
    path = tmp_path / "nodeward.yaml"
    path.write_text(yaml.safe_dump(config_dict))
    return path


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def source() -> FakeStepSource:
    return FakeStepSource({name: step_body(name) for name in ("alpha", "beta", "gamma")})


@pytest.fixture
def audit(tmp_path: Path) -> AuditLogger:
    return AuditLogger(tmp_path / "audit" / "run.jsonl", retention_days=0)


@pytest.fixture
def sleeps() -> List[float]:
    """Collects requested sleep durations; pass `sleeps.append` as sleep."""
    return []


@pytest.fixture(autouse=True)
def no_nodeward_env(monkeypatch):
    """Keep host NODEWARD_* variables out of config loading."""
    import os

    for key in list(os.environ):
        if key.startswith("NODEWARD_"):
            monkeypatch.delenv(key)
