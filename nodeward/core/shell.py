"""
CommandRunner - bounded subprocess execution.

Every external command nodeward issues goes through here so that no call
can block indefinitely: a timeout is mandatory.
"""

import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence

DEFAULT_TIMEOUT = 300


@dataclass
class CommandResult:
    """Outcome of one command invocation."""

    argv: Sequence[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def tail(self, lines: int = 20) -> str:
        """Last lines of combined output, for error messages."""
        combined = (self.stdout or "") + (self.stderr or "")
        return "\n".join(combined.strip().splitlines()[-lines:])


class CommandRunner:
    """Runs commands with subprocess.run and a hard timeout.

    Usage:
        runner = CommandRunner()
        result = runner.run(["systemctl", "is-active", "demos-node"], timeout=10)
        if result.ok:
            ...
    """

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT, base_env: Optional[Mapping[str, str]] = None):
        self.default_timeout = default_timeout
        self.base_env = dict(base_env) if base_env is not None else None

    def run(
        self,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        """Run a command and capture its output.

        Args:
            argv: Command and arguments (never passed through a shell)
            timeout: Seconds before the process is killed
            env: Extra environment variables layered on the current env
            cwd: Working directory

        Returns:
            CommandResult; timed-out commands get returncode -1,
            missing executables returncode 127
        """
        timeout = timeout if timeout is not None else self.default_timeout
        start = time.monotonic()

        try:
            completed = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                timeout=timeout,
                env=self._build_env(env),
                cwd=str(cwd) if cwd else None,
                input=input,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                argv=list(argv),
                returncode=-1,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr) + f"\ntimed out after {timeout}s",
                timed_out=True,
                duration=time.monotonic() - start,
            )
        except FileNotFoundError as e:
            return CommandResult(
                argv=list(argv),
                returncode=127,
                stderr=str(e),
                duration=time.monotonic() - start,
            )

        return CommandResult(
            argv=list(argv),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            duration=time.monotonic() - start,
        )

    def _build_env(self, extra: Optional[Mapping[str, str]]) -> Optional[Dict[str, str]]:
        if extra is None and self.base_env is None:
            return None
        env = dict(os.environ)
        if self.base_env:
            env.update(self.base_env)
        if extra:
            env.update(extra)
        return env


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return data
