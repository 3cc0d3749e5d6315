"""
ActionExecutor - carries out the typed actions of a step body.

Every action either completes or raises StepExecutionError (or
RetryExhaustedError for a transient condition that never cleared); both
halt the orchestrator at the current step.
"""

import glob
import os
import re
import shutil
import tarfile
import tempfile
import time
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import httpx

from nodeward.core.audit import AuditLogger
from nodeward.core.config import NodewardConfig, RetrySettings
from nodeward.core.errors import RetryExhaustedError, StepExecutionError, TransientError
from nodeward.core.shell import CommandResult, CommandRunner
from nodeward.provision.retry import RetryPolicy, RetryResult, backoff_for
from nodeward.provision.steps import (
    CommandCheck,
    GitSyncAction,
    PathExists,
    RequireCommandAction,
    RequireRootAction,
    RunAction,
    ServiceAction,
    ServiceActive,
    StepDefinition,
    TrustDependenciesAction,
    WaitDnsAction,
    WaitPackageLockAction,
    WaitPathAction,
    WriteFileAction,
    WriteUnitAction,
)
from nodeward.supervisor.systemd import ServiceSupervisor
from nodeward.supervisor.unit import UnitDescriptor

_VAR_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Never prompt for credentials during clone/fetch
GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}


def render(template: str, variables: Mapping[str, str]) -> str:
    """Substitute {name} for known variables; anything else is left verbatim."""
    return _VAR_RE.sub(lambda m: variables.get(m.group(1), m.group(0)), template)


def render_all(items: Sequence[str], variables: Mapping[str, str]) -> List[str]:
    return [render(item, variables) for item in items]


class ActionExecutor:
    """Executes step bodies against the host.

    Collaborators are injected so tests can substitute fakes for the
    command runner, the supervisor, name resolution and sleeping.

    Usage:
        executor = ActionExecutor(config, CommandRunner(), supervisor, audit=audit)
        executor.execute(definition)
    """

    def __init__(
        self,
        config: NodewardConfig,
        runner: CommandRunner,
        supervisor: ServiceSupervisor,
        audit: Optional[AuditLogger] = None,
        sleep: Callable[[float], None] = time.sleep,
        http_client: Optional[httpx.Client] = None,
        geteuid: Callable[[], int] = os.geteuid,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        self.config = config
        self.runner = runner
        self.supervisor = supervisor
        self.audit = audit
        self.sleep = sleep
        self.http_client = http_client
        self.geteuid = geteuid
        self.which = which
        self.variables: Dict[str, str] = config.template_variables()

        self._handlers = {
            "run": self._run,
            "require_root": self._require_root,
            "require_command": self._require_command,
            "wait_dns": self._wait_dns,
            "wait_package_lock": self._wait_package_lock,
            "wait_path": self._wait_path,
            "trust_dependencies": self._trust_dependencies,
            "git_sync": self._git_sync,
            "write_unit": self._write_unit,
            "write_file": self._write_file,
            "service": self._service,
        }

    def execute(self, definition: StepDefinition) -> None:
        """Run every action in order, then check the postcondition.

        Raises:
            StepExecutionError: An action (host I/O errors included) or the
                postcondition failed
            RetryExhaustedError: A transient condition did not clear
        """
        step_id = definition.step_id
        for action in definition.body.actions:
            try:
                self._handlers[action.type](step_id, action)
            except OSError as e:
                raise StepExecutionError(step_id, f"{action.type}: {e}") from e

        postcondition = definition.body.postcondition
        if postcondition is not None and not self.check_postcondition(postcondition):
            raise StepExecutionError(step_id, f"postcondition '{postcondition.type}' not satisfied")

    def check_postcondition(self, postcondition) -> bool:
        if isinstance(postcondition, PathExists):
            return Path(render(postcondition.path, self.variables)).exists()
        if isinstance(postcondition, CommandCheck):
            result = self.runner.run(
                render_all(postcondition.command, self.variables),
                timeout=postcondition.timeout or self.config.steps.timeout,
            )
            return result.ok
        if isinstance(postcondition, ServiceActive):
            return self.supervisor.is_active()
        raise ValueError(f"Unknown postcondition: {postcondition!r}")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _command(
        self,
        step_id: str,
        argv: Sequence[str],
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        check: bool = True,
    ) -> CommandResult:
        result = self.runner.run(
            argv,
            timeout=timeout or self.config.steps.timeout,
            env=env,
            cwd=Path(cwd) if cwd else None,
        )
        if check and not result.ok:
            raise StepExecutionError(step_id, _describe_failure(result), command=argv, output_tail=result.tail())
        return result

    def _run(self, step_id: str, action: RunAction) -> None:
        self._command(
            step_id,
            render_all(action.command, self.variables),
            timeout=action.timeout,
            env={k: render(v, self.variables) for k, v in action.env.items()} or None,
            cwd=render(action.cwd, self.variables) if action.cwd else None,
            check=not action.allow_failure,
        )

    def _require_root(self, step_id: str, action: RequireRootAction) -> None:
        if self.geteuid() != 0:
            raise StepExecutionError(step_id, "must be run as root")

    def _require_command(self, step_id: str, action: RequireCommandAction) -> None:
        if self.which(action.name):
            return
        if action.install:
            self._command(step_id, render_all(action.install, self.variables))
        if not self.which(action.name):
            raise StepExecutionError(step_id, f"required command '{action.name}' not found on PATH")

    # ------------------------------------------------------------------
    # Transient conditions
    # ------------------------------------------------------------------

    def policy(
        self,
        settings: RetrySettings,
        description: str,
        on_retry: Optional[Callable[[int, RetryResult], None]] = None,
    ) -> RetryPolicy:
        """RetryPolicy for configured settings, logging each failed attempt."""

        def hook(attempt: int, result: RetryResult) -> None:
            if self.audit:
                self.audit.log(
                    "retry",
                    "attempt_failed",
                    {"what": description, "attempt": attempt, "error": result.last_error},
                )
            if on_retry:
                on_retry(attempt, result)

        return RetryPolicy(
            max_attempts=settings.attempts,
            backoff=backoff_for(settings.strategy, settings.base_delay),
            on_retry=hook,
            sleep=self.sleep,
            description=description,
        )

    def _retry(self, step_id: str, policy: RetryPolicy, operation: Callable[[], bool]) -> RetryResult:
        result = policy.run(operation)
        if self.audit:
            action = "recovered" if result.ok else "exhausted"
            if not result.ok or result.attempts > 1:
                self.audit.log(
                    "retry",
                    action,
                    {"step": step_id, "what": policy.description, "attempts": result.attempts},
                )
        return result

    def _wait_dns(self, step_id: str, action: WaitDnsAction) -> None:
        host = render(action.host, self.variables)

        def resolves() -> bool:
            result = self.runner.run(["getent", "hosts", host], timeout=10)
            if not result.ok:
                raise TransientError(f"cannot resolve {host}")
            return True

        policy = self.policy(self.config.retry.dns, f"name resolution of {host}")
        result = self._retry(step_id, policy, resolves)
        if not result.ok:
            raise RetryExhaustedError(policy.description, result.attempts, result.last_error)

    def _wait_package_lock(self, step_id: str, action: WaitPackageLockAction) -> None:
        paths = render_all(action.paths, self.variables)

        def lock_free() -> bool:
            # fuser exits 0 when any process has one of the files open
            result = self.runner.run(["fuser", *paths], timeout=10)
            if result.returncode == 0:
                raise TransientError("package manager lock is held")
            return True

        policy = self.policy(self.config.retry.package_lock, "package manager lock")
        result = self._retry(step_id, policy, lock_free)
        if not result.ok:
            raise RetryExhaustedError(policy.description, result.attempts, result.last_error)

    def _wait_path(self, step_id: str, action: WaitPathAction) -> None:
        patterns = render_all(action.paths, self.variables)

        def present() -> bool:
            missing = [p for p in patterns if not glob.glob(p)]
            if missing:
                raise TransientError(f"not yet present: {', '.join(missing)}")
            return True

        policy = self.policy(self.config.retry.keys, "expected files")
        result = self._retry(step_id, policy, present)
        if not result.ok:
            raise RetryExhaustedError(policy.description, result.attempts, result.last_error)

    def _trust_dependencies(self, step_id: str, action: TrustDependenciesAction) -> None:
        cwd = render(action.cwd, self.variables)
        trust = render_all(action.trust_command, self.variables)
        install = render_all(action.install_command, self.variables)
        rebuild = render_all(action.rebuild_command, self.variables) if action.rebuild_command else None
        check = render_all(action.check_command, self.variables)
        companion = render_all(action.companion_command, self.variables) if action.companion_command else None
        clean = re.compile(action.clean_pattern) if action.clean_pattern else None

        def converged() -> bool:
            self._command(step_id, trust, cwd=cwd, check=False)
            self._command(step_id, install, cwd=cwd, check=False)
            if rebuild:
                self._command(step_id, rebuild, cwd=cwd, check=False)
            result = self._command(step_id, check, cwd=cwd, check=False)
            output = result.stdout.strip()
            if clean is not None:
                return bool(clean.search(output))
            return not output

        def run_companion(attempt: int, result: RetryResult) -> None:
            if companion and self.which(companion[0]):
                self._command(step_id, companion, cwd=cwd, check=False)

        policy = self.policy(self.config.retry.trust, "dependency trust", on_retry=run_companion)
        result = self._retry(step_id, policy, converged)
        if result.ok:
            return
        if action.fail_on_untrusted:
            raise RetryExhaustedError(policy.description, result.attempts, "untrusted dependencies remain")

        # Best effort: one last grant and install, then let the postcondition decide
        self._command(step_id, trust, cwd=cwd, check=False)
        self._command(step_id, install, cwd=cwd, check=False)

    # ------------------------------------------------------------------
    # Source checkout
    # ------------------------------------------------------------------

    def _git_sync(self, step_id: str, action: GitSyncAction) -> None:
        repo = self.config.repo
        url = render(action.url, self.variables) if action.url else repo.url
        target = Path(render(action.target_dir, self.variables)) if action.target_dir else repo.target_dir

        if (target / ".git").is_dir():
            # Sync problems are tolerated; the step postcondition decides
            self._command(
                step_id,
                ["git", "-C", str(target), "fetch", "--all", "--tags", "--prune"],
                timeout=repo.clone_timeout,
                env=GIT_ENV,
                check=False,
            )
            self._command(
                step_id,
                ["git", "-C", str(target), "reset", "--hard", "origin/HEAD"],
                env=GIT_ENV,
                check=False,
            )
            return

        if target.exists():
            shutil.rmtree(target)
        target.parent.mkdir(parents=True, exist_ok=True)

        result = self._command(
            step_id,
            ["git", "clone", url, str(target)],
            timeout=repo.clone_timeout,
            env=GIT_ENV,
            check=False,
        )
        if result.ok:
            return

        if not repo.archive_url:
            raise StepExecutionError(
                step_id, _describe_failure(result), command=result.argv, output_tail=result.tail()
            )

        if self.audit:
            self.audit.log(
                "step",
                "fallback",
                {"step": step_id, "reason": _describe_failure(result), "archive_url": repo.archive_url},
            )
        if target.exists():
            shutil.rmtree(target)
        self.download_archive(step_id, render(repo.archive_url, self.variables), target)

    def download_archive(self, step_id: str, url: str, target: Path) -> None:
        """Download a tarball and unpack it into target, dropping its top directory."""
        client = self.http_client or httpx.Client(timeout=self.config.repo.clone_timeout, follow_redirects=True)
        try:
            with tempfile.TemporaryFile() as buffer:
                try:
                    with client.stream("GET", url) as response:
                        if response.status_code >= 400:
                            raise StepExecutionError(
                                step_id, f"archive download returned HTTP {response.status_code}"
                            )
                        for chunk in response.iter_bytes():
                            buffer.write(chunk)
                except httpx.HTTPError as e:
                    raise StepExecutionError(step_id, f"archive download failed: {e}") from e

                buffer.seek(0)
                try:
                    with tarfile.open(fileobj=buffer, mode="r:*") as archive:
                        _extract_stripped(archive, target)
                except tarfile.TarError as e:
                    raise StepExecutionError(step_id, f"archive is not a valid tarball: {e}") from e
        finally:
            if self.http_client is None:
                client.close()

    # ------------------------------------------------------------------
    # Files and service
    # ------------------------------------------------------------------

    def _write_unit(self, step_id: str, action: WriteUnitAction) -> None:
        service = self.config.service
        try:
            descriptor = UnitDescriptor.from_config(service)
            self.supervisor.write_unit(descriptor, service.unit_path)
        except (OSError, ValueError) as e:
            raise StepExecutionError(step_id, f"cannot write unit {service.unit_path}: {e}") from e

        if action.reload:
            result = self.supervisor.daemon_reload()
            if not result.ok and self.audit:
                # Hosts without a running systemd still get the unit file
                self.audit.log("step", "reload_failed", {"step": step_id, "returncode": result.returncode})

    def _write_file(self, step_id: str, action: WriteFileAction) -> None:
        path = Path(render(action.path, self.variables))
        if path.exists() and not action.overwrite:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(render(action.content, self.variables))
            os.chmod(path, int(action.mode, 8))
        except (OSError, ValueError) as e:
            raise StepExecutionError(step_id, f"cannot write {path}: {e}") from e

    def _service(self, step_id: str, action: ServiceAction) -> None:
        operations = {
            "enable": self.supervisor.enable,
            "start": self.supervisor.start,
            "restart": self.supervisor.restart,
            "stop": self.supervisor.stop,
            "unmask": self.supervisor.unmask,
            "daemon_reload": self.supervisor.daemon_reload,
        }
        result = operations[action.operation]()
        if not result.ok:
            raise StepExecutionError(
                step_id,
                f"service {action.operation} failed: {_describe_failure(result)}",
                command=result.argv,
                output_tail=result.tail(),
            )


def _describe_failure(result: CommandResult) -> str:
    if result.timed_out:
        return f"'{' '.join(result.argv)}' timed out"
    if result.returncode == 127:
        return f"'{result.argv[0]}' not found"
    return f"'{' '.join(result.argv)}' exited with {result.returncode}"


def _extract_stripped(archive: tarfile.TarFile, target: Path) -> None:
    target.mkdir(parents=True, exist_ok=True)
    root = target.resolve()
    for member in archive.getmembers():
        parts = Path(member.name).parts[1:]
        if not parts or member.issym() or member.islnk():
            continue
        destination = (root / Path(*parts)).resolve()
        if root not in destination.parents and destination != root:
            continue
        member.name = str(Path(*parts))
        archive.extract(member, root)
