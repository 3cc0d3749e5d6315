"""
Step model - data-described provisioning units.

A step body is a YAML document listing typed actions and an optional
postcondition:

    step: install_docker
    description: Install the container runtime
    actions:
      - type: wait_package_lock
      - type: run
        command: [apt-get, install, -y, docker.io]
    postcondition:
      type: command
      command: [systemctl, is-active, --quiet, docker]

Commands may reference {variables} from NodewardConfig.template_variables().
"""

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from nodeward.core.errors import StepFetchError

DPKG_LOCKS = ["/var/lib/dpkg/lock-frontend", "/var/lib/dpkg/lock", "/var/lib/apt/lists/lock"]


def fingerprint(text: str) -> str:
    """SHA-256 hex digest of a step body."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class _Action(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class RunAction(_Action):
    """Run one command; non-zero exit fails the step unless allow_failure."""

    type: Literal["run"]
    command: List[str] = Field(min_length=1)
    timeout: Optional[int] = Field(default=None, gt=0)
    allow_failure: bool = False
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None


class RequireRootAction(_Action):
    type: Literal["require_root"]


class RequireCommandAction(_Action):
    """Ensure an executable is on PATH, installing it first when missing."""

    type: Literal["require_command"]
    name: str
    install: Optional[List[str]] = None


class WaitDnsAction(_Action):
    type: Literal["wait_dns"]
    host: str = "github.com"


class WaitPackageLockAction(_Action):
    type: Literal["wait_package_lock"]
    paths: List[str] = Field(default_factory=lambda: list(DPKG_LOCKS))


class WaitPathAction(_Action):
    """Wait until every glob pattern matches at least one path."""

    type: Literal["wait_path"]
    paths: List[str] = Field(min_length=1)


class TrustDependenciesAction(_Action):
    """Converge dependency trust: grant, reinstall, rebuild, re-check.

    The companion installer runs between attempts when untrusted
    packages remain.
    """

    type: Literal["trust_dependencies"]
    cwd: str = "{repo_dir}"
    trust_command: List[str] = Field(default_factory=lambda: ["{install_root}/bin/bun", "pm", "trust", "--all"])
    install_command: List[str] = Field(default_factory=lambda: ["{install_root}/bin/bun", "install"])
    rebuild_command: Optional[List[str]] = Field(default_factory=lambda: ["{install_root}/bin/bun", "rebuild"])
    check_command: List[str] = Field(default_factory=lambda: ["{install_root}/bin/bun", "pm", "untrusted"])
    companion_command: Optional[List[str]] = Field(
        default_factory=lambda: ["pnpm", "install", "--ignore-scripts=false"]
    )
    clean_pattern: Optional[str] = Field(
        default=None,
        description="Regex matching check output that means nothing is untrusted; default: empty output",
    )
    fail_on_untrusted: bool = Field(
        default=True,
        description="Fail the step when attempts run out; otherwise make one final pass and continue",
    )


class GitSyncAction(_Action):
    """Clone the node repository, or fetch and reset it to the remote head."""

    type: Literal["git_sync"]
    url: Optional[str] = None
    target_dir: Optional[str] = None


class WriteUnitAction(_Action):
    type: Literal["write_unit"]
    reload: bool = True


class WriteFileAction(_Action):
    type: Literal["write_file"]
    path: str
    content: str = ""
    mode: str = "0644"
    overwrite: bool = False


class ServiceAction(_Action):
    type: Literal["service"]
    operation: Literal["enable", "start", "restart", "stop", "unmask", "daemon_reload"]


Action = Annotated[
    Union[
        RunAction,
        RequireRootAction,
        RequireCommandAction,
        WaitDnsAction,
        WaitPackageLockAction,
        WaitPathAction,
        TrustDependenciesAction,
        GitSyncAction,
        WriteUnitAction,
        WriteFileAction,
        ServiceAction,
    ],
    Field(discriminator="type"),
]


class PathExists(_Action):
    type: Literal["path_exists"]
    path: str


class CommandCheck(_Action):
    type: Literal["command"]
    command: List[str] = Field(min_length=1)
    timeout: Optional[int] = Field(default=None, gt=0)


class ServiceActive(_Action):
    type: Literal["service_active"]


Postcondition = Annotated[Union[PathExists, CommandCheck, ServiceActive], Field(discriminator="type")]


class StepBody(BaseModel):
    """Parsed step definition."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    step: str
    description: str = ""
    actions: List[Action] = Field(min_length=1)
    postcondition: Optional[Postcondition] = None

    @model_validator(mode="after")
    def validate_actions(self) -> "StepBody":
        if not self.step.strip():
            raise ValueError("step name must not be empty")
        return self


@dataclass(frozen=True)
class StepDefinition:
    """A fetched step body with its raw text and fingerprint."""

    step_id: str
    body: StepBody
    text: str
    fingerprint: str


@dataclass
class Step:
    """One entry of the ordered step plan."""

    ordinal: int
    name: str
    locator: str
    marker_path: Path
    fingerprint: Optional[str] = None

    @property
    def label(self) -> str:
        return f"[{self.ordinal:02d}] {self.name}"


def parse_step_body(step_id: str, text: str) -> StepDefinition:
    """Parse and validate a step body.

    Raises:
        StepFetchError: If the YAML is malformed, fails validation, or
            declares a different step name
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise StepFetchError(step_id, f"invalid YAML: {e}") from e

    if not isinstance(data, dict):
        raise StepFetchError(step_id, "definition must be a mapping")

    try:
        body = StepBody.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise StepFetchError(step_id, f"invalid definition: {problems}") from e

    if body.step != step_id:
        raise StepFetchError(step_id, f"definition declares step '{body.step}'")

    return StepDefinition(step_id=step_id, body=body, text=text, fingerprint=fingerprint(text))
