"""
UnitDescriptor - the one artifact nodeward produces for the supervisor.
"""

from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from nodeward.core.config import ServiceConfig

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


class UnitDescriptor(BaseModel):
    """Supervisor unit for the managed service.

    The environment must carry PATH and the runtime install-root variable;
    the service is started without a login shell so neither is inherited.
    """

    model_config = ConfigDict(frozen=True)

    description: str
    working_directory: Path
    exec_start: str
    restart: Literal["always", "on-failure", "no"] = "always"
    restart_sec: int = Field(default=5, ge=0)
    environment: Dict[str, str]
    environment_file: Optional[Path] = None
    install_root_var: str = "BUN_INSTALL"
    after: List[str] = Field(default_factory=lambda: ["network.target"])
    wanted_by: str = "multi-user.target"

    @model_validator(mode="after")
    def validate_environment(self) -> "UnitDescriptor":
        missing = [k for k in ("PATH", self.install_root_var) if not self.environment.get(k)]
        if missing:
            raise ValueError(f"unit environment is missing {', '.join(missing)}")
        return self

    @classmethod
    def from_config(cls, service: ServiceConfig) -> "UnitDescriptor":
        """Build the descriptor from service settings.

        The install root's bin directory is prepended to PATH unless the
        operator set PATH explicitly.
        """
        environment = {
            service.install_root_var: str(service.install_root),
            "PATH": f"{service.install_root}/bin:{DEFAULT_PATH}",
        }
        environment.update(service.environment)

        return cls(
            description=service.description,
            working_directory=service.working_directory,
            exec_start=service.exec_start,
            restart=service.restart,
            restart_sec=service.restart_sec,
            environment=environment,
            environment_file=service.environment_file,
            install_root_var=service.install_root_var,
        )

    def render(self) -> str:
        """Unit file text."""
        lines = [
            "[Unit]",
            f"Description={self.description}",
        ]
        if self.after:
            lines.append(f"After={' '.join(self.after)}")

        lines += [
            "",
            "[Service]",
            "Type=simple",
            f"WorkingDirectory={self.working_directory}",
            f"ExecStart={self.exec_start}",
            f"Restart={self.restart}",
            f"RestartSec={self.restart_sec}",
        ]
        if self.environment_file:
            # Leading "-": a missing file is not an error
            lines.append(f"EnvironmentFile=-{self.environment_file}")

        ordered = [self.install_root_var] + sorted(k for k in self.environment if k != self.install_root_var)
        for key in ordered:
            lines.append(f"Environment={_quote_assignment(key, self.environment[key])}")

        lines += [
            "",
            "[Install]",
            f"WantedBy={self.wanted_by}",
            "",
        ]
        return "\n".join(lines)


def _quote_assignment(key: str, value: str) -> str:
    """KEY=value as one double-quoted systemd word, specifiers escaped."""
    text = f"{key}={value}".replace("\\", "\\\\").replace('"', '\\"').replace("%", "%%")
    return f'"{text}"'
