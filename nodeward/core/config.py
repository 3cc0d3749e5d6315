"""
Configuration system for nodeward.

Loads YAML configuration files and provides typed access to settings.
Uses Pydantic v2 for validation and immutable config objects.

Configuration Hierarchy (highest priority first):
1. CLI arguments (passed to load_config)
2. Environment variables (NODEWARD_*)
3. YAML configuration file
4. Pydantic field defaults
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from nodeward.core.errors import ConfigError

DEFAULT_STEP_ORDER = [
    "prepare_system",
    "install_docker",
    "install_bun",
    "clone_node",
    "setup_service",
    "start_service",
    "finalize",
]

CONFIG_SEARCH_PATHS = [
    Path("nodeward.yaml"),
    Path("/etc/nodeward/nodeward.yaml"),
]


class ServiceConfig(BaseModel):
    """The managed service and its unit descriptor."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="demos-node", description="Supervisor unit name (without .service)")
    description: str = Field(default="Demos Node Service")
    working_directory: Path = Field(default=Path("/opt/demos-node"))
    exec_start: str = Field(default="/opt/demos-node/run", description="Start command")
    restart: Literal["always", "on-failure", "no"] = Field(default="always", description="Restart policy")
    restart_sec: int = Field(default=5, ge=0, description="Delay before the supervisor restarts the service")
    environment: Dict[str, str] = Field(default_factory=dict, description="Extra unit environment variables")
    environment_file: Optional[Path] = Field(default=Path("/etc/demos-node/env"))
    install_root_var: str = Field(default="BUN_INSTALL", description="Name of the install-root variable")
    install_root: Path = Field(default=Path("/root/.bun"), description="Runtime install root")
    unit_path: Path = Field(default=Path("/etc/systemd/system/demos-node.service"))
    process_pattern: str = Field(default="/opt/demos-node/run", description="pgrep -f pattern for stray processes")

    @field_validator("restart", mode="before")
    @classmethod
    def validate_restart(cls, v: Any) -> Any:
        # YAML 1.1 reads a bare `no` as False
        if v is False:
            return "no"
        return v

    @property
    def unit_name(self) -> str:
        return self.name if self.name.endswith(".service") else f"{self.name}.service"


class StepsConfig(BaseModel):
    """Ordered provisioning steps and where their definitions come from."""

    model_config = ConfigDict(frozen=True)

    order: List[str] = Field(default_factory=lambda: list(DEFAULT_STEP_ORDER))
    source_url: Optional[str] = Field(default=None, description="Base URL of step definitions; None = packaged catalog")
    timeout: int = Field(default=900, gt=0, description="Per-command timeout in seconds")
    fetch_timeout: float = Field(default=30.0, gt=0, description="Step definition download timeout")
    variables: Dict[str, str] = Field(default_factory=dict, description="Extra template variables for step bodies")

    @field_validator("order")
    @classmethod
    def validate_order(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("at least one step is required")
        invalid = [s for s in v if not re.match(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$", s)]
        if invalid:
            raise ValueError(f"Invalid step ids: {invalid}")
        duplicates = {s for s in v if v.count(s) > 1}
        if duplicates:
            raise ValueError(f"Duplicate steps: {sorted(duplicates)}")
        return v


class RepoConfig(BaseModel):
    """Node source repository."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(default="https://github.com/kynesyslabs/node.git")
    archive_url: Optional[str] = Field(
        default="https://github.com/kynesyslabs/node/archive/refs/heads/main.tar.gz",
        description="Tarball used when git clone times out",
    )
    target_dir: Path = Field(default=Path("/opt/demos-node"))
    clone_timeout: int = Field(default=300, gt=0)


class RetrySettings(BaseModel):
    """Bounded retry settings for one transient condition."""

    model_config = ConfigDict(frozen=True)

    attempts: int = Field(gt=0)
    base_delay: float = Field(ge=0.0, description="Seconds; multiplied by attempt number when linear")
    strategy: Literal["linear", "constant"] = "linear"


class RetryConfig(BaseModel):
    """Retry budgets per transient condition."""

    model_config = ConfigDict(frozen=True)

    dns: RetrySettings = Field(default_factory=lambda: RetrySettings(attempts=10, base_delay=2.0))
    package_lock: RetrySettings = Field(
        default_factory=lambda: RetrySettings(attempts=12, base_delay=5.0, strategy="constant")
    )
    trust: RetrySettings = Field(default_factory=lambda: RetrySettings(attempts=4, base_delay=2.0))
    keys: RetrySettings = Field(
        default_factory=lambda: RetrySettings(attempts=12, base_delay=10.0, strategy="constant")
    )


class HealthConfig(BaseModel):
    """Health probe and remediation bounds."""

    model_config = ConfigDict(frozen=True)

    url: Optional[str] = Field(default="http://127.0.0.1:53550/health", description="HTTP probe target")
    fallback_paths: List[str] = Field(
        default_factory=lambda: ["/status", "/metrics"],
        description="Tried on the same host when the probe URL does not answer",
    )
    timeout: float = Field(default=5.0, gt=0, description="HTTP probe timeout")
    threshold: int = Field(default=2, ge=1, le=3, description="Signals required to count as healthy")
    settle_seconds: float = Field(default=5.0, ge=0, description="Wait after restart before re-sampling")
    verify_timeout: float = Field(default=60.0, ge=0, description="Upper bound on post-restart verification")
    poll_interval: float = Field(default=5.0, gt=0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "HealthConfig":
        if self.settle_seconds > self.verify_timeout:
            raise ValueError(
                f"settle_seconds ({self.settle_seconds}) must be <= verify_timeout ({self.verify_timeout})"
            )
        return self


class FinalizeConfig(BaseModel):
    """Post-start settings: identity key backup and public binding."""

    model_config = ConfigDict(frozen=True)

    backup_dir: Path = Field(default=Path("/root/demos_node_backups"), description="Timestamped key backups")
    node_port: int = Field(default=53550, gt=0, lt=65536)
    bind_address: str = Field(default="0.0.0.0", description="Used when the node only listens on localhost")


class LockConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    liveness_check: bool = Field(default=True, description="Treat locks of dead processes as stale")


class AuditConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    retention_days: int = Field(default=30, ge=0)


class NodewardConfig(BaseModel):
    """Central configuration object."""

    model_config = ConfigDict(frozen=True)

    state_dir: Path = Field(default=Path("/root/.nodeward"), description="Markers, lock, logs and cache")
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    steps: StepsConfig = Field(default_factory=StepsConfig)
    repo: RepoConfig = Field(default_factory=RepoConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    finalize: FinalizeConfig = Field(default_factory=FinalizeConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    # Persisted layout

    @property
    def markers_dir(self) -> Path:
        return self.state_dir / "markers"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "run.lock"

    @property
    def cache_dir(self) -> Path:
        return self.state_dir / "cache"

    @property
    def run_log_path(self) -> Path:
        return self.state_dir / "run.jsonl"

    @property
    def health_log_path(self) -> Path:
        return self.state_dir / "health.jsonl"

    def template_variables(self) -> Dict[str, str]:
        """Variables available as {name} in step body commands."""
        variables = {
            "service_name": self.service.name,
            "unit_name": self.service.unit_name,
            "unit_path": str(self.service.unit_path),
            "environment_file": str(self.service.environment_file or ""),
            "working_directory": str(self.service.working_directory),
            "install_root": str(self.service.install_root),
            "install_root_var": self.service.install_root_var,
            "repo_url": self.repo.url,
            "repo_dir": str(self.repo.target_dir),
            "state_dir": str(self.state_dir),
            "backup_dir": str(self.finalize.backup_dir),
            "node_port": str(self.finalize.node_port),
            "bind_address": self.finalize.bind_address,
        }
        variables.update(self.steps.variables)
        return variables

    @classmethod
    def from_yaml(cls, path: Path) -> "NodewardConfig":
        """Load configuration from YAML file."""
        data = _read_yaml(Path(path))
        return cls.from_dict(data, base_path=Path(path).parent)

    @classmethod
    def from_dict(cls, data: dict, base_path: Optional[Path] = None) -> "NodewardConfig":
        """Create from dictionary, resolving a relative state_dir against base_path."""
        data = dict(data)
        if base_path is not None and data.get("state_dir"):
            state_dir = Path(data["state_dir"])
            if not state_dir.is_absolute():
                data["state_dir"] = base_path / state_dir
        return cls.model_validate(data)


def load_config(
    path: Optional[Path] = None,
    env_prefix: str = "NODEWARD_",
    cli_overrides: Optional[Dict[str, Any]] = None,
    use_env: bool = True,
) -> NodewardConfig:
    """Load configuration with hierarchy: defaults → YAML → env vars → CLI args.

    Args:
        path: Optional explicit path to YAML config file
        env_prefix: Prefix for environment variables (default: "NODEWARD_")
        cli_overrides: Optional dictionary of CLI argument overrides
        use_env: Whether to load environment variables (default: True)

    Returns:
        Merged NodewardConfig

    Raises:
        FileNotFoundError: If an explicit path does not exist
        ConfigError: If the file cannot be parsed
        pydantic.ValidationError: If values fail validation

    Examples:
        # Environment variable: NODEWARD_HEALTH_URL=http://127.0.0.1:53550/health
        config = load_config()
    """
    yaml_path = _find_config_file(path)
    base_path = yaml_path.parent if yaml_path else None

    config_dict = _read_yaml(yaml_path) if yaml_path else {}

    if use_env:
        _deep_merge(config_dict, _extract_env_config(env_prefix))

    if cli_overrides:
        _deep_merge(config_dict, cli_overrides)

    return NodewardConfig.from_dict(config_dict, base_path=base_path)


def _find_config_file(path: Optional[Path] = None) -> Optional[Path]:
    """Find configuration file.

    Searches in this order:
    1. Provided path
    2. ./nodeward.yaml
    3. /etc/nodeward/nodeward.yaml
    """
    if path:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        return path

    for candidate in CONFIG_SEARCH_PATHS:
        if candidate.exists():
            return candidate

    return None



def _read_yaml(path: Path) -> Dict[str, Any]:
    """Parse a config file into a mapping.

    Raises:
        ConfigError: If the file is not valid YAML or not a mapping
    """
    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data

# Sections whose fields are themselves nested models (retry.dns.attempts)
_NESTED_SECTIONS = {"retry"}
_SECTIONS = {"service", "steps", "repo", "retry", "health", "lock", "audit", "finalize"}


def _extract_env_config(prefix: str = "NODEWARD_") -> Dict[str, Any]:
    """Extract configuration from environment variables.

    Environment variables are mapped to config paths:
    - NODEWARD_HEALTH_URL=http://... → {"health": {"url": "http://..."}}
    - NODEWARD_RETRY_DNS_ATTEMPTS=5 → {"retry": {"dns": {"attempts": 5}}}
    - NODEWARD_STATE_DIR=/var/lib/nodeward → {"state_dir": "/var/lib/nodeward"}
    """
    config: Dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        config_key = key[len(prefix):].lower()
        if not config_key:
            continue

        converted_value = _convert_env_value(value)
        parts = config_key.split("_")

        if parts[0] in _NESTED_SECTIONS and len(parts) > 2:
            section, sub = parts[0], parts[1]
            # retry.package_lock has an underscore in its own name
            if section == "retry" and parts[1:3] == ["package", "lock"] and len(parts) > 3:
                sub, rest = "package_lock", parts[3:]
            else:
                rest = parts[2:]
            config.setdefault(section, {}).setdefault(sub, {})["_".join(rest)] = converted_value
        elif parts[0] in _SECTIONS and len(parts) > 1:
            config.setdefault(parts[0], {})["_".join(parts[1:])] = converted_value
        else:
            config[config_key] = converted_value

    return config


def _convert_env_value(value: str) -> Union[str, int, float, bool, List[str]]:
    """Convert environment variable string to appropriate type.

    Args:
        value: Raw string value from environment

    Returns:
        Converted value (int, float, bool, list, or string)
    """
    if not value:
        return value

    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    # Comma-separated lists (e.g. step order); URLs and paths never contain commas here
    if "," in value:
        return [v.strip() for v in value.split(",") if v.strip()]

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """Deep merge override into base dictionary (mutates base).

    Examples:
        >>> base = {"a": {"b": 1, "c": 2}, "d": 3}
        >>> _deep_merge(base, {"a": {"b": 10}, "e": 5})
        >>> base == {"a": {"b": 10, "c": 2}, "d": 3, "e": 5}
        True
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
