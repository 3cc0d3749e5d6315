"""Core infrastructure: configuration, errors, audit trail, command execution."""

from nodeward.core.audit import AuditLogger, read_entries
from nodeward.core.config import NodewardConfig, load_config
from nodeward.core.errors import (
    ConfigError,
    FatalRunError,
    LockHeldError,
    MarkerWriteError,
    NodewardError,
    RetryExhaustedError,
    RunInterrupted,
    StepExecutionError,
    StepFetchError,
    TransientError,
)
from nodeward.core.shell import CommandResult, CommandRunner

__all__ = [
    "AuditLogger",
    "read_entries",
    "NodewardConfig",
    "load_config",
    "ConfigError",
    "FatalRunError",
    "LockHeldError",
    "MarkerWriteError",
    "NodewardError",
    "RetryExhaustedError",
    "RunInterrupted",
    "StepExecutionError",
    "StepFetchError",
    "TransientError",
    "CommandResult",
    "CommandRunner",
]
