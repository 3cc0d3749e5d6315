"""Provisioning: ordered idempotent steps under a host-wide lock."""

from nodeward.provision.actions import ActionExecutor
from nodeward.provision.fetcher import (
    HttpStepSource,
    PackagedStepSource,
    StepDefinitionFetcher,
    StepSource,
)
from nodeward.provision.lock import LockToken, RunLock
from nodeward.provision.markers import MarkerInfo, MarkerStore
from nodeward.provision.orchestrator import Orchestrator, RunReport, build_orchestrator
from nodeward.provision.retry import RetryPolicy, RetryResult, linear_backoff
from nodeward.provision.state_machine import RunState, RunStateMachine
from nodeward.provision.steps import Step, StepBody, StepDefinition, parse_step_body

__all__ = [
    "ActionExecutor",
    "HttpStepSource",
    "PackagedStepSource",
    "StepDefinitionFetcher",
    "StepSource",
    "LockToken",
    "RunLock",
    "MarkerInfo",
    "MarkerStore",
    "Orchestrator",
    "RunReport",
    "build_orchestrator",
    "RetryPolicy",
    "RetryResult",
    "linear_backoff",
    "RunState",
    "RunStateMachine",
    "Step",
    "StepBody",
    "StepDefinition",
    "parse_step_body",
]
