"""
nodeward - provision and supervise a long-running node service.

Provisioning runs an ordered list of idempotent steps under a host-wide
lock, recording each completion durably so an interrupted run resumes
where it stopped. Afterwards the health path scores the service from
independent signals and applies at most one verified restart.

Core components:
- Orchestrator: ordered steps, markers, run lock, fresh step definitions
- StepDefinitionFetcher: fingerprint-checked cache of step bodies
- RetryPolicy: bounded retry for transient host conditions
- HealthProbe: supervisor, process and HTTP signals reduced to a score
- RemediationController: restart-and-verify with explicit exit codes
"""

__version__ = "0.1.0"

from nodeward.core.config import NodewardConfig, load_config
from nodeward.health import HealthProbe, HealthSample, RemediationController, RemediationDecision
from nodeward.provision import (
    MarkerStore,
    Orchestrator,
    RetryPolicy,
    RunLock,
    StepDefinitionFetcher,
    build_orchestrator,
)

__all__ = [
    "NodewardConfig",
    "load_config",
    "HealthProbe",
    "HealthSample",
    "RemediationController",
    "RemediationDecision",
    "MarkerStore",
    "Orchestrator",
    "RetryPolicy",
    "RunLock",
    "StepDefinitionFetcher",
    "build_orchestrator",
]
