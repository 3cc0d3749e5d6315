"""Health scoring and bounded remediation for the managed service."""

from nodeward.health.probe import HealthProbe, HealthSample, classify, score_signals
from nodeward.health.remediation import (
    RemediationController,
    RemediationDecision,
    RemediationOutcome,
)

__all__ = [
    "HealthProbe",
    "HealthSample",
    "classify",
    "score_signals",
    "RemediationController",
    "RemediationDecision",
    "RemediationOutcome",
]
