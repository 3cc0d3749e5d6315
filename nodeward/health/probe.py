"""
HealthProbe - independent signals about the managed service.

Three signals are collected on every sample:
- supervisor_active: the supervisor reports the unit active
- process_present: the unit has a main process, or a matching process runs
- probe_ok: the application answers over HTTP

Score is the count of true signals. A signal that cannot be acquired is
false and the reason is recorded on the sample; probing never raises.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

import httpx

from nodeward.core.audit import AuditLogger
from nodeward.core.shell import CommandRunner
from nodeward.supervisor.systemd import ServiceSupervisor, find_processes

SIGNALS = ("supervisor_active", "process_present", "probe_ok")

HEALTHY_THRESHOLD = 2


def score_signals(signals: Dict[str, bool]) -> int:
    """Number of true signals."""
    return sum(1 for name in SIGNALS if signals.get(name) is True)


def classify(score: int, threshold: int = HEALTHY_THRESHOLD) -> bool:
    """Healthy iff score >= threshold."""
    return score >= threshold


@dataclass
class HealthSample:
    """One observation of the service."""

    signals: Dict[str, bool]
    score: int
    healthy: bool
    reasons: Dict[str, str] = field(default_factory=dict)
    ts: str = field(default_factory=lambda: datetime.now().isoformat())

    @classmethod
    def from_signals(
        cls,
        signals: Dict[str, bool],
        reasons: Optional[Dict[str, str]] = None,
        threshold: int = HEALTHY_THRESHOLD,
    ) -> "HealthSample":
        ordered = {name: bool(signals.get(name, False)) for name in SIGNALS}
        score = score_signals(ordered)
        return cls(signals=ordered, score=score, healthy=classify(score, threshold), reasons=dict(reasons or {}))

    @property
    def label(self) -> str:
        return "healthy" if self.healthy else "unhealthy"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ts": self.ts,
            "signals": self.signals,
            "score": self.score,
            "healthy": self.healthy,
            "reasons": self.reasons,
        }


class HealthProbe:
    """Collects signals into a HealthSample and appends it to the health log.

    Usage:
        probe = HealthProbe(supervisor, runner, url="http://127.0.0.1:53550/health",
                            http_client=httpx.Client(timeout=5.0), audit=health_audit)
        sample = probe.sample()
    """

    def __init__(
        self,
        supervisor: ServiceSupervisor,
        runner: Optional[CommandRunner] = None,
        url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        process_pattern: Optional[str] = None,
        fallback_paths: Optional[List[str]] = None,
        threshold: int = HEALTHY_THRESHOLD,
        audit: Optional[AuditLogger] = None,
    ):
        self.supervisor = supervisor
        self.runner = runner
        self.url = url
        self.http_client = http_client
        self.process_pattern = process_pattern
        self.fallback_paths = list(fallback_paths or [])
        self.threshold = threshold
        self.audit = audit

    def sample(self) -> HealthSample:
        """Collect all signals, score them and log the sample."""
        signals: Dict[str, bool] = {}
        reasons: Dict[str, str] = {}

        collectors: List[Tuple[str, Callable[[], Tuple[bool, Optional[str]]]]] = [
            ("supervisor_active", self._supervisor_active),
            ("process_present", self._process_present),
            ("probe_ok", self._probe_ok),
        ]
        for name, collect in collectors:
            try:
                value, reason = collect()
            except Exception as e:
                value, reason = False, f"{type(e).__name__}: {e}"
            signals[name] = value
            if reason:
                reasons[name] = reason

        sample = HealthSample.from_signals(signals, reasons, threshold=self.threshold)
        if self.audit:
            self.audit.log("health", "sample", sample.to_dict())
        return sample

    def _supervisor_active(self) -> Tuple[bool, Optional[str]]:
        if self.supervisor.is_active():
            return True, None
        return False, f"{self.supervisor.unit_name} is not active"

    def _process_present(self) -> Tuple[bool, Optional[str]]:
        if self.supervisor.main_pid() > 0:
            return True, None
        if self.process_pattern and self.runner is not None:
            if find_processes(self.process_pattern, self.runner):
                return True, None
            return False, f"no main pid and no process matching '{self.process_pattern}'"
        return False, "no main pid"

    def _probe_ok(self) -> Tuple[bool, Optional[str]]:
        if not self.url:
            return False, "no probe URL configured"
        if self.http_client is None:
            return False, "no HTTP client available"

        failures = []
        for url in self.candidate_urls():
            try:
                response = self.http_client.get(url)
            except httpx.HTTPError as e:
                failures.append(f"{url}: {type(e).__name__}")
                continue
            if response.status_code < 400:
                return True, None
            failures.append(f"{url}: HTTP {response.status_code}")
        return False, "; ".join(failures)

    def candidate_urls(self) -> List[str]:
        """The probe URL followed by fallback paths on the same host."""
        if not self.url:
            return []
        urls = [self.url]
        parts = urlsplit(self.url)
        for path in self.fallback_paths:
            candidate = urlunsplit((parts.scheme, parts.netloc, path, "", ""))
            if candidate not in urls:
                urls.append(candidate)
        return urls
