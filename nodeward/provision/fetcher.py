"""
StepDefinitionFetcher - fingerprint-checked step body retrieval.

The remote source is authoritative. A cached copy is only reused when its
SHA-256 fingerprint equals the remote one; otherwise the body is downloaded
and the cache overwritten. A source failure is fatal for the step: running
without a copy is impossible and running a stale copy risks superseded logic.
"""

import os
import tempfile
from abc import ABC, abstractmethod
from importlib.resources import files as resource_files
from pathlib import Path
from typing import Dict, Optional

import httpx

from nodeward.core.audit import AuditLogger
from nodeward.core.errors import StepFetchError
from nodeward.provision.steps import StepDefinition, fingerprint, parse_step_body


class StepSource(ABC):
    """Where canonical step bodies live."""

    @abstractmethod
    def locator(self, step_id: str) -> str:
        """Human-readable location of a step body."""

    @abstractmethod
    def remote_fingerprint(self, step_id: str) -> str:
        """Fingerprint of the current remote body.

        Raises:
            StepFetchError: If the source cannot be reached
        """

    @abstractmethod
    def download(self, step_id: str) -> str:
        """Full body text.

        Raises:
            StepFetchError: If the source cannot be reached
        """


class HttpStepSource(StepSource):
    """Step bodies served over HTTP as <base_url>/<step>.yaml.

    The fingerprint comes from a <step>.yaml.sha256 sidecar when the server
    publishes one. Without a sidecar the body itself is downloaded and
    hashed; that body is kept so the following download() does not issue a
    second request.
    """

    def __init__(self, base_url: str, timeout: float = 30.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._prefetched: Dict[str, str] = {}

    def locator(self, step_id: str) -> str:
        return f"{self.base_url}/{step_id}.yaml"

    def remote_fingerprint(self, step_id: str) -> str:
        response = self._get(step_id, self.locator(step_id) + ".sha256", missing_ok=True)
        if response is not None:
            digest = response.text.strip().split()[0] if response.text.strip() else ""
            if len(digest) == 64:
                return digest.lower()

        text = self._download_body(step_id)
        self._prefetched[step_id] = text
        return fingerprint(text)

    def download(self, step_id: str) -> str:
        if step_id in self._prefetched:
            return self._prefetched.pop(step_id)
        return self._download_body(step_id)

    def _download_body(self, step_id: str) -> str:
        response = self._get(step_id, self.locator(step_id))
        return response.text

    def _get(self, step_id: str, url: str, missing_ok: bool = False) -> Optional[httpx.Response]:
        client = self._client or httpx.Client(timeout=self.timeout, follow_redirects=True)
        try:
            response = client.get(url)
        except httpx.HTTPError as e:
            raise StepFetchError(step_id, f"GET {url} failed: {e}") from e
        finally:
            if self._client is None:
                client.close()

        if missing_ok and response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise StepFetchError(step_id, f"GET {url} returned HTTP {response.status_code}")
        return response


class PackagedStepSource(StepSource):
    """Step bodies bundled with nodeward (nodeward/steps/<step>.yaml)."""

    def __init__(self, package: str = "nodeward.steps"):
        self.package = package

    def locator(self, step_id: str) -> str:
        return f"package://{self.package}/{step_id}.yaml"

    def remote_fingerprint(self, step_id: str) -> str:
        return fingerprint(self.download(step_id))

    def download(self, step_id: str) -> str:
        resource = resource_files(self.package).joinpath(f"{step_id}.yaml")
        try:
            return resource.read_text(encoding="utf-8")
        except (FileNotFoundError, OSError) as e:
            raise StepFetchError(step_id, f"no packaged definition at {self.locator(step_id)}") from e


class StepDefinitionFetcher:
    """Fetch step bodies through a fingerprint-checked cache.

    Usage:
        fetcher = StepDefinitionFetcher(PackagedStepSource(), config.cache_dir)
        definition = fetcher.fetch("install_docker")
    """

    def __init__(self, source: StepSource, cache_dir: Path, audit: Optional[AuditLogger] = None):
        self.source = source
        self.cache_dir = Path(cache_dir)
        self.audit = audit

    def cache_path(self, step_id: str) -> Path:
        return self.cache_dir / f"{step_id}.yaml"

    def read_cached(self, step_id: str) -> Optional[str]:
        """Cached body text, or None when absent, unreadable or not UTF-8."""
        try:
            return self.cache_path(step_id).read_bytes().decode("utf-8")
        except (OSError, UnicodeDecodeError):
            return None

    def cached_fingerprint(self, step_id: str) -> Optional[str]:
        text = self.read_cached(step_id)
        return fingerprint(text) if text is not None else None

    def fetch(self, step_id: str) -> StepDefinition:
        """Return the current definition of a step.

        An unusable cache entry is treated like a fingerprint mismatch and
        replaced by a fresh download.

        Raises:
            StepFetchError: Source unreachable, body does not match its
                advertised fingerprint, body is invalid, or the cache
                cannot be written
        """
        remote_fp = self.source.remote_fingerprint(step_id)
        cached = self.read_cached(step_id)
        local_fp = fingerprint(cached) if cached is not None else None

        if local_fp is not None and local_fp == remote_fp:
            self._log("cache_hit", step_id, remote_fp)
            return parse_step_body(step_id, cached)

        text = self.source.download(step_id)
        downloaded_fp = fingerprint(text)
        if downloaded_fp != remote_fp:
            self._log("failed", step_id, downloaded_fp, reason="fingerprint mismatch")
            raise StepFetchError(
                step_id,
                f"downloaded body fingerprint {downloaded_fp[:12]} does not match remote {remote_fp[:12]}",
            )

        definition = parse_step_body(step_id, text)
        try:
            self._write_cache(step_id, text)
        except OSError as e:
            raise StepFetchError(step_id, f"cannot write cache {self.cache_path(step_id)}: {e}") from e
        self._log("download", step_id, remote_fp, previous=local_fp)
        return definition

    def _write_cache(self, step_id: str, text: str) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, prefix=f".{step_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_name, self.cache_path(step_id))
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _log(self, action: str, step_id: str, fp: str, **extra) -> None:
        if self.audit:
            self.audit.log("fetch", action, {"step": step_id, "fingerprint": fp, **extra})


def source_for(source_url: Optional[str], timeout: float = 30.0) -> StepSource:
    """Step source for a configured URL (None means the packaged catalog)."""
    if source_url:
        return HttpStepSource(source_url, timeout=timeout)
    return PackagedStepSource()
