"""
JSONL audit trail for nodeward.

Two logs are kept under the state directory:
- run.jsonl: orchestrator runs, steps, retries, fetches
- health.jsonl: health samples and remediation decisions

One JSON object per line. Appends and pruning serialize on an flock held
on a <log>.lock sidecar; pruning rewrites through a temp file and
os.replace, so a crash never leaves a truncated log.
"""

import fcntl
import json
import os
import tempfile
import traceback
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional


class AuditLogger:
    """JSONL-based audit logger."""

    CATEGORIES = {
        "run": ["start", "complete", "failed", "interrupted"],
        "step": ["skip", "start", "complete", "failed", "fallback", "reload_failed"],
        "fetch": ["cache_hit", "download", "failed"],
        "retry": ["attempt_failed", "exhausted", "recovered"],
        "lock": ["acquired", "released", "stale_removed"],
        "health": ["sample"],
        "remediation": ["decision", "restart", "verified", "failed"],
        "service": ["start", "stop", "restart"],
        "error": ["exception"],
    }

    def __init__(
        self,
        log_path: Path,
        retention_days: int = 30,
        session_id: Optional[str] = None,
    ):
        """
        Initialize audit logger.

        Construction never rewrites the log; old entries are only dropped
        by an explicit prune().

        Args:
            log_path: Path to the JSONL file
            retention_days: Days prune() keeps (0 = forever)
            session_id: Current session ID (auto-generated if None)
        """
        self.log_path = Path(log_path)
        self.retention_days = retention_days
        self.session_id = session_id or datetime.now().strftime("%Y%m%d-%H%M%S")

        self.log_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def lock_path(self) -> Path:
        return self.log_path.with_name(self.log_path.name + ".lock")

    def log(
        self,
        category: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        duration_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Append an audit entry.

        Args:
            category: Category (run, step, health, ...)
            action: Action within category
            details: Optional additional details
            duration_ms: Optional duration in milliseconds

        Returns:
            The entry as written

        Raises:
            ValueError: If category/action is not listed in CATEGORIES
        """
        if action not in self.CATEGORIES.get(category, ()):
            raise ValueError(f"Unknown audit event: {category}/{action}")

        entry: Dict[str, Any] = {
            "ts": datetime.now().isoformat(),
            "session_id": self.session_id,
            "category": category,
            "action": action,
        }

        if details:
            entry["details"] = details

        if duration_ms is not None:
            entry["duration_ms"] = duration_ms

        self._write_entry(entry)
        return entry

    def log_error(
        self,
        error: BaseException,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Log an error with full traceback.

        Args:
            error: The exception
            context: Optional context about what was happening
        """
        details: Dict[str, Any] = {
            "error_type": type(error).__name__,
            "error_message": str(error),
            "traceback": traceback.format_exc(),
        }
        if context:
            details["context"] = context

        self.log("error", "exception", details)

    def prune(self) -> int:
        """
        Remove entries older than the retention period.

        Unparseable lines are kept. The log is replaced atomically.

        Returns:
            Number of entries removed
        """
        if self.retention_days <= 0:
            return 0

        cutoff_str = (datetime.now() - timedelta(days=self.retention_days)).isoformat()

        with self._exclusive():
            if not self.log_path.exists():
                return 0

            kept = []
            removed = 0

            with open(self.log_path, "r") as f:
                for line in f:
                    try:
                        entry = json.loads(line.strip())
                    except json.JSONDecodeError:
                        kept.append(line)
                        continue
                    if isinstance(entry, dict) and entry.get("ts", "") < cutoff_str:
                        removed += 1
                    else:
                        kept.append(line)

            if removed > 0:
                fd, tmp_name = tempfile.mkstemp(dir=self.log_path.parent, prefix=f".{self.log_path.name}.")
                try:
                    with os.fdopen(fd, "w") as f:
                        f.writelines(kept)
                    os.replace(tmp_name, self.log_path)
                except BaseException:
                    if os.path.exists(tmp_name):
                        os.unlink(tmp_name)
                    raise

        return removed

    def _write_entry(self, entry: Dict[str, Any]) -> None:
        with self._exclusive():
            with open(self.log_path, "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with open(self.lock_path, "a") as lock:
            fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)

    def get_entries(
        self,
        category: Optional[str] = None,
        action: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        """
        Read entries from the log.

        Args:
            category: Filter by category
            action: Filter by action
            since: Only entries after this time
            limit: Maximum entries to return

        Returns:
            List of matching entries (newest first)
        """
        return read_entries(self.log_path, category, action, since, limit)


def read_entries(
    log_path: Path,
    category: Optional[str] = None,
    action: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = 1000,
) -> List[Dict[str, Any]]:
    """Read entries from a JSONL audit file without opening a logger."""
    log_path = Path(log_path)
    if not log_path.exists():
        return []

    entries = []
    since_str = since.isoformat() if since else None

    with open(log_path, "r") as f:
        for line in f:
            try:
                entry = json.loads(line.strip())
            except json.JSONDecodeError:
                continue

            if category and entry.get("category") != category:
                continue
            if action and entry.get("action") != action:
                continue
            if since_str and entry.get("ts", "") < since_str:
                continue

            entries.append(entry)

    return list(reversed(entries[-limit:]))
