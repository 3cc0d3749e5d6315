"""
RunLock - host-wide exclusion for the orchestrator.

The lock is a file holding the owner's pid, hostname and a per-acquisition
nonce. It is written to a private temp file first and hard-linked into
place, so the lock path never exists without its contents. With liveness
checking enabled, a lock whose pid no longer exists is stale and is
replaced; with it disabled, any lock file blocks until it is removed.
"""

import json
import os
import socket
import tempfile
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

from nodeward.core.audit import AuditLogger
from nodeward.core.errors import LockHeldError

# An unreadable lock younger than this may belong to a writer on a
# filesystem without hard links; it counts as held.
UNREADABLE_GRACE_SECONDS = 30.0


def pid_alive(pid: int) -> bool:
    """Whether a process with this pid exists on the host."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


@dataclass(frozen=True)
class LockToken:
    """Proof of acquisition, required to release."""

    path: Path
    pid: int
    nonce: str


class RunLock:
    """Single exclusive lock file.

    Usage:
        lock = RunLock(config.lock_path)
        token = lock.acquire()
        try:
            ...
        finally:
            lock.release(token)
    """

    def __init__(
        self,
        lock_path: Path,
        liveness_check: bool = True,
        audit: Optional[AuditLogger] = None,
        is_alive: Callable[[int], bool] = pid_alive,
        unreadable_grace: float = UNREADABLE_GRACE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.lock_path = Path(lock_path)
        self.liveness_check = liveness_check
        self.audit = audit
        self._is_alive = is_alive
        self.unreadable_grace = unreadable_grace
        self._clock = clock

    def acquire(self) -> LockToken:
        """Take the lock.

        Raises:
            LockHeldError: If another live holder owns it (or any holder,
                when liveness checking is disabled), or the lock file
                cannot be created at all
        """
        token = self._try_create()
        if token:
            return token

        holder = self.read_holder()
        holder_pid = _holder_pid(holder)

        if self.liveness_check and self._is_stale(holder, holder_pid):
            self._remove_stale(holder)
            token = self._try_create()
            if token:
                return token
            holder_pid = _holder_pid(self.read_holder())

        raise LockHeldError(self.lock_path, holder_pid)

    def release(self, token: Optional[LockToken]) -> None:
        """Release the lock. Safe to call with None or after the lock is gone."""
        if token is None:
            return

        holder = self.read_holder()
        if holder is None or holder.get("nonce") != token.nonce:
            return

        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            return

        if self.audit:
            self.audit.log("lock", "released", {"path": str(self.lock_path), "pid": token.pid})

    def read_holder(self) -> Optional[Dict[str, Any]]:
        """Parsed lock file contents, {} when unreadable, None when absent."""
        try:
            text = self.lock_path.read_text()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError):
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}

    def is_held(self) -> bool:
        holder = self.read_holder()
        if holder is None:
            return False
        if not self.liveness_check:
            return True
        return not self._is_stale(holder, _holder_pid(holder))

    @contextmanager
    def held(self) -> Iterator[LockToken]:
        """Context manager form of acquire/release."""
        token = self.acquire()
        try:
            yield token
        finally:
            self.release(token)

    def _is_stale(self, holder: Optional[Dict[str, Any]], holder_pid: Optional[int]) -> bool:
        if holder is None:
            return True
        if holder_pid:
            return not self._is_alive(holder_pid)
        # No readable pid: stale only once the file is older than the grace
        try:
            age = self._clock() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return True
        except OSError:
            return False
        return age > self.unreadable_grace

    def _try_create(self) -> Optional[LockToken]:
        pid = os.getpid()
        nonce = uuid.uuid4().hex
        payload = {
            "pid": pid,
            "hostname": socket.gethostname(),
            "started_at": datetime.now().isoformat(),
            "nonce": nonce,
        }

        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LockHeldError(self.lock_path, reason=str(e)) from e

        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.lock_path.parent, prefix=f".{self.lock_path.name}.")
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f)
                f.write("\n")
            os.chmod(tmp_name, 0o644)
            os.link(tmp_name, self.lock_path)
        except FileExistsError:
            return None
        except OSError as e:
            raise LockHeldError(self.lock_path, reason=str(e)) from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass

        if self.audit:
            self.audit.log("lock", "acquired", {"path": str(self.lock_path), "pid": pid})
        return LockToken(path=self.lock_path, pid=pid, nonce=nonce)

    def _remove_stale(self, holder: Optional[Dict[str, Any]]) -> None:
        # Another acquirer may already have replaced the stale lock
        if self.read_holder() != holder:
            return
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
        if self.audit:
            self.audit.log("lock", "stale_removed", {"path": str(self.lock_path), "holder": holder})


def _holder_pid(holder: Optional[Dict[str, Any]]) -> Optional[int]:
    if not holder:
        return None
    try:
        return int(holder.get("pid"))
    except (TypeError, ValueError):
        return None
