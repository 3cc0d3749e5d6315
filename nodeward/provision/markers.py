"""
MarkerStore - durable "step completed" facts.

One file per step under the markers directory (<step>.done). Presence of
the file is the fact; its JSON payload (completion time, body fingerprint)
is for the operator only.
"""

import json
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from nodeward.core.errors import MarkerWriteError

_STEP_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass
class MarkerInfo:
    """A marker as found on disk."""

    step_id: str
    path: Path
    completed_at: Optional[str] = None
    fingerprint: Optional[str] = None


class MarkerStore:
    """Key-addressable store of completed steps.

    Usage:
        markers = MarkerStore(Path("/root/.nodeward/markers"))
        if not markers.has("install_docker"):
            ...  # run the step
            markers.set("install_docker", fingerprint=body.fingerprint)
    """

    SUFFIX = ".done"

    def __init__(self, markers_dir: Path):
        self.markers_dir = Path(markers_dir)

    def path_for(self, step_id: str) -> Path:
        """Marker file path for a step id."""
        if not _STEP_ID_RE.match(step_id):
            raise ValueError(f"Invalid step id: {step_id!r}")
        return self.markers_dir / f"{step_id}{self.SUFFIX}"

    def has(self, step_id: str) -> bool:
        return self.path_for(step_id).exists()

    def set(self, step_id: str, fingerprint: Optional[str] = None) -> None:
        """Record a step as completed. Setting an existing marker is a no-op.

        Raises:
            MarkerWriteError: If the marker cannot be made durable
        """
        path = self.path_for(step_id)
        if path.exists():
            return

        payload = {
            "step": step_id,
            "completed_at": datetime.now().isoformat(),
            "fingerprint": fingerprint,
        }

        try:
            self.markers_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.markers_dir, prefix=f".{step_id}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(payload, f)
                    f.write("\n")
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise MarkerWriteError(step_id, path, str(e)) from e

    def clear(self, step_id: str) -> bool:
        """Delete a marker (operator action). Returns True if one existed."""
        path = self.path_for(step_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def get(self, step_id: str) -> Optional[MarkerInfo]:
        """Read a marker's payload, or None if the step is not done."""
        path = self.path_for(step_id)
        if not path.exists():
            return None

        info = MarkerInfo(step_id=step_id, path=path)
        try:
            data = json.loads(path.read_text() or "{}")
        except (OSError, json.JSONDecodeError):
            # Legacy empty marker (touch-style) still counts
            return info

        info.completed_at = data.get("completed_at")
        info.fingerprint = data.get("fingerprint")
        return info

    def list(self) -> List[MarkerInfo]:
        """All markers present, sorted by step id."""
        if not self.markers_dir.exists():
            return []

        markers = []
        for path in sorted(self.markers_dir.glob(f"*{self.SUFFIX}")):
            step_id = path.name[: -len(self.SUFFIX)]
            info = self.get(step_id)
            if info:
                markers.append(info)
        return markers
