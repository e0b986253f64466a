"""Per-task liveness file shared by live supervision and crash recovery."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ...io_utils import atomic_write_json, load_json

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Heartbeat:
    pid: int
    last_output_at: float
    written_at: float

    def age(self, now: Optional[float] = None) -> float:
        """Seconds since the agent last produced output."""
        return max(0.0, (now if now is not None else time.time()) - self.last_output_at)


class HeartbeatTracker:
    """Read and write ``heartbeats/<task-id>.json`` under the state root."""

    def __init__(self, state_root: Path) -> None:
        self._dir = state_root / "heartbeats"

    def path_for(self, task_id: str) -> Path:
        return self._dir / f"{task_id}.json"

    def write(self, task_id: str, *, pid: int, last_output_at: float) -> None:
        atomic_write_json(
            self.path_for(task_id),
            {"pid": int(pid), "last_output_at": float(last_output_at), "written_at": time.time()},
        )

    def read(self, task_id: str) -> Optional[Heartbeat]:
        data = load_json(self.path_for(task_id))
        if data is None:
            return None
        try:
            return Heartbeat(
                pid=int(data["pid"]),
                last_output_at=float(data["last_output_at"]),
                written_at=float(data.get("written_at") or data["last_output_at"]),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed heartbeat file for task %s", task_id)
            return None

    def remove(self, task_id: str) -> None:
        self.path_for(task_id).unlink(missing_ok=True)

    @staticmethod
    def is_stale(heartbeat: Heartbeat, threshold_seconds: float, *, now: Optional[float] = None) -> bool:
        return heartbeat.age(now) > threshold_seconds
