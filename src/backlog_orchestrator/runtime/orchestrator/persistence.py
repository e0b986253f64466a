"""Atomic on-disk snapshot of the scheduler's in-flight state."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ...io_utils import atomic_write_json, load_json
from ..domain.models import OrchestratorState

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Single JSON file per project; the only input crash recovery trusts."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def save(self, state: OrchestratorState) -> None:
        atomic_write_json(self.path, state.to_snapshot())

    def load(self) -> Optional[OrchestratorState]:
        data = load_json(self.path)
        if data is None:
            if self.path.exists():
                logger.warning("Orchestrator snapshot %s is unreadable; treating as idle", self.path)
            return None
        return OrchestratorState.from_snapshot(data)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
