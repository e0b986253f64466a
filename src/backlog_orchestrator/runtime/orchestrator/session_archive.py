"""Append-only archive of per-attempt session records."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from ...io_utils import load_json
from ..domain.models import SessionRecord

logger = logging.getLogger(__name__)


class SessionArchive:
    """Store one immutable directory per attempt under ``<state_root>/sessions``.

    Each directory holds ``session.json`` plus the raw ``output.log`` and
    ``diff.patch`` so the larger artifacts can be inspected without parsing
    JSON. A directory is never rewritten once created.
    """

    def __init__(self, state_root: Path) -> None:
        self._root = state_root / "sessions"

    def _claim_dir(self, task_id: str, attempt: int) -> Path:
        self._root.mkdir(parents=True, exist_ok=True)
        base = f"{task_id}-{attempt}"
        candidate = self._root / base
        suffix = 1
        while True:
            try:
                candidate.mkdir()
                return candidate
            except FileExistsError:
                suffix += 1
                candidate = self._root / f"{base}.{suffix}"

    def archive(self, record: SessionRecord) -> Path:
        """Persist ``record`` and return the directory it was written to."""
        target = self._claim_dir(record.task_id, record.attempt)
        (target / "output.log").write_text(record.output_log, encoding="utf-8")
        (target / "diff.patch").write_text(record.diff, encoding="utf-8")
        with open(target / "session.json", "w", encoding="utf-8") as handle:
            json.dump(record.to_dict(), handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        logger.info(
            "Archived session for task %s attempt %s (%s) at %s",
            record.task_id,
            record.attempt,
            record.status,
            target,
        )
        return target

    def list_sessions(self, task_id: Optional[str] = None) -> list[SessionRecord]:
        """Return archived sessions, oldest first, optionally for one task."""
        if not self._root.exists():
            return []
        records: list[SessionRecord] = []
        for child in self._root.iterdir():
            data = load_json(child / "session.json")
            if data is None:
                continue
            record = SessionRecord.from_dict(data)
            if task_id is None or record.task_id == task_id:
                records.append(record)
        records.sort(key=lambda r: (r.completed_at, r.attempt))
        return records

    def read_session(self, task_id: str, attempt: int) -> Optional[SessionRecord]:
        data = load_json(self._root / f"{task_id}-{attempt}" / "session.json")
        return SessionRecord.from_dict(data) if data is not None else None
