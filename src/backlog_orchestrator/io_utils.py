"""File locking and atomic write helpers shared by runtime storage."""

from __future__ import annotations

import fcntl
import json
import os
from pathlib import Path
from typing import Any, Optional


class FileLock:
    """Exclusive advisory lock on ``lock_path`` held for the ``with`` block."""

    def __init__(self, lock_path: Path):
        self.lock_path = lock_path
        self.handle: Optional[Any] = None

    def __enter__(self) -> "FileLock":
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.handle = open(self.lock_path, "w")
        fcntl.flock(self.handle, fcntl.LOCK_EX)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self.handle:
            return
        fcntl.flock(self.handle, fcntl.LOCK_UN)
        self.handle.close()
        self.handle = None


def atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    """Write ``data`` as JSON through a temp file and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def load_json(path: Path) -> Optional[dict[str, Any]]:
    """Read a JSON object from ``path``; missing or unreadable files yield ``None``."""
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None
