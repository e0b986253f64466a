"""File-backed backlog, event log and config repositories under the state root."""

from __future__ import annotations

import json
import os
import threading
import uuid
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import yaml

from ...io_utils import FileLock
from ..domain.models import MAX_PRIORITY, MIN_PRIORITY, Task, now_iso
from .interfaces import EventRepository, TaskNotFoundError, TaskStore

_SETTABLE_STATUSES = {"open", "in_progress", "blocked", "closed"}


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    return raw if isinstance(raw, dict) else {}


def _write_yaml(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(f"{path.suffix}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


class _Guarded:
    """Thread lock nested inside a cross-process file lock."""

    def __init__(self, lock_path: Path) -> None:
        self._file_lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    @contextmanager
    def _guard(self) -> Iterator[None]:
        with self._thread_lock:
            with self._file_lock:
                yield


def _blockers_closed(task: Task, by_id: dict[str, Task]) -> bool:
    for dep_id in task.blocked_by:
        dep = by_id.get(dep_id)
        if dep is None or dep.status != "closed":
            return False
    return True


class FileTaskStore(_Guarded, TaskStore):
    """Backlog kept in ``tasks.yaml``; every mutation is a locked read-modify-write."""

    def __init__(self, path: Path, lock_path: Path) -> None:
        """Initialize the FileTaskStore.

        Args:
            path (Path): YAML file holding the ``tasks`` list.
            lock_path (Path): Lock file shared by every process touching the backlog.
        """
        super().__init__(lock_path)
        self._path = path

    def _read(self) -> list[Task]:
        items = _read_yaml(self._path).get("tasks")
        if not isinstance(items, list):
            return []
        return [Task.from_dict(item) for item in items if isinstance(item, dict)]

    @contextmanager
    def _transaction(self) -> Iterator[list[Task]]:
        with self._guard():
            tasks = self._read()
            yield tasks
            _write_yaml(self._path, {"version": 1, "tasks": [task.to_dict() for task in tasks]})

    def _mutate(self, task_id: str, change: Callable[[Task], None]) -> Task:
        with self._transaction() as tasks:
            for task in tasks:
                if task.id == task_id:
                    change(task)
                    task.updated_at = now_iso()
                    return task
        raise TaskNotFoundError(task_id)

    def list_all(self) -> list[Task]:
        with self._guard():
            return self._read()

    def get(self, task_id: str) -> Optional[Task]:
        return next((task for task in self.list_all() if task.id == task_id), None)

    def show(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def upsert(self, task: Task) -> Task:
        """Insert a task, or replace the stored task with the same id.

        Args:
            task (Task): Task to persist; its ``updated_at`` is refreshed.

        Returns:
            Task: The persisted task.
        """
        task.updated_at = now_iso()
        with self._transaction() as tasks:
            for idx, existing in enumerate(tasks):
                if existing.id == task.id:
                    tasks[idx] = task
                    break
            else:
                tasks.append(task)
        return task

    def ready(self) -> list[Task]:
        """List open tasks with every blocker closed, most urgent first.

        A blocker id that is not in the backlog counts as open.

        Returns:
            list[Task]: Ready tasks ordered by ``(priority, created_at)``.
        """
        tasks = self.list_all()
        by_id = {task.id: task for task in tasks}
        ready = [task for task in tasks if task.status == "open" and _blockers_closed(task, by_id)]
        return sorted(ready, key=lambda task: (task.priority, task.created_at))

    def update(
        self,
        task_id: str,
        *,
        status: Optional[str] = None,
        assignee: Optional[str] = None,
        priority: Optional[int] = None,
        block_reason: Optional[str] = None,
    ) -> Task:
        if status is not None and status not in _SETTABLE_STATUSES:
            raise ValueError(f"Unsupported task status: {status}")

        def _apply(task: Task) -> None:
            if status is not None:
                task.status = status  # type: ignore[assignment]
                if status != "blocked":
                    task.block_reason = None
            if assignee is not None:
                task.assignee = assignee or None
            if priority is not None:
                task.priority = max(MIN_PRIORITY, min(MAX_PRIORITY, int(priority)))
            if block_reason is not None:
                task.block_reason = block_reason

        return self._mutate(task_id, _apply)

    def close(self, task_id: str, summary: str) -> Task:
        def _apply(task: Task) -> None:
            task.status = "closed"
            task.assignee = None
            task.close_reason = summary

        return self._mutate(task_id, _apply)

    def comment(self, task_id: str, text: str) -> None:
        entry = {"author": "orchestrator", "text": text, "created_at": now_iso()}
        self._mutate(task_id, lambda task: task.comments.append(entry))

    def get_cumulative_attempts(self, task_id: str) -> int:
        return self.show(task_id).cumulative_attempts

    def set_cumulative_attempts(self, task_id: str, count: int) -> None:
        def _apply(task: Task) -> None:
            task.cumulative_attempts = max(0, int(count))

        self._mutate(task_id, _apply)

    def are_all_blockers_closed(self, task_id: str) -> bool:
        by_id = {task.id: task for task in self.list_all()}
        task = by_id.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return _blockers_closed(task, by_id)


class FileEventRepository(_Guarded, EventRepository):
    """Append-only ``events.jsonl``; one JSON envelope per line."""

    def __init__(self, path: Path, lock_path: Path) -> None:
        super().__init__(lock_path)
        self._path = path

    def append(self, *, channel: str, event_type: str, entity_id: str, payload: dict[str, Any], project_id: str) -> dict[str, Any]:
        event = {
            "id": f"evt-{uuid.uuid4().hex[:10]}",
            "ts": now_iso(),
            "channel": channel,
            "type": event_type,
            "entity_id": entity_id,
            "payload": payload,
            "project_id": project_id,
        }
        line = json.dumps(event) + "\n"
        with self._guard():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line)
                handle.flush()
                os.fsync(handle.fileno())
        return event

    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        """Return up to ``limit`` newest events, oldest first; corrupt lines are skipped."""
        if limit <= 0 or not self._path.exists():
            return []
        with self._guard():
            with self._path.open("r", encoding="utf-8") as handle:
                tail = list(deque(handle, maxlen=limit))
        events: list[dict[str, Any]] = []
        for line in tail:
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                events.append(parsed)
        return events


class FileConfigRepository(_Guarded):
    """Project configuration in ``config.yaml``."""

    def __init__(self, path: Path, lock_path: Path) -> None:
        super().__init__(lock_path)
        self._path = path

    def load(self) -> dict[str, Any]:
        """Return the parsed config, or an empty mapping when missing or malformed."""
        with self._guard():
            return _read_yaml(self._path)

    def save(self, config: dict[str, Any]) -> dict[str, Any]:
        with self._guard():
            _write_yaml(self._path, config)
        return config
