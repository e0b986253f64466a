"""Per-project wiring of the state root and its file-backed repositories."""

from __future__ import annotations

import logging
from pathlib import Path

from .bootstrap import STATE_FILES, ensure_state_root
from .file_repos import FileConfigRepository, FileEventRepository, FileTaskStore

logger = logging.getLogger(__name__)


def _lock_for(path: Path) -> Path:
    return path.with_suffix(".lock")


class Container:
    """Everything the scheduler and API need to know about one project on disk.

    Creating a container bootstraps ``<project>/.orchestrator`` (and its git
    exclude entry) when it does not exist yet; it is cheap to build repeatedly.
    """

    def __init__(self, project_dir: Path) -> None:
        """Resolve the project directory and open its repositories.

        Args:
            project_dir (Path): Root of the git repository whose backlog is worked.
        """
        self.project_dir = Path(project_dir).resolve()
        if not (self.project_dir / ".git").exists():
            logger.warning("%s is not a git repository; worktree operations will fail", self.project_dir)
        self.state_root = ensure_state_root(self.project_dir)

        tasks_path = self.state_root / STATE_FILES["tasks"]
        events_path = self.state_root / STATE_FILES["events"]
        config_path = self.state_root / STATE_FILES["config"]
        self.tasks = FileTaskStore(tasks_path, _lock_for(tasks_path))
        self.events = FileEventRepository(events_path, _lock_for(events_path))
        self.config = FileConfigRepository(config_path, _lock_for(config_path))

    @property
    def project_id(self) -> str:
        """Directory name of the project; used as the websocket/event project key."""
        return self.project_dir.name

    @property
    def snapshot_path(self) -> Path:
        return self.state_root / "orchestrator_state.json"
