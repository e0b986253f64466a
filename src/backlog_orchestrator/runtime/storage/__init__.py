"""Storage layer exports."""

from .container import Container
from .file_repos import FileConfigRepository, FileEventRepository, FileTaskStore
from .interfaces import EventRepository, TaskNotFoundError, TaskStore

__all__ = [
    "Container",
    "EventRepository",
    "FileConfigRepository",
    "FileEventRepository",
    "FileTaskStore",
    "TaskNotFoundError",
    "TaskStore",
]
