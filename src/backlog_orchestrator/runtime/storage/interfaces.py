"""Repository interfaces for runtime persistence abstractions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List, Optional

from ..domain.models import Task


class TaskNotFoundError(LookupError):
    """Raised when a task id is not present in the backlog."""


class TaskStore(ABC):
    """Backlog contract consumed by the scheduler."""
    @abstractmethod
    def ready(self) -> List[Task]:
        """List open tasks whose blocking dependencies are all closed.

        Returns:
            List[Task]: Ready tasks in backlog order (most urgent first).
        """
        raise NotImplementedError

    @abstractmethod
    def show(self, task_id: str) -> Task:
        """Fetch one task.

        Args:
            task_id (str): Identifier for the target task.

        Returns:
            Task: The stored task record.

        Raises:
            TaskNotFoundError: When no task has ``task_id``.
        """
        raise NotImplementedError

    @abstractmethod
    def update(
        self,
        task_id: str,
        *,
        status: Optional[str] = None,
        assignee: Optional[str] = None,
        priority: Optional[int] = None,
        block_reason: Optional[str] = None,
    ) -> Task:
        """Apply a partial update to status, assignee, or priority.

        An empty-string ``assignee`` clears the assignment.

        Args:
            task_id (str): Identifier for the target task.
            status (Optional[str]): New status when provided.
            assignee (Optional[str]): New assignee when provided.
            priority (Optional[int]): New priority when provided.
            block_reason (Optional[str]): Human-facing reason stored with a block.

        Returns:
            Task: Updated task record.
        """
        raise NotImplementedError

    @abstractmethod
    def close(self, task_id: str, summary: str) -> Task:
        """Mark a task closed with a completion summary.

        Args:
            task_id (str): Identifier for the target task.
            summary (str): Completion note stored as the close reason.

        Returns:
            Task: Closed task record.
        """
        raise NotImplementedError

    @abstractmethod
    def comment(self, task_id: str, text: str) -> None:
        """Append an audit comment to a task.

        Args:
            task_id (str): Identifier for the target task.
            text (str): Markdown comment body.
        """
        raise NotImplementedError

    @abstractmethod
    def get_cumulative_attempts(self, task_id: str) -> int:
        """Read the persisted failed-attempt counter for a task.

        Args:
            task_id (str): Identifier for the target task.

        Returns:
            int: Number of counted failures so far.
        """
        raise NotImplementedError

    @abstractmethod
    def set_cumulative_attempts(self, task_id: str, count: int) -> None:
        """Persist the failed-attempt counter for a task.

        Args:
            task_id (str): Identifier for the target task.
            count (int): New counter value.
        """
        raise NotImplementedError

    @abstractmethod
    def are_all_blockers_closed(self, task_id: str) -> bool:
        """Re-check every blocking dependency of a task against stored state.

        Args:
            task_id (str): Identifier for the target task.

        Returns:
            bool: `True` when each blocker exists and is closed.
        """
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> List[Task]:
        """List every task regardless of status.

        Returns:
            List[Task]: All task records.
        """
        raise NotImplementedError


class EventRepository(ABC):
    """Persistence contract for append-only runtime events."""
    @abstractmethod
    def append(self, *, channel: str, event_type: str, entity_id: str, payload: dict[str, Any], project_id: str) -> dict[str, Any]:
        """Append one event envelope and return it.

        Args:
            channel (str): Channel namespace for the event stream.
            event_type (str): Specific event type emitted in the channel.
            entity_id (str): Identifier for the related entity.
            payload (dict[str, Any]): JSON-serializable event payload body.
            project_id (str): Identifier for the related project.

        Returns:
            dict[str, Any]: Persisted envelope including generated id and timestamp.
        """
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, limit: int = 100) -> List[dict[str, Any]]:
        """Read the newest events.

        Args:
            limit (int): Maximum number of events to return.

        Returns:
            List[dict[str, Any]]: Event envelopes, oldest first.
        """
        raise NotImplementedError
