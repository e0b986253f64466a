"""FastAPI routes for orchestrator control and read-only backlog views."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from fastapi import APIRouter, HTTPException, Query

from ..domain.models import SessionRecord, Task
from ..orchestrator.service import OrchestratorService
from ..storage.container import Container
from ..storage.interfaces import TaskNotFoundError
from .schemas import NudgeRequest, NudgeResponse, SessionPayload, TaskPayload

logger = logging.getLogger(__name__)


def _task_payload(task: Task) -> TaskPayload:
    return TaskPayload.model_validate(task.to_dict())


def _session_payload(record: SessionRecord) -> SessionPayload:
    return SessionPayload(
        task_id=record.task_id,
        attempt=record.attempt,
        branch=record.branch,
        status=record.status,
        failure_type=record.failure_type,
        summary=record.summary,
        test_results=record.test_results.to_dict() if record.test_results else None,
        started_at=record.started_at,
        completed_at=record.completed_at,
        has_diff=bool(record.diff),
    )


def create_router(
    resolve_container: Callable[[Optional[str]], Container],
    resolve_orchestrator: Callable[[Optional[str]], OrchestratorService],
) -> APIRouter:
    """Create the runtime API router.

    Args:
        resolve_container (Callable[[Optional[str]], Container]): Resolves the
            project-scoped ``Container`` for an optional ``project_dir`` value.
        resolve_orchestrator (Callable[[Optional[str]], OrchestratorService]):
            Resolves the project-scoped scheduler for an optional
            ``project_dir`` value.

    Returns:
        APIRouter: Router exposing scheduler control and backlog inspection
        endpoints under ``/api``.
    """
    router = APIRouter(prefix="/api", tags=["api"])

    @router.get("/orchestrator/status")
    async def orchestrator_status(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        """Return the current phase, active task and counters."""
        return resolve_orchestrator(project_dir).status()

    @router.post("/orchestrator/ensure-running")
    async def ensure_running(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        """Start the scheduler loop for the project if it is not already running.

        Args:
            project_dir: Optional project directory used to resolve runtime state.

        Returns:
            The scheduler status after the call.
        """
        return resolve_orchestrator(project_dir).ensure_running()

    @router.post("/orchestrator/nudge")
    async def nudge(body: NudgeRequest, project_dir: Optional[str] = Query(None)) -> NudgeResponse:
        """Ask a running scheduler to look for work now instead of at its next poll."""
        scheduled = resolve_orchestrator(project_dir).nudge(body.reason)
        return NudgeResponse(scheduled=scheduled, reason=body.reason)

    @router.get("/tasks")
    async def list_tasks(
        project_dir: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        ready: bool = Query(False),
    ) -> dict[str, Any]:
        """List backlog tasks.

        Args:
            project_dir: Optional project directory used to resolve runtime state.
            status: Only return tasks in this status.
            ready: Only return tasks the scheduler could pick next, in pick order.

        Returns:
            A payload with the matching tasks.
        """
        container = resolve_container(project_dir)
        tasks = container.tasks.ready() if ready else container.tasks.list_all()
        if status:
            tasks = [task for task in tasks if task.status == status]
        return {"tasks": [_task_payload(task) for task in tasks]}

    @router.get("/tasks/{task_id}")
    async def get_task(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        container = resolve_container(project_dir)
        try:
            task = container.tasks.show(task_id)
        except TaskNotFoundError:
            raise HTTPException(status_code=404, detail="Task not found")
        return {"task": _task_payload(task)}

    @router.get("/tasks/{task_id}/sessions")
    async def list_task_sessions(task_id: str, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        """Return archived attempts for a task, oldest first."""
        container = resolve_container(project_dir)
        if container.tasks.get(task_id) is None:
            raise HTTPException(status_code=404, detail="Task not found")
        orchestrator = resolve_orchestrator(project_dir)
        records = orchestrator.sessions.list_sessions(task_id)
        return {"sessions": [_session_payload(record) for record in records]}

    @router.get("/events")
    async def list_events(
        project_dir: Optional[str] = Query(None),
        limit: int = Query(100, ge=1, le=2000),
    ) -> dict[str, Any]:
        """Return the most recent persisted lifecycle events."""
        container = resolve_container(project_dir)
        return {"events": container.events.list_recent(limit=limit)}

    return router
