"""Pydantic request/response schemas for runtime API routes."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field


class NudgeRequest(BaseModel):
    """Payload for waking the scheduler loop."""

    reason: str = "api"


class NudgeResponse(BaseModel):
    """Whether the nudge scheduled a loop iteration."""

    scheduled: bool
    reason: str


class CommentPayload(BaseModel):
    author: str = ""
    text: str = ""
    created_at: str = ""


class TaskPayload(BaseModel):
    """Public view of a backlog task."""

    id: str
    title: str
    description: str = ""
    task_type: str = "task"
    status: str = "open"
    priority: int = 2
    assignee: Optional[str] = None
    blocked_by: list[str] = Field(default_factory=list)
    parent_id: Optional[str] = None
    labels: list[str] = Field(default_factory=list)
    cumulative_attempts: int = 0
    comments: list[CommentPayload] = Field(default_factory=list)
    close_reason: Optional[str] = None
    block_reason: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


class SessionPayload(BaseModel):
    """Archived attempt without its (potentially large) output log and diff."""

    task_id: str
    attempt: int
    branch: str = ""
    status: str
    failure_type: Optional[str] = None
    summary: str = ""
    test_results: Optional[dict[str, Any]] = None
    started_at: Optional[str] = None
    completed_at: str = ""
    has_diff: bool = False
