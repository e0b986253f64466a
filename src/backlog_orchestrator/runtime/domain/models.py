"""Domain model dataclasses and normalization helpers."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional, cast


TaskStatus = Literal["open", "in_progress", "blocked", "closed"]
TaskType = Literal["task", "bug", "feature", "chore", "epic"]
Phase = Literal["idle", "selecting", "coding", "testing", "review", "merging"]
ReviewMode = Literal["never", "always", "on_failure"]
FailureType = Literal[
    "test_failure",
    "review_rejection",
    "coding_failure",
    "no_result",
    "agent_crash",
    "timeout",
    "merge_conflict",
]
CodingStatus = Literal["success", "failed"]
ReviewStatus = Literal["approved", "rejected"]
SessionStatus = Literal["success", "failed", "rejected"]

_VALID_TASK_STATUSES = {"open", "in_progress", "blocked", "closed"}
_VALID_TASK_TYPES = {"task", "bug", "feature", "chore", "epic"}
_VALID_PHASES = {"idle", "selecting", "coding", "testing", "review", "merging"}
_VALID_FAILURE_TYPES = {
    "test_failure",
    "review_rejection",
    "coding_failure",
    "no_result",
    "agent_crash",
    "timeout",
    "merge_conflict",
}
INFRA_FAILURE_TYPES = frozenset({"agent_crash", "timeout", "merge_conflict"})
MIN_PRIORITY = 0
MAX_PRIORITY = 4

_CODING_SUCCESS_WORDS = {"success", "succeeded", "successful", "completed", "complete", "done", "ok", "passed", "pass"}
_REVIEW_APPROVED_WORDS = {"approved", "approve", "accept", "accepted", "lgtm", "pass", "passed", "ok"}
_REVIEW_REJECTED_WORDS = {
    "rejected",
    "reject",
    "changes_requested",
    "request_changes",
    "needs_changes",
    "fail",
    "failed",
}


def now_iso() -> str:
    """Get the current UTC timestamp formatted as ISO-8601 text."""
    return datetime.now(timezone.utc).isoformat()


def _id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


def _clamp_priority(value: Any) -> int:
    try:
        priority = int(value)
    except (TypeError, ValueError):
        return 2
    return max(MIN_PRIORITY, min(MAX_PRIORITY, priority))


def _status_word(raw: Any) -> str:
    return str(raw or "").strip().lower().replace("-", "_").replace(" ", "_")


def normalize_coding_status(raw: Any) -> CodingStatus:
    """Collapse an agent-declared coding status into ``success`` or ``failed``.

    Anything that is not a recognised success synonym counts as a failure.
    """
    return "success" if _status_word(raw) in _CODING_SUCCESS_WORDS else "failed"


def normalize_review_status(raw: Any) -> Optional[ReviewStatus]:
    """Collapse a review verdict into ``approved``/``rejected``; unknown yields ``None``."""
    word = _status_word(raw)
    if word in _REVIEW_APPROVED_WORDS:
        return "approved"
    if word in _REVIEW_REJECTED_WORDS:
        return "rejected"
    return None


def is_infra_failure(failure_type: str) -> bool:
    """Return whether the failure is attributed to the environment rather than the agent."""
    return failure_type in INFRA_FAILURE_TYPES


@dataclass
class Task:
    """Backlog work item as seen by the scheduler."""
    id: str = field(default_factory=lambda: _id("task"))
    title: str = ""
    description: str = ""
    task_type: TaskType = "task"
    status: TaskStatus = "open"
    priority: int = 2
    assignee: Optional[str] = None
    blocked_by: list[str] = field(default_factory=list)
    parent_id: Optional[str] = None
    labels: list[str] = field(default_factory=list)
    cumulative_attempts: int = 0
    comments: list[dict[str, Any]] = field(default_factory=list)
    close_reason: Optional[str] = None
    block_reason: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def is_epic(self) -> bool:
        return self.task_type == "epic"

    def to_dict(self) -> dict[str, Any]:
        """Serialize the task to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize a task, normalizing unknown enum values to safe defaults."""
        raw_status = str(data.get("status") or "open")
        status = raw_status if raw_status in _VALID_TASK_STATUSES else "open"
        raw_type = str(data.get("task_type") or data.get("type") or "task")
        task_type = raw_type if raw_type in _VALID_TASK_TYPES else "task"
        try:
            attempts = max(0, int(data.get("cumulative_attempts") or 0))
        except (TypeError, ValueError):
            attempts = 0
        comments = [dict(c) for c in list(data.get("comments") or []) if isinstance(c, dict)]
        return cls(
            id=str(data.get("id") or _id("task")),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            task_type=cast(TaskType, task_type),
            status=cast(TaskStatus, status),
            priority=_clamp_priority(data.get("priority", 2)),
            assignee=(str(data.get("assignee")) if data.get("assignee") else None),
            blocked_by=[str(v) for v in list(data.get("blocked_by") or [])],
            parent_id=(str(data.get("parent_id")) if data.get("parent_id") else None),
            labels=[str(v) for v in list(data.get("labels") or [])],
            cumulative_attempts=attempts,
            comments=comments,
            close_reason=(str(data.get("close_reason")) if data.get("close_reason") else None),
            block_reason=(str(data.get("block_reason")) if data.get("block_reason") else None),
            created_at=str(data.get("created_at") or now_iso()),
            updated_at=str(data.get("updated_at") or now_iso()),
        )


@dataclass
class TestResults:
    """Counts and raw output from one scoped test run."""
    __test__ = False

    passed: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    command: Optional[str] = None
    exit_code: Optional[int] = None
    timed_out: bool = False
    raw_output: str = ""

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def summary(self) -> str:
        return f"{self.passed} passed, {self.failed} failed, {self.skipped} skipped ({self.total} total)"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestResults":
        return cls(
            passed=int(data.get("passed") or 0),
            failed=int(data.get("failed") or 0),
            skipped=int(data.get("skipped") or 0),
            total=int(data.get("total") or 0),
            command=(str(data.get("command")) if data.get("command") else None),
            exit_code=(int(data["exit_code"]) if data.get("exit_code") is not None else None),
            timed_out=bool(data.get("timed_out")),
            raw_output=str(data.get("raw_output") or ""),
        )


@dataclass
class ReviewFeedback:
    """Structured critique returned by a rejecting review agent."""
    summary: str = ""
    issues: list[str] = field(default_factory=list)
    notes: str = ""

    def format(self) -> str:
        """Render the feedback as markdown for task comments and retry prompts."""
        parts = [self.summary.strip() or "Review rejected without a summary."]
        if self.issues:
            parts.append("Issues:\n" + "\n".join(f"- {issue}" for issue in self.issues))
        if self.notes.strip():
            parts.append(f"Notes:\n{self.notes.strip()}")
        return "\n\n".join(parts)


@dataclass
class AgentResult:
    """Normalized content of an agent's ``result.json``."""
    status: str
    summary: str = ""
    issues: list[str] = field(default_factory=list)
    notes: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_coding(cls, data: dict[str, Any]) -> "AgentResult":
        return cls(
            status=normalize_coding_status(data.get("status")),
            summary=str(data.get("summary") or ""),
            notes=str(data.get("notes") or ""),
            raw=dict(data),
        )

    @classmethod
    def for_review(cls, data: dict[str, Any]) -> "AgentResult":
        """Normalize a review verdict; an unrecognised verdict leaves ``status`` empty."""
        issues: list[str] = []
        for item in list(data.get("issues") or []):
            if isinstance(item, dict):
                text = str(item.get("summary") or item.get("description") or "").strip()
            else:
                text = str(item).strip()
            if text:
                issues.append(text)
        return cls(
            status=normalize_review_status(data.get("status")) or "",
            summary=str(data.get("summary") or ""),
            issues=issues,
            notes=str(data.get("notes") or ""),
            raw=dict(data),
        )

    def feedback(self) -> ReviewFeedback:
        return ReviewFeedback(summary=self.summary, issues=list(self.issues), notes=self.notes)


@dataclass
class RetryContext:
    """Context handed to the next coding attempt. Never persisted."""
    failure_type: Optional[str] = None
    previous_failure: Optional[str] = None
    review_feedback: Optional[str] = None
    previous_diff: Optional[str] = None
    previous_test_output: Optional[str] = None
    use_existing_branch: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SessionRecord:
    """Immutable archive entry describing one attempt at a task."""
    task_id: str
    attempt: int
    branch: str = ""
    status: SessionStatus = "failed"
    failure_type: Optional[str] = None
    summary: str = ""
    output_log: str = ""
    diff: str = ""
    test_results: Optional[TestResults] = None
    started_at: Optional[str] = None
    completed_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["test_results"] = self.test_results.to_dict() if self.test_results else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionRecord":
        raw_tests = data.get("test_results")
        raw_status = str(data.get("status") or "failed")
        return cls(
            task_id=str(data.get("task_id") or ""),
            attempt=int(data.get("attempt") or 1),
            branch=str(data.get("branch") or ""),
            status=cast(SessionStatus, raw_status if raw_status in {"success", "failed", "rejected"} else "failed"),
            failure_type=(str(data.get("failure_type")) if data.get("failure_type") else None),
            summary=str(data.get("summary") or ""),
            output_log=str(data.get("output_log") or ""),
            diff=str(data.get("diff") or ""),
            test_results=TestResults.from_dict(raw_tests) if isinstance(raw_tests, dict) else None,
            started_at=(str(data.get("started_at")) if data.get("started_at") else None),
            completed_at=str(data.get("completed_at") or now_iso()),
        )


@dataclass
class OrchestratorState:
    """In-flight scheduler state for one project.

    Only the fields returned by :meth:`to_snapshot` survive a restart. The
    buffered output comes back from the agent output file and the diff is
    recaptured from the branch; test results are not kept.
    """
    phase: Phase = "idle"
    active_task_id: Optional[str] = None
    active_task_title: str = ""
    branch: Optional[str] = None
    worktree_path: Optional[str] = None
    agent_pid: Optional[int] = None
    agent_output_path: Optional[str] = None
    attempt: int = 1
    infra_retries: int = 0
    cumulative_attempts: int = 0
    total_done: int = 0
    total_failed: int = 0
    queue_depth: int = 0
    started_at: Optional[str] = None
    last_output_at: Optional[float] = None
    killed_due_to_timeout: bool = False
    output_log: list[str] = field(default_factory=list)
    last_diff: str = ""
    last_summary: str = ""
    last_test_results: Optional[TestResults] = None

    @property
    def has_active_task(self) -> bool:
        return bool(self.active_task_id)

    def append_output(self, chunk: str, *, limit: int = 2000) -> None:
        self.output_log.append(chunk)
        if len(self.output_log) > limit:
            del self.output_log[: len(self.output_log) - limit]

    def output_text(self) -> str:
        return "".join(self.output_log)

    def clear_task(self) -> None:
        """Drop every per-task field while keeping the aggregate counters."""
        self.phase = "idle"
        self.active_task_id = None
        self.active_task_title = ""
        self.branch = None
        self.worktree_path = None
        self.agent_pid = None
        self.agent_output_path = None
        self.attempt = 1
        self.infra_retries = 0
        self.cumulative_attempts = 0
        self.started_at = None
        self.last_output_at = None
        self.killed_due_to_timeout = False
        self.output_log = []
        self.last_diff = ""
        self.last_summary = ""
        self.last_test_results = None

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "active_task_id": self.active_task_id,
            "active_task_title": self.active_task_title,
            "branch": self.branch,
            "worktree_path": self.worktree_path,
            "agent_pid": self.agent_pid,
            "agent_output_path": self.agent_output_path,
            "attempt": self.attempt,
            "infra_retries": self.infra_retries,
            "cumulative_attempts": self.cumulative_attempts,
            "total_done": self.total_done,
            "total_failed": self.total_failed,
            "queue_depth": self.queue_depth,
            "started_at": self.started_at,
            "last_output_at": self.last_output_at,
            "killed_due_to_timeout": self.killed_due_to_timeout,
            "last_summary": self.last_summary,
            "saved_at": now_iso(),
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> "OrchestratorState":
        raw_phase = str(data.get("phase") or "idle")
        raw_pid = data.get("agent_pid")
        raw_last_output = data.get("last_output_at")
        try:
            pid = int(raw_pid) if raw_pid is not None else None
        except (TypeError, ValueError):
            pid = None
        try:
            last_output_at = float(raw_last_output) if raw_last_output is not None else None
        except (TypeError, ValueError):
            last_output_at = None
        return cls(
            phase=cast(Phase, raw_phase if raw_phase in _VALID_PHASES else "idle"),
            active_task_id=(str(data.get("active_task_id")) if data.get("active_task_id") else None),
            active_task_title=str(data.get("active_task_title") or ""),
            branch=(str(data.get("branch")) if data.get("branch") else None),
            worktree_path=(str(data.get("worktree_path")) if data.get("worktree_path") else None),
            agent_pid=pid,
            agent_output_path=(str(data.get("agent_output_path")) if data.get("agent_output_path") else None),
            attempt=int(data.get("attempt") or 1),
            infra_retries=int(data.get("infra_retries") or 0),
            cumulative_attempts=int(data.get("cumulative_attempts") or 0),
            total_done=int(data.get("total_done") or 0),
            total_failed=int(data.get("total_failed") or 0),
            queue_depth=int(data.get("queue_depth") or 0),
            started_at=(str(data.get("started_at")) if data.get("started_at") else None),
            last_output_at=last_output_at,
            killed_due_to_timeout=bool(data.get("killed_due_to_timeout")),
            last_summary=str(data.get("last_summary") or ""),
        )
