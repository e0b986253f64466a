"""Failure classification, retry-with-context, and progressive backoff."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from ..domain.models import FailureType, RetryContext, SessionRecord, Task, is_infra_failure, now_iso

if TYPE_CHECKING:
    from .service import OrchestratorService

logger = logging.getLogger(__name__)


class FailureHandler:
    """Decide what happens to a task after a failed attempt.

    Infrastructure failures (crash, timeout, merge conflict) get a bounded
    number of free retries on the same branch. Everything else, and
    infrastructure failures past that budget, increments the task's
    persisted attempt counter. Every ``backoff_failure_threshold``-th counted
    failure discards the branch and demotes the task by one priority step,
    or blocks it once it already sits at ``max_priority_before_block``.
    Other counted failures retry immediately on the preserved branch.
    """

    def __init__(self, service: OrchestratorService) -> None:
        """Bind the handler to the owning orchestrator service state."""
        self._service = service

    def handle(
        self,
        task: Task,
        failure_type: FailureType,
        reason: str,
        *,
        test_output: Optional[str] = None,
        review_feedback: Optional[str] = None,
    ) -> Optional[RetryContext]:
        """Archive and record a failed attempt, then retry, demote, or block the task.

        Args:
            task (Task): Task whose attempt failed.
            failure_type (FailureType): Classified failure.
            reason (str): Human-readable cause, used in comments and retry context.
            test_output (Optional[str]): Raw test output for ``test_failure``.
            review_feedback (Optional[str]): Formatted critique for ``review_rejection``.

        Returns:
            Optional[RetryContext]: Context for an immediate retry, or ``None``
            when the task left the loop (demoted or blocked).
        """
        svc = self._service
        state = svc.state
        settings = svc.settings
        branch = state.branch or svc.worktrees.branch_name(task.id)
        worktree = Path(state.worktree_path) if state.worktree_path else None
        attempt = state.attempt

        diff = svc.worktrees.capture_branch_diff(branch)
        if worktree is not None and worktree.exists():
            uncommitted = svc.worktrees.capture_uncommitted_diff(worktree)
            if uncommitted:
                diff = f"{diff}\n{uncommitted}" if diff else uncommitted

        svc.sessions.archive(
            SessionRecord(
                task_id=task.id,
                attempt=attempt,
                branch=branch,
                status="rejected" if failure_type == "review_rejection" else "failed",
                failure_type=failure_type,
                summary=review_feedback or reason,
                output_log=state.output_text(),
                diff=diff,
                test_results=state.last_test_results,
                started_at=state.started_at,
                completed_at=now_iso(),
            )
        )
        if failure_type == "review_rejection":
            svc.store.comment(task.id, f"Review rejected (attempt {attempt}):\n\n{review_feedback or reason}")
        else:
            svc.store.comment(task.id, f"Attempt {attempt} failed [{failure_type}]: {reason}")

        with svc.lock:
            state.total_failed += 1
        svc.emit_task(
            task.id,
            "task.updated",
            {"status": "in_progress", "failure_type": failure_type, "attempt": attempt, "reason": reason[:500]},
        )

        if is_infra_failure(failure_type) and state.infra_retries < settings.max_infra_retries:
            with svc.lock:
                state.infra_retries += 1
            logger.warning(
                "Task %s hit %s (infra retry %s/%s): %s",
                task.id,
                failure_type,
                state.infra_retries,
                settings.max_infra_retries,
                reason,
            )
            return self._retry(task, failure_type, reason, diff, test_output, review_feedback)

        if not is_infra_failure(failure_type):
            with svc.lock:
                state.infra_retries = 0
        cumulative = svc.store.get_cumulative_attempts(task.id) + 1
        svc.store.set_cumulative_attempts(task.id, cumulative)
        with svc.lock:
            state.cumulative_attempts = cumulative
        logger.info("Task %s failed [%s]; %s counted failure(s)", task.id, failure_type, cumulative)

        if not self.is_demotion_point(cumulative):
            return self._retry(task, failure_type, reason, diff, test_output, review_feedback)
        self.demote(task.id, state.branch or svc.worktrees.branch_name(task.id), failure_type, cumulative)
        with svc.lock:
            state.clear_task()
        svc.persist()
        return None

    def _retry(
        self,
        task: Task,
        failure_type: FailureType,
        reason: str,
        diff: str,
        test_output: Optional[str],
        review_feedback: Optional[str],
    ) -> RetryContext:
        svc = self._service
        state = svc.state
        branch = state.branch or svc.worktrees.branch_name(task.id)
        worktree = svc.worktrees.worktree_path(task.id)
        if worktree.exists():
            svc.worktrees.commit_wip(worktree, task.id)
        svc.worktrees.remove_task_worktree(task.id)
        with svc.lock:
            state.attempt += 1
            state.phase = "coding"
            state.agent_pid = None
            state.agent_output_path = None
            state.killed_due_to_timeout = False
            state.output_log = []
            state.last_diff = ""
            state.last_test_results = None
            state.started_at = now_iso()
        svc.persist()
        return RetryContext(
            failure_type=failure_type,
            previous_failure=reason,
            review_feedback=review_feedback,
            previous_diff=diff or None,
            previous_test_output=test_output,
            use_existing_branch=svc.worktrees.branch_exists(branch),
        )

    def is_demotion_point(self, cumulative: int) -> bool:
        return cumulative % self._service.settings.backoff_failure_threshold == 0

    def demote(self, task_id: str, branch: str, failure_type: str, cumulative: int) -> None:
        """Discard the task's branch and lower its priority, or block it at the ceiling.

        Scheduler state is left alone; callers clear it when the task was active.
        """
        svc = self._service
        settings = svc.settings
        svc.worktrees.remove_task_worktree(task_id)
        svc.worktrees.delete_branch(branch)
        svc.heartbeats.remove(task_id)

        current = svc.store.show(task_id)
        if current.priority >= settings.max_priority_before_block:
            block_reason = (
                f"Blocked after {cumulative} failed attempts (last failure: {failure_type}). "
                "Needs human attention before it is scheduled again."
            )
            svc.store.update(task_id, status="blocked", assignee="", block_reason=block_reason)
            svc.store.comment(task_id, block_reason)
            svc.emit_task(
                task_id,
                "task.blocked",
                {"reason": block_reason, "failure_type": failure_type, "cumulative_attempts": cumulative},
            )
            logger.warning("Task %s blocked after %s failed attempts", task_id, cumulative)
            return

        new_priority = current.priority + 1
        svc.store.update(task_id, status="open", assignee="", priority=new_priority)
        svc.store.comment(
            task_id,
            f"{cumulative} failed attempts; branch discarded and priority lowered to {new_priority}.",
        )
        svc.emit_task(
            task_id,
            "task.updated",
            {"status": "open", "priority": new_priority, "cumulative_attempts": cumulative},
        )
        logger.info("Task %s demoted to priority %s after %s failures", task_id, new_priority, cumulative)
