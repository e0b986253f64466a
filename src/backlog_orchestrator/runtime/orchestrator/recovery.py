"""Reconcile persisted scheduler state with reality on startup."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from ..domain.models import OrchestratorState
from ..storage.interfaces import TaskNotFoundError
from .agent_process import AttachedAgentProcess, is_pid_alive, terminate_process_group

if TYPE_CHECKING:
    from .service import OrchestratorService

logger = logging.getLogger(__name__)


class CrashRecovery:
    """Decide, from the snapshot alone, whether to reattach, clean up, or start idle."""

    def __init__(self, service: OrchestratorService) -> None:
        """Bind recovery to the owning orchestrator service state."""
        self._service = service

    def recover(self) -> Optional[AttachedAgentProcess]:
        """Run startup reconciliation.

        Returns:
            Optional[AttachedAgentProcess]: Handle for a still-running agent
            whose task should be resumed, or ``None`` when the scheduler
            starts idle.
        """
        svc = self._service
        svc.worktrees.clean_stale_git_locks()
        snapshot = svc.snapshots.load()

        if snapshot is None or not snapshot.has_active_task:
            svc.snapshots.clear()
            if snapshot is not None:
                self._restore_counters(snapshot)
            self._requeue_orphans(active_task_id=None)
            svc.worktrees.prune_orphan_worktrees(keep=set())
            return None

        task_id = str(snapshot.active_task_id)
        pid = snapshot.agent_pid
        if pid and is_pid_alive(pid):
            last_output_at = self._freshest_output(task_id, pid, snapshot)
            threshold = svc.settings.inactivity_timeout_seconds
            if last_output_at is not None and time.time() - last_output_at <= threshold:
                return self._reattach(snapshot, pid, last_output_at)
            logger.warning(
                "Agent pid %s for task %s has been silent past %.0fs; killing before recovery",
                pid,
                task_id,
                threshold,
            )
            terminate_process_group(pid, svc.settings.sigterm_grace_seconds)

        self.recover_crashed_task(snapshot)
        self._requeue_orphans(active_task_id=None)
        svc.worktrees.prune_orphan_worktrees(keep=set())
        return None

    def _freshest_output(self, task_id: str, pid: int, snapshot: OrchestratorState) -> Optional[float]:
        candidates = []
        heartbeat = self._service.heartbeats.read(task_id)
        if heartbeat is not None and heartbeat.pid == pid:
            candidates.append(heartbeat.last_output_at)
        if snapshot.last_output_at is not None:
            candidates.append(snapshot.last_output_at)
        return max(candidates) if candidates else None

    def _restore_counters(self, snapshot: OrchestratorState) -> None:
        svc = self._service
        with svc.lock:
            svc.state.total_done = snapshot.total_done
            svc.state.total_failed = snapshot.total_failed

    def _reattach(self, snapshot: OrchestratorState, pid: int, last_output_at: float) -> AttachedAgentProcess:
        svc = self._service
        output_path = Path(snapshot.agent_output_path) if snapshot.agent_output_path else None
        with svc.lock:
            snapshot.last_output_at = last_output_at
            svc.state = snapshot
            if output_path is not None and output_path.exists():
                svc.state.append_output(output_path.read_text(encoding="utf-8", errors="replace"))
        svc.persist()
        self._requeue_orphans(active_task_id=snapshot.active_task_id)
        svc.worktrees.prune_orphan_worktrees(keep={str(snapshot.active_task_id)})
        logger.info("Reattaching to agent pid %s for task %s (%s)", pid, snapshot.active_task_id, snapshot.phase)
        return AttachedAgentProcess(pid, output_path)

    def recover_crashed_task(self, snapshot: OrchestratorState) -> None:
        """Requeue the snapshot's task after its agent died with the orchestrator.

        The snapshot is cleared before anything else so a failure below can
        never put the process into a restart loop.
        """
        svc = self._service
        svc.snapshots.clear()
        self._restore_counters(snapshot)
        task_id = str(snapshot.active_task_id)
        branch = snapshot.branch or svc.worktrees.branch_name(task_id)
        worktree = svc.worktrees.worktree_path(task_id)
        svc.heartbeats.remove(task_id)

        try:
            task = svc.store.show(task_id)
        except TaskNotFoundError:
            logger.warning("Snapshot names unknown task %s; cleaning up its worktree only", task_id)
            svc.worktrees.remove_task_worktree(task_id)
            return

        if task.status == "closed":
            logger.info("Task %s was already closed before the crash; finishing cleanup", task_id)
            svc.worktrees.remove_task_worktree(task_id)
            svc.worktrees.delete_branch(branch)
            return

        if worktree.exists():
            svc.worktrees.commit_wip(worktree, task_id)
        ahead = svc.worktrees.get_commit_count_ahead(branch) if svc.worktrees.branch_exists(branch) else 0
        if ahead > 0:
            svc.store.comment(
                task_id,
                f"Agent crashed during {snapshot.phase} (attempt {snapshot.attempt}). "
                f"Branch `{branch}` kept with {ahead} commit(s) ahead of {svc.settings.trunk_branch}; "
                "the next attempt resumes from it.",
            )
        else:
            svc.worktrees.delete_branch(branch)
            svc.store.comment(
                task_id,
                f"Agent crashed during {snapshot.phase} (attempt {snapshot.attempt}). No committed work was found.",
            )
        svc.worktrees.remove_task_worktree(task_id)
        svc.store.update(task_id, status="open", assignee="")
        cumulative = svc.store.get_cumulative_attempts(task_id) + 1
        svc.store.set_cumulative_attempts(task_id, cumulative)
        with svc.lock:
            svc.state.total_failed += 1
        if svc.failures.is_demotion_point(cumulative):
            svc.failures.demote(task_id, branch, "agent_crash", cumulative)
            return
        svc.emit_task(
            task_id,
            "task.updated",
            {"status": "open", "reason": "crash_recovery", "commits_ahead": ahead, "cumulative_attempts": cumulative},
        )
        logger.warning("Recovered crashed task %s (%s commit(s) preserved)", task_id, ahead)

    def _requeue_orphans(self, active_task_id: Optional[str]) -> None:
        svc = self._service
        for task in svc.store.list_all():
            if task.status != "in_progress" or task.id == active_task_id:
                continue
            if task.assignee and task.assignee != svc.settings.agent_id:
                continue
            svc.store.update(task.id, status="open", assignee="")
            svc.store.comment(task.id, "Requeued: task was in progress with no live orchestrator session.")
            svc.emit_task(task.id, "task.updated", {"status": "open", "reason": "orphaned"})
            logger.warning("Requeued orphaned in-progress task %s", task.id)
