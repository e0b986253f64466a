"""Serialized trunk writes, task completion, and merger-agent conflict resolution."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar

from ..domain.models import RetryContext, SessionRecord, Task, normalize_coding_status, now_iso
from .agent_process import AgentConfigurationError
from .worktree_manager import GitError, MergeConflictError, RebaseConflictError

if TYPE_CHECKING:
    from .service import OrchestratorService

logger = logging.getLogger(__name__)

R = TypeVar("R")

MERGE_ENTITY = "merge"


class GitCommitQueue:
    """Run trunk-touching git work one job at a time on a dedicated thread."""

    def __init__(self) -> None:
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="git-queue")
            return self._executor

    def submit(self, fn: Callable[..., R], *args: Any) -> Future[R]:
        return self._get_executor().submit(fn, *args)

    def run(self, fn: Callable[..., R], *args: Any) -> R:
        """Enqueue ``fn`` and block until it has run, re-raising its exception."""
        return self.submit(fn, *args).result()

    def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Block until every job queued before this call has finished."""
        self.submit(lambda: None).result(timeout=timeout)

    def shutdown(self) -> None:
        with self._lock:
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)


class MergeCoordinator:
    """Merge approved work into trunk, close the task, and push best-effort."""

    def __init__(self, service: OrchestratorService) -> None:
        """Bind the coordinator to the owning orchestrator service state."""
        self._service = service
        self._push_lock = threading.Lock()
        self._push_in_progress = False

    def merge_and_complete(self, task: Task, summary: str) -> Optional[RetryContext]:
        """Merge the task branch, close the task, and clean up its worktree and branch.

        A conflicting merge is routed to the failure handler as ``merge_conflict``.
        """
        svc = self._service
        state = svc.state
        branch = state.branch or svc.worktrees.branch_name(task.id)
        worktree = Path(state.worktree_path) if state.worktree_path else svc.worktrees.worktree_path(task.id)

        svc.transition("merging")
        if worktree.exists():
            svc.worktrees.wait_for_git_ready(worktree)
            svc.worktrees.commit_all(worktree, f"task({task.id}): {task.title[:60]}")
        if not state.last_diff:
            # Reattached after a restart: the diff was not part of the snapshot.
            diff = svc.worktrees.capture_branch_diff(branch)
            with svc.lock:
                state.last_diff = diff

        try:
            sha = svc.merge_queue.run(svc.worktrees.merge_to_main, branch, f"Merge {branch}: {task.title[:60]}")
        except MergeConflictError as exc:
            files = ", ".join(exc.files) or "unknown files"
            return svc.failures.handle(task, "merge_conflict", f"Merge into {svc.settings.trunk_branch} conflicted on {files}")
        except GitError as exc:
            return svc.failures.handle(task, "merge_conflict", f"Merge into {svc.settings.trunk_branch} failed: {exc}")

        close_summary = summary.strip() or f"Completed by {svc.settings.agent_id}"
        svc.store.close(task.id, close_summary)
        svc.sessions.archive(
            SessionRecord(
                task_id=task.id,
                attempt=state.attempt,
                branch=branch,
                status="success",
                summary=close_summary,
                output_log=state.output_text(),
                diff=state.last_diff,
                test_results=state.last_test_results,
                started_at=state.started_at,
                completed_at=now_iso(),
            )
        )
        svc.worktrees.remove_task_worktree(task.id)
        svc.worktrees.delete_branch(branch)
        svc.heartbeats.remove(task.id)
        logger.info("Task %s merged into %s at %s", task.id, svc.settings.trunk_branch, sha[:12])

        with svc.lock:
            state.total_done += 1
            state.clear_task()
        svc.persist()
        svc.emit_task(task.id, "task.updated", {"status": "closed", "commit": sha})
        self.schedule_push()
        return None

    def schedule_push(self) -> bool:
        """Queue a trunk push unless one is already pending."""
        with self._push_lock:
            if self._push_in_progress:
                return False
            self._push_in_progress = True
        self._service.merge_queue.submit(self._push)
        return True

    def _push(self) -> None:
        svc = self._service
        try:
            svc.worktrees.push_main()
        except RebaseConflictError as exc:
            logger.warning("Push of %s hit rebase conflicts in %s", svc.settings.trunk_branch, ", ".join(exc.files))
            self.resolve_rebase_conflict(exc.files)
        except GitError:
            logger.exception("Push of %s failed; completed tasks stay closed", svc.settings.trunk_branch)
        finally:
            with self._push_lock:
                self._push_in_progress = False

    def resolve_rebase_conflict(self, files: list[str]) -> bool:
        """Let the merger agent finish a conflicted rebase, then push; abort otherwise."""
        svc = self._service
        wt = svc.worktrees
        conflict_diff = wt.capture_conflict_diff()
        artifacts = svc.context.write_merge_artifacts(files, conflict_diff)
        try:
            handle = svc.launcher.spawn(
                "merger",
                cwd=svc.container.project_dir,
                task_id=MERGE_ENTITY,
                prompt_file=artifacts.prompt_file,
                config_file=artifacts.config_file,
                result_file=artifacts.result_file,
                env={"ORCHESTRATOR_RESULT_FILE": str(artifacts.result_file)},
            )
        except AgentConfigurationError:
            logger.warning("No merger agent configured; aborting rebase for manual resolution")
            wt.rebase_abort()
            return False

        svc.bus.emit(
            channel="agents",
            event_type="agent.started",
            entity_id=svc.container.project_id,
            payload={"role": "merger", "pid": handle.pid, "files": files},
        )
        outcome = svc.supervisor.run(
            handle,
            task_id=MERGE_ENTITY,
            last_output_at=None,
            on_output=lambda chunk, _ts: svc.bus.emit(
                channel="agents",
                event_type="agent.output",
                entity_id=svc.container.project_id,
                payload={"role": "merger", "chunk": chunk},
                persist=False,
            ),
        )
        result = svc.context.read_result(artifacts) or {}
        succeeded = normalize_coding_status(result.get("status")) == "success"
        svc.bus.emit(
            channel="agents",
            event_type="agent.completed",
            entity_id=svc.container.project_id,
            payload={"role": "merger", "exit_code": outcome.exit_code, "status": "success" if succeeded else "failed"},
        )

        if succeeded and not wt.is_rebase_in_progress():
            try:
                wt.push_trunk()
                return True
            except GitError:
                logger.exception("Push after merger resolution failed")
                return False
        if wt.is_rebase_in_progress():
            wt.rebase_abort()
        logger.warning("Merger agent did not resolve conflicts in %s; left for manual resolution", ", ".join(files))
        return False
