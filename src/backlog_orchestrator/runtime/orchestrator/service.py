"""Per-project scheduler: selects tasks and drives them through code, test, review and merge."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Optional

from ..domain.models import AgentResult, OrchestratorState, Phase, RetryContext, Task, now_iso
from ..events.bus import EventBus
from ..storage.container import Container
from .agent_process import AgentExit, AgentLauncher, AgentProcess, AgentSupervisor, CommandAgentLauncher
from .context import AgentArtifacts, ContextAssembler
from .failure_handler import FailureHandler
from .heartbeat import HeartbeatTracker
from .merge_coordinator import GitCommitQueue, MergeCoordinator
from .persistence import SnapshotStore
from .recovery import CrashRecovery
from .session_archive import SessionArchive
from .settings import AgentRole, OrchestratorSettings, get_orchestrator_settings
from .test_runner import ScopedTestRunner
from .worktree_manager import GitError, WorktreeManager

logger = logging.getLogger(__name__)


class OrchestratorService:
    """Own the scheduling loop for one project.

    Exactly one loop thread runs per service. HTTP handlers and agent events
    talk to it through :meth:`ensure_running`, :meth:`nudge` and
    :meth:`status`; the loop thread is the only writer of task progress. The
    on-disk snapshot is rewritten on every phase change before any agent is
    spawned, and is what :class:`CrashRecovery` reads on the next start.
    """

    def __init__(
        self,
        container: Container,
        bus: EventBus,
        *,
        launcher: AgentLauncher | None = None,
        settings: OrchestratorSettings | None = None,
    ) -> None:
        """Initialize the OrchestratorService.

        Args:
            container (Container): Project repositories and state root.
            bus (EventBus): Sink for lifecycle events.
            launcher (AgentLauncher | None): Agent spawner; defaults to the
                configured shell commands.
            settings (OrchestratorSettings | None): Explicit settings; read from
                the project config when omitted.
        """
        self.container = container
        self.bus = bus
        self.settings = settings or get_orchestrator_settings(config=container.config.load())
        self.store = container.tasks
        self.lock = threading.RLock()
        self.state = OrchestratorState()
        self.snapshots = SnapshotStore(container.snapshot_path)
        self.heartbeats = HeartbeatTracker(container.state_root)
        self.sessions = SessionArchive(container.state_root)
        self.worktrees = WorktreeManager(container.project_dir, container.state_root, self.settings)
        self.test_runner = ScopedTestRunner(self.settings)
        self.context = ContextAssembler(self.store, self.settings, container.state_root)
        self.supervisor = AgentSupervisor(self.settings, self.heartbeats)
        self.launcher: AgentLauncher = launcher or CommandAgentLauncher(self.settings, container.state_root / "agent_output")
        self.merge_queue = GitCommitQueue()
        self.failures = FailureHandler(self)
        self.merger = MergeCoordinator(self)
        self.recovery = CrashRecovery(self)

        self._thread: Optional[threading.Thread] = None
        self._watchdog: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._loop_active = False
        self._handle: Optional[AgentProcess] = None

    # ------------------------------------------------------------------
    # Public entrypoints

    def status(self) -> dict[str, Any]:
        """Build a status snapshot of the current task, phase and counters.

        Returns:
            dict[str, Any]: JSON-serializable status payload.
        """
        with self.lock:
            state = self.state
            running = bool(self._thread and self._thread.is_alive())
            current = (
                {"id": state.active_task_id, "title": state.active_task_title}
                if state.active_task_id
                else None
            )
            return {
                "project_id": self.container.project_id,
                "running": running,
                "loop_active": self._loop_active,
                "phase": state.phase,
                "current_task": current,
                "branch": state.branch,
                "worktree_path": state.worktree_path,
                "agent_pid": state.agent_pid,
                "attempt": state.attempt if state.active_task_id else None,
                "queue_depth": state.queue_depth,
                "total_done": state.total_done,
                "total_failed": state.total_failed,
                "last_output_at": state.last_output_at,
                "review_mode": self.settings.review_mode,
            }

    def ensure_running(self) -> dict[str, Any]:
        """Recover from any previous run and start the loop; a no-op when already running.

        Returns:
            dict[str, Any]: Status after the call.
        """
        with self.lock:
            if self._thread and self._thread.is_alive():
                return self.status()
            resume = self.recovery.recover()
            self._stop.clear()
            self._wake.clear()
            self._thread = threading.Thread(
                target=self._loop,
                args=(resume,),
                daemon=True,
                name=f"orchestrator-{self.container.project_id}",
            )
            self._thread.start()
            self._watchdog = threading.Thread(
                target=self._watchdog_loop,
                daemon=True,
                name=f"orchestrator-watchdog-{self.container.project_id}",
            )
            self._watchdog.start()
            logger.info("Orchestrator started for %s", self.container.project_dir)
        return self.status()

    def nudge(self, reason: str = "external") -> bool:
        """Wake the loop unless it is already active, already scheduled, or supervising an agent.

        Args:
            reason (str): Short label recorded in the debug log.

        Returns:
            bool: `True` when this call scheduled a loop iteration.
        """
        with self.lock:
            if not (self._thread and self._thread.is_alive()):
                logger.debug("Nudge (%s) ignored: orchestrator not running", reason)
                return False
            if self._loop_active or self._handle is not None or self._wake.is_set():
                logger.debug("Nudge (%s) ignored: loop already active or scheduled", reason)
                return False
            self._wake.set()
        logger.debug("Nudge (%s) scheduled a loop iteration", reason)
        return True

    def shutdown(self, *, timeout: float = 10.0) -> None:
        """Stop the loop and watchdog; a running agent is left alive for reattachment.

        Args:
            timeout (float): Seconds to wait for each thread to exit.
        """
        with self.lock:
            self._stop.set()
            self._wake.set()
            thread = self._thread
            watchdog = self._watchdog

        for worker in (thread, watchdog):
            if worker and worker.is_alive():
                worker.join(timeout=max(timeout, 0.0))
        self.merge_queue.shutdown()
        with self.lock:
            self._thread = None
            self._watchdog = None

    def tick_once(self) -> bool:
        """Run one selection and, when a task is picked, its whole pipeline.

        Returns:
            bool: `True` when a task was selected and driven.
        """
        with self.lock:
            if self._loop_active or self._handle is not None:
                return False
            self._loop_active = True
        try:
            task = self._select_task()
            if task is None:
                self.transition("idle", announce=False)
                return False
            self._run_task(task)
            return True
        finally:
            with self.lock:
                self._loop_active = False

    # ------------------------------------------------------------------
    # Shared helpers used by the failure handler, merge coordinator and recovery

    def persist(self) -> None:
        with self.lock:
            self.snapshots.save(self.state)

    def transition(self, phase: Phase, *, announce: bool = True) -> None:
        """Record a phase change in the snapshot and, when ``announce``, broadcast it.

        Idle polling passes ``announce=False`` so selecting/idle churn never
        reaches the event log.
        """
        with self.lock:
            previous = self.state.phase
            self.state.phase = phase
            task_id = self.state.active_task_id
        self.persist()
        if announce and previous != phase:
            self.bus.emit(
                channel="orchestrator",
                event_type="orchestrator.status",
                entity_id=self.container.project_id,
                payload={"phase": phase, "task_id": task_id},
            )

    def emit_task(self, task_id: str, event_type: str, payload: dict[str, Any]) -> None:
        self.bus.emit(channel="tasks", event_type=event_type, entity_id=task_id, payload=payload)

    # ------------------------------------------------------------------
    # Loop

    def _loop(self, resume: Optional[AgentProcess]) -> None:
        if resume is not None:
            with self.lock:
                self._loop_active = True
            try:
                self._resume(resume)
            except Exception:
                logger.exception("Resuming reattached agent failed for %s", self.container.project_id)
            finally:
                with self.lock:
                    self._loop_active = False
        while not self._stop.is_set():
            delay = self._iterate()
            if self._wake.wait(delay):
                self._wake.clear()

    def _iterate(self) -> float:
        try:
            ran = self.tick_once()
        except Exception:
            logger.exception("Orchestrator loop iteration failed for %s", self.container.project_id)
            return self.settings.error_retry_seconds
        return self.settings.loop_cooldown_seconds if ran else self.settings.idle_poll_seconds

    def _watchdog_loop(self) -> None:
        while not self._stop.wait(self.settings.watchdog_interval_seconds):
            self.nudge("watchdog")

    def _select_task(self) -> Optional[Task]:
        self.transition("selecting", announce=False)
        ready = self.store.ready()
        with self.lock:
            self.state.queue_depth = len(ready)
        for task in ready:
            if task.is_epic or task.status != "open":
                continue
            if not self.store.are_all_blockers_closed(task.id):
                logger.info("Skipping task %s: ready view is stale, blockers still open", task.id)
                continue
            return task
        return None

    # ------------------------------------------------------------------
    # Task pipeline

    def _run_task(self, task: Task) -> None:
        cumulative = self.store.get_cumulative_attempts(task.id)
        self.store.update(task.id, status="in_progress", assignee=self.settings.agent_id)
        with self.lock:
            self.state.clear_task()
            self.state.active_task_id = task.id
            self.state.active_task_title = task.title
            self.state.branch = self.worktrees.branch_name(task.id)
            self.state.worktree_path = str(self.worktrees.worktree_path(task.id))
            self.state.cumulative_attempts = cumulative
            self.state.attempt = cumulative + 1
            self.state.started_at = now_iso()
        self.transition("coding")
        self.emit_task(task.id, "task.updated", {"status": "in_progress", "assignee": self.settings.agent_id})
        logger.info("Picked task %s (priority %s, %s prior failures)", task.id, task.priority, cumulative)
        self._drive(task, None)

    def _drive(self, task: Task, retry: Optional[RetryContext]) -> None:
        try:
            while True:
                retry = self._run_attempt(task, retry)
                if retry is None:
                    return
        except Exception:
            self._abandon(task)
            raise

    def _abandon(self, task: Task) -> None:
        """Hand a task back to the backlog after an unexpected orchestrator error."""
        with self.lock:
            if self.state.active_task_id != task.id:
                return
        try:
            self.worktrees.remove_task_worktree(task.id)
            self.store.update(task.id, status="open", assignee="")
            self.store.comment(task.id, "Orchestrator error during this attempt; task requeued.")
            self.emit_task(task.id, "task.updated", {"status": "open", "reason": "orchestrator_error"})
        except Exception:
            logger.exception("Failed to requeue task %s after orchestrator error", task.id)
        with self.lock:
            self.state.clear_task()
        self.persist()

    def _run_attempt(self, task: Task, retry: Optional[RetryContext]) -> Optional[RetryContext]:
        task = self.store.show(task.id)
        with self.lock:
            attempt = self.state.attempt
            branch = str(self.state.branch)
        try:
            worktree = self._prepare_worktree(task, retry)
        except (GitError, OSError) as exc:
            logger.exception("Worktree setup failed for task %s", task.id)
            return self.failures.handle(task, "agent_crash", f"Worktree setup failed: {exc}")

        artifacts = self.context.write_coding_artifacts(worktree, task, branch=branch, attempt=attempt, retry=retry)
        self.transition("coding")
        handle = self._spawn("coder", task, worktree, artifacts)
        outcome = self._supervise(handle, task.id, "coder")
        if outcome.detached:
            return None
        return self._on_coding_exit(task, outcome, artifacts)

    def _prepare_worktree(self, task: Task, retry: Optional[RetryContext]) -> Path:
        self.worktrees.clean_stale_git_locks()
        worktree = self.worktrees.create_task_worktree(task.id)
        if retry is not None and retry.use_existing_branch:
            self.worktrees.rebase_onto_main(worktree)
        for role in ("coder", "reviewer"):
            self.context.clear_result(worktree, task.id, role)  # type: ignore[arg-type]
        return worktree

    def _spawn(self, role: AgentRole, task: Task, cwd: Path, artifacts: AgentArtifacts) -> AgentProcess:
        with self.lock:
            if self._handle is not None:
                raise RuntimeError(f"Refusing to start a {role} agent while pid {self._handle.pid} is running")
            attempt = self.state.attempt
            env = {
                "ORCHESTRATOR_TASK_ID": task.id,
                "ORCHESTRATOR_BRANCH": str(self.state.branch),
                "ORCHESTRATOR_ATTEMPT": str(attempt),
                "ORCHESTRATOR_TEST_COMMAND": self.settings.test_command,
                "ORCHESTRATOR_PROMPT_FILE": str(artifacts.prompt_file),
                "ORCHESTRATOR_RESULT_FILE": str(artifacts.result_file),
            }
            handle = self.launcher.spawn(
                role,
                cwd=cwd,
                task_id=task.id,
                prompt_file=artifacts.prompt_file,
                config_file=artifacts.config_file,
                result_file=artifacts.result_file,
                env=env,
            )
            self._handle = handle
            self.state.agent_pid = handle.pid
            self.state.agent_output_path = str(handle.output_path) if handle.output_path else None
            self.state.last_output_at = time.time()
            self.state.killed_due_to_timeout = False
        self.persist()
        self.bus.emit(
            channel="agents",
            event_type="agent.started",
            entity_id=task.id,
            payload={"role": role, "pid": handle.pid, "attempt": attempt},
        )
        return handle

    def _supervise(self, handle: AgentProcess, task_id: str, role: AgentRole) -> AgentExit:
        def _on_output(chunk: str, received_at: float) -> None:
            with self.lock:
                self.state.append_output(chunk)
                self.state.last_output_at = received_at
            self.bus.emit(
                channel="agents",
                event_type="agent.output",
                entity_id=task_id,
                payload={"role": role, "chunk": chunk},
                persist=False,
            )

        def _commit_before_kill() -> None:
            worktree = self.worktrees.worktree_path(task_id)
            if worktree.exists():
                self.worktrees.commit_wip(worktree, task_id)

        with self.lock:
            self._handle = handle
            last_output_at = self.state.last_output_at
        try:
            outcome = self.supervisor.run(
                handle,
                task_id=task_id,
                last_output_at=last_output_at,
                on_output=_on_output,
                on_inactive=_commit_before_kill,
                stop=self._stop,
            )
        finally:
            with self.lock:
                self._handle = None
        if outcome.detached:
            return outcome

        with self.lock:
            self.state.agent_pid = None
            self.state.killed_due_to_timeout = outcome.killed_due_to_timeout
        self.persist()
        self.bus.emit(
            channel="agents",
            event_type="agent.completed",
            entity_id=task_id,
            payload={
                "role": role,
                "exit_code": outcome.exit_code,
                "killed_due_to_timeout": outcome.killed_due_to_timeout,
            },
        )
        return outcome

    def _missing_result(self, task: Task, role: AgentRole, outcome: AgentExit) -> Optional[RetryContext]:
        if outcome.exit_code == 0:
            return self.failures.handle(task, "no_result", f"The {role} agent exited cleanly without writing a result file")
        code = "unknown" if outcome.exit_code is None else str(outcome.exit_code)
        return self.failures.handle(task, "agent_crash", f"The {role} agent exited with code {code} and no result file")

    def _timed_out(self, task: Task, role: AgentRole) -> Optional[RetryContext]:
        minutes = self.settings.inactivity_timeout_seconds / 60
        return self.failures.handle(
            task,
            "timeout",
            f"The {role} agent produced no output for {minutes:g} minutes and was terminated; its work was committed as WIP",
        )

    def _on_coding_exit(self, task: Task, outcome: AgentExit, artifacts: AgentArtifacts) -> Optional[RetryContext]:
        if outcome.killed_due_to_timeout:
            return self._timed_out(task, "coder")
        data = self.context.read_result(artifacts)
        if data is None:
            return self._missing_result(task, "coder", outcome)
        result = AgentResult.for_coding(data)
        with self.lock:
            self.state.last_summary = result.summary
        if result.status != "success":
            return self.failures.handle(task, "coding_failure", result.summary or "Coding agent reported failure")
        return self._verify(task, result.summary)

    def _verify(self, task: Task, coder_summary: str) -> Optional[RetryContext]:
        worktree = self.worktrees.worktree_path(task.id)
        branch = self.worktrees.branch_name(task.id)
        self.worktrees.wait_for_git_ready(worktree)
        self.worktrees.commit_all(worktree, f"task({task.id}): {task.title[:60]}")

        self.transition("testing")
        diff = self.worktrees.capture_branch_diff(branch)
        changed = self.worktrees.get_changed_files(branch)
        results = self.test_runner.run(worktree, changed)
        with self.lock:
            self.state.last_diff = diff
            self.state.last_test_results = results
        self.persist()
        if results.failed > 0:
            return self.failures.handle(
                task,
                "test_failure",
                f"{results.failed} test(s) failed ({results.summary()})",
                test_output=results.raw_output,
            )

        if self._should_review():
            return self._review(task, coder_summary)
        return self.merger.merge_and_complete(task, coder_summary)

    def _should_review(self) -> bool:
        mode = self.settings.review_mode
        if mode == "always":
            return True
        if mode == "on_failure":
            with self.lock:
                return self.state.cumulative_attempts > 0 or self.state.attempt > 1
        return False

    def _review(self, task: Task, coder_summary: str) -> Optional[RetryContext]:
        worktree = self.worktrees.worktree_path(task.id)
        with self.lock:
            attempt = self.state.attempt
            diff = self.state.last_diff
            results = self.state.last_test_results
        artifacts = self.context.write_review_artifacts(
            worktree,
            task,
            branch=self.worktrees.branch_name(task.id),
            attempt=attempt,
            diff=diff,
            test_results=results,
            coder_summary=coder_summary,
        )
        self.transition("review")
        handle = self._spawn("reviewer", task, worktree, artifacts)
        outcome = self._supervise(handle, task.id, "reviewer")
        if outcome.detached:
            return None
        return self._on_review_exit(task, outcome, artifacts, coder_summary)

    def _on_review_exit(
        self,
        task: Task,
        outcome: AgentExit,
        artifacts: AgentArtifacts,
        coder_summary: str,
    ) -> Optional[RetryContext]:
        if outcome.killed_due_to_timeout:
            return self._timed_out(task, "reviewer")
        data = self.context.read_result(artifacts)
        if data is None:
            return self._missing_result(task, "reviewer", outcome)
        verdict = AgentResult.for_review(data)
        if verdict.status == "approved":
            logger.info("Review approved task %s", task.id)
            return self.merger.merge_and_complete(task, coder_summary)
        if verdict.status == "rejected":
            feedback = verdict.feedback()
            return self.failures.handle(
                task,
                "review_rejection",
                feedback.summary or "Review rejected",
                review_feedback=feedback.format(),
            )
        return self.failures.handle(task, "no_result", f"Review agent returned unrecognised status {data.get('status')!r}")

    def _resume(self, handle: AgentProcess) -> None:
        """Continue a task whose agent survived an orchestrator restart."""
        with self.lock:
            task_id = str(self.state.active_task_id)
            phase = self.state.phase
            coder_summary = self.state.last_summary
        task = self.store.show(task_id)
        role: AgentRole = "reviewer" if phase == "review" else "coder"
        worktree = self.worktrees.worktree_path(task_id)
        artifacts = self.context.artifacts_for(worktree, task_id, role)
        self.bus.emit(
            channel="agents",
            event_type="agent.started",
            entity_id=task_id,
            payload={"role": role, "pid": handle.pid, "reattached": True},
        )
        try:
            outcome = self._supervise(handle, task_id, role)
            if outcome.detached:
                return
            if role == "reviewer":
                retry = self._on_review_exit(task, outcome, artifacts, coder_summary)
            else:
                retry = self._on_coding_exit(task, outcome, artifacts)
        except Exception:
            self._abandon(task)
            raise
        if retry is not None:
            self._drive(task, retry)
