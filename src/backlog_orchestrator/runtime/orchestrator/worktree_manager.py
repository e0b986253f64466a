"""Git worktree, branch, merge and push helpers for orchestrator tasks."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Optional, Sequence

from .settings import OrchestratorSettings

logger = logging.getLogger(__name__)


class GitError(RuntimeError):
    """A git command exited non-zero."""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str) -> None:
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {stderr.strip()[:500]}")


class MergeConflictError(GitError):
    """Merging a task branch into trunk stopped on conflicts; the merge was aborted."""

    def __init__(self, branch: str, files: list[str], stderr: str = "") -> None:
        self.branch = branch
        self.files = files
        super().__init__(["merge", branch], 1, stderr or f"conflicts in {', '.join(files) or 'unknown files'}")


class RebaseConflictError(GitError):
    """Rebasing trunk onto the remote stopped on conflicts; the rebase is still in progress."""

    def __init__(self, files: list[str], stderr: str = "") -> None:
        self.files = files
        super().__init__(["rebase"], 1, stderr or f"conflicts in {', '.join(files) or 'unknown files'}")


class WorktreeManager:
    """Own every git operation the scheduler performs on the project repository.

    Task work happens on ``orchestrator/<task-id>`` branches checked out in
    worktrees under ``<state_root>/worktrees``. The main working copy stays on
    the trunk branch and is only written to by merges.
    """

    def __init__(self, project_dir: Path, state_root: Path, settings: OrchestratorSettings) -> None:
        self.project_dir = project_dir
        self.state_root = state_root
        self.settings = settings

    @property
    def trunk(self) -> str:
        return self.settings.trunk_branch

    def _git(
        self,
        args: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        check: bool = True,
        env: Optional[dict[str, str]] = None,
    ) -> subprocess.CompletedProcess[str]:
        result = subprocess.run(
            ["git", *args],
            cwd=cwd or self.project_dir,
            capture_output=True,
            text=True,
            env={**os.environ, **env} if env else None,
        )
        if check and result.returncode != 0:
            raise GitError(args, result.returncode, result.stderr or result.stdout)
        return result

    # ------------------------------------------------------------------
    # Worktrees and branches

    @staticmethod
    def branch_name(task_id: str) -> str:
        return f"orchestrator/{task_id}"

    def worktree_path(self, task_id: str) -> Path:
        return self.state_root / "worktrees" / task_id

    def branch_exists(self, branch: str) -> bool:
        result = self._git(["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"], check=False)
        return result.returncode == 0

    def create_task_worktree(self, task_id: str) -> Path:
        """Check out the task branch in a fresh worktree, creating the branch from trunk if needed.

        An existing branch is reused so retries build on preserved work.
        """
        self.wait_for_git_ready()
        path = self.worktree_path(task_id)
        branch = self.branch_name(task_id)
        if path.exists():
            self.remove_task_worktree(task_id)
        self._git(["worktree", "prune"], check=False)
        path.parent.mkdir(parents=True, exist_ok=True)
        if self.branch_exists(branch):
            self._git(["worktree", "add", str(path), branch])
        else:
            self._git(["worktree", "add", "-b", branch, str(path), self.trunk])
        self.link_shared_paths(path)
        logger.info("Created worktree %s on branch %s", path, branch)
        return path

    def remove_task_worktree(self, task_id: str) -> None:
        path = self.worktree_path(task_id)
        result = self._git(["worktree", "remove", "--force", str(path)], check=False)
        if result.returncode != 0:
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
            self._git(["worktree", "prune"], check=False)
        logger.info("Removed worktree for task %s", task_id)

    def delete_branch(self, branch: str) -> bool:
        result = self._git(["branch", "-D", branch], check=False)
        if result.returncode != 0:
            logger.debug("Branch %s not deleted: %s", branch, result.stderr.strip())
            return False
        logger.info("Deleted branch %s", branch)
        return True

    def link_shared_paths(self, worktree: Path) -> list[str]:
        """Symlink configured untracked resources (``node_modules``, ``.venv``) into a worktree."""
        linked: list[str] = []
        for rel in self.settings.shared_paths:
            source = self.project_dir / rel
            target = worktree / rel
            if not source.exists() or target.exists() or target.is_symlink():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.symlink_to(source, target_is_directory=source.is_dir())
            linked.append(rel)
        return linked

    def prune_orphan_worktrees(self, keep: set[str]) -> list[str]:
        """Remove task worktrees whose task id is not in ``keep``. Branches are left alone."""
        root = self.state_root / "worktrees"
        removed: list[str] = []
        if root.exists():
            for child in root.iterdir():
                if child.is_dir() and child.name not in keep:
                    self.remove_task_worktree(child.name)
                    removed.append(child.name)
        self._git(["worktree", "prune"], check=False)
        if removed:
            logger.warning("Pruned orphaned worktrees: %s", ", ".join(sorted(removed)))
        return removed

    # ------------------------------------------------------------------
    # Diffs and commits

    def has_uncommitted_changes(self, cwd: Path) -> bool:
        """Return whether git reports staged, unstaged or untracked changes for ``cwd``."""
        result = self._git(["status", "--porcelain"], cwd=cwd, check=False)
        if result.returncode != 0:
            return False
        return bool(result.stdout.strip())

    def capture_branch_diff(self, branch: str) -> str:
        """Diff ``branch`` against its merge base with trunk without checking it out."""
        result = self._git(["diff", f"{self.trunk}...{branch}"], check=False)
        return result.stdout if result.returncode == 0 else ""

    def capture_uncommitted_diff(self, worktree: Path) -> str:
        """Diff every uncommitted change in ``worktree``, including untracked files."""
        if not worktree.exists():
            return ""
        self._git(["add", "-A"], cwd=worktree, check=False)
        try:
            result = self._git(["diff", "--cached", "HEAD"], cwd=worktree, check=False)
            return result.stdout if result.returncode == 0 else ""
        finally:
            self._git(["reset", "-q", "HEAD"], cwd=worktree, check=False)

    def get_changed_files(self, branch: str) -> list[str]:
        result = self._git(["diff", "--name-only", f"{self.trunk}...{branch}"], check=False)
        if result.returncode != 0:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def commit_all(self, worktree: Path, message: str) -> bool:
        """Stage and commit everything in ``worktree``; returns ``False`` when nothing changed."""
        if not worktree.exists() or not self.has_uncommitted_changes(worktree):
            return False
        self._git(["add", "-A"], cwd=worktree)
        self._git(["commit", "--no-verify", "-m", message], cwd=worktree)
        return True

    def commit_wip(self, worktree: Path, task_id: str) -> bool:
        try:
            committed = self.commit_all(worktree, f"WIP: {task_id}")
        except GitError:
            logger.exception("WIP commit failed for task %s", task_id)
            return False
        if committed:
            logger.info("Committed work in progress for task %s", task_id)
        return committed

    def get_commit_count_ahead(self, branch: str) -> int:
        result = self._git(["rev-list", "--count", f"{self.trunk}..{branch}"], check=False)
        try:
            return int(result.stdout.strip()) if result.returncode == 0 else 0
        except ValueError:
            return 0

    # ------------------------------------------------------------------
    # Trunk

    def current_branch(self, cwd: Optional[Path] = None) -> str:
        return self._git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd, check=False).stdout.strip()

    def ensure_on_main(self) -> None:
        if self.current_branch() != self.trunk:
            self._git(["checkout", self.trunk])

    def conflicted_files(self, cwd: Optional[Path] = None) -> list[str]:
        result = self._git(["diff", "--name-only", "--diff-filter=U"], cwd=cwd, check=False)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def capture_conflict_diff(self) -> str:
        """Diff of the main working copy, including conflict markers during a rebase."""
        return self._git(["diff"], check=False).stdout

    def merge_to_main(self, branch: str, message: str) -> str:
        """Merge ``branch`` into trunk in the main working copy and return the new HEAD sha.

        Raises:
            MergeConflictError: When the merge stops on conflicts. The merge is
                aborted before raising so trunk is left untouched.
        """
        self.wait_for_git_ready()
        self.ensure_on_main()
        result = self._git(["merge", "--no-ff", "-m", message, branch], check=False)
        if result.returncode != 0:
            files = self.conflicted_files()
            self._git(["merge", "--abort"], check=False)
            raise MergeConflictError(branch, files, result.stderr or result.stdout)
        return self._git(["rev-parse", "HEAD"]).stdout.strip()

    def rebase_onto_main(self, worktree: Path) -> bool:
        """Best-effort rebase of a reused task branch onto trunk; aborts on conflicts."""
        result = self._git(["rebase", self.trunk], cwd=worktree, check=False)
        if result.returncode == 0:
            return True
        self._git(["rebase", "--abort"], cwd=worktree, check=False)
        logger.info("Rebase of %s onto %s hit conflicts; continuing from diverged branch", worktree.name, self.trunk)
        return False

    def has_remote(self) -> bool:
        return self._git(["remote", "get-url", self.settings.remote], check=False).returncode == 0

    def _git_path(self, name: str, cwd: Optional[Path] = None) -> Path:
        base = cwd or self.project_dir
        raw = self._git(["rev-parse", "--git-path", name], cwd=base, check=False).stdout.strip()
        path = Path(raw)
        return path if path.is_absolute() else base / path

    def is_rebase_in_progress(self) -> bool:
        return self._git_path("rebase-merge").exists() or self._git_path("rebase-apply").exists()

    def rebase_abort(self) -> None:
        self._git(["rebase", "--abort"], check=False)
        logger.warning("Aborted in-progress rebase of %s", self.trunk)

    def rebase_continue(self) -> bool:
        result = self._git(["rebase", "--continue"], check=False, env={"GIT_EDITOR": "true"})
        return result.returncode == 0

    def push_main(self) -> bool:
        """Rebase trunk onto the remote and push it.

        Returns ``False`` when pushing is disabled or no remote is configured.

        Raises:
            RebaseConflictError: When the rebase stops on conflicts. The rebase
                is left in progress so a merger agent can resolve it.
            GitError: For any other fetch, rebase or push failure.
        """
        if not self.settings.push_enabled or not self.has_remote():
            return False
        remote = self.settings.remote
        self.ensure_on_main()
        self._git(["fetch", remote, self.trunk])
        result = self._git(["rebase", f"{remote}/{self.trunk}"], check=False)
        if result.returncode != 0:
            if self.is_rebase_in_progress():
                raise RebaseConflictError(self.conflicted_files(), result.stderr or result.stdout)
            raise GitError(["rebase", f"{remote}/{self.trunk}"], result.returncode, result.stderr)
        self.push_trunk()
        return True

    def push_trunk(self) -> None:
        self._git(["push", self.settings.remote, self.trunk])
        logger.info("Pushed %s to %s", self.trunk, self.settings.remote)

    # ------------------------------------------------------------------
    # Lock hygiene

    def _lock_files(self) -> list[Path]:
        git_dir = self.project_dir / ".git"
        if not git_dir.is_dir():
            return []
        locks = [git_dir / "index.lock", git_dir / "HEAD.lock"]
        worktrees = git_dir / "worktrees"
        if worktrees.exists():
            locks.extend(child / "index.lock" for child in worktrees.iterdir())
        return [lock for lock in locks if lock.exists()]

    def clean_stale_git_locks(self) -> list[Path]:
        """Delete git lock files older than the configured staleness threshold."""
        removed: list[Path] = []
        now = time.time()
        for lock in self._lock_files():
            try:
                age = now - lock.stat().st_mtime
            except FileNotFoundError:
                continue
            if age > self.settings.git_lock_stale_seconds:
                lock.unlink(missing_ok=True)
                removed.append(lock)
                logger.warning("Removed stale git lock %s (age %.0fs)", lock, age)
        return removed

    def wait_for_git_ready(self, cwd: Optional[Path] = None) -> bool:
        """Wait for ``index.lock`` to disappear; stale locks are removed, fresh ones time out."""
        lock = self._git_path("index.lock", cwd)
        deadline = time.monotonic() + self.settings.git_ready_timeout_seconds
        while lock.exists():
            try:
                age = time.time() - lock.stat().st_mtime
            except FileNotFoundError:
                break
            if age > self.settings.git_lock_stale_seconds:
                lock.unlink(missing_ok=True)
                logger.warning("Removed stale git lock %s", lock)
                break
            if time.monotonic() >= deadline:
                logger.warning("Git index lock %s still held after %.0fs", lock, self.settings.git_ready_timeout_seconds)
                return False
            time.sleep(0.5)
        return True
