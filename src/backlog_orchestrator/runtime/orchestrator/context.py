"""Assemble agent prompts/config and read back agent results."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ... import prompts
from ...io_utils import atomic_write_json, load_json
from ..domain.models import RetryContext, Task, TestResults
from ..storage.interfaces import TaskNotFoundError, TaskStore
from .settings import AgentRole, OrchestratorSettings

logger = logging.getLogger(__name__)

ACTIVE_DIR = Path(".orchestrator") / "active"
_MAX_DIFF_CHARS = 60_000
_MAX_TEST_OUTPUT_CHARS = 20_000


@dataclass(frozen=True)
class AgentArtifacts:
    """Files exchanged with one agent run."""
    directory: Path
    prompt_file: Path
    config_file: Path
    result_file: Path


def _tail(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"...[truncated {len(text) - limit} chars]...\n{text[-limit:]}"


class ContextAssembler:
    """Build agent-facing artifacts from backlog data and prior attempt outputs.

    Everything is computed from the main repository and the backlog; only the
    finished prompt and config are written into the task worktree.
    """

    def __init__(self, store: TaskStore, settings: OrchestratorSettings, state_root: Path) -> None:
        self._store = store
        self._settings = settings
        self._state_root = state_root
        self._prompt_dir = state_root / "prompts"

    def artifacts_for(self, base: Path, task_id: str, role: AgentRole) -> AgentArtifacts:
        directory = base / ACTIVE_DIR / task_id / role
        return AgentArtifacts(
            directory=directory,
            prompt_file=directory / "prompt.md",
            config_file=directory / "config.json",
            result_file=directory / "result.json",
        )

    def clear_result(self, base: Path, task_id: str, role: AgentRole) -> None:
        """Remove a leftover result file so a stale verdict is never read."""
        result_file = self.artifacts_for(base, task_id, role).result_file
        if result_file.exists():
            result_file.unlink()
            logger.info("Cleared stale %s result for task %s", role, task_id)

    def read_result(self, artifacts: AgentArtifacts) -> Optional[dict[str, Any]]:
        data = load_json(artifacts.result_file)
        if data is None and artifacts.result_file.exists():
            logger.warning("Unparseable agent result at %s", artifacts.result_file)
        return data

    def _dependency_notes(self, task: Task) -> list[str]:
        notes: list[str] = []
        related = list(task.blocked_by)
        if task.parent_id:
            related.insert(0, task.parent_id)
        for dep_id in related:
            try:
                dep = self._store.show(dep_id)
            except TaskNotFoundError:
                continue
            line = f"- {dep.id} ({dep.task_type}, {dep.status}): {dep.title}"
            detail = dep.close_reason or (dep.description[:400] if dep.is_epic else "")
            if detail:
                line += f"\n  {detail.strip()}"
            notes.append(line)
        return notes

    def build_coding_prompt(self, task: Task, *, branch: str, attempt: int, retry: Optional[RetryContext]) -> str:
        parts = [prompts.load("coding.md", self._prompt_dir), "", f"# Task {task.id}: {task.title}", ""]
        if task.description.strip():
            parts.extend([task.description.strip(), ""])
        related = self._dependency_notes(task)
        if related:
            parts.extend(["## Related work", *related, ""])
        parts.extend([f"Branch: `{branch}`", f"Attempt: {attempt}"])
        if self._settings.test_command:
            parts.append(f"Test command: `{self._settings.test_command}`")
        if retry is not None:
            parts.extend(["", "## Previous attempt", f"Failure type: {retry.failure_type or 'unknown'}"])
            if retry.previous_failure:
                parts.extend(["", retry.previous_failure.strip()])
            if retry.review_feedback:
                parts.extend(["", "### Review feedback", retry.review_feedback.strip()])
            if retry.previous_test_output:
                parts.extend(["", "### Test output", "```", _tail(retry.previous_test_output, _MAX_TEST_OUTPUT_CHARS), "```"])
            if retry.use_existing_branch:
                parts.extend(["", "The branch already contains your earlier commits; build on them."])
            if retry.previous_diff:
                heading = "### Previous diff (on the branch)" if retry.use_existing_branch else "### Previous diff (discarded)"
                parts.extend(["", heading, "```diff", _tail(retry.previous_diff, _MAX_DIFF_CHARS), "```"])
        return "\n".join(parts) + "\n"

    def write_coding_artifacts(
        self,
        worktree: Path,
        task: Task,
        *,
        branch: str,
        attempt: int,
        retry: Optional[RetryContext],
    ) -> AgentArtifacts:
        artifacts = self.artifacts_for(worktree, task.id, "coder")
        artifacts.directory.mkdir(parents=True, exist_ok=True)
        artifacts.prompt_file.write_text(
            self.build_coding_prompt(task, branch=branch, attempt=attempt, retry=retry),
            encoding="utf-8",
        )
        atomic_write_json(
            artifacts.config_file,
            {
                "task_id": task.id,
                "branch": branch,
                "attempt": attempt,
                "test_command": self._settings.test_command,
                "result_file": str(artifacts.result_file),
                "retry": retry.to_dict() if retry is not None else None,
            },
        )
        return artifacts

    def write_review_artifacts(
        self,
        worktree: Path,
        task: Task,
        *,
        branch: str,
        attempt: int,
        diff: str,
        test_results: Optional[TestResults],
        coder_summary: str,
    ) -> AgentArtifacts:
        artifacts = self.artifacts_for(worktree, task.id, "reviewer")
        artifacts.directory.mkdir(parents=True, exist_ok=True)
        parts = [prompts.load("review.md", self._prompt_dir), "", f"# Task {task.id}: {task.title}", ""]
        if task.description.strip():
            parts.extend([task.description.strip(), ""])
        if coder_summary.strip():
            parts.extend(["## Coding agent summary", coder_summary.strip(), ""])
        parts.extend(["## Tests", test_results.summary() if test_results else "Tests were not run.", ""])
        parts.extend(["## Diff", "```diff", _tail(diff, _MAX_DIFF_CHARS), "```"])
        artifacts.prompt_file.write_text("\n".join(parts) + "\n", encoding="utf-8")
        atomic_write_json(
            artifacts.config_file,
            {
                "task_id": task.id,
                "branch": branch,
                "attempt": attempt,
                "result_file": str(artifacts.result_file),
                "tests": test_results.to_dict() if test_results else None,
            },
        )
        return artifacts

    def write_merge_artifacts(self, files: list[str], conflict_diff: str) -> AgentArtifacts:
        """Write merger-agent artifacts under the state root; the merger runs in the main repo."""
        directory = self._state_root / "merge"
        artifacts = AgentArtifacts(
            directory=directory,
            prompt_file=directory / "prompt.md",
            config_file=directory / "config.json",
            result_file=directory / "result.json",
        )
        directory.mkdir(parents=True, exist_ok=True)
        artifacts.result_file.unlink(missing_ok=True)
        listing = [f"- {f}" for f in files] or ["- (unknown)"]
        parts = [prompts.load("merge.md", self._prompt_dir), "", "## Conflicted files", *listing, ""]
        parts.extend(["## Conflict diff", "```diff", _tail(conflict_diff, _MAX_DIFF_CHARS), "```"])
        artifacts.prompt_file.write_text("\n".join(parts) + "\n", encoding="utf-8")
        atomic_write_json(
            artifacts.config_file,
            {"trunk_branch": self._settings.trunk_branch, "files": files, "result_file": str(artifacts.result_file)},
        )
        return artifacts
