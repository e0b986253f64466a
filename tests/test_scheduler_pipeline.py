from __future__ import annotations

from pathlib import Path

import pytest

from conftest import AgentScript, ScriptedLauncher, SpawnCall, coder_success, git, make_service
from backlog_orchestrator.runtime.domain.models import Task
from backlog_orchestrator.runtime.orchestrator.agent_process import AgentConfigurationError


def _comments(service, task_id: str) -> list[str]:
    return [c["text"] for c in service.store.show(task_id).comments]


def _event_types(service) -> list[str]:
    return [e["type"] for e in service.container.events.list_recent(limit=500)]


def test_successful_task_is_merged_closed_and_cleaned_up(project_dir: Path) -> None:
    launcher = ScriptedLauncher({"coder": [coder_success("Added feature", **{"feature.txt": "hello\n"})]})
    service = make_service(project_dir, launcher)
    task = service.store.upsert(Task(title="Add feature", description="Write feature.txt"))

    assert service.tick_once() is True

    closed = service.store.show(task.id)
    assert closed.status == "closed"
    assert closed.close_reason == "Added feature"
    assert closed.assignee is None
    assert (project_dir / "feature.txt").read_text(encoding="utf-8") == "hello\n"
    assert git(project_dir, "status", "--porcelain") == ""
    assert not service.worktrees.branch_exists(f"orchestrator/{task.id}")
    assert not service.worktrees.worktree_path(task.id).exists()

    sessions = service.sessions.list_sessions(task.id)
    assert [s.status for s in sessions] == ["success"]
    assert "working" in sessions[0].output_log
    assert "feature.txt" in sessions[0].diff

    call = launcher.calls_for("coder")[0]
    assert call.env["ORCHESTRATOR_TASK_ID"] == task.id
    assert call.env["ORCHESTRATOR_BRANCH"] == f"orchestrator/{task.id}"
    assert "Add feature" in call.prompt
    assert "Write feature.txt" in call.prompt

    status = service.status()
    assert status["total_done"] == 1
    assert status["current_task"] is None
    assert status["phase"] == "idle"
    snapshot = service.snapshots.load()
    assert snapshot is not None and not snapshot.has_active_task

    events = _event_types(service)
    for expected in ("agent.started", "agent.completed", "task.updated", "orchestrator.status"):
        assert expected in events
    assert "agent.output" not in events
    service.shutdown()


def test_idle_tick_spawns_nothing(project_dir: Path) -> None:
    launcher = ScriptedLauncher()
    service = make_service(project_dir, launcher)
    assert service.tick_once() is False
    assert launcher.calls == []
    assert service.status()["phase"] == "idle"


def test_epics_and_stale_ready_entries_are_skipped(project_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    launcher = ScriptedLauncher({"coder": [coder_success()]})
    service = make_service(project_dir, launcher)
    service.store.upsert(Task(id="epic-1", title="Big epic", task_type="epic", priority=0))
    blocker = service.store.upsert(Task(id="dep", title="dependency", status="in_progress"))
    child = service.store.upsert(Task(id="child", title="child", blocked_by=[blocker.id]))

    monkeypatch.setattr(service.store, "ready", lambda: [service.store.show("epic-1"), service.store.show(child.id)])

    assert service.tick_once() is False
    assert launcher.calls == []
    assert service.store.show(child.id).status == "open"


def test_review_rejection_feeds_back_into_next_attempt(project_dir: Path) -> None:
    launcher = ScriptedLauncher(
        {
            "coder": [
                coder_success("first try", **{"feature.txt": "v1\n"}),
                coder_success("second try", **{"feature.txt": "v2\n"}),
            ],
            "reviewer": [
                AgentScript(result={"status": "rejected", "summary": "Missing tests", "issues": ["add a test for feature"]}),
                AgentScript(result={"status": "approved", "summary": "Looks good"}),
            ],
        }
    )
    service = make_service(project_dir, launcher, review_mode="always")
    task = service.store.upsert(Task(title="Reviewed feature"))

    service.tick_once()

    done = service.store.show(task.id)
    assert done.status == "closed"
    assert done.close_reason == "second try"
    assert done.cumulative_attempts == 1
    assert any(text.startswith("Review rejected (attempt 1)") for text in _comments(service, task.id))
    assert (project_dir / "feature.txt").read_text(encoding="utf-8") == "v2\n"

    coder_calls = launcher.calls_for("coder")
    reviewer_calls = launcher.calls_for("reviewer")
    assert len(coder_calls) == 2
    assert len(reviewer_calls) == 2
    assert "add a test for feature" in coder_calls[1].prompt
    assert "first try" in reviewer_calls[0].prompt
    assert "+v1" in reviewer_calls[0].prompt
    assert [s.status for s in service.sessions.list_sessions(task.id)] == ["rejected", "success"]


def test_on_failure_review_only_runs_after_a_failed_attempt(project_dir: Path) -> None:
    launcher = ScriptedLauncher(
        {
            "coder": [AgentScript(result={"status": "failed", "summary": "stuck"}), coder_success("fixed")],
            "reviewer": [AgentScript(result={"status": "approved"})],
        }
    )
    service = make_service(project_dir, launcher, review_mode="on_failure")
    task = service.store.upsert(Task(title="Flaky"))

    service.tick_once()

    assert service.store.show(task.id).status == "closed"
    assert len(launcher.calls_for("reviewer")) == 1


def test_unrecognised_review_verdict_counts_as_no_result(project_dir: Path) -> None:
    launcher = ScriptedLauncher(
        {
            "coder": [coder_success()],
            "reviewer": [AgentScript(result={"status": "maybe"}), AgentScript(result={"status": "approved"})],
        }
    )
    service = make_service(project_dir, launcher, review_mode="always")
    task = service.store.upsert(Task(title="Ambiguous review"))

    service.tick_once()

    assert service.store.show(task.id).status == "closed"
    assert any("[no_result]" in text for text in _comments(service, task.id))


def test_repeated_test_failures_demote_and_discard_branch(project_dir: Path) -> None:
    launcher = ScriptedLauncher({"coder": [coder_success(**{"attempt.txt": "work\n"})]})
    service = make_service(
        project_dir,
        launcher,
        test_command="echo '1 failed, 2 passed in 0.01s'; exit 1",
        backoff_failure_threshold=3,
    )
    task = service.store.upsert(Task(title="Never green", priority=2))

    service.tick_once()

    demoted = service.store.show(task.id)
    assert demoted.status == "open"
    assert demoted.assignee is None
    assert demoted.priority == 3
    assert demoted.cumulative_attempts == 3
    assert not service.worktrees.branch_exists(f"orchestrator/{task.id}")
    assert not service.worktrees.worktree_path(task.id).exists()

    coder_calls = launcher.calls_for("coder")
    assert len(coder_calls) == 3
    assert [c.env["ORCHESTRATOR_ATTEMPT"] for c in coder_calls] == ["1", "2", "3"]
    assert "test_failure" in coder_calls[1].prompt
    assert "1 failed, 2 passed" in coder_calls[1].prompt
    assert "build on them" in coder_calls[1].prompt
    assert "Previous diff (on the branch)" in coder_calls[1].prompt
    assert "attempt.txt" in coder_calls[1].prompt

    comments = _comments(service, task.id)
    assert comments[0].startswith("Attempt 1 failed [test_failure]")
    assert "priority lowered to 3" in comments[-1]
    sessions = service.sessions.list_sessions(task.id)
    assert [s.failure_type for s in sessions] == ["test_failure"] * 3
    assert service.status()["total_failed"] == 3
    assert service.status()["current_task"] is None


def test_failure_at_priority_ceiling_blocks_task(project_dir: Path) -> None:
    launcher = ScriptedLauncher({"coder": [AgentScript(result={"status": "failed", "summary": "cannot do it"})]})
    service = make_service(project_dir, launcher, backoff_failure_threshold=1)
    task = service.store.upsert(Task(title="Hopeless", priority=4))

    service.tick_once()

    blocked = service.store.show(task.id)
    assert blocked.status == "blocked"
    assert blocked.block_reason and "Blocked after 1" in blocked.block_reason
    assert service.store.ready() == []
    assert "task.blocked" in _event_types(service)
    assert service.tick_once() is False
    assert len(launcher.calls) == 1


def test_infra_failures_retry_on_same_branch_without_counting(project_dir: Path) -> None:
    launcher = ScriptedLauncher(
        {
            "coder": [
                AgentScript(files={"wip.txt": "partial\n"}, exit_code=1),
                AgentScript(exit_code=137),
                coder_success("finished", **{"done.txt": "ok\n"}),
            ]
        }
    )
    service = make_service(project_dir, launcher, max_infra_retries=2, backoff_failure_threshold=1)
    task = service.store.upsert(Task(title="Crashy"))

    service.tick_once()

    done = service.store.show(task.id)
    assert done.status == "closed"
    assert done.cumulative_attempts == 0
    assert (project_dir / "wip.txt").read_text(encoding="utf-8") == "partial\n"
    assert (project_dir / "done.txt").exists()
    assert len(launcher.calls_for("coder")) == 3
    assert sum("[agent_crash]" in text for text in _comments(service, task.id)) == 2


def test_infra_failures_past_budget_are_counted(project_dir: Path) -> None:
    launcher = ScriptedLauncher({"coder": [AgentScript(exit_code=1)]})
    service = make_service(project_dir, launcher, max_infra_retries=1, backoff_failure_threshold=1)
    task = service.store.upsert(Task(title="Always crashes", priority=1))

    service.tick_once()

    demoted = service.store.show(task.id)
    assert demoted.status == "open"
    assert demoted.priority == 2
    assert demoted.cumulative_attempts == 1
    assert len(launcher.calls_for("coder")) == 2


def test_missing_result_with_clean_exit_is_no_result(project_dir: Path) -> None:
    launcher = ScriptedLauncher({"coder": [AgentScript(result=None, exit_code=0), coder_success()]})
    service = make_service(project_dir, launcher, backoff_failure_threshold=2)
    task = service.store.upsert(Task(title="Forgetful"))

    service.tick_once()

    done = service.store.show(task.id)
    assert done.status == "closed"
    assert done.cumulative_attempts == 1
    assert any("[no_result]" in text for text in _comments(service, task.id))


def test_silent_agent_is_killed_and_its_work_kept(project_dir: Path) -> None:
    launcher = ScriptedLauncher(
        {"coder": [AgentScript(files={"slow.txt": "halfway\n"}, alive_for=30.0), coder_success("finished")]}
    )
    service = make_service(project_dir, launcher, inactivity_timeout_seconds=0.3, max_infra_retries=1)
    task = service.store.upsert(Task(title="Slow"))

    service.tick_once()

    assert launcher.processes[0].killed
    assert service.store.show(task.id).status == "closed"
    assert (project_dir / "slow.txt").read_text(encoding="utf-8") == "halfway\n"
    assert any("[timeout]" in text for text in _comments(service, task.id))


def test_merge_conflict_is_an_infra_failure(project_dir: Path) -> None:
    def _race_trunk(call: SpawnCall) -> None:
        (project_dir / "README.md").write_text("trunk\n", encoding="utf-8")
        git(project_dir, "commit", "-am", "concurrent trunk change")

    launcher = ScriptedLauncher(
        {"coder": [AgentScript(files={"README.md": "branch\n"}, result={"status": "success"}, hook=_race_trunk)]}
    )
    service = make_service(project_dir, launcher, max_infra_retries=0, backoff_failure_threshold=1)
    task = service.store.upsert(Task(title="Conflicting"))

    service.tick_once()

    demoted = service.store.show(task.id)
    assert demoted.status == "open"
    assert demoted.priority == 3
    assert any("[merge_conflict]" in text for text in _comments(service, task.id))
    assert (project_dir / "README.md").read_text(encoding="utf-8") == "trunk\n"
    assert git(project_dir, "status", "--porcelain") == ""


def test_missing_agent_command_requeues_task(project_dir: Path) -> None:
    service = make_service(project_dir)
    task = service.store.upsert(Task(title="No agent configured"))

    with pytest.raises(AgentConfigurationError):
        service.tick_once()

    requeued = service.store.show(task.id)
    assert requeued.status == "open"
    assert requeued.assignee is None
    assert not service.worktrees.worktree_path(task.id).exists()
    assert service.status()["current_task"] is None


def test_shell_command_agent_end_to_end(project_dir: Path) -> None:
    container = make_service(project_dir).container
    cfg = container.config.load()
    cfg["agents"] = {
        "coder": {
            "command": (
                "echo 'writing file'; echo hi > real.txt; "
                "echo '{{\"status\": \"success\", \"summary\": \"real agent\"}}' > {result_file}"
            )
        }
    }
    container.config.save(cfg)
    service = make_service(project_dir)
    task = service.store.upsert(Task(title="Shell agent"))

    service.tick_once()

    assert service.store.show(task.id).close_reason == "real agent"
    assert (project_dir / "real.txt").read_text(encoding="utf-8") == "hi\n"
    log = service.container.state_root / "agent_output" / f"{task.id}-coder.log"
    assert "writing file" in log.read_text(encoding="utf-8")
    assert "writing file" in service.sessions.list_sessions(task.id)[0].output_log


def test_project_prompt_override_replaces_packaged_template(project_dir: Path) -> None:
    launcher = ScriptedLauncher({"coder": [coder_success()]})
    service = make_service(project_dir, launcher)
    override = service.container.state_root / "prompts" / "coding.md"
    override.parent.mkdir(parents=True, exist_ok=True)
    override.write_text("Follow the house style guide.\n", encoding="utf-8")
    service.store.upsert(Task(title="Styled"))

    service.tick_once()

    prompt = launcher.calls_for("coder")[0].prompt
    assert prompt.startswith("Follow the house style guide.")
    assert "# Task" in prompt
