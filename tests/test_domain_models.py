from __future__ import annotations

from backlog_orchestrator.runtime.domain.models import (
    AgentResult,
    OrchestratorState,
    SessionRecord,
    Task,
    TestResults,
    is_infra_failure,
    normalize_coding_status,
    normalize_review_status,
)


def test_coding_status_synonyms_collapse_to_success_or_failed() -> None:
    for raw in ("success", "Completed", "done", "OK", "passed"):
        assert normalize_coding_status(raw) == "success"
    for raw in ("failed", "error", "", None, "partial"):
        assert normalize_coding_status(raw) == "failed"


def test_review_status_unknown_verdict_is_none() -> None:
    assert normalize_review_status("LGTM") == "approved"
    assert normalize_review_status("changes-requested") == "rejected"
    assert normalize_review_status("maybe") is None
    assert normalize_review_status(None) is None


def test_infra_failures_are_crash_timeout_and_merge_conflict() -> None:
    assert is_infra_failure("agent_crash")
    assert is_infra_failure("timeout")
    assert is_infra_failure("merge_conflict")
    assert not is_infra_failure("test_failure")
    assert not is_infra_failure("review_rejection")


def test_task_from_dict_normalizes_bad_values() -> None:
    task = Task.from_dict({"id": "t-1", "title": "x", "status": "weird", "task_type": "story", "priority": 99})
    assert task.status == "open"
    assert task.task_type == "task"
    assert task.priority == 4
    assert Task.from_dict({"id": "t-2", "priority": "nope"}).priority == 2


def test_review_result_flattens_structured_issues() -> None:
    result = AgentResult.for_review(
        {
            "status": "request_changes",
            "summary": "Needs work",
            "issues": [{"summary": "missing test"}, "typo in README", {"other": 1}],
        }
    )
    assert result.status == "rejected"
    assert result.issues == ["missing test", "typo in README"]
    text = result.feedback().format()
    assert "Needs work" in text
    assert "- missing test" in text


def test_snapshot_round_trip_keeps_only_durable_fields() -> None:
    state = OrchestratorState(
        phase="testing",
        active_task_id="task-1",
        branch="orchestrator/task-1",
        agent_pid=1234,
        attempt=3,
        total_done=2,
        last_output_at=1700000000.5,
        last_summary="wired the parser",
        last_diff="diff --git a/x b/x",
    )
    state.append_output("chunk")
    restored = OrchestratorState.from_snapshot(state.to_snapshot())
    assert restored.phase == "testing"
    assert restored.agent_pid == 1234
    assert restored.attempt == 3
    assert restored.total_done == 2
    assert restored.last_output_at == 1700000000.5
    assert restored.output_log == []
    assert restored.last_summary == "wired the parser"
    assert restored.last_diff == ""


def test_snapshot_with_unknown_phase_loads_idle() -> None:
    restored = OrchestratorState.from_snapshot({"phase": "dancing", "agent_pid": "abc"})
    assert restored.phase == "idle"
    assert restored.agent_pid is None
    assert not restored.has_active_task


def test_clear_task_keeps_counters() -> None:
    state = OrchestratorState(phase="review", active_task_id="t", total_done=4, total_failed=1, attempt=2)
    state.clear_task()
    assert state.phase == "idle"
    assert state.active_task_id is None
    assert state.attempt == 1
    assert (state.total_done, state.total_failed) == (4, 1)


def test_session_record_serializes_test_results() -> None:
    record = SessionRecord(task_id="t", attempt=1, status="failed", test_results=TestResults(passed=1, failed=2))
    restored = SessionRecord.from_dict(record.to_dict())
    assert restored.test_results is not None
    assert restored.test_results.failed == 2
    assert not restored.test_results.ok
