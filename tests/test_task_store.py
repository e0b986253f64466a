from __future__ import annotations

from pathlib import Path

import pytest

from backlog_orchestrator.runtime.domain.models import Task
from backlog_orchestrator.runtime.storage.container import Container
from backlog_orchestrator.runtime.storage.interfaces import TaskNotFoundError


@pytest.fixture()
def container(tmp_path: Path) -> Container:
    return Container(tmp_path)


def test_ready_orders_by_priority_then_creation(container: Container) -> None:
    low = container.tasks.upsert(Task(id="low", title="low", priority=3, created_at="2024-01-01T00:00:00+00:00"))
    urgent = container.tasks.upsert(Task(id="urgent", title="urgent", priority=0, created_at="2024-01-03T00:00:00+00:00"))
    older = container.tasks.upsert(Task(id="older", title="older", priority=3, created_at="2023-12-31T00:00:00+00:00"))
    assert [t.id for t in container.tasks.ready()] == [urgent.id, older.id, low.id]


def test_ready_excludes_tasks_with_open_or_missing_blockers(container: Container) -> None:
    container.tasks.upsert(Task(id="dep", title="dep"))
    container.tasks.upsert(Task(id="child", title="child", blocked_by=["dep"]))
    container.tasks.upsert(Task(id="ghost", title="ghost", blocked_by=["missing"]))
    assert [t.id for t in container.tasks.ready()] == ["dep"]
    assert not container.tasks.are_all_blockers_closed("child")

    container.tasks.close("dep", "done")
    assert [t.id for t in container.tasks.ready()] == ["child"]
    assert container.tasks.are_all_blockers_closed("child")


def test_update_clears_assignee_with_empty_string_and_clamps_priority(container: Container) -> None:
    container.tasks.upsert(Task(id="t", title="t"))
    container.tasks.update("t", status="in_progress", assignee="orchestrator")
    assert container.tasks.show("t").assignee == "orchestrator"

    task = container.tasks.update("t", status="open", assignee="", priority=9)
    assert task.assignee is None
    assert task.priority == 4


def test_blocked_task_keeps_reason_until_reopened(container: Container) -> None:
    container.tasks.upsert(Task(id="t", title="t"))
    container.tasks.update("t", status="blocked", block_reason="too many failures")
    assert container.tasks.show("t").block_reason == "too many failures"
    assert container.tasks.ready() == []
    assert container.tasks.update("t", status="open").block_reason is None


def test_update_rejects_unknown_status(container: Container) -> None:
    container.tasks.upsert(Task(id="t", title="t"))
    with pytest.raises(ValueError):
        container.tasks.update("t", status="done")


def test_comment_and_cumulative_attempts_persist(container: Container) -> None:
    container.tasks.upsert(Task(id="t", title="t"))
    container.tasks.comment("t", "first note")
    container.tasks.set_cumulative_attempts("t", 2)

    reloaded = Container(container.project_dir).tasks.show("t")
    assert reloaded.comments[0]["text"] == "first note"
    assert reloaded.comments[0]["author"] == "orchestrator"
    assert reloaded.cumulative_attempts == 2


def test_unknown_task_raises(container: Container) -> None:
    with pytest.raises(TaskNotFoundError):
        container.tasks.show("nope")
    with pytest.raises(TaskNotFoundError):
        container.tasks.update("nope", status="open")


def test_state_root_is_excluded_from_git(tmp_path: Path) -> None:
    (tmp_path / ".git" / "info").mkdir(parents=True)
    Container(tmp_path)
    Container(tmp_path)
    exclude = (tmp_path / ".git" / "info" / "exclude").read_text(encoding="utf-8")
    assert exclude.count(".orchestrator/") == 1


def test_events_are_appended_and_listed(container: Container) -> None:
    for idx in range(3):
        container.events.append(
            channel="tasks",
            event_type="task.updated",
            entity_id=f"t{idx}",
            payload={},
            project_id=container.project_id,
        )
    recent = container.events.list_recent(limit=2)
    assert [e["entity_id"] for e in recent] == ["t1", "t2"]
