from __future__ import annotations

import time
from pathlib import Path

from backlog_orchestrator.runtime.domain.models import SessionRecord, TestResults
from backlog_orchestrator.runtime.orchestrator.heartbeat import HeartbeatTracker
from backlog_orchestrator.runtime.orchestrator.persistence import SnapshotStore
from backlog_orchestrator.runtime.orchestrator.session_archive import SessionArchive
from backlog_orchestrator.runtime.domain.models import OrchestratorState


def test_heartbeat_write_read_and_staleness(tmp_path: Path) -> None:
    tracker = HeartbeatTracker(tmp_path)
    tracker.write("task-1", pid=42, last_output_at=time.time() - 30)
    beat = tracker.read("task-1")
    assert beat is not None
    assert beat.pid == 42
    assert HeartbeatTracker.is_stale(beat, 10)
    assert not HeartbeatTracker.is_stale(beat, 60)

    tracker.remove("task-1")
    assert tracker.read("task-1") is None
    tracker.remove("task-1")


def test_malformed_heartbeat_is_ignored(tmp_path: Path) -> None:
    tracker = HeartbeatTracker(tmp_path)
    path = tracker.path_for("task-1")
    path.parent.mkdir(parents=True)
    path.write_text('{"pid": "x"}', encoding="utf-8")
    assert tracker.read("task-1") is None


def test_session_archive_never_overwrites(tmp_path: Path) -> None:
    archive = SessionArchive(tmp_path)
    first = archive.archive(SessionRecord(task_id="t", attempt=1, status="failed", output_log="boom", diff="-a\n+b\n"))
    second = archive.archive(SessionRecord(task_id="t", attempt=1, status="success", summary="fixed"))

    assert first != second
    assert first.name == "t-1"
    assert (first / "output.log").read_text(encoding="utf-8") == "boom"
    assert (first / "diff.patch").read_text(encoding="utf-8") == "-a\n+b\n"
    assert archive.read_session("t", 1).status == "failed"
    statuses = [r.status for r in archive.list_sessions("t")]
    assert sorted(statuses) == ["failed", "success"]


def test_session_archive_filters_by_task(tmp_path: Path) -> None:
    archive = SessionArchive(tmp_path)
    archive.archive(SessionRecord(task_id="a", attempt=1, status="success", test_results=TestResults(passed=3)))
    archive.archive(SessionRecord(task_id="b", attempt=2, status="rejected"))
    assert [r.task_id for r in archive.list_sessions("a")] == ["a"]
    assert archive.list_sessions("a")[0].test_results.passed == 3
    assert len(archive.list_sessions()) == 2
    assert archive.read_session("c", 1) is None


def test_snapshot_store_save_load_clear(tmp_path: Path) -> None:
    store = SnapshotStore(tmp_path / "orchestrator_state.json")
    assert store.load() is None
    store.save(OrchestratorState(phase="coding", active_task_id="t", agent_pid=7))
    loaded = store.load()
    assert loaded is not None and loaded.agent_pid == 7
    store.clear()
    assert store.load() is None


def test_corrupt_snapshot_loads_as_none(tmp_path: Path) -> None:
    path = tmp_path / "orchestrator_state.json"
    path.write_text("{not json", encoding="utf-8")
    assert SnapshotStore(path).load() is None
