from __future__ import annotations

import json
from pathlib import Path

import pytest

from backlog_orchestrator.cli import main


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> dict:
    assert main(list(argv)) == 0
    return json.loads(capsys.readouterr().out)


def test_task_add_and_list(project_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    base = ("--project-dir", str(project_dir))
    first = _run(capsys, *base, "task", "add", "Fix login", "--priority", "1", "--task-type", "bug")["task"]
    second = _run(capsys, *base, "task", "add", "Follow up", "--blocked-by", first["id"])["task"]

    assert first["priority"] == 1
    assert first["task_type"] == "bug"
    assert second["blocked_by"] == [first["id"]]

    listed = _run(capsys, *base, "task", "list")["tasks"]
    assert {t["id"] for t in listed} == {first["id"], second["id"]}
    ready = _run(capsys, *base, "task", "list", "--ready")["tasks"]
    assert [t["id"] for t in ready] == [first["id"]]


def test_priority_out_of_range_is_rejected(project_dir: Path) -> None:
    with pytest.raises(SystemExit):
        main(["--project-dir", str(project_dir), "task", "add", "Bad", "--priority", "9"])


def test_status_reports_ready_queue(project_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    base = ("--project-dir", str(project_dir))
    task = _run(capsys, *base, "task", "add", "Something")["task"]

    status = _run(capsys, *base, "status")
    assert status["running"] is False
    assert status["phase"] == "idle"
    assert status["ready"] == [task["id"]]
    assert "snapshot" not in status
