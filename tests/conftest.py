from __future__ import annotations

import json
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from backlog_orchestrator.runtime.events.bus import EventBus
from backlog_orchestrator.runtime.orchestrator.agent_process import AgentProcess
from backlog_orchestrator.runtime.orchestrator.service import OrchestratorService
from backlog_orchestrator.runtime.storage.container import Container


FAST_SETTINGS: dict[str, Any] = {
    "trunk_branch": "main",
    "review_mode": "never",
    "test_command": "",
    "push_enabled": False,
    "poll_interval_seconds": 0.01,
    "monitor_interval_seconds": 0.05,
    "heartbeat_interval_seconds": 0.05,
    "idle_poll_seconds": 0.05,
    "loop_cooldown_seconds": 0.01,
    "error_retry_seconds": 0.05,
    "watchdog_interval_seconds": 0.2,
    "git_ready_timeout_seconds": 1,
    "sigterm_grace_seconds": 0.5,
}


def git(cwd: Path, *args: str) -> str:
    return subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True).stdout.strip()


def init_repo(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    git(path, "config", "user.email", "test@example.com")
    git(path, "config", "user.name", "Test Runner")
    git(path, "config", "commit.gpgsign", "false")
    (path / "README.md").write_text("seed\n", encoding="utf-8")
    git(path, "add", "README.md")
    git(path, "commit", "-m", "seed")
    return path


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    return init_repo(tmp_path / "project")


def configure(container: Container, **overrides: Any) -> None:
    cfg = container.config.load()
    cfg["orchestrator"] = {**FAST_SETTINGS, **overrides}
    container.config.save(cfg)


def make_service(project_dir: Path, launcher: Optional["ScriptedLauncher"] = None, **overrides: Any) -> OrchestratorService:
    container = Container(project_dir)
    configure(container, **overrides)
    bus = EventBus(container.events, container.project_id)
    return OrchestratorService(container, bus, launcher=launcher)


class FakeAgentProcess(AgentProcess):
    """In-process stand-in for an agent; "exits" once ``alive_for`` seconds pass."""

    def __init__(self, pid: int, output_path: Path, *, exit_code: int = 0, alive_for: float = 0.0) -> None:
        super().__init__(pid, output_path)
        self._exit_code = exit_code
        self._deadline = time.monotonic() + alive_for
        self.killed = False

    def poll(self) -> Optional[int]:
        return None if self.is_alive() else self._exit_code

    def is_alive(self) -> bool:
        return not self.killed and time.monotonic() < self._deadline

    def kill(self, grace_seconds: float) -> None:
        self.killed = True


@dataclass
class SpawnCall:
    role: str
    cwd: Path
    task_id: str
    prompt: str
    env: dict[str, str]


@dataclass
class AgentScript:
    """What one fake agent run does: files it writes, its result.json, and how it exits."""

    files: dict[str, str] = field(default_factory=dict)
    result: Optional[dict[str, Any]] = None
    exit_code: int = 0
    alive_for: float = 0.0
    output: str = "working\n"
    hook: Optional[Callable[[SpawnCall], None]] = None


def coder_success(summary: str = "Implemented", **files: str) -> AgentScript:
    return AgentScript(files=files or {"feature.txt": "done\n"}, result={"status": "success", "summary": summary})


class ScriptedLauncher:
    """Launcher that plays back per-role scripts; the last script of a role repeats."""

    def __init__(self, scripts: Optional[dict[str, list[AgentScript]]] = None) -> None:
        self.scripts = {role: list(items) for role, items in (scripts or {}).items()}
        self.calls: list[SpawnCall] = []
        self.processes: list[FakeAgentProcess] = []
        self.max_alive = 0
        self._next_pid = 4_000_000

    def calls_for(self, role: str) -> list[SpawnCall]:
        return [call for call in self.calls if call.role == role]

    def _script(self, role: str) -> AgentScript:
        queue = self.scripts.get(role) or [AgentScript()]
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def spawn(
        self,
        role: str,
        *,
        cwd: Path,
        task_id: str,
        prompt_file: Path,
        config_file: Path,
        result_file: Path,
        env: dict[str, str],
    ) -> AgentProcess:
        alive = sum(1 for proc in self.processes if proc.is_alive())
        self.max_alive = max(self.max_alive, alive + 1)
        call = SpawnCall(role=role, cwd=cwd, task_id=task_id, prompt=prompt_file.read_text(encoding="utf-8"), env=dict(env))
        self.calls.append(call)

        script = self._script(role)
        for rel, content in script.files.items():
            target = cwd / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        if script.hook is not None:
            script.hook(call)
        if script.result is not None:
            result_file.parent.mkdir(parents=True, exist_ok=True)
            result_file.write_text(json.dumps(script.result), encoding="utf-8")

        output_path = config_file.parent / "fake-output.log"
        output_path.write_text(script.output, encoding="utf-8")
        self._next_pid += 1
        proc = FakeAgentProcess(self._next_pid, output_path, exit_code=script.exit_code, alive_for=script.alive_for)
        self.processes.append(proc)
        return proc


def wait_for(predicate: Callable[[], bool], timeout: float = 20.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
