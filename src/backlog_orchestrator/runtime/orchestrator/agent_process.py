"""Agent subprocess handles, launcher, and the supervision loop.

A running agent is represented by an :class:`AgentProcess` handle rather than
an awaited future. Agents write their combined stdout/stderr to a log file
under the state root, which lets a restarted orchestrator reattach to a
surviving process with :class:`AttachedAgentProcess` and keep supervising it
through the same :class:`AgentSupervisor` loop used for fresh spawns.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from .heartbeat import HeartbeatTracker
from .settings import AgentRole, OrchestratorSettings

logger = logging.getLogger(__name__)


class AgentConfigurationError(RuntimeError):
    """No usable command is configured for an agent role."""


def is_pid_alive(pid: Optional[int]) -> bool:
    """Return whether ``pid`` names a running, non-zombie process."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    stat = Path(f"/proc/{pid}/stat")
    try:
        fields = stat.read_text().rsplit(")", 1)[1].split()
    except (OSError, IndexError):
        return True
    return bool(fields) and fields[0] != "Z"


def _signal_group(pid: int, sig: int) -> bool:
    try:
        os.killpg(pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        try:
            os.kill(pid, sig)
            return True
        except ProcessLookupError:
            return False


def terminate_process_group(pid: Optional[int], grace_seconds: float) -> None:
    """Send SIGTERM to the agent's process group, escalating to SIGKILL after ``grace_seconds``."""
    if not pid or not is_pid_alive(pid):
        return
    if not _signal_group(pid, signal.SIGTERM):
        return
    deadline = time.monotonic() + grace_seconds
    while time.monotonic() < deadline:
        if not is_pid_alive(pid):
            return
        time.sleep(0.1)
    logger.warning("Process %s ignored SIGTERM for %.1fs; sending SIGKILL", pid, grace_seconds)
    _signal_group(pid, signal.SIGKILL)


class AgentProcess(ABC):
    """Handle for one agent subprocess: PID, liveness, kill, and output tailing."""

    def __init__(self, pid: int, output_path: Optional[Path], *, output_offset: int = 0) -> None:
        self.pid = pid
        self.output_path = output_path
        self._offset = output_offset

    def read_output(self) -> str:
        """Return output appended to the log file since the previous call."""
        if self.output_path is None or not self.output_path.exists():
            return ""
        with open(self.output_path, "rb") as handle:
            handle.seek(self._offset)
            data = handle.read()
        self._offset += len(data)
        return data.decode("utf-8", errors="replace")

    @abstractmethod
    def poll(self) -> Optional[int]:
        """Exit code once the process has exited and it is known, else ``None``."""

    @abstractmethod
    def is_alive(self) -> bool:
        """Whether the process is still running."""

    @abstractmethod
    def kill(self, grace_seconds: float) -> None:
        """Terminate the process group (SIGTERM, then SIGKILL after the grace period)."""


class SpawnedAgentProcess(AgentProcess):
    """Handle for an agent started by this orchestrator process."""

    def __init__(self, popen: subprocess.Popen, output_path: Path) -> None:
        super().__init__(popen.pid, output_path)
        self._popen = popen

    def poll(self) -> Optional[int]:
        return self._popen.poll()

    def is_alive(self) -> bool:
        return self._popen.poll() is None

    def kill(self, grace_seconds: float) -> None:
        if self._popen.poll() is not None:
            return
        _signal_group(self.pid, signal.SIGTERM)
        try:
            self._popen.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Agent pid %s ignored SIGTERM; sending SIGKILL", self.pid)
            _signal_group(self.pid, signal.SIGKILL)
            self._popen.wait()


class AttachedAgentProcess(AgentProcess):
    """Handle for an agent that outlived a previous orchestrator process.

    The exit code of a process we did not spawn cannot be collected, so
    :meth:`poll` reports ``None`` and callers rely on :meth:`is_alive`.
    """

    def __init__(self, pid: int, output_path: Optional[Path]) -> None:
        offset = output_path.stat().st_size if output_path is not None and output_path.exists() else 0
        super().__init__(pid, output_path, output_offset=offset)

    def poll(self) -> Optional[int]:
        return None

    def is_alive(self) -> bool:
        return is_pid_alive(self.pid)

    def kill(self, grace_seconds: float) -> None:
        terminate_process_group(self.pid, grace_seconds)


class AgentLauncher(Protocol):
    """Launcher contract used by the scheduler to start agent subprocesses."""
    def spawn(
        self,
        role: AgentRole,
        *,
        cwd: Path,
        task_id: str,
        prompt_file: Path,
        config_file: Path,
        result_file: Path,
        env: dict[str, str],
    ) -> AgentProcess:
        """Start one agent.

        Args:
            role (AgentRole): Which agent to start (coder, reviewer or merger).
            cwd (Path): Working directory; the task worktree for coder/reviewer.
            task_id (str): Task the agent works on.
            prompt_file (Path): Markdown prompt assembled for the agent.
            config_file (Path): JSON run configuration for the agent.
            result_file (Path): Where the agent must write its ``result.json``.
            env (dict[str, str]): Extra environment variables for the process.

        Returns:
            AgentProcess: Handle for the running subprocess.
        """
        ...


class CommandAgentLauncher:
    """Spawn agents from the shell command templates in ``agents.<role>.command``."""

    def __init__(self, settings: OrchestratorSettings, output_dir: Path) -> None:
        self._settings = settings
        self._output_dir = output_dir

    def output_path(self, task_id: str, role: AgentRole) -> Path:
        return self._output_dir / f"{task_id}-{role}.log"

    def spawn(
        self,
        role: AgentRole,
        *,
        cwd: Path,
        task_id: str,
        prompt_file: Path,
        config_file: Path,
        result_file: Path,
        env: dict[str, str],
    ) -> AgentProcess:
        spec = self._settings.agent(role)
        if not spec.command:
            raise AgentConfigurationError(f"No command configured for the {role} agent (agents.{role}.command)")
        command = spec.command.format(
            prompt_file=shlex.quote(str(prompt_file)),
            config_file=shlex.quote(str(config_file)),
            result_file=shlex.quote(str(result_file)),
            task_id=shlex.quote(task_id),
            worktree=shlex.quote(str(cwd)),
        )
        output_path = self.output_path(task_id, role)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "wb") as log_handle:
            popen = subprocess.Popen(
                command,
                shell=True,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                env={**os.environ, **spec.env, **env},
            )
        logger.info("Spawned %s agent for task %s (pid %s)", role, task_id, popen.pid)
        return SpawnedAgentProcess(popen, output_path)


@dataclass
class AgentExit:
    """How a supervised agent run ended."""
    exit_code: Optional[int]
    killed_due_to_timeout: bool = False
    detached: bool = False


class AgentSupervisor:
    """Poll an agent handle until it exits, writing heartbeats and enforcing inactivity."""

    def __init__(self, settings: OrchestratorSettings, heartbeats: HeartbeatTracker) -> None:
        self._settings = settings
        self._heartbeats = heartbeats

    def run(
        self,
        handle: AgentProcess,
        *,
        task_id: str,
        last_output_at: Optional[float],
        on_output: Callable[[str, float], None],
        on_inactive: Optional[Callable[[], None]] = None,
        stop: Optional[threading.Event] = None,
    ) -> AgentExit:
        """Supervise ``handle`` until it exits, is killed, or ``stop`` is set.

        Args:
            handle (AgentProcess): Running agent.
            task_id (str): Task whose heartbeat file is written.
            last_output_at (Optional[float]): Epoch seconds of the last known
                output; ``None`` starts the inactivity clock now.
            on_output (Callable[[str, float], None]): Called with each new output
                chunk and its arrival time.
            on_inactive (Optional[Callable[[], None]]): Called before the process
                is killed for inactivity, used to commit work in progress.
            stop (Optional[threading.Event]): Set on shutdown; supervision ends
                without killing so a later start can reattach.

        Returns:
            AgentExit: Exit code (when known) and whether the inactivity timeout fired.
        """
        settings = self._settings
        last_output = last_output_at if last_output_at is not None else time.time()
        next_heartbeat = 0.0
        next_check = time.time() + settings.monitor_interval_seconds

        def _drain() -> None:
            nonlocal last_output
            chunk = handle.read_output()
            if chunk:
                last_output = time.time()
                on_output(chunk, last_output)

        while True:
            _drain()
            if not handle.is_alive():
                _drain()
                self._heartbeats.remove(task_id)
                return AgentExit(exit_code=handle.poll())

            now = time.time()
            if now >= next_heartbeat:
                self._heartbeats.write(task_id, pid=handle.pid, last_output_at=last_output)
                next_heartbeat = now + settings.heartbeat_interval_seconds

            if now >= next_check:
                next_check = now + settings.monitor_interval_seconds
                idle = now - last_output
                if idle > settings.inactivity_timeout_seconds:
                    logger.warning(
                        "Agent pid %s for task %s silent for %.0fs; terminating",
                        handle.pid,
                        task_id,
                        idle,
                    )
                    if on_inactive is not None:
                        try:
                            on_inactive()
                        except Exception:
                            logger.exception("Pre-kill hook failed for task %s", task_id)
                    handle.kill(settings.sigterm_grace_seconds)
                    _drain()
                    self._heartbeats.remove(task_id)
                    return AgentExit(exit_code=handle.poll(), killed_due_to_timeout=True)

            if stop is not None:
                if stop.wait(settings.poll_interval_seconds):
                    logger.info("Detaching from agent pid %s for task %s on shutdown", handle.pid, task_id)
                    return AgentExit(exit_code=None, detached=True)
            else:
                time.sleep(settings.poll_interval_seconds)
