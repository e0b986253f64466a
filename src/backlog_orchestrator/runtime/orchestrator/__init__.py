"""Scheduler runtime: task selection, agent supervision, recovery and merging."""

from __future__ import annotations

from typing import Optional

from ..events.bus import EventBus
from ..storage.container import Container
from .agent_process import AgentConfigurationError, AgentLauncher, AgentProcess, CommandAgentLauncher
from .service import OrchestratorService
from .settings import OrchestratorSettings, get_orchestrator_settings
from .worktree_manager import GitError, MergeConflictError, RebaseConflictError


def create_orchestrator(
    container: Container,
    bus: EventBus,
    launcher: Optional[AgentLauncher] = None,
) -> OrchestratorService:
    """Build the scheduler for one project.

    Args:
        container (Container): Project repositories and state root.
        bus (EventBus): Event sink shared with the API layer.
        launcher (Optional[AgentLauncher]): Agent spawner override, mostly for tests.

    Returns:
        OrchestratorService: A service that has not been started yet.
    """
    return OrchestratorService(container, bus, launcher=launcher)


__all__ = [
    "AgentConfigurationError",
    "AgentLauncher",
    "AgentProcess",
    "CommandAgentLauncher",
    "GitError",
    "MergeConflictError",
    "OrchestratorService",
    "OrchestratorSettings",
    "RebaseConflictError",
    "create_orchestrator",
    "get_orchestrator_settings",
]
