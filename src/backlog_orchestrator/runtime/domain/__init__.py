"""Domain models for orchestrator runtime state."""

from .models import (
    AgentResult,
    OrchestratorState,
    RetryContext,
    ReviewFeedback,
    SessionRecord,
    Task,
    TestResults,
)

__all__ = [
    "Task",
    "OrchestratorState",
    "RetryContext",
    "ReviewFeedback",
    "AgentResult",
    "SessionRecord",
    "TestResults",
]
