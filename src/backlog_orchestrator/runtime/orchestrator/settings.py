"""Parse orchestrator and agent configuration into typed settings."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional, cast

from ..domain.models import ReviewMode

AgentRole = Literal["coder", "reviewer", "merger"]

_REVIEW_MODES = {"never", "always", "on_failure"}
_REVIEW_MODE_ALIASES = {
    "off": "never",
    "skip": "never",
    "none": "never",
    "on_failure_only": "on_failure",
    "failures": "on_failure",
}


@dataclass(frozen=True)
class AgentCommandSpec:
    """Shell command template used to spawn one agent role.

    Attributes:
        role: Which agent this command runs (coder, reviewer or merger).
        command: Shell template; ``{prompt_file}``, ``{config_file}``,
            ``{result_file}``, ``{task_id}`` and ``{worktree}`` are substituted.
        env: Extra environment variables passed to the subprocess.
    """
    role: AgentRole
    command: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class OrchestratorSettings:
    """Fully resolved runtime knobs for one project's scheduler.

    Durations are seconds. Defaults mirror the values used when a project
    config omits a key or supplies something unparseable.
    """
    agent_id: str = "orchestrator"
    trunk_branch: str = "main"
    remote: str = "origin"
    push_enabled: bool = True
    test_command: str = ""
    review_mode: ReviewMode = "never"
    heartbeat_interval_seconds: float = 10.0
    inactivity_timeout_seconds: float = 600.0
    monitor_interval_seconds: float = 5.0
    poll_interval_seconds: float = 0.5
    sigterm_grace_seconds: float = 2.0
    test_timeout_seconds: float = 300.0
    backoff_failure_threshold: int = 3
    max_priority_before_block: int = 4
    max_infra_retries: int = 2
    watchdog_interval_seconds: float = 300.0
    loop_cooldown_seconds: float = 1.0
    error_retry_seconds: float = 10.0
    idle_poll_seconds: float = 5.0
    git_lock_stale_seconds: float = 600.0
    git_ready_timeout_seconds: float = 15.0
    shared_paths: tuple[str, ...] = ()
    agents: dict[str, AgentCommandSpec] = field(default_factory=dict)

    def agent(self, role: AgentRole) -> AgentCommandSpec:
        return self.agents.get(role) or AgentCommandSpec(role=role)


def _as_dict(value: Any) -> dict[str, Any]:
    """Return ``value`` only when it is a dictionary.

    Args:
        value (Any): Candidate configuration node.

    Returns:
        dict[str, Any]: The original dictionary value, or an empty dict for non-mappings.
    """
    return value if isinstance(value, dict) else {}


def _positive_float(raw: Any, default: float) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _positive_int(raw: Any, default: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _non_negative_int(raw: Any, default: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value >= 0 else default


def _text(raw: Any, default: str) -> str:
    value = str(raw).strip() if raw is not None else ""
    return value or default


def _review_mode(raw: Any) -> ReviewMode:
    value = str(raw or "").strip().lower()
    value = _REVIEW_MODE_ALIASES.get(value, value)
    return cast(ReviewMode, value if value in _REVIEW_MODES else "never")


def _agent_specs(agents_cfg: dict[str, Any]) -> dict[str, AgentCommandSpec]:
    specs: dict[str, AgentCommandSpec] = {}
    for role in ("coder", "reviewer", "merger"):
        node = agents_cfg.get(role)
        if isinstance(node, str):
            node = {"command": node}
        node = _as_dict(node)
        command = str(node.get("command") or "").strip() or None
        env = {str(k): str(v) for k, v in _as_dict(node.get("env")).items()}
        specs[role] = AgentCommandSpec(role=cast(AgentRole, role), command=command, env=env)
    return specs


def get_orchestrator_settings(*, config: dict[str, Any]) -> OrchestratorSettings:
    """Resolve orchestrator settings from a parsed ``config.yaml`` mapping.

    Args:
        config (dict[str, Any]): Runtime configuration that may include an
            ``orchestrator`` section and an ``agents`` section keyed by role.

    Returns:
        OrchestratorSettings: Settings with invalid or missing values replaced
        by defaults.
    """
    defaults = OrchestratorSettings()
    cfg = _as_dict(config.get("orchestrator"))
    raw_shared = cfg.get("shared_paths")
    shared_paths = tuple(str(p) for p in raw_shared if str(p).strip()) if isinstance(raw_shared, list) else ()
    return OrchestratorSettings(
        agent_id=_text(cfg.get("agent_id"), defaults.agent_id),
        trunk_branch=_text(cfg.get("trunk_branch"), defaults.trunk_branch),
        remote=_text(cfg.get("remote"), defaults.remote),
        push_enabled=bool(cfg.get("push_enabled", defaults.push_enabled)),
        test_command=str(cfg.get("test_command") or "").strip(),
        review_mode=_review_mode(cfg.get("review_mode")),
        heartbeat_interval_seconds=_positive_float(cfg.get("heartbeat_interval_seconds"), defaults.heartbeat_interval_seconds),
        inactivity_timeout_seconds=_positive_float(cfg.get("inactivity_timeout_seconds"), defaults.inactivity_timeout_seconds),
        monitor_interval_seconds=_positive_float(cfg.get("monitor_interval_seconds"), defaults.monitor_interval_seconds),
        poll_interval_seconds=_positive_float(cfg.get("poll_interval_seconds"), defaults.poll_interval_seconds),
        sigterm_grace_seconds=_positive_float(cfg.get("sigterm_grace_seconds"), defaults.sigterm_grace_seconds),
        test_timeout_seconds=_positive_float(cfg.get("test_timeout_seconds"), defaults.test_timeout_seconds),
        backoff_failure_threshold=_positive_int(cfg.get("backoff_failure_threshold"), defaults.backoff_failure_threshold),
        max_priority_before_block=_positive_int(cfg.get("max_priority_before_block"), defaults.max_priority_before_block),
        max_infra_retries=_non_negative_int(cfg.get("max_infra_retries"), defaults.max_infra_retries),
        watchdog_interval_seconds=_positive_float(cfg.get("watchdog_interval_seconds"), defaults.watchdog_interval_seconds),
        loop_cooldown_seconds=_positive_float(cfg.get("loop_cooldown_seconds"), defaults.loop_cooldown_seconds),
        error_retry_seconds=_positive_float(cfg.get("error_retry_seconds"), defaults.error_retry_seconds),
        idle_poll_seconds=_positive_float(cfg.get("idle_poll_seconds"), defaults.idle_poll_seconds),
        git_lock_stale_seconds=_positive_float(cfg.get("git_lock_stale_seconds"), defaults.git_lock_stale_seconds),
        git_ready_timeout_seconds=_positive_float(cfg.get("git_ready_timeout_seconds"), defaults.git_ready_timeout_seconds),
        shared_paths=shared_paths,
        agents=_agent_specs(_as_dict(config.get("agents"))),
    )
