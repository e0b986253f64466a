"""Create the per-project state root and keep it out of git."""

from __future__ import annotations

from pathlib import Path

from .file_repos import FileConfigRepository

STATE_DIR_NAME = ".orchestrator"

STATE_FILES = {
    "tasks": "tasks.yaml",
    "events": "events.jsonl",
    "config": "config.yaml",
}

STATE_DIRS = ("worktrees", "heartbeats", "sessions", "agent_output")


def _ensure_git_excluded(project_dir: Path) -> None:
    """Add the state directory to ``.git/info/exclude`` so no worktree ever stages it."""
    git_dir = project_dir / ".git"
    if not git_dir.is_dir():
        return
    exclude = git_dir / "info" / "exclude"
    entry = f"{STATE_DIR_NAME}/"
    content = exclude.read_text(encoding="utf-8") if exclude.exists() else ""
    existing = {line.strip() for line in content.splitlines()}
    if entry in existing or STATE_DIR_NAME in existing:
        return
    if content and not content.endswith("\n"):
        content += "\n"
    if "# Backlog orchestrator runtime data" not in content:
        content += "# Backlog orchestrator runtime data\n"
    content += f"{entry}\n"
    exclude.parent.mkdir(parents=True, exist_ok=True)
    exclude.write_text(content, encoding="utf-8")


def ensure_state_root(project_dir: Path) -> Path:
    state_root = project_dir / STATE_DIR_NAME
    state_root.mkdir(parents=True, exist_ok=True)
    _ensure_git_excluded(project_dir)

    for file_name in STATE_FILES.values():
        target = state_root / file_name
        if file_name.endswith(".yaml") and not target.exists():
            target.write_text("version: 1\n", encoding="utf-8")
        if file_name.endswith(".jsonl") and not target.exists():
            target.touch()

    for dir_name in STATE_DIRS:
        (state_root / dir_name).mkdir(parents=True, exist_ok=True)

    config_repo = FileConfigRepository(state_root / "config.yaml", state_root / "config.lock")
    config = config_repo.load()
    config["schema_version"] = 1
    config.setdefault("orchestrator", {"trunk_branch": "main", "review_mode": "never", "test_command": ""})
    config.setdefault("agents", {"coder": {}, "reviewer": {}, "merger": {}})
    config_repo.save(config)

    return state_root
