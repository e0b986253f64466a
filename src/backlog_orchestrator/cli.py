"""Command line entrypoint: serve the API, run headless, or inspect a project."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Optional

from .runtime.domain.models import MAX_PRIORITY, MIN_PRIORITY, Task
from .runtime.events import EventBus
from .runtime.orchestrator import OrchestratorService, create_orchestrator
from .runtime.storage import Container

logger = logging.getLogger(__name__)


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _ctx(project_dir: Optional[str]) -> tuple[Container, OrchestratorService]:
    container = Container(_resolve_project_dir(project_dir))
    bus = EventBus(container.events, container.project_id)
    return container, create_orchestrator(container, bus)


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    from .server import create_app

    app = create_app(project_dir=_resolve_project_dir(args.project_dir))
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def _run(args: argparse.Namespace) -> int:
    _, orchestrator = _ctx(args.project_dir)
    orchestrator.ensure_running()
    logger.info("Running headless; press Ctrl+C to stop (a live agent is left running)")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        orchestrator.shutdown(timeout=10.0)
    return 0


def _status(args: argparse.Namespace) -> int:
    container, orchestrator = _ctx(args.project_dir)
    payload = orchestrator.status()
    snapshot = orchestrator.snapshots.load()
    if snapshot is not None:
        payload["snapshot"] = snapshot.to_snapshot()
    payload["ready"] = [task.id for task in container.tasks.ready()]
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")
    return 0


def _task_add(args: argparse.Namespace) -> int:
    container, _ = _ctx(args.project_dir)
    task = Task(
        title=args.title,
        description=args.description or "",
        priority=args.priority,
        task_type=args.task_type,
        blocked_by=list(args.blocked_by or []),
        parent_id=args.parent,
    )
    container.tasks.upsert(task)
    sys.stdout.write(json.dumps({"task": task.to_dict()}, indent=2) + "\n")
    return 0


def _task_list(args: argparse.Namespace) -> int:
    container, _ = _ctx(args.project_dir)
    tasks = container.tasks.ready() if args.ready else container.tasks.list_all()
    if args.status:
        tasks = [task for task in tasks if task.status == args.status]
    sys.stdout.write(json.dumps({"tasks": [task.to_dict() for task in tasks]}, indent=2) + "\n")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="backlog-orchestrator",
        description="Autonomously work through a task backlog with coding agents",
    )
    parser.add_argument("--project-dir", default=None, help="Target git repository (default: current directory)")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Start the HTTP/websocket server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", default=8000, type=int)
    serve.set_defaults(func=_serve)

    run = subparsers.add_parser("run", help="Run the scheduler loop without the HTTP server")
    run.set_defaults(func=_run)

    status = subparsers.add_parser("status", help="Print scheduler status and the ready queue")
    status.set_defaults(func=_status)

    task = subparsers.add_parser("task", help="Manage backlog tasks")
    task_sub = task.add_subparsers(dest="task_command", required=True)

    task_add = task_sub.add_parser("add", help="Add a task to the backlog")
    task_add.add_argument("title")
    task_add.add_argument("--description", default="")
    task_add.add_argument(
        "--priority",
        type=int,
        default=2,
        choices=range(MIN_PRIORITY, MAX_PRIORITY + 1),
        help="0 is most urgent (default: 2)",
    )
    task_add.add_argument("--task-type", default="task", choices=["task", "bug", "feature", "chore", "epic"])
    task_add.add_argument("--blocked-by", action="append", help="Id of a task that must close first (repeatable)")
    task_add.add_argument("--parent", default=None, help="Parent epic id")
    task_add.set_defaults(func=_task_add)

    task_list = task_sub.add_parser("list", help="List backlog tasks")
    task_list.add_argument("--status", default=None, choices=["open", "in_progress", "blocked", "closed"])
    task_list.add_argument("--ready", action="store_true", help="Only tasks the scheduler could pick next")
    task_list.set_defaults(func=_task_list)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return int(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
