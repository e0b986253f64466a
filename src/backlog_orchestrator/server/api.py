"""FastAPI app wiring for the backlog orchestrator."""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from fastapi import FastAPI, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..runtime.api import create_router
from ..runtime.events import EventBus, hub
from ..runtime.orchestrator import AgentLauncher, OrchestratorService, create_orchestrator
from ..runtime.storage import Container

logger = logging.getLogger(__name__)

APP_NAME = "Backlog Orchestrator"


class ProjectRegistry:
    """Lazily build and cache one container and one orchestrator per project directory.

    Requests may target any project with ``?project_dir=``; without it the
    app's default directory (or the server's cwd) is used. Orchestrators are
    created on first use and are never started implicitly.
    """

    def __init__(
        self,
        default_project_dir: Optional[Path],
        *,
        launcher: Optional[AgentLauncher] = None,
        bus_factory: Optional[Callable[[Container], EventBus]] = None,
    ) -> None:
        self.default_project_dir = default_project_dir
        self.containers: dict[str, Container] = {}
        self.orchestrators: dict[str, OrchestratorService] = {}
        self._launcher = launcher
        self._bus_factory = bus_factory or (lambda container: EventBus(container.events, container.project_id))
        self._lock = threading.Lock()

    def project_dir(self, raw: Optional[str] = None) -> Path:
        if raw:
            return Path(raw).expanduser().resolve()
        if self.default_project_dir:
            return Path(self.default_project_dir).resolve()
        return Path.cwd().resolve()

    def container(self, raw: Optional[str] = None) -> Container:
        key = str(self.project_dir(raw))
        with self._lock:
            if key not in self.containers:
                self.containers[key] = Container(Path(key))
            return self.containers[key]

    def orchestrator(self, raw: Optional[str] = None) -> OrchestratorService:
        container = self.container(raw)
        key = str(container.project_dir)
        with self._lock:
            if key not in self.orchestrators:
                self.orchestrators[key] = create_orchestrator(
                    container,
                    bus=self._bus_factory(container),
                    launcher=self._launcher,
                )
            return self.orchestrators[key]

    def running_count(self) -> int:
        return sum(1 for orchestrator in self.orchestrators.values() if orchestrator.status()["running"])

    def shutdown_all(self, timeout: float = 10.0) -> None:
        """Stop every orchestrator loop; live agents are detached, not killed."""
        with self._lock:
            orchestrators = list(self.orchestrators.values())
        for orchestrator in orchestrators:
            try:
                orchestrator.shutdown(timeout=timeout)
            except Exception:
                logger.exception("Orchestrator shutdown failed for %s", orchestrator.container.project_dir)
        with self._lock:
            self.orchestrators.clear()
            self.containers.clear()


def create_app(
    project_dir: Optional[Path] = None,
    enable_cors: bool = True,
    launcher: Optional[AgentLauncher] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        project_dir (Optional[Path]): Default project directory used when request-level
            ``project_dir`` query parameters are not provided.
        enable_cors (bool): Whether to install permissive CORS middleware for browser
            clients.
        launcher (Optional[AgentLauncher]): Agent launcher forwarded to newly
            created orchestrator instances.

    Returns:
        FastAPI: Configured application with API routes and the websocket
        bridge. The :class:`ProjectRegistry` is exposed as ``app.state.registry``
        and its caches as ``app.state.containers`` / ``app.state.orchestrators``.
    """
    registry = ProjectRegistry(project_dir, launcher=launcher)

    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        hub.attach_loop(asyncio.get_running_loop())
        try:
            yield
        finally:
            registry.shutdown_all(timeout=10.0)

    app = FastAPI(
        title=APP_NAME,
        description="Autonomous backlog execution with coding agents",
        version=__version__,
        lifespan=_lifespan,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.registry = registry
    app.state.containers = registry.containers
    app.state.orchestrators = registry.orchestrators

    app.include_router(create_router(registry.container, registry.orchestrator))

    @app.get("/")
    async def root(project_dir: Optional[str] = Query(None)) -> dict[str, object]:
        """Return basic service metadata for the selected project context."""
        container = registry.container(project_dir)
        return {
            "name": APP_NAME,
            "version": __version__,
            "project": str(container.project_dir),
            "project_id": container.project_id,
        }

    @app.get("/healthz")
    async def healthz() -> dict[str, object]:
        """Expose liveness status for process-level health checks."""
        return {"status": "ok", "version": __version__}

    @app.get("/readyz")
    async def readyz() -> dict[str, object]:
        """Report how many project schedulers this process knows about and how many are running."""
        return {
            "status": "ready",
            "orchestrators": len(registry.orchestrators),
            "running": registry.running_count(),
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await hub.handle_connection(websocket)

    return app
