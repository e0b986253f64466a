"""Websocket pub/sub hub streaming orchestrator lifecycle events to clients."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


CHANNELS = {
    "tasks",
    "agents",
    "orchestrator",
    "system",
}


@dataclass
class _WsClient:
    ws: WebSocket
    channels: set[str] = field(default_factory=set)
    project_ids: set[str] = field(default_factory=set)

    def wants(self, event: dict[str, Any]) -> bool:
        channel = event.get("channel")
        if channel == "system":
            return True
        if channel not in self.channels:
            return False
        if not self.project_ids:
            return True
        return str(event.get("project_id") or "") in self.project_ids


def _system(event_type: str, payload: dict[str, Any]) -> str:
    return json.dumps({"channel": "system", "type": event_type, "payload": payload})


class WebSocketHub:
    """Track websocket subscribers and route channel-scoped runtime events.

    Orchestrator loops run on plain threads, so :meth:`publish_sync` hands
    events over to the server's asyncio loop instead of awaiting them.
    """
    def __init__(self) -> None:
        self._clients: dict[int, _WsClient] = {}
        self._counter = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register the event loop used for cross-thread publish scheduling."""
        with self._lock:
            self._loop = loop

    async def _apply(self, client: _WsClient, message: dict[str, Any]) -> None:
        action = message.get("action")
        if action == "ping":
            await client.ws.send_text(_system("pong", {}))
            return
        channels = {str(c) for c in message.get("channels", [])}
        project_ids = {str(p).strip() for p in message.get("project_ids", []) if str(p).strip()}
        if str(message.get("project_id") or "").strip():
            project_ids.add(str(message["project_id"]).strip())
        if action == "subscribe":
            client.channels |= channels & CHANNELS
            client.project_ids |= project_ids
        elif action == "unsubscribe":
            client.channels -= channels
            client.project_ids -= project_ids
        else:
            return
        await client.ws.send_text(
            _system(
                f"{action}d",
                {"channels": sorted(client.channels), "project_ids": sorted(client.project_ids)},
            )
        )

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Serve one client connection and process subscribe/unsubscribe traffic."""
        self.attach_loop(asyncio.get_running_loop())
        await websocket.accept()
        client = _WsClient(ws=websocket)
        cid = id(websocket)
        self._clients[cid] = client
        try:
            await websocket.send_text(_system("connected", {"channels": sorted(CHANNELS)}))
            while True:
                message = json.loads(await websocket.receive_text())
                if isinstance(message, dict):
                    await self._apply(client, message)
        except Exception:
            logger.debug("WebSocket client loop terminated with exception", exc_info=True)
        finally:
            self._clients.pop(cid, None)

    async def publish(self, event: dict[str, Any]) -> None:
        """Send one event to all subscribers matching channel and project filters."""
        self._counter += 1
        payload = json.dumps({**event, "seq": self._counter})
        stale: list[int] = []
        for cid, client in list(self._clients.items()):
            if not client.wants(event):
                continue
            try:
                await client.ws.send_text(payload)
            except Exception:
                stale.append(cid)
        for cid in stale:
            self._clients.pop(cid, None)

    def publish_sync(self, event: dict[str, Any]) -> None:
        """Schedule async publish from worker threads without blocking callers."""
        with self._lock:
            loop = self._loop
        if loop and loop.is_running():
            asyncio.run_coroutine_threadsafe(self.publish(event), loop)
            return
        logger.debug("No running event loop; dropping %s broadcast", event.get("type"))


hub = WebSocketHub()
