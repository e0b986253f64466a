"""Event bus wrapper that persists and broadcasts runtime events."""

from __future__ import annotations

from typing import Any

from ..domain.models import now_iso
from ..storage.interfaces import EventRepository
from .ws import hub


class EventBus:
    """Persist runtime events and fan them out to websocket subscribers."""
    def __init__(self, repo: EventRepository, project_id: str) -> None:
        """Initialize the EventBus.

        Args:
            repo (EventRepository): Append-only store for lifecycle events.
            project_id (str): Identifier for the related project.
        """
        self._repo = repo
        self._project_id = project_id

    @property
    def project_id(self) -> str:
        return self._project_id

    def emit(
        self,
        *,
        channel: str,
        event_type: str,
        entity_id: str,
        payload: dict[str, Any],
        persist: bool = True,
    ) -> dict[str, Any]:
        """Append an event to storage and publish it to connected clients.

        Output chunks are broadcast with ``persist=False`` so the event log
        only carries lifecycle transitions.

        Args:
            channel (str): Websocket channel the event belongs to.
            event_type (str): Dotted event name such as ``task.updated``.
            entity_id (str): Identifier of the task or project the event describes.
            payload (dict[str, Any]): JSON-serializable event body.
            persist (bool): Whether to append the event to the JSONL log.

        Returns:
            dict[str, Any]: The published event envelope.
        """
        if persist:
            event = self._repo.append(
                channel=channel,
                event_type=event_type,
                entity_id=entity_id,
                payload=payload,
                project_id=self._project_id,
            )
        else:
            event = {
                "ts": now_iso(),
                "channel": channel,
                "type": event_type,
                "entity_id": entity_id,
                "payload": payload,
                "project_id": self._project_id,
            }
        hub.publish_sync(event)
        return event
