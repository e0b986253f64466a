"""Lifecycle events: JSONL persistence via :class:`EventBus` and live websocket fan-out."""

from .bus import EventBus
from .ws import CHANNELS, hub

__all__ = ["CHANNELS", "EventBus", "hub"]
