"""Adapters package - typed progress events for chat frontends."""
from __future__ import annotations

__all__ = [
    "ProgressChannel",
    "ProgressEvent",
]

from chatrelay.adapters.event_bus import ProgressChannel
from chatrelay.adapters.events import ProgressEvent
