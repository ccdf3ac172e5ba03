"""Adapters package - bridge between the orchestrator and its frontends.

Event types, the queue-backed event bus, and the console sink used by
the ``clirelay run`` command.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "RelayEvent",
    "event_to_dict",
    "dict_to_event",
]

from clirelay.adapters.event_bus import EventBus
from clirelay.adapters.events import RelayEvent, dict_to_event, event_to_dict
