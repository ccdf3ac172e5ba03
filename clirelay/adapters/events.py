"""Event types delivered to an event sink during a turn.

The orchestrator builds these dataclasses; transports serialize them
with event_to_dict() and consumers parse them back with dict_to_event().
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass
class RelayEvent:
    """Base event for one turn."""
    event_type: str = ""
    turn_id: str | None = None


@dataclass
class SessionCreated(RelayEvent):
    event_type: str = "session-created"
    session_id: str = ""


@dataclass
class ResponseIncrement(RelayEvent):
    event_type: str = "response"
    content: str = ""
    is_final: bool = False


@dataclass
class TurnError(RelayEvent):
    event_type: str = "error"
    message: str = ""


@dataclass
class TurnComplete(RelayEvent):
    event_type: str = "complete"
    exit_code: int | None = None
    is_new_session: bool = False
    session_id: str | None = None


class EventSink(Protocol):
    """Anything that accepts events in the order they are produced.

    Called synchronously from stream readers and buffer timers, so an
    implementation must not block.
    """

    def __call__(self, event: RelayEvent) -> None: ...


_EVENT_MAP: dict[str, type[RelayEvent]] = {
    "session-created": SessionCreated,
    "response": ResponseIncrement,
    "error": TurnError,
    "complete": TurnComplete,
}


def event_to_dict(event: RelayEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # Wire format uses "event" for the discriminator
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> RelayEvent:
    """Convert a wire dict back into its typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, RelayEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
