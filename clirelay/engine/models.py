"""Core data models for the turn orchestrator.

Dataclasses and enums shared by the normalizer, buffer, registry and
orchestrator. Kept in one module to avoid circular imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ProtocolKind(str, Enum):
    """How a provider's stdout is structured."""
    JSON_LINES = "json-lines"
    PLAIN_FILTERED = "plain-filtered"
    PLAIN_SPINNER = "plain-spinner"


class EventKind(str, Enum):
    """Discriminator for NormalizedEvent."""
    CORRELATION = "correlation"
    CHUNK = "chunk"
    ERROR = "error"
    IGNORED = "ignored"


@dataclass(frozen=True)
class NormalizedEvent:
    """Provider-agnostic event produced from raw process output."""
    kind: EventKind
    text: str = ""
    correlation_id: str | None = None
    message: str | None = None

    @classmethod
    def chunk(cls, text: str) -> NormalizedEvent:
        return cls(kind=EventKind.CHUNK, text=text)

    @classmethod
    def correlation(cls, correlation_id: str) -> NormalizedEvent:
        return cls(kind=EventKind.CORRELATION, correlation_id=correlation_id)

    @classmethod
    def error(cls, message: str) -> NormalizedEvent:
        return cls(kind=EventKind.ERROR, message=message)

    @classmethod
    def ignored(cls) -> NormalizedEvent:
        return cls(kind=EventKind.IGNORED)


@dataclass(frozen=True)
class BufferedIncrement:
    """A coalesced span of response text ready for the sink."""
    text: str
    is_final: bool = False


@dataclass
class ToolSettings:
    """Tool permissions passed from the client.

    skip_permissions broadens tool access (e.g. --yolo / --full-auto);
    otherwise allowed_tools is merged with each provider's critical tools.
    """
    allowed_tools: list[str] = field(default_factory=list)
    skip_permissions: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ToolSettings:
        if not data:
            return cls()
        return cls(
            allowed_tools=list(data.get("allowed_tools") or data.get("allowedTools") or []),
            skip_permissions=bool(
                data.get("skip_permissions", data.get("skipPermissions", False))
            ),
        )


@dataclass
class TurnSettings:
    """Per-turn knobs supplied by the caller."""
    cwd: str | None = None
    model: str | None = None
    tools: ToolSettings = field(default_factory=ToolSettings)
    debug: bool = False


@dataclass
class Attachment:
    """An inbound image as a ``data:<mime>;base64,<payload>`` URL."""
    data: str
    name: str | None = None


@dataclass
class TurnResult:
    """Outcome of a successful turn."""
    session_id: str | None
    exit_code: int
    response_text: str
    is_new_session: bool
    external_session_id: str | None = None
