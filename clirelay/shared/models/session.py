"""Session state — one conversation with one agent CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from clirelay.shared.models.message import Message, MessageRole


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    """Ordered turns plus the agent-native thread id, if any."""

    session_id: str
    provider: str
    cwd: str
    # Thread/session id the agent CLI itself assigned (e.g. codex thread_id).
    external_session_id: str | None = None
    messages: list[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def add_message(self, role: MessageRole, content: str) -> Message:
        message = Message(role=role, content=content)
        self.messages.append(message)
        self.updated_at = message.timestamp
        return message

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "provider": self.provider,
            "cwd": self.cwd,
            "external_session_id": self.external_session_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        session = cls(
            session_id=data["session_id"],
            provider=data.get("provider", ""),
            cwd=data.get("cwd", ""),
            external_session_id=data.get("external_session_id"),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
        )
        for attr in ("created_at", "updated_at"):
            raw = data.get(attr)
            if raw:
                try:
                    setattr(session, attr, datetime.fromisoformat(raw))
                except ValueError:
                    pass
        return session
