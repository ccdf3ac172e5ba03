"""Session store — durable conversation state keyed by session id.

The orchestrator only talks to the narrow ``SessionStore`` protocol.
Two implementations ship here: ``InMemorySessionStore`` for embedding
and tests, and ``JsonSessionStore`` which keeps one JSON file per
session under ``~/.clirelay/sessions/``.

Storage layout:
    {base_dir}/{session_id}.json
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from clirelay.shared.models.message import MessageRole
from clirelay.shared.models.session import Session

logger = logging.getLogger(__name__)

# Turns included when rebuilding context for providers without native resume.
CONTEXT_TURN_LIMIT = 20

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]")


def _write_json(path: Path, payload: dict) -> None:
    """Replace *path* via a synced sibling temp file so readers never see half a session."""
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


class SessionStore(Protocol):
    """What the orchestrator needs from a session store."""

    def has_session(self, session_id: str) -> bool: ...

    def create_session(self, session_id: str, cwd: str, provider: str) -> Session: ...

    def add_message(self, session_id: str, role: str, text: str) -> None: ...

    def build_conversation_context(self, session_id: str) -> str | None: ...

    def get_external_session_id(self, session_id: str) -> str | None: ...

    def set_external_session_id(self, session_id: str, external_id: str) -> None: ...


def format_conversation_context(session: Session, limit: int = CONTEXT_TURN_LIMIT) -> str | None:
    """Render the most recent turns as a preamble for the next prompt.

    The result ends with the lead-in for the new request, so callers
    simply append the prompt text.
    """
    recent = session.messages[-limit:] if limit > 0 else []
    if not recent:
        return None
    lines = ["Previous conversation:"]
    for message in recent:
        speaker = "User" if message.role is MessageRole.USER else "Assistant"
        lines.append(f"{speaker}: {message.content}")
    return "\n".join(lines) + "\n\nCurrent request: "


class InMemorySessionStore:
    """Dict-backed store. Nothing survives the process."""

    def __init__(self, context_turn_limit: int = CONTEXT_TURN_LIMIT) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.RLock()
        self._context_turn_limit = context_turn_limit

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            return self._load(session_id) is not None

    def create_session(self, session_id: str, cwd: str, provider: str) -> Session:
        with self._lock:
            existing = self._load(session_id)
            if existing is not None:
                return existing
            session = Session(session_id=session_id, provider=provider, cwd=cwd)
            self._sessions[session_id] = session
        logger.info("Session created: %s (provider=%s cwd=%s)", session_id, provider, cwd)
        self._persist(session)
        return session

    def add_message(self, session_id: str, role: str, text: str) -> None:
        with self._lock:
            session = self._load(session_id)
            if session is None:
                logger.warning("add_message: unknown session %s; dropping %s turn", session_id, role)
                return
            session.add_message(MessageRole(role), text)
        self._persist(session)

    def build_conversation_context(self, session_id: str) -> str | None:
        with self._lock:
            session = self._load(session_id)
            if session is None:
                return None
            return format_conversation_context(session, self._context_turn_limit)

    def get_external_session_id(self, session_id: str) -> str | None:
        with self._lock:
            session = self._load(session_id)
            return session.external_session_id if session else None

    def set_external_session_id(self, session_id: str, external_id: str) -> None:
        with self._lock:
            session = self._load(session_id)
            if session is None:
                logger.warning("set_external_session_id: unknown session %s", session_id)
                return
            if session.external_session_id == external_id:
                return
            if session.external_session_id:
                logger.info(
                    "Rebinding external id for %s: %s -> %s",
                    session_id, session.external_session_id, external_id,
                )
            session.external_session_id = external_id
        self._persist(session)

    def _load(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def _persist(self, session: Session) -> None:
        """Hook for durable subclasses."""


class JsonSessionStore(InMemorySessionStore):
    """One JSON file per session, written atomically on every change."""

    def __init__(self, base_dir: str | Path, context_turn_limit: int = CONTEXT_TURN_LIMIT) -> None:
        super().__init__(context_turn_limit)
        self._dir = Path(base_dir).expanduser()
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, session_id: str) -> Path:
        return self._dir / f"{_UNSAFE_FILENAME_RE.sub('_', session_id)}.json"

    def _load(self, session_id: str) -> Session | None:
        cached = self._sessions.get(session_id)
        if cached is not None:
            return cached
        path = self.path_for(session_id)
        if not path.exists():
            return None
        try:
            session = Session.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, KeyError, ValueError) as exc:
            logger.warning("Failed to load session %s from %s: %s", session_id, path, exc)
            return None
        self._sessions[session_id] = session
        return session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._load(session_id)

    def _persist(self, session: Session) -> None:
        path = self.path_for(session.session_id)
        try:
            _write_json(path, session.to_dict())
        except OSError as exc:
            logger.error("Failed to save session %s to %s: %s", session.session_id, path, exc)
