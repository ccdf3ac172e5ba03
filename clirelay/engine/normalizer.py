"""Output normalizers: raw process bytes -> NormalizedEvent lists.

One class per protocol kind. Normalizers never block and only drop
text that matches an explicit noise pattern.
"""
from __future__ import annotations

import abc
import codecs
import json
import logging
import re

from .errors import ProtocolParseError
from .models import NormalizedEvent

logger = logging.getLogger(__name__)

_ANSI_CSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_ANSI_OSC_RE = re.compile(r"\x1b\][^\x07]*(?:\x07|\x1b\\)")
_ANSI_CHARSET_RE = re.compile(r"\x1b[()][A-Za-z0-9]")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_SPINNER_RE = re.compile(r"[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]")

GEMINI_NOISE_MARKERS = (
    "[DEBUG]",
    "Flushing log events",
    "Clearcut response",
    "[MemoryDiscovery]",
    "[BfsFileSearch]",
    "Loaded cached credentials",
)


def sanitize_cli_output(text: str) -> str:
    """Strip ANSI escape sequences and control chars, keeping newlines."""
    if not text:
        return ""
    text = _ANSI_CSI_RE.sub("", text)
    text = _ANSI_OSC_RE.sub("", text)
    text = _ANSI_CHARSET_RE.sub("", text)
    return _CONTROL_RE.sub("", text)


def strip_spinner(text: str) -> str:
    """Remove braille spinner glyphs."""
    if not text:
        return ""
    return _SPINNER_RE.sub("", text)


class OutputNormalizer(abc.ABC):
    """Converts a provider's stdout into NormalizedEvents.

    feed() is called once per read from the pipe; finish() once at
    process exit to release anything still held back.
    """

    # Separator used when appending chunks to the persisted response.
    chunk_separator: str = "\n"

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def _decode(self, data: bytes, final: bool = False) -> str:
        return self._decoder.decode(data, final)

    def feed(self, data: bytes) -> list[NormalizedEvent]:
        return self._parse_text(self._decode(data))

    def finish(self) -> list[NormalizedEvent]:
        tail = self._decode(b"", final=True)
        events = self._parse_text(tail) if tail else []
        return events + self._drain()

    @abc.abstractmethod
    def _parse_text(self, text: str) -> list[NormalizedEvent]:
        """Turn decoded text into events."""

    def _drain(self) -> list[NormalizedEvent]:
        return []


class JsonLinesNormalizer(OutputNormalizer):
    """Newline-delimited JSON events (codex exec --json)."""

    def __init__(self) -> None:
        super().__init__()
        self._line_buffer = ""

    def _parse_text(self, text: str) -> list[NormalizedEvent]:
        self._line_buffer += text
        lines = self._line_buffer.split("\n")
        self._line_buffer = lines.pop()
        events: list[NormalizedEvent] = []
        for line in lines:
            event = self._parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def _drain(self) -> list[NormalizedEvent]:
        tail, self._line_buffer = self._line_buffer, ""
        event = self._parse_line(tail)
        return [event] if event is not None else []

    def _parse_line(self, line: str) -> NormalizedEvent | None:
        trimmed = line.strip()
        if not trimmed:
            return None
        try:
            payload = self._decode_line(trimmed)
        except ProtocolParseError as exc:
            logger.debug("Discarding event line: %s", exc)
            return None
        return self.interpret(payload)

    @staticmethod
    def _decode_line(line: str) -> dict:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ProtocolParseError(line, exc.msg) from exc
        if not isinstance(payload, dict):
            raise ProtocolParseError(line, "not a JSON object")
        return payload

    @staticmethod
    def interpret(payload: dict) -> NormalizedEvent | None:
        """Map one decoded event object to a NormalizedEvent."""
        event_type = payload.get("type")

        if event_type == "thread.started":
            thread_id = payload.get("thread_id")
            if thread_id:
                return NormalizedEvent.correlation(str(thread_id))
            return NormalizedEvent.ignored()

        if event_type == "item.completed":
            item = payload.get("item")
            if isinstance(item, dict) and item.get("type") == "agent_message":
                text = item.get("text") or ""
                if text:
                    return NormalizedEvent.chunk(text)
            return NormalizedEvent.ignored()

        if event_type in ("turn.failed", "error"):
            error = payload.get("error")
            message = None
            if isinstance(error, dict):
                message = error.get("message")
            message = message or payload.get("message") or "Codex CLI error"
            return NormalizedEvent.error(str(message))

        return NormalizedEvent.ignored()


class FilteredTextNormalizer(OutputNormalizer):
    """Plain text with known debug/telemetry lines removed.

    Emits at most one chunk per read so pipe write boundaries survive.
    """

    def __init__(self, noise_markers: tuple[str, ...] = ()) -> None:
        super().__init__()
        self._noise_markers = noise_markers

    def _is_noise(self, line: str) -> bool:
        return any(marker in line for marker in self._noise_markers)

    def _parse_text(self, text: str) -> list[NormalizedEvent]:
        if self._noise_markers:
            lines = [line for line in text.split("\n") if not self._is_noise(line)]
            text = "\n".join(lines)
        filtered = text.strip()
        if not filtered:
            return []
        return [NormalizedEvent.chunk(filtered)]


class SpinnerTextNormalizer(OutputNormalizer):
    """Interactive terminal output with ANSI codes and spinner glyphs."""

    chunk_separator = ""

    def _parse_text(self, text: str) -> list[NormalizedEvent]:
        cleaned = strip_spinner(sanitize_cli_output(text))
        if not cleaned.strip():
            return []
        return [NormalizedEvent.chunk(cleaned)]
