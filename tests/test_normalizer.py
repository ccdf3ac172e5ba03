"""Tests for the per-protocol output normalizers."""
from __future__ import annotations

import json

from clirelay.engine.models import EventKind, NormalizedEvent
from clirelay.engine.normalizer import (
    GEMINI_NOISE_MARKERS,
    FilteredTextNormalizer,
    JsonLinesNormalizer,
    SpinnerTextNormalizer,
    sanitize_cli_output,
    strip_spinner,
)


def _line(payload: dict) -> bytes:
    return (json.dumps(payload) + "\n").encode("utf-8")


def _agent_message(text: str) -> dict:
    return {"type": "item.completed", "item": {"id": "item_1", "type": "agent_message", "text": text}}


def test_json_lines_thread_then_two_messages():
    normalizer = JsonLinesNormalizer()
    data = (
        _line({"type": "thread.started", "thread_id": "th_123"})
        + _line({"type": "turn.started"})
        + _line(_agent_message("first"))
        + _line(_agent_message("second"))
    )

    events = [e for e in normalizer.feed(data) if e.kind is not EventKind.IGNORED]

    assert events == [
        NormalizedEvent.correlation("th_123"),
        NormalizedEvent.chunk("first"),
        NormalizedEvent.chunk("second"),
    ]


def test_json_lines_partial_line_is_held_until_completed():
    normalizer = JsonLinesNormalizer()
    raw = _line(_agent_message("split across reads"))

    assert normalizer.feed(raw[:17]) == []
    assert normalizer.feed(raw[17:40]) == []
    assert normalizer.feed(raw[40:]) == [NormalizedEvent.chunk("split across reads")]


def test_json_lines_multibyte_character_split_across_reads():
    normalizer = JsonLinesNormalizer()
    raw = (json.dumps(_agent_message("héllo ✓"), ensure_ascii=False) + "\n").encode("utf-8")
    cut = raw.index("✓".encode("utf-8")) + 1

    first = normalizer.feed(raw[:cut])
    second = normalizer.feed(raw[cut:])

    assert first == []
    assert second == [NormalizedEvent.chunk("héllo ✓")]


def test_json_lines_unparseable_lines_are_discarded():
    normalizer = JsonLinesNormalizer()
    data = b"not json at all\n[1, 2, 3]\n" + _line(_agent_message("still works"))

    events = normalizer.feed(data)

    assert events == [NormalizedEvent.chunk("still works")]


def test_json_lines_error_events():
    normalizer = JsonLinesNormalizer()
    data = (
        _line({"type": "turn.failed", "error": {"message": "rate limited"}})
        + _line({"type": "error", "message": "stream closed"})
        + _line({"type": "error"})
    )

    events = normalizer.feed(data)

    assert [e.message for e in events] == ["rate limited", "stream closed", "Codex CLI error"]
    assert all(e.kind is EventKind.ERROR for e in events)


def test_json_lines_ignores_other_items_and_empty_messages():
    normalizer = JsonLinesNormalizer()
    data = (
        _line({"type": "item.completed", "item": {"type": "reasoning", "text": "thinking"}})
        + _line(_agent_message(""))
        + _line({"type": "thread.started"})
    )

    events = normalizer.feed(data)

    assert all(e.kind is EventKind.IGNORED for e in events)


def test_json_lines_finish_parses_trailing_line_without_newline():
    normalizer = JsonLinesNormalizer()
    raw = json.dumps(_agent_message("last words")).encode("utf-8")

    assert normalizer.feed(raw) == []
    assert normalizer.finish() == [NormalizedEvent.chunk("last words")]
    assert normalizer.finish() == []


def test_filtered_text_drops_noise_lines_and_trims():
    normalizer = FilteredTextNormalizer(GEMINI_NOISE_MARKERS)
    data = (
        b"[DEBUG] loading settings\n"
        b"Loaded cached credentials.\n"
        b"  Here is the answer.\n"
        b"[MemoryDiscovery] scanning\n"
        b"Second line\n\n"
    )

    assert normalizer.feed(data) == [NormalizedEvent.chunk("Here is the answer.\nSecond line")]


def test_filtered_text_one_chunk_per_read_and_noise_only_read_is_empty():
    normalizer = FilteredTextNormalizer(GEMINI_NOISE_MARKERS)

    assert normalizer.feed(b"Flushing log events to Clearcut\n") == []
    assert normalizer.feed(b"alpha\nbeta\n") == [NormalizedEvent.chunk("alpha\nbeta")]
    assert normalizer.feed(b"gamma") == [NormalizedEvent.chunk("gamma")]


def test_filtered_text_without_markers_only_trims():
    normalizer = FilteredTextNormalizer()

    assert normalizer.feed(b"  [DEBUG] kept verbatim  \n") == [NormalizedEvent.chunk("[DEBUG] kept verbatim")]


def test_sanitize_and_spinner_helpers():
    raw = "\x1b[?25l\x1b[32m⠋ loading\x1b[0m\x07\nanswer\x1b]0;title\x07"

    assert sanitize_cli_output(raw) == "⠋ loading\nanswer"
    assert strip_spinner("⠙⠹ ok") == " ok"
    assert sanitize_cli_output("") == ""


def test_spinner_normalizer_strips_decorations_and_skips_blank_reads():
    normalizer = SpinnerTextNormalizer()

    assert normalizer.feed(b"\x1b[?25l\xe2\xa0\x8b \x1b[K") == []
    events = normalizer.feed("The sky is blue\x1b[0m because\n".encode("utf-8"))

    assert events == [NormalizedEvent.chunk("The sky is blue because\n")]
    assert normalizer.chunk_separator == ""
