"""Tests for event serialization, the event bus and the console sink."""
from __future__ import annotations

import asyncio
import io

import pytest
from rich.console import Console

from clirelay.adapters.console_sink import ConsoleSink, render_provider_table
from clirelay.adapters.event_bus import EventBus
from clirelay.adapters.events import (
    ResponseIncrement,
    SessionCreated,
    TurnComplete,
    TurnError,
    dict_to_event,
    event_to_dict,
)


def _console() -> tuple[Console, io.StringIO]:
    buf = io.StringIO()
    return Console(file=buf, force_terminal=False, width=120), buf


def test_event_to_dict_uses_event_key_and_skips_none():
    event = TurnComplete(exit_code=0, is_new_session=True, session_id="codex_1", turn_id="t1")

    data = event_to_dict(event)

    assert data == {
        "event": "complete",
        "turn_id": "t1",
        "exit_code": 0,
        "is_new_session": True,
        "session_id": "codex_1",
    }
    assert dict_to_event(data) == event


def test_dict_to_event_ignores_unknown_fields():
    event = dict_to_event({"event": "error", "message": "boom", "extra": 1})

    assert isinstance(event, TurnError)
    assert event.message == "boom"


@pytest.mark.asyncio
async def test_event_bus_delivers_in_order_and_stops_when_closed():
    bus = EventBus()
    sink = bus.make_callback()
    sink(SessionCreated(session_id="s1"))
    bus(ResponseIncrement(content="hello"))
    bus.publish(TurnComplete(exit_code=0))
    bus.close()

    received = [e async for e in bus.consume()]

    assert [e.event_type for e in received] == ["session-created", "response", "complete"]
    bus.publish(TurnError(message="late"))
    assert bus.qsize() == 0


@pytest.mark.asyncio
async def test_event_bus_drops_when_full_and_reset_reopens():
    bus = EventBus(maxsize=1)
    bus.publish(ResponseIncrement(content="a"))
    bus.publish(ResponseIncrement(content="b"))
    assert bus.qsize() == 1

    bus.close()
    bus.reset()

    assert bus.closed is False
    assert bus.qsize() == 0


@pytest.mark.asyncio
async def test_event_bus_consumer_sees_events_published_later():
    bus = EventBus()

    async def produce():
        await asyncio.sleep(0.05)
        bus.publish(ResponseIncrement(content="x"))
        bus.close()

    producer = asyncio.create_task(produce())
    received = [e async for e in bus.consume()]
    await producer

    assert [e.content for e in received] == ["x"]


def test_console_sink_streams_text_and_tracks_outcome():
    out, out_buf = _console()
    err, err_buf = _console()
    sink = ConsoleSink(out, err)

    sink(SessionCreated(session_id="gemini_1"))
    sink(ResponseIncrement(content="Hello "))
    sink(ResponseIncrement(content="world", is_final=True))
    sink(TurnError(message="warning: slow\n"))
    sink(TurnComplete(exit_code=0, session_id="gemini_1"))

    assert out_buf.getvalue() == "Hello world\n"
    assert "session gemini_1" in err_buf.getvalue()
    assert "warning: slow" in err_buf.getvalue()
    assert sink.session_id == "gemini_1"
    assert sink.exit_code == 0
    assert sink.errors == ["warning: slow\n"]


def test_console_sink_markdown_renders_on_complete():
    out, out_buf = _console()
    err, _ = _console()
    sink = ConsoleSink(out, err, markdown=True)

    sink(ResponseIncrement(content="# Title\n"))
    assert out_buf.getvalue() == ""
    sink(TurnComplete(exit_code=0))

    assert "Title" in out_buf.getvalue()


def test_provider_table_lists_catalog():
    table = render_provider_table([{
        "provider": "codex",
        "display_name": "Codex",
        "command": "codex",
        "available": False,
        "protocol": "json-lines",
        "timeout_seconds": 120.0,
        "default_model": "o3",
        "models": [{"value": "o3"}, {"value": "o4-mini"}],
    }])
    out, buf = _console()
    out.print(table)

    rendered = buf.getvalue()
    assert "Codex (codex)" in rendered
    assert "o3, o4-mini" in rendered
    assert "120s" in rendered
