"""Handler-level tests for the HTTP + SSE server."""
from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import dataclass, field
from unittest.mock import MagicMock

import pytest

from clirelay.engine.config import RelayConfig
from clirelay.engine.orchestrator import Orchestrator
from clirelay.engine.process_registry import ProcessHandle
from clirelay.engine.providers.claude_provider import ClaudeProvider
from clirelay.engine.providers.registry import ProviderRegistry
from clirelay.server.http import RelayServer
from clirelay.shared.services.session_store import InMemorySessionStore


@dataclass
class _Request:
    match_info: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    body: object | None = None

    @property
    def can_read_body(self) -> bool:
        return self.body is not None

    async def json(self):
        return self.body if self.body is not None else {}

    def get(self, key, default=None):
        return default


def _json_payload(resp) -> dict:
    return json.loads(resp.text)


def _build_server(tmp_path) -> RelayServer:
    stub = tmp_path / "claude-stub"
    stub.write_text(f"#!{sys.executable}\nprint('pong', flush=True)\n", encoding="utf-8")
    stub.chmod(0o755)
    providers = ProviderRegistry()
    providers.register(ClaudeProvider(command=str(stub)))
    config = RelayConfig(default_provider="claude", sessions_dir=str(tmp_path / "sessions"))
    orchestrator = Orchestrator(providers, InMemorySessionStore(), config=config)
    return RelayServer(cwd=str(tmp_path), config=config, orchestrator=orchestrator)


@pytest.mark.asyncio
async def test_health_and_providers(tmp_path) -> None:
    server = _build_server(tmp_path)

    health = _json_payload(await server._handle_health(_Request()))
    providers = _json_payload(await server._handle_providers(_Request()))

    assert health["status"] == "ok"
    assert health["default_provider"] == "claude"
    assert health["active_turns"] == 0
    assert providers["default_provider"] == "claude"
    assert [p["provider"] for p in providers["providers"]] == ["claude"]


@pytest.mark.asyncio
async def test_start_turn_runs_and_broadcasts_events(tmp_path) -> None:
    server = _build_server(tmp_path)
    queue: asyncio.Queue = asyncio.Queue()
    server._sse_queues.append(queue)

    resp = await server._handle_start_turn(_Request(body={"prompt": "ping", "cwd": str(tmp_path)}))
    payload = _json_payload(resp)

    assert resp.status == 202
    assert payload["provider"] == "claude"
    turn_id = payload["turn_id"]
    await asyncio.wait_for(server._turns[turn_id], timeout=10)

    messages = []
    while not queue.empty():
        messages.append(queue.get_nowait())
    kinds = [m["event"] for m in messages]
    assert kinds[0] == "session-created"
    assert kinds[-1] == "complete"
    assert "response" in kinds
    assert all(m["data"]["turn_id"] == turn_id for m in messages)
    assert messages[-1]["data"]["exit_code"] == 0
    assert turn_id not in server._turns
    assert turn_id not in server._turn_meta


@pytest.mark.asyncio
async def test_start_turn_rejects_bad_requests(tmp_path) -> None:
    server = _build_server(tmp_path)

    missing = await server._handle_start_turn(_Request(body={"prompt": "  "}))
    not_object = await server._handle_start_turn(_Request(body=["prompt"]))
    unknown = await server._handle_start_turn(_Request(body={"prompt": "hi", "provider": "nope"}))

    assert missing.status == 400
    assert not_object.status == 400
    assert unknown.status == 400
    assert "Unknown provider 'nope'" in _json_payload(unknown)["error"]
    assert server._turns == {}


@pytest.mark.asyncio
async def test_start_turn_for_busy_session_is_conflict(tmp_path) -> None:
    server = _build_server(tmp_path)
    server._orchestrator.registry.register(
        ProcessHandle(key="claude_1", process=MagicMock(returncode=None, pid=99)),
    )

    resp = await server._handle_start_turn(_Request(body={"prompt": "hi", "session_id": "claude_1"}))
    active = _json_payload(await server._handle_active_turns(_Request()))

    assert resp.status == 409
    assert [p["key"] for p in active["processes"]] == ["claude_1"]


@pytest.mark.asyncio
async def test_abort_endpoint_reports_whether_found(tmp_path) -> None:
    server = _build_server(tmp_path)
    proc = MagicMock(returncode=None, pid=99)
    server._orchestrator.registry.register(ProcessHandle(key="claude_1700000000000", process=proc))

    found = _json_payload(await server._handle_abort(_Request(match_info={"id": "1700000000000"})))
    missing = _json_payload(await server._handle_abort(_Request(match_info={"id": "claude_2"})))

    assert found == {"ok": True, "aborted": True, "session_id": "1700000000000"}
    assert missing["aborted"] is False
    proc.send_signal.assert_called_once()


@pytest.mark.asyncio
async def test_turn_rejected_inside_task_still_closes_for_sse_clients(tmp_path) -> None:
    server = _build_server(tmp_path)
    queue: asyncio.Queue = asyncio.Queue()
    server._sse_queues.append(queue)
    server._orchestrator.registry.register(
        ProcessHandle(key="claude_1", process=MagicMock(returncode=None, pid=99)),
    )

    await server._run_turn("t9", "hi", "claude", session_id="claude_1")

    messages = [queue.get_nowait() for _ in range(queue.qsize())]
    assert [m["event"] for m in messages] == ["error", "complete"]
    assert all(m["data"]["turn_id"] == "t9" for m in messages)
    assert messages[1]["data"]["session_id"] == "claude_1"
    assert "t9" not in server._completed
