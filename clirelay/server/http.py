"""HTTP + SSE server for the turn orchestrator.

Clients start turns with ``POST /turns`` and follow them on
``GET /events``; every sink event of every turn is fanned out to all SSE
subscribers, tagged with its ``turn_id``.

Usage:
    clirelay serve [--port PORT]
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import time
import uuid
from typing import Any

from aiohttp import web

from clirelay.adapters.events import RelayEvent, TurnComplete, TurnError, event_to_dict
from clirelay.engine.config import RelayConfig
from clirelay.engine.errors import OrchestratorError, SessionBusyError, UnknownProviderError
from clirelay.engine.models import Attachment, ToolSettings, TurnSettings
from clirelay.engine.orchestrator import Orchestrator
from clirelay.engine.providers.registry import build_provider_registry
from clirelay.shared.services.session_store import JsonSessionStore

logger = logging.getLogger(__name__)


class RelayServer:
    """Thin HTTP adapter: turn state lives in Orchestrator and the store."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        cwd: str | None = None,
        config: RelayConfig | None = None,
        orchestrator: Orchestrator | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._cwd = cwd or os.getcwd()
        self._config = config or RelayConfig.from_env()
        if orchestrator is None:
            orchestrator = Orchestrator(
                build_provider_registry(self._config),
                JsonSessionStore(self._config.sessions_dir),
                config=self._config,
            )
        self._orchestrator = orchestrator
        self._turns: dict[str, asyncio.Task] = {}
        self._turn_meta: dict[str, dict[str, Any]] = {}
        # Turns whose complete event has gone out.
        self._completed: set[str] = set()
        self._sse_queues: list[asyncio.Queue[dict[str, Any]]] = []
        self._started_at = time.time()
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()
        logger.info(
            "RelayServer init host=%s port=%s cwd=%s provider=%s pid=%s",
            self._host, self._port, self._cwd, self._config.default_provider, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-relay-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/providers", self._handle_providers)
        r.add_get("/events", self._handle_sse)
        r.add_post("/turns", self._handle_start_turn)
        r.add_get("/turns/active", self._handle_active_turns)
        r.add_post("/sessions/{id}/abort", self._handle_abort)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Start the server and print the port to stdout."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            raise RuntimeError("Relay server started but no listening socket was reported.")
        self._port = actual_port

        sys.stdout.write(json.dumps({"port": actual_port}) + "\n")
        sys.stdout.flush()
        logger.info("Relay server listening on %s:%d", self._host, actual_port)
        self._orchestrator.providers.validate()

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self.shutdown()
            await runner.cleanup()

    async def shutdown(self) -> None:
        """Abort every live turn and wait for its exit handling to finish."""
        for key in self._orchestrator.registry.keys():
            self._orchestrator.abort(key)
        pending = [t for t in self._turns.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── SSE fan-out ──

    def _broadcast_sse(self, event_type: str, data: dict[str, Any]) -> None:
        msg = {"event": event_type, "data": data}
        for queue in self._sse_queues:
            try:
                queue.put_nowait(msg)
            except asyncio.QueueFull:
                logger.warning("SSE queue full, dropping event")

    def _sink(self, event: RelayEvent) -> None:
        if isinstance(event, TurnComplete) and event.turn_id:
            self._completed.add(event.turn_id)
        self._broadcast_sse(event.event_type, event_to_dict(event))

    # ── Turn tasks ──

    async def _run_turn(self, turn_id: str, prompt: str, provider: str, **kwargs: Any) -> None:
        try:
            result = await self._orchestrator.run_turn(
                prompt, provider, sink=self._sink, turn_id=turn_id, **kwargs,
            )
            logger.info(
                "Turn %s completed session=%s chars=%d",
                turn_id, result.session_id, len(result.response_text),
            )
        except OrchestratorError as exc:
            logger.info("Turn %s failed: %s", turn_id, exc)
            if turn_id not in self._completed:
                # Rejected before spawn: close the turn for SSE clients.
                self._sink(TurnError(message=str(exc), turn_id=turn_id))
                self._sink(TurnComplete(turn_id=turn_id, session_id=kwargs.get("session_id")))
        except Exception:
            logger.exception("Turn %s crashed", turn_id)
        finally:
            self._turns.pop(turn_id, None)
            self._turn_meta.pop(turn_id, None)
            self._completed.discard(turn_id)

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "cwd": self._cwd,
            "default_provider": self._config.default_provider,
            "active_turns": len(self._turns),
            "sse_clients": len(self._sse_queues),
        })

    async def _handle_providers(self, request: web.Request) -> web.Response:
        return web.json_response({
            "default_provider": self._config.default_provider,
            "providers": self._orchestrator.providers.describe(),
        })

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)

        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=5000)
        self._sse_queues.append(queue)
        logger.info("SSE client connected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))

        try:
            await response.write(
                f"event: connected\ndata: {json.dumps({'turns': list(self._turns.keys())})}\n\n".encode()
            )
            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=30.0)
                    data = json.dumps(msg["data"])
                    await response.write(f"event: {msg['event']}\ndata: {data}\n\n".encode())
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._sse_queues.remove(queue)
            logger.info("SSE client disconnected req=%s active_clients=%d", request.get("req_id", "unknown"), len(self._sse_queues))
        return response

    async def _handle_start_turn(self, request: web.Request) -> web.Response:
        try:
            body = await request.json() if request.can_read_body else {}
        except json.JSONDecodeError:
            return web.json_response({"error": "Invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Body must be a JSON object"}, status=400)

        prompt = str(body.get("prompt") or "")
        if not prompt.strip():
            return web.json_response({"error": "prompt is required"}, status=400)
        provider = str(body.get("provider") or self._config.default_provider).lower()
        if provider not in self._orchestrator.providers:
            error = UnknownProviderError(provider, self._orchestrator.providers.list_names())
            return web.json_response({"error": str(error)}, status=400)
        session_id = body.get("session_id") or None
        if session_id and self._orchestrator.is_active(session_id):
            return web.json_response({"error": str(SessionBusyError(session_id))}, status=409)

        settings = TurnSettings(
            cwd=body.get("cwd") or self._cwd,
            model=body.get("model") or None,
            tools=ToolSettings.from_dict(body.get("tools_settings") or body.get("tools")),
            debug=bool(body.get("debug", False)),
        )
        attachments = [
            Attachment(data=str(item.get("data") or ""), name=item.get("name"))
            for item in body.get("images") or []
            if isinstance(item, dict)
        ]

        turn_id = uuid.uuid4().hex[:12]
        self._turn_meta[turn_id] = {
            "turn_id": turn_id,
            "provider": provider,
            "session_id": session_id,
            "status": "running",
            "started_at": time.time(),
        }
        self._turns[turn_id] = asyncio.create_task(self._run_turn(
            turn_id, prompt, provider,
            session_id=session_id,
            settings=settings,
            attachments=attachments,
        ))
        logger.info("Turn %s accepted provider=%s session=%s", turn_id, provider, session_id or "<new>")
        return web.json_response({"turn_id": turn_id, "provider": provider}, status=202)

    async def _handle_active_turns(self, request: web.Request) -> web.Response:
        return web.json_response({
            "turns": [self._turn_meta[t] for t in self._turns if t in self._turn_meta],
            "processes": self._orchestrator.registry.snapshot(),
        })

    async def _handle_abort(self, request: web.Request) -> web.Response:
        session_id = request.match_info["id"]
        found = self._orchestrator.abort(session_id)
        return web.json_response({"ok": True, "aborted": found, "session_id": session_id})
