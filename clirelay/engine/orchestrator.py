"""Turn orchestrator — one agent CLI process per conversation turn.

run_turn() resolves the provider profile, rebuilds or skips prior
context, stages attachments, spawns the CLI, and pipes its stdout through
the provider's normalizer and a ResponseBuffer into the caller's event
sink. The coroutine finishes only after the process has exited and both
pipes are drained; the exit path always flushes the buffer, persists the
assistant text, removes staged artifacts and emits ``complete``, whether
the turn succeeded, failed, timed out or was aborted.

Every per-turn mutation happens inside a callback on the event loop, so
the turn state below needs no lock. The ProcessRegistry is the only
state shared between turns.
"""
from __future__ import annotations

import asyncio
import codecs
import itertools
import logging
import os
import re
import time
import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

from clirelay.adapters.events import (
    EventSink,
    RelayEvent,
    ResponseIncrement,
    SessionCreated,
    TurnComplete,
    TurnError,
)
from clirelay.shared.services.session_store import SessionStore

from .artifacts import ArtifactStager, StagedArtifacts
from .config import RelayConfig, build_spawn_env
from .errors import (
    OrchestratorError,
    ProcessExitError,
    SessionBusyError,
    SpawnError,
    TurnAbortedError,
    TurnTimeoutError,
)
from .models import (
    Attachment,
    BufferedIncrement,
    EventKind,
    NormalizedEvent,
    TurnResult,
    TurnSettings,
)
from .normalizer import OutputNormalizer
from .process_registry import ProcessHandle, ProcessRegistry
from .providers.base import ProviderProfile
from .providers.registry import ProviderRegistry
from .response_buffer import ResponseBuffer

logger = logging.getLogger(__name__)

_READ_SIZE = 65536
_NON_PRINTABLE_RE = re.compile(r"[^\x20-\x7E]")


def resolve_working_dir(cwd: str | None) -> str:
    """Caller's cwd with non-printable characters removed, or $HOME if unusable."""
    cleaned = _NON_PRINTABLE_RE.sub("", cwd or os.getcwd()).strip()
    if cleaned and os.path.isdir(cleaned) and os.access(cleaned, os.R_OK | os.X_OK):
        return cleaned
    home = os.environ.get("HOME") or str(Path.home())
    logger.warning("Working directory %r is not accessible; using %s", cwd, home)
    return home


def _key_candidates(base: str) -> Iterator[str]:
    """*base*, then *base*-1, *base*-2, ..."""
    yield base
    for suffix in itertools.count(1):
        yield f"{base}-{suffix}"


def _spawn_exit_code(exc: OSError) -> int:
    if isinstance(exc, FileNotFoundError):
        return 127
    if isinstance(exc, PermissionError):
        return 126
    return 1


@dataclass
class _TurnState:
    """Mutable state for one turn."""

    turn_id: str
    profile: ProviderProfile
    sink: EventSink
    prompt: str
    cwd: str
    caller_session_id: str | None
    session_id: str | None
    normalizer: OutputNormalizer
    staged: StagedArtifacts
    buffer: ResponseBuffer | None = None
    handle: ProcessHandle | None = None
    response_parts: list[str] = field(default_factory=list)
    stderr_parts: list[str] = field(default_factory=list)
    external_session_id: str | None = None
    session_created: bool = False
    correlation_captured: bool = False
    timed_out: bool = False
    timer: asyncio.TimerHandle | None = None

    @property
    def response_text(self) -> str:
        return self.normalizer.chunk_separator.join(self.response_parts)

    @property
    def is_new_session(self) -> bool:
        return self.caller_session_id is None and bool(self.prompt)


class Orchestrator:
    """Runs turns against agent CLIs and tracks their processes.

    One instance is shared by every concurrent turn; the provider
    registry, session store and process registry are injected.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        store: SessionStore,
        *,
        registry: ProcessRegistry | None = None,
        config: RelayConfig | None = None,
    ) -> None:
        self._providers = providers
        self._store = store
        self._config = config or RelayConfig()
        self._registry = registry or ProcessRegistry(self._config.abort_grace_seconds)

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    @property
    def providers(self) -> ProviderRegistry:
        return self._providers

    def abort(self, session_id: str) -> bool:
        """Terminate the live process for *session_id*; see ProcessRegistry.abort."""
        return self._registry.abort(session_id)

    def is_active(self, session_id: str) -> bool:
        """Whether a live process holds exactly *session_id*."""
        return self._registry.is_active(session_id)

    # ── Turn entry point ──

    async def run_turn(
        self,
        prompt: str,
        provider: str,
        *,
        sink: EventSink,
        session_id: str | None = None,
        settings: TurnSettings | None = None,
        attachments: list[Attachment] | None = None,
        turn_id: str | None = None,
    ) -> TurnResult:
        """Run one prompt through *provider* and stream events to *sink*.

        Returns a TurnResult when the CLI exits with code 0. Raises
        UnknownProviderError or SessionBusyError before anything is
        spawned (no events reach the sink), SpawnError if the CLI cannot
        be started, and TurnTimeoutError / TurnAbortedError /
        ProcessExitError when it ends badly. Once a spawn was attempted,
        a fatal error also reaches the sink as one ``error`` event
        followed by ``complete``; that includes SessionBusyError when
        another turn registered the same session while this one spawned.
        """
        profile = self._providers.get_or_raise(provider)
        settings = settings or TurnSettings()
        turn_id = turn_id or uuid.uuid4().hex[:12]

        if session_id and self._registry.is_active(session_id):
            raise SessionBusyError(session_id)

        working_dir = resolve_working_dir(settings.cwd)
        external_id, prompt_text = self._prepare_prompt(profile, session_id, prompt)

        staged = self._stage(profile, attachments or [], working_dir)
        image_paths = self._image_paths(profile, staged, working_dir)
        args = profile.build_args(
            profile.compose_prompt(prompt_text, image_paths),
            tools=settings.tools,
            model=settings.model,
            external_session_id=external_id,
            image_paths=image_paths if profile.images_as_flags else None,
            working_dir=working_dir,
            debug=settings.debug or self._config.debug,
        )

        state = _TurnState(
            turn_id=turn_id,
            profile=profile,
            sink=sink,
            prompt=prompt,
            cwd=working_dir,
            caller_session_id=session_id,
            session_id=session_id,
            normalizer=profile.create_normalizer(),
            staged=staged,
            external_session_id=external_id,
        )

        logger.info(
            "Spawning %s turn=%s session=%s cwd=%s args=%d resume=%s images=%d",
            profile.name, turn_id, session_id or "<new>", working_dir,
            len(args), bool(external_id), len(staged.paths),
        )
        try:
            process = await asyncio.create_subprocess_exec(
                profile.command,
                *args,
                cwd=working_dir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=build_spawn_env(debug_paths=self._config.debug_paths),
            )
        except OSError as exc:
            self._fail_spawn(state, exc)

        handle = ProcessHandle(
            key=session_id or self._synthetic_key(),
            process=process,
            artifact_paths=[str(p) for p in staged.paths],
            staging_dir=str(staged.directory) if staged.directory else None,
        )
        try:
            self._registry.register(handle)
        except SessionBusyError as exc:
            # Lost a race with another turn for the same session.
            process.kill()
            exit_code = await process.wait()
            staged.cleanup()
            self._emit(state, TurnError(message=str(exc)))
            self._emit(state, TurnComplete(
                exit_code=exit_code,
                is_new_session=state.is_new_session,
                session_id=state.session_id,
            ))
            raise
        state.handle = handle

        if session_id and prompt:
            self._store.add_message(session_id, "user", prompt)

        if profile.streams_live:
            state.buffer = ResponseBuffer(
                lambda increment: self._emit_increment(state, increment),
                partial_delay=self._config.buffer_partial_delay,
                max_wait_time=self._config.buffer_max_wait,
                min_buffer_size=self._config.buffer_min_size,
            )

        loop = asyncio.get_running_loop()
        state.timer = loop.call_later(profile.timeout_seconds, self._on_timeout, state)

        try:
            await asyncio.gather(
                self._read_stdout(state, process.stdout),
                self._read_stderr(state, process.stderr),
            )
            exit_code = await process.wait()
        except BaseException:
            # Reader failure or caller cancellation: release everything the
            # exit path would have, without reporting a result.
            logger.warning("Turn %s interrupted; terminating pid=%s", turn_id, handle.pid)
            if process.returncode is None:
                self._registry.terminate(handle)
            self._registry.unregister(handle)
            if state.buffer is not None:
                state.buffer.dispose()
            staged.cleanup()
            raise
        finally:
            if state.timer is not None:
                state.timer.cancel()
                state.timer = None

        return self._finish(state, exit_code)

    # ── Preparation ──

    def _prepare_prompt(
        self,
        profile: ProviderProfile,
        session_id: str | None,
        prompt: str,
    ) -> tuple[str | None, str]:
        """Return (external id to resume, prompt text to send)."""
        if not session_id or not prompt:
            return None, prompt
        external_id = (
            self._store.get_external_session_id(session_id)
            if profile.native_resume else None
        )
        if external_id or not profile.uses_local_context:
            return external_id, prompt
        context = self._store.build_conversation_context(session_id)
        if context:
            logger.debug(
                "Prepending %d chars of local context for session %s",
                len(context), session_id,
            )
            return None, context + prompt
        return None, prompt

    @staticmethod
    def _stage(
        profile: ProviderProfile,
        attachments: list[Attachment],
        working_dir: str,
    ) -> StagedArtifacts:
        if not attachments:
            return StagedArtifacts()
        if not profile.supports_images:
            logger.warning(
                "%s does not accept images; ignoring %d attachment(s)",
                profile.label, len(attachments),
            )
            return StagedArtifacts()
        return ArtifactStager(profile.temp_dir_name).stage(attachments, working_dir)

    @staticmethod
    def _image_paths(
        profile: ProviderProfile,
        staged: StagedArtifacts,
        working_dir: str,
    ) -> list[str]:
        if not staged:
            return []
        if profile.images_as_flags:
            return [str(p) for p in staged.paths]
        return staged.relative_to(working_dir)

    def _synthetic_key(self) -> str:
        return next(k for k in _key_candidates(str(int(time.time() * 1000)))
                    if k not in self._registry)

    def _fail_spawn(self, state: _TurnState, exc: OSError) -> NoReturn:
        command = state.profile.command
        exit_code = _spawn_exit_code(exc)
        logger.error("Failed to spawn %s (%s): %s", command, state.profile.name, exc)
        state.staged.cleanup()
        error = SpawnError(command, exc.strerror or str(exc), exit_code)
        self._emit(state, TurnError(message=str(error)))
        self._emit(state, TurnComplete(
            exit_code=exit_code,
            is_new_session=state.is_new_session,
            session_id=state.session_id,
        ))
        raise error from exc

    # ── Stream handling ──

    async def _read_stdout(self, state: _TurnState, stream: asyncio.StreamReader) -> None:
        while True:
            data = await stream.read(_READ_SIZE)
            if not data:
                break
            self._on_stdout(state, data)
        self._handle_events(state, state.normalizer.finish())

    async def _read_stderr(self, state: _TurnState, stream: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(_READ_SIZE)
            if not data:
                break
            self._on_stderr(state, decoder.decode(data))
        tail = decoder.decode(b"", final=True)
        if tail:
            self._on_stderr(state, tail)

    def _on_stdout(self, state: _TurnState, data: bytes) -> None:
        if state.handle is not None and not state.handle.received_output:
            state.handle.received_output = True
            if state.timer is not None:
                state.timer.cancel()
                state.timer = None
        if state.caller_session_id is None and not state.session_created:
            self._create_session(state)
        self._handle_events(state, state.normalizer.feed(data))

    def _on_stderr(self, state: _TurnState, text: str) -> None:
        surfaced = state.profile.filter_stderr(text)
        if surfaced is None:
            logger.debug("Suppressed %s stderr: %s", state.profile.name, text.strip()[:200])
            return
        if state.profile.structured_errors:
            state.stderr_parts.append(surfaced)
            return
        self._emit(state, TurnError(message=surfaced))

    def _handle_events(self, state: _TurnState, events: list[NormalizedEvent]) -> None:
        for event in events:
            if event.kind is EventKind.CHUNK:
                state.response_parts.append(event.text)
                if state.buffer is not None:
                    state.buffer.process_data(event.text)
            elif event.kind is EventKind.CORRELATION:
                self._capture_correlation(state, event.correlation_id)
            elif event.kind is EventKind.ERROR:
                # Keep the agent's error after any text it already produced.
                if state.buffer is not None:
                    state.buffer.flush()
                self._emit(state, TurnError(message=event.message or "Unknown error"))

    def _capture_correlation(self, state: _TurnState, external_id: str | None) -> None:
        """Attach the agent's thread id to the session, once per turn."""
        if not external_id:
            return
        if state.correlation_captured:
            logger.debug("Ignoring extra correlation id %s in turn %s", external_id, state.turn_id)
            return
        state.correlation_captured = True
        if state.external_session_id and state.external_session_id != external_id:
            logger.info(
                "Session %s resumed as new thread %s (was %s)",
                state.session_id, external_id, state.external_session_id,
            )
        state.external_session_id = external_id
        if state.session_id:
            self._store.set_external_session_id(state.session_id, external_id)

    def _create_session(self, state: _TurnState) -> None:
        """First stdout of a caller-less turn: the session now exists."""
        state.session_created = True
        base = f"{state.profile.session_prefix()}_{int(time.time() * 1000)}"
        for session_id in _key_candidates(base):
            if session_id in self._registry or self._store.has_session(session_id):
                continue
            if state.handle is None:
                break
            try:
                self._registry.rekey(state.handle, session_id)
            except SessionBusyError:
                continue
            break
        state.session_id = session_id
        self._store.create_session(session_id, state.cwd, state.profile.name)
        if state.prompt:
            self._store.add_message(session_id, "user", state.prompt)
        if state.external_session_id:
            self._store.set_external_session_id(session_id, state.external_session_id)
        logger.info("Session created from output: %s (turn=%s)", session_id, state.turn_id)
        self._emit(state, SessionCreated(session_id=session_id))

    def _on_timeout(self, state: _TurnState) -> None:
        state.timer = None
        handle = state.handle
        if handle is None or handle.received_output or not handle.is_running:
            return
        state.timed_out = True
        logger.warning(
            "%s produced no output within %.0fs (turn=%s pid=%s); terminating",
            state.profile.label, state.profile.timeout_seconds, state.turn_id, handle.pid,
        )
        self._registry.terminate(handle)

    # ── Exit ──

    def _finish(self, state: _TurnState, exit_code: int | None) -> TurnResult:
        profile = state.profile
        handle = state.handle

        if state.buffer is not None:
            state.buffer.force_flush()
            state.buffer.dispose()
        if handle is not None:
            self._registry.unregister(handle)

        response_text = state.response_text
        if not profile.streams_live:
            response_text = response_text.strip()
        if state.session_id and response_text:
            self._store.add_message(state.session_id, "assistant", response_text)
        if not profile.streams_live and response_text:
            self._emit(state, ResponseIncrement(content=response_text, is_final=True))

        error = self._exit_error(state, exit_code)
        if error is not None and not isinstance(error, TurnAbortedError):
            self._emit(state, TurnError(message=self._error_message(error)))

        state.staged.cleanup()
        self._emit(state, TurnComplete(
            exit_code=exit_code,
            is_new_session=state.is_new_session,
            session_id=state.session_id,
        ))
        logger.info(
            "%s exited code=%s turn=%s session=%s chars=%d%s",
            profile.name, exit_code, state.turn_id, state.session_id,
            len(response_text), f" ({type(error).__name__})" if error else "",
        )

        if error is not None:
            raise error
        return TurnResult(
            session_id=state.session_id,
            exit_code=exit_code,
            response_text=response_text,
            is_new_session=state.is_new_session,
            external_session_id=state.external_session_id,
        )

    @staticmethod
    def _exit_error(state: _TurnState, exit_code: int | None) -> OrchestratorError | None:
        label = state.profile.label
        if state.timed_out:
            return TurnTimeoutError(label, state.profile.timeout_seconds)
        if state.handle is not None and state.handle.aborted:
            return TurnAbortedError(exit_code, label)
        if exit_code != 0:
            return ProcessExitError(exit_code, label, "".join(state.stderr_parts).strip())
        return None

    @staticmethod
    def _error_message(error: Exception) -> str:
        if isinstance(error, ProcessExitError) and error.stderr:
            return error.stderr
        return str(error)

    # ── Sink delivery ──

    def _emit_increment(self, state: _TurnState, increment: BufferedIncrement) -> None:
        self._emit(state, ResponseIncrement(content=increment.text, is_final=increment.is_final))

    @staticmethod
    def _emit(state: _TurnState, event: RelayEvent) -> None:
        event.turn_id = state.turn_id
        try:
            state.sink(event)
        except Exception:
            logger.exception("Event sink failed on %s (turn=%s)", event.event_type, state.turn_id)
