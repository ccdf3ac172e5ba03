"""Registry of in-flight agent processes, keyed by session id.

A turn registers its process under the caller's session id or, for a
brand-new conversation, a synthetic timestamp key that is re-keyed once
the session id is known. Abort looks a session up by exact key first and
then by substring, which covers the window between spawn and re-key.
"""
from __future__ import annotations

import asyncio
import logging
import signal
import threading
import time
from dataclasses import dataclass, field

from .errors import SessionBusyError

logger = logging.getLogger(__name__)

ABORT_GRACE_SECONDS = 2.0


@dataclass
class ProcessHandle:
    """One spawned agent process and its temporary artifacts."""
    key: str
    process: asyncio.subprocess.Process
    artifact_paths: list[str] = field(default_factory=list)
    staging_dir: str | None = None
    spawned_at: float = field(default_factory=time.time)
    received_output: bool = False
    aborted: bool = False
    terminated: bool = False

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)

    @property
    def is_running(self) -> bool:
        return self.process.returncode is None


class ProcessRegistry:
    """At most one live process per key; safe to share between turns."""

    def __init__(self, abort_grace_seconds: float = ABORT_GRACE_SECONDS) -> None:
        self._handles: dict[str, ProcessHandle] = {}
        self._lock = threading.RLock()
        self._abort_grace_seconds = abort_grace_seconds

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._handles.keys())

    def get(self, key: str) -> ProcessHandle | None:
        with self._lock:
            return self._handles.get(key)

    def is_active(self, key: str) -> bool:
        handle = self.get(key)
        return handle is not None and handle.is_running

    def register(self, handle: ProcessHandle) -> None:
        """Insert *handle*; raise SessionBusyError if its key is live."""
        with self._lock:
            existing = self._handles.get(handle.key)
            if existing is not None and existing is not handle and existing.is_running:
                raise SessionBusyError(handle.key)
            self._handles[handle.key] = handle
        logger.info("Registered process pid=%s key=%s", handle.pid, handle.key)

    def rekey(self, handle: ProcessHandle, new_key: str) -> None:
        """Move *handle* to *new_key* once the real session id is known.

        Raises SessionBusyError if another live process already holds
        *new_key*; *handle* then stays under its old key.
        """
        with self._lock:
            old_key = handle.key
            if old_key == new_key:
                return
            existing = self._handles.get(new_key)
            if existing is not None and existing is not handle and existing.is_running:
                raise SessionBusyError(new_key)
            if self._handles.get(old_key) is handle:
                del self._handles[old_key]
            handle.key = new_key
            # Aborted or terminated handles stay out of the map.
            if not (handle.aborted or handle.terminated):
                self._handles[new_key] = handle
        logger.info("Re-keyed process pid=%s %s -> %s", handle.pid, old_key, new_key)

    def unregister(self, handle: ProcessHandle) -> bool:
        """Remove *handle* only if it is still the one stored under its key."""
        with self._lock:
            if self._handles.get(handle.key) is handle:
                del self._handles[handle.key]
                return True
        return False

    def resolve(self, session_id: str) -> ProcessHandle | None:
        """Exact key match, else the first key that contains or is contained by *session_id*."""
        if not session_id:
            return None
        with self._lock:
            handle = self._handles.get(session_id)
            if handle is not None:
                return handle
            for key, candidate in self._handles.items():
                if session_id in key or key in session_id:
                    return candidate
        return None

    def abort(self, session_id: str) -> bool:
        """Terminate the process for *session_id*.

        The handle leaves the registry immediately; a SIGKILL follows
        after the grace period if the process is still alive. Returns
        whether a process was found, not whether it has exited.
        """
        with self._lock:
            handle = self.resolve(session_id)
            if handle is None:
                logger.info("Abort requested for %s but no process found", session_id)
                return False
            handle.aborted = True
        logger.info("Aborting session %s (key=%s pid=%s)", session_id, handle.key, handle.pid)
        return self.terminate(handle)

    def terminate(self, handle: ProcessHandle) -> bool:
        """SIGTERM *handle* now, SIGKILL after the grace period, drop it from the map."""
        with self._lock:
            handle.terminated = True
            if self._handles.get(handle.key) is handle:
                del self._handles[handle.key]

        try:
            handle.process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            logger.debug("Process pid=%s already exited before terminate", handle.pid)
            return True
        except OSError as exc:
            logger.warning("Failed to terminate pid=%s: %s", handle.pid, exc)
            return False

        logger.info("Sent SIGTERM to pid=%s (key=%s)", handle.pid, handle.key)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; skipping forced kill scheduling")
            return True
        loop.call_later(self._abort_grace_seconds, self._force_kill, handle)
        return True

    def snapshot(self) -> list[dict]:
        """Key, pid and age of every registered process."""
        now = time.time()
        with self._lock:
            return [
                {
                    "key": key,
                    "pid": handle.pid,
                    "running": handle.is_running,
                    "received_output": handle.received_output,
                    "age_seconds": round(max(0.0, now - handle.spawned_at), 3),
                    "artifacts": len(handle.artifact_paths),
                }
                for key, handle in self._handles.items()
            ]

    @staticmethod
    def _force_kill(handle: ProcessHandle) -> None:
        if not handle.is_running:
            return
        logger.warning(
            "Process pid=%s ignored SIGTERM; sending SIGKILL", handle.pid,
        )
        try:
            handle.process.kill()
        except ProcessLookupError:
            pass
        except OSError as exc:
            logger.error("Error force killing pid=%s: %s", handle.pid, exc)
