"""Time/size windowed coalescing of streamed response text.

Agents often write output in many tiny pieces. Forwarding every piece
makes the transcript jitter, so text is held until either the stream
goes quiet for ``partial_delay`` or ``max_wait_time`` has passed since
the oldest held byte. A quiet period that leaves less than
``min_buffer_size`` characters is skipped once so the next piece can
join it.

All timing state is explicit and read by a single scheduled tick; the
buffer never holds more than one timer handle.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .models import BufferedIncrement

logger = logging.getLogger(__name__)

# asyncio may run a call_at() callback up to one clock tick early.
_TICK_TOLERANCE = 0.001


class ResponseBuffer:
    """Coalesces text into BufferedIncrements delivered via *emit*.

    Must be created and used on a running event loop.
    """

    def __init__(
        self,
        emit: Callable[[BufferedIncrement], None],
        *,
        partial_delay: float = 0.3,
        max_wait_time: float = 1.5,
        min_buffer_size: int = 30,
    ) -> None:
        self._emit = emit
        self._partial_delay = partial_delay
        self._max_wait_time = max_wait_time
        self._min_buffer_size = min_buffer_size
        self._loop = asyncio.get_running_loop()

        self._parts: list[str] = []
        self._size = 0
        self._pending_since: float | None = None
        self._last_data_at: float | None = None
        self._last_flush_at: float | None = None
        self._debounce_armed = False
        self._deferred = False
        self._timer: asyncio.TimerHandle | None = None
        self._disposed = False

    @property
    def pending(self) -> str:
        return "".join(self._parts)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def process_data(self, text: str) -> None:
        if not text:
            return
        if self._disposed:
            logger.warning("ResponseBuffer.process_data after dispose; dropping to sink directly")
            self._emit(BufferedIncrement(text=text, is_final=False))
            return
        now = self._loop.time()
        if self._pending_since is None:
            self._pending_since = now
        self._parts.append(text)
        self._size += len(text)
        self._last_data_at = now
        self._debounce_armed = True
        self._schedule()

    def flush(self) -> None:
        """Emit whatever is held now, as a non-final increment."""
        self._cancel_timer()
        self._flush(is_final=False)

    def force_flush(self) -> None:
        """Emit whatever is held, marked final."""
        self._cancel_timer()
        self._flush(is_final=True)

    def dispose(self) -> None:
        self._cancel_timer()
        self._disposed = True

    # ── Scheduling ──

    def _deadline(self) -> float | None:
        if self._pending_since is None:
            return None
        deadline = self._pending_since + self._max_wait_time
        if self._debounce_armed and self._last_data_at is not None:
            deadline = min(deadline, self._last_data_at + self._partial_delay)
        return deadline

    def _schedule(self) -> None:
        self._cancel_timer()
        deadline = self._deadline()
        if deadline is None:
            return
        self._timer = self._loop.call_at(deadline, self._tick)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _tick(self) -> None:
        self._timer = None
        if self._disposed or self._pending_since is None:
            return
        now = self._loop.time() + _TICK_TOLERANCE

        if now - self._pending_since >= self._max_wait_time:
            self._flush(is_final=False)
            return

        if (
            self._debounce_armed
            and self._last_data_at is not None
            and now - self._last_data_at >= self._partial_delay
        ):
            self._debounce_armed = False
            if self._size < self._min_buffer_size and not self._deferred:
                self._deferred = True
                self._schedule()
                return
            self._flush(is_final=False)
            return

        # Woken early (clock granularity); try again at the real deadline.
        self._schedule()

    def _flush(self, *, is_final: bool) -> None:
        if not self._parts:
            return
        text = "".join(self._parts)
        self._parts.clear()
        self._size = 0
        self._pending_since = None
        self._last_data_at = None
        self._debounce_armed = False
        self._deferred = False
        now = self._loop.time()
        if self._last_flush_at is not None:
            logger.debug(
                "Flushing %d chars (final=%s) %.3fs after previous flush",
                len(text), is_final, now - self._last_flush_at,
            )
        self._last_flush_at = now
        self._emit(BufferedIncrement(text=text, is_final=is_final))
