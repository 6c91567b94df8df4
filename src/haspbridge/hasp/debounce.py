"""Leading-edge debounce for per-path value streams.

The first value after a quiet period is emitted immediately.  Values that
arrive within ``interval`` seconds of the last emission are dropped; they
are neither queued nor coalesced into a trailing emission.  The first value
arriving ``interval`` or more seconds after the last emission is emitted and
restarts the window.  When the upstream stream ends mid-window nothing is
flushed.

For values at t=0, t=0.1 and t=2.1 with ``interval=2``::

    t=0.0  emit
    t=0.1  drop   (0.1 < 2)
    t=2.1  emit   (2.1 >= 2, window restarts at 2.1)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from haspbridge._internal.async_utils import cancel_task
from haspbridge.hasp.topics import format_value

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from haspbridge.hasp.config import PathBinding
    from haspbridge.signalk.bus import PathStream, TelemetryBus

logger = logging.getLogger(__name__)


class DebounceState:
    """Window bookkeeping for one binding.

    Usage::

        state = DebounceState(2.0)
        if state.accept(time.monotonic()):
            # ... emit
    """

    __slots__ = ("_interval", "_last_emitted_at")

    def __init__(self, interval: float) -> None:
        self._interval = interval
        self._last_emitted_at: float | None = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def last_emitted_at(self) -> float | None:
        return self._last_emitted_at

    def accept(self, now: float) -> bool:
        """Return ``True`` and open a new window if a value arriving at *now* is emitted."""
        last = self._last_emitted_at
        if last is not None and (now - last) < self._interval:
            return False
        self._last_emitted_at = now
        return True

    def reset(self) -> None:
        """Forget the last emission; the next value is emitted immediately."""
        self._last_emitted_at = None


class DebouncedPublisher:
    """Consumes one path from the telemetry bus and emits rate-limited updates.

    *deliver* is awaited with ``(binding, formatted_value)`` once per
    emission.  Delivery failures are logged and never stop the stream.
    """

    def __init__(
        self,
        binding: PathBinding,
        bus: TelemetryBus,
        deliver: Callable[[PathBinding, str], Awaitable[Any]],
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._binding = binding
        self._bus = bus
        self._deliver = deliver
        self._clock = clock
        self._state = DebounceState(binding.interval)
        self._stream: PathStream | None = None
        self._task: asyncio.Task[None] | None = None
        self._emit_count = 0
        self._suppressed_count = 0

    @property
    def binding(self) -> PathBinding:
        return self._binding

    @property
    def state(self) -> DebounceState:
        return self._state

    @property
    def attached(self) -> bool:
        return self._stream is not None

    @property
    def emit_count(self) -> int:
        return self._emit_count

    @property
    def suppressed_count(self) -> int:
        return self._suppressed_count

    async def handle(self, value: Any, *, received_at: float | None = None) -> bool:
        """Run one arriving value through the debounce window.

        The window is judged at *received_at* when given, otherwise at the
        current clock reading.  Returns ``True`` if the value was emitted.
        """
        now = self._clock() if received_at is None else received_at
        if not self._state.accept(now):
            self._suppressed_count += 1
            return False

        self._emit_count += 1
        try:
            await self._deliver(self._binding, format_value(value))
        except Exception:
            logger.warning(
                "Delivery failed for %s → %s, discarding",
                self._binding.path,
                self._binding.keyword,
                exc_info=True,
            )
        return True

    def attach(self) -> None:
        """Subscribe to the binding's path and start consuming.

        Idempotent: a second call while attached does nothing.
        """
        if self._stream is not None:
            return
        self._stream = self._bus.subscribe(self._binding.path, clock=self._clock)
        self._task = asyncio.create_task(
            self._consume(self._stream),
            name=f"debounce:{self._binding.node_name}:{self._binding.path}",
        )
        logger.debug(
            "Attached %s → %s/%s (interval %.1fs)",
            self._binding.path,
            self._binding.node_name,
            self._binding.keyword,
            self._binding.interval,
        )

    async def detach(self) -> None:
        """Cancel the bus subscription; no callback fires after this returns."""
        stream, self._stream = self._stream, None
        task, self._task = self._task, None
        if stream is not None:
            stream.close()
        await cancel_task(task)
        self._state.reset()

    async def _consume(self, stream: PathStream) -> None:
        async for item in stream:
            await self.handle(item.value, received_at=item.received_at)
        logger.debug("Stream for %s ended", self._binding.path)
