"""In-process telemetry bus keyed by Signal K path.

:class:`StreamBundle` fans each pushed value out to every live subscription
for that path.  Subscriptions are async iterators backed by a bounded queue;
when a consumer falls behind, the oldest queued value is discarded.

Usage::

    bundle = StreamBundle()
    sub = bundle.subscribe("electrical.batteries.1.voltage")
    bundle.push("electrical.batteries.1.voltage", 12.6)
    async for pv in sub:
        ...
    sub.close()
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

_DEFAULT_QUEUE_SIZE = 256


@dataclass(slots=True)
class PathValue:
    """A single value observed at a Signal K path."""

    path: str
    value: Any
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    source: str | None = None
    # Subscriber clock reading taken when the value was queued.
    received_at: float | None = None


class PathStream(Protocol):
    """Live sequence of values for one path, cancellable via :meth:`close`."""

    def __aiter__(self) -> PathStream: ...

    async def __anext__(self) -> PathValue: ...

    def close(self) -> None: ...


class TelemetryBus(Protocol):
    """Anything that can hand out a live value stream for a path."""

    def subscribe(
        self, path: str, *, clock: Callable[[], float] | None = None
    ) -> PathStream: ...


class PathSubscription:
    """Queue-backed subscription to one path of a :class:`StreamBundle`.

    Registered with the bundle at construction time, so no value pushed
    after :meth:`StreamBundle.subscribe` returns is missed.  With a *clock*,
    every queued value is stamped with its arrival time in
    :attr:`PathValue.received_at`, so a slow consumer still sees when each
    value actually arrived.
    """

    def __init__(
        self,
        bundle: StreamBundle,
        path: str,
        maxsize: int,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._bundle = bundle
        self._path = path
        self._clock = clock
        self._queue: asyncio.Queue[PathValue | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._overflow_count = 0

    @property
    def path(self) -> str:
        return self._path

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def overflow_count(self) -> int:
        """Values discarded because the consumer fell behind."""
        return self._overflow_count

    def offer(self, item: PathValue) -> None:
        """Enqueue *item*, discarding the oldest queued value when full."""
        if self._closed:
            return
        if self._clock is not None:
            item = replace(item, received_at=self._clock())
        if self._queue.full():
            self._queue.get_nowait()
            self._overflow_count += 1
        self._queue.put_nowait(item)

    def close(self) -> None:
        """Detach from the bundle and end iteration."""
        if self._closed:
            return
        self._closed = True
        self._bundle._discard(self)
        # Wake a consumer blocked in __anext__.
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def __aiter__(self) -> PathSubscription:
        return self

    async def __anext__(self) -> PathValue:
        item = await self._queue.get()
        if item is None or self._closed:
            raise StopAsyncIteration
        return item


class StreamBundle:
    """Per-path fan-out of self-vessel telemetry values."""

    def __init__(self, *, queue_size: int = _DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscriptions: dict[str, list[PathSubscription]] = defaultdict(list)
        self._latest: dict[str, PathValue] = {}
        self._push_count = 0

    @property
    def push_count(self) -> int:
        return self._push_count

    def subscribe(
        self, path: str, *, clock: Callable[[], float] | None = None
    ) -> PathSubscription:
        """Return a live subscription to *path*, optionally arrival-stamped by *clock*."""
        sub = PathSubscription(self, path, self._queue_size, clock)
        self._subscriptions[path].append(sub)
        logger.debug("Subscribed to %s (%d subscriber(s))", path, len(self._subscriptions[path]))
        return sub

    def push(
        self,
        path: str,
        value: Any,
        *,
        timestamp: datetime | None = None,
        source: str | None = None,
    ) -> PathValue:
        """Publish a value to every subscriber of *path*."""
        item = PathValue(
            path=path,
            value=value,
            timestamp=timestamp or datetime.now(UTC),
            source=source,
        )
        self._latest[path] = item
        self._push_count += 1
        for sub in list(self._subscriptions.get(path, ())):
            sub.offer(item)
        return item

    def latest(self, path: str) -> PathValue | None:
        """Return the most recent value pushed to *path*, or ``None``."""
        return self._latest.get(path)

    def subscriber_count(self, path: str | None = None) -> int:
        """Live subscriptions for *path*, or across all paths."""
        if path is not None:
            return len(self._subscriptions.get(path, ()))
        return sum(len(subs) for subs in self._subscriptions.values())

    def _discard(self, sub: PathSubscription) -> None:
        subs = self._subscriptions.get(sub.path)
        if not subs:
            return
        if sub in subs:
            subs.remove(sub)
        if not subs:
            del self._subscriptions[sub.path]
