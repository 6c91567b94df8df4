"""WebSocket client for the Signal K delta stream.

Connects to ``/signalk/v1/stream``, records the server hello (the source of
the self-vessel identifier), subscribes to the bound paths and pushes every
self-vessel value into a :class:`~haspbridge.signalk.bus.StreamBundle`.

Includes exponential backoff reconnection (1s base → 60s max) with jitter.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import TYPE_CHECKING, Any

from haspbridge.errors import SignalKConnectionError
from haspbridge.signalk.delta import (
    build_subscribe_message,
    decode_delta,
    parse_hello,
    parse_message,
)

if TYPE_CHECKING:
    from haspbridge.signalk.bus import StreamBundle

logger = logging.getLogger(__name__)

_BACKOFF_BASE = 1.0
_BACKOFF_MAX = 60.0
_BACKOFF_FACTOR = 2.0


def _backoff_delay(backoff: float) -> float:
    """Return *backoff* plus up to 10% jitter, capped at the maximum."""
    return min(backoff + random.uniform(0, backoff * 0.1), _BACKOFF_MAX)


class SignalKStreamClient:
    """Feeds a :class:`StreamBundle` from a Signal K server."""

    def __init__(
        self,
        url: str,
        bus: StreamBundle,
        *,
        paths: list[str] | None = None,
        token: str | None = None,
    ) -> None:
        self._url = url
        self._bus = bus
        self._paths = list(paths or [])
        self._token = token
        self._ws: Any = None
        self._connected = False
        self._closing = False
        self._self_id: str | None = None
        self._hello_received = asyncio.Event()
        self._frame_count = 0
        self._delta_count = 0
        self._value_count = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def self_id(self) -> str | None:
        """Self-vessel identifier announced by the server, once known."""
        return self._self_id

    @property
    def delta_count(self) -> int:
        return self._delta_count

    @property
    def value_count(self) -> int:
        return self._value_count

    async def connect(self) -> None:
        """Open the stream and send the path subscription.

        Raises :class:`SignalKConnectionError` on failure.
        """
        import websockets.asyncio.client as ws_client

        headers: dict[str, str] = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            self._ws = await ws_client.connect(self._url, additional_headers=headers)
        except Exception as exc:
            raise SignalKConnectionError(
                f"Failed to connect to Signal K at {self._url}: {exc}"
            ) from exc

        self._connected = True
        logger.info("Connected to Signal K stream at %s", self._url)

        if self._paths:
            try:
                await self._ws.send(json.dumps(build_subscribe_message(self._paths)))
            except Exception as exc:
                self._connected = False
                raise SignalKConnectionError(f"Failed to subscribe to paths: {exc}") from exc
            logger.debug("Subscribed to %d Signal K path(s)", len(self._paths))

    def handle_frame(self, raw: str | bytes) -> None:
        """Process one stream frame: hello or delta."""
        self._frame_count += 1
        msg = parse_message(raw)
        if msg is None:
            return

        hello = parse_hello(msg)
        if hello is not None:
            if hello.self_id:
                self._self_id = hello.self_id
            self._hello_received.set()
            logger.info(
                "Signal K hello: server=%s version=%s self=%s",
                hello.name,
                hello.version,
                hello.self_id,
            )
            return

        values = decode_delta(msg, self._self_id)
        if not values:
            return
        self._delta_count += 1
        for pv in values:
            self._bus.push(pv.path, pv.value, timestamp=pv.timestamp, source=pv.source)
        self._value_count += len(values)

    async def _receive_loop(self) -> None:
        """Read frames until the connection closes."""
        assert self._ws is not None
        try:
            async for raw in self._ws:
                self.handle_frame(raw)
        except Exception:
            # ConnectionClosed and other WS errors
            logger.info("Signal K receive loop ended (connection closed)")
        finally:
            self._connected = False

    async def wait_for_self_id(self, timeout: float = 10.0) -> str | None:
        """Wait for the server hello and return the self identifier.

        Returns ``None`` if no hello arrives within *timeout* seconds or the
        server announced no self identifier.
        """
        try:
            await asyncio.wait_for(self._hello_received.wait(), timeout=timeout)
        except TimeoutError:
            logger.warning("No Signal K hello within %.0fs", timeout)
        return self._self_id

    async def run(self) -> None:
        """Connect and stream forever, reconnecting with exponential backoff.

        The backoff grows on failed attempts and on streams that close before
        delivering a frame.  It returns to the base delay once a connection
        has carried at least one frame.
        """
        attempt = 0
        backoff = _BACKOFF_BASE

        while not self._closing:
            attempt += 1
            try:
                await self.connect()
            except SignalKConnectionError as exc:
                wait = _backoff_delay(backoff)
                logger.info(
                    "Signal K connection attempt %d failed: %s, retrying in %.1fs",
                    attempt,
                    exc,
                    wait,
                )
                await asyncio.sleep(wait)
                backoff = min(backoff * _BACKOFF_FACTOR, _BACKOFF_MAX)
                continue

            attempt = 0
            frames_before = self._frame_count
            await self._receive_loop()
            if self._closing:
                break
            if self._frame_count > frames_before:
                backoff = _BACKOFF_BASE
            wait = _backoff_delay(backoff)
            logger.warning("Signal K stream closed, reconnecting in %.1fs", wait)
            await asyncio.sleep(wait)
            backoff = min(backoff * _BACKOFF_FACTOR, _BACKOFF_MAX)

    async def close(self) -> None:
        """Close the stream; :meth:`run` returns once the socket is gone."""
        import contextlib

        self._closing = True
        self._connected = False
        if self._ws is not None:
            with contextlib.suppress(Exception):
                await self._ws.close()
            self._ws = None
