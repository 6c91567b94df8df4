"""Signal K side of the bridge: delta stream client and in-process bus."""

from __future__ import annotations

from haspbridge.signalk.bus import PathSubscription, PathValue, StreamBundle, TelemetryBus
from haspbridge.signalk.client import SignalKStreamClient

__all__ = [
    "PathSubscription",
    "PathValue",
    "SignalKStreamClient",
    "StreamBundle",
    "TelemetryBus",
]
