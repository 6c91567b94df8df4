"""haspbridge: Signal K to openHASP bridge over MQTT."""

from __future__ import annotations

__version__ = "0.3.0"
