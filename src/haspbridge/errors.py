"""Exception hierarchy for haspbridge."""

from __future__ import annotations


class HaspBridgeError(Exception):
    """Base class for all bridge errors."""


class ConfigurationError(HaspBridgeError):
    """The bridge cannot start with the current configuration.

    Raised for a missing system identity, a missing broker address or a
    duplicate path binding.  Fatal to startup; no session is created.
    """


class BrokerConnectionError(HaspBridgeError):
    """Failed to connect or authenticate with the MQTT broker.

    Non-fatal: the broker client keeps retrying on its reconnect period.
    """


class BrokerClosedError(HaspBridgeError):
    """The MQTT broker closed an established connection."""


class SignalKConnectionError(HaspBridgeError):
    """Failed to connect to the Signal K delta stream."""
