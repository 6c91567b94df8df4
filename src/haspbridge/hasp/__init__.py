"""openHASP integration: publish Signal K values to openHASP plates over MQTT."""

from __future__ import annotations

from haspbridge.hasp.broker import BrokerClient, BrokerEvent, BrokerEventKind, ConnectionState
from haspbridge.hasp.config import BridgeConfig, HaspNode, PathBinding, PathConfig
from haspbridge.hasp.debounce import DebouncedPublisher, DebounceState
from haspbridge.hasp.registry import SubscriptionEntry, SubscriptionRegistry
from haspbridge.hasp.session import BridgeSession, SessionStatus, start_session
from haspbridge.hasp.topics import InboundTopic, build_command_topic, parse_inbound_topic

__all__ = [
    "BridgeConfig",
    "BridgeSession",
    "BrokerClient",
    "BrokerEvent",
    "BrokerEventKind",
    "ConnectionState",
    "DebounceState",
    "DebouncedPublisher",
    "HaspNode",
    "InboundTopic",
    "PathBinding",
    "PathConfig",
    "SessionStatus",
    "SubscriptionEntry",
    "SubscriptionRegistry",
    "build_command_topic",
    "parse_inbound_topic",
    "start_session",
]
