"""Bridge session orchestrator.

Wires the pipeline: telemetry bus → DebouncedPublisher (one per binding) →
connection-gated publish → broker.  Owns the broker connection, the
subscription registry sweep and every teardown action.

Startup order (:meth:`BridgeSession.start`):

1. system id was resolved before construction (:func:`start_session`)
2. open the broker connection (fixed reconnect period, ``signalk/<id>``
   client id, TLS verification flag)
3. broker errors → error status, the client keeps retrying
4. broker close → error status, publishers stay attached
5. every connect → publish page definitions, attach publishers that are
   not attached yet, subscribe to inbound topics
6. start the periodic subscription sweep
7. register broker disconnect for teardown

Every outbound publish is dropped silently while the connection is not
``CONNECTED``.  Nothing is queued or retried.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from haspbridge._internal.async_utils import cancel_task, maybe_await
from haspbridge.errors import ConfigurationError
from haspbridge.hasp.broker import BrokerClient, BrokerEvent, BrokerEventKind, ConnectionState
from haspbridge.hasp.debounce import DebouncedPublisher
from haspbridge.hasp.registry import SubscriptionRegistry
from haspbridge.hasp.topics import (
    InboundTopic,
    build_client_id,
    build_command_topic,
    build_inbound_subscription,
    format_pages_payload,
    format_value_update,
    parse_inbound_topic,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from haspbridge.hasp.config import BridgeConfig, HaspNode, PathBinding
    from haspbridge.signalk.bus import TelemetryBus

logger = logging.getLogger(__name__)

_QOS_AT_LEAST_ONCE = 1


@dataclass(frozen=True, slots=True)
class SessionStatus:
    """Operator-visible status line."""

    message: str
    error: bool = False


class BridgeSession:
    """One running bridge between a telemetry bus and an MQTT broker.

    Usage::

        session = await start_session(config, bundle, system_id)
        ...
        await session.stop()
    """

    def __init__(
        self,
        config: BridgeConfig,
        bus: TelemetryBus,
        system_id: str,
        *,
        broker_factory: Callable[..., Any] = BrokerClient,
        clock: Callable[[], float] = time.monotonic,
        registry: SubscriptionRegistry | None = None,
        on_status: Callable[[SessionStatus], Any] | None = None,
    ) -> None:
        if not system_id:
            raise ConfigurationError("A system id is required to create a bridge session")
        self._config = config
        self._bus = bus
        self._system_id = system_id
        self._broker_factory = broker_factory
        self._clock = clock
        self._on_status = on_status
        self._nodes: list[HaspNode] = list(config.nodes)
        self._bindings: list[PathBinding] = config.bindings()
        self._registry = registry if registry is not None else SubscriptionRegistry()
        self._state = ConnectionState.DISCONNECTED
        self._status = SessionStatus("Not started")
        self._broker: Any = None
        self._publishers: dict[tuple[str, str], DebouncedPublisher] = {}
        self._actions: dict[str, Callable[[InboundTopic, str], Awaitable[None]]] = {}
        self._teardown: list[Callable[[], Any]] = []
        self._sweep_task: asyncio.Task[None] | None = None
        self._started = False
        self._publish_count = 0
        self._drop_count = 0

    # -- Introspection --------------------------------------------------------

    @property
    def system_id(self) -> str:
        return self._system_id

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def bindings(self) -> list[PathBinding]:
        return list(self._bindings)

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    @property
    def subscription_ttl(self) -> int:
        """TTL applied to inbound keepalive subscriptions, in seconds."""
        return self._config.keepalive_ttl

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def started(self) -> bool:
        return self._started

    @property
    def publisher_count(self) -> int:
        return len(self._publishers)

    @property
    def publish_count(self) -> int:
        return self._publish_count

    @property
    def drop_count(self) -> int:
        return self._drop_count

    @property
    def teardown_count(self) -> int:
        return len(self._teardown)

    def _set_status(self, message: str, *, error: bool = False) -> None:
        self._status = SessionStatus(message, error=error)
        if self._on_status is not None:
            try:
                self._on_status(self._status)
            except Exception:
                logger.warning("Status callback failed", exc_info=True)

    def add_teardown(self, action: Callable[[], Any]) -> None:
        """Register a callable (sync or async) to run on :meth:`stop`."""
        self._teardown.append(action)

    # -- Lifecycle --------------------------------------------------------------

    async def start(self) -> None:
        """Open the broker connection and start the subscription sweep."""
        if self._started:
            return
        logger.debug("Bridge session starting (system id %s)", self._system_id)

        self._broker = self._broker_factory(
            self._config.require_broker_address(),
            client_id=build_client_id(self._system_id),
            verify_tls=self._config.reject_unauthorized,
            reconnect_period=self._config.reconnect_period,
            on_event=self.handle_event,
        )
        self._started = True
        self._set_status("Connecting to MQTT broker")
        await self._broker.start()

        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="subscription-sweep")
        self.add_teardown(self._cancel_sweep)
        self.add_teardown(self._broker.stop)

    async def stop(self) -> None:
        """Run every teardown action in registration order, then clear them.

        A no-op when the session never started or was already stopped.
        """
        self._state = ConnectionState.DISCONNECTED
        actions, self._teardown = self._teardown, []
        for action in actions:
            try:
                await maybe_await(action())
            except Exception:
                logger.warning("Teardown action %r failed", action, exc_info=True)
        self._publishers.clear()
        if self._started:
            self._started = False
            self._set_status("Stopped")
            logger.debug("Bridge session stopped")

    async def _cancel_sweep(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        await cancel_task(task)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.sweep_interval)
            self.sweep_subscriptions()

    def sweep_subscriptions(self) -> set[str]:
        """Drop expired inbound subscriptions.  Returns the removed topics."""
        return self._registry.sweep()

    # -- Broker events ----------------------------------------------------------

    async def handle_event(self, event: BrokerEvent) -> None:
        """Apply a broker event to the session."""
        if event.kind is BrokerEventKind.CONNECTING:
            self._state = ConnectionState.CONNECTING
        elif event.kind is BrokerEventKind.CONNECT:
            await self._on_connect()
        elif event.kind is BrokerEventKind.ERROR:
            self._state = ConnectionState.DISCONNECTED
            self._set_status(f"Error connecting to MQTT broker: {event.error}", error=True)
        elif event.kind is BrokerEventKind.CLOSE:
            self._state = ConnectionState.DISCONNECTED
            logger.debug("MQTT connection closed")
            self._set_status("MQTT connection closed", error=True)
        elif event.kind is BrokerEventKind.MESSAGE:
            await self.handle_message(event.topic or "", event.payload)

    async def _on_connect(self) -> None:
        self._state = ConnectionState.CONNECTED
        logger.debug("MQTT connected")
        self._set_status("MQTT Connected")
        await self.publish_pages()
        self.attach_publishers()
        if self._broker is not None:
            await self._broker.subscribe(
                build_inbound_subscription(self._system_id), qos=_QOS_AT_LEAST_ONCE
            )

    # -- Outbound -----------------------------------------------------------------

    async def publish(self, topic: str, payload: str) -> bool:
        """Publish retained with at-least-once delivery, or drop if not connected."""
        if self._state is not ConnectionState.CONNECTED or self._broker is None:
            self._drop_count += 1
            return False
        sent = await self._broker.publish(
            topic, payload, qos=_QOS_AT_LEAST_ONCE, retain=True
        )
        if sent:
            self._publish_count += 1
        else:
            self._drop_count += 1
        return bool(sent)

    async def publish_pages(self) -> None:
        """Send every node's page definitions as a ``jsonl`` command."""
        for node in self._nodes:
            await self.publish(build_command_topic(node.nodename), format_pages_payload(node.pages))

    def attach_publishers(self) -> int:
        """Attach a publisher to every binding that has none yet.

        Returns the number of publishers attached by this call; repeated
        connects attach nothing new.
        """
        attached = 0
        for binding in self._bindings:
            key = (binding.node_name, binding.path)
            if key in self._publishers:
                continue
            publisher = DebouncedPublisher(binding, self._bus, self._deliver, clock=self._clock)
            publisher.attach()
            self._publishers[key] = publisher
            self.add_teardown(publisher.detach)
            attached += 1
        if attached:
            logger.info("Attached %d path publisher(s)", attached)
        return attached

    def publisher_for(self, node_name: str, path: str) -> DebouncedPublisher | None:
        """Return the live publisher for *path* on *node_name*, if attached."""
        return self._publishers.get((node_name, path))

    async def _deliver(self, binding: PathBinding, value: str) -> None:
        await self.publish(
            build_command_topic(binding.node_name), format_value_update(binding.keyword, value)
        )

    # -- Inbound ------------------------------------------------------------------

    def register_action(
        self, action: str, handler: Callable[[InboundTopic, str], Awaitable[None]]
    ) -> None:
        """Route inbound messages with *action* code to *handler*.

        No action codes are handled by default.
        """
        self._actions[action] = handler

    async def handle_message(self, topic: str, payload: bytes) -> bool:
        """Filter and dispatch one inbound message.

        Returns ``True`` if the message is addressed to this system (whether
        or not a handler exists for its action), ``False`` if it was ignored.
        """
        message = payload.decode("utf-8", errors="replace").strip()
        logger.debug("Received message to topic %s: %s", topic, message)

        inbound = parse_inbound_topic(topic)
        if not inbound.matches(self._system_id):
            logger.debug("Unknown system id %s. Ignoring", inbound.system_id)
            return False

        handler = self._actions.get(inbound.action)
        if handler is None:
            logger.debug("Unknown action %s. Ignoring", inbound.action)
            return True

        try:
            await handler(inbound, message)
        except Exception:
            logger.warning("Handler for action %s failed", inbound.action, exc_info=True)
        return True


async def start_session(
    config: BridgeConfig,
    bus: TelemetryBus,
    system_id: str | None,
    **kwargs: Any,
) -> BridgeSession:
    """Create and start a :class:`BridgeSession`.

    Raises :class:`ConfigurationError`, creating nothing, when
    *system_id* is missing.
    """
    if not system_id:
        raise ConfigurationError(
            "Please configure either an UUID or MMSI in Signal K server settings "
            "to use this bridge"
        )
    config.require_broker_address()
    session = BridgeSession(config, bus, system_id, **kwargs)
    await session.start()
    return session
