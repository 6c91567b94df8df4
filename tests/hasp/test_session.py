"""Tests for BridgeSession: connection gating, lifecycle and inbound filtering."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from haspbridge.errors import BrokerConnectionError, ConfigurationError
from haspbridge.hasp.broker import BrokerEvent, BrokerEventKind, ConnectionState
from haspbridge.hasp.config import BridgeConfig, HaspNode, PathConfig
from haspbridge.hasp.registry import SubscriptionRegistry
from haspbridge.hasp.session import BridgeSession, SessionStatus, start_session
from haspbridge.hasp.topics import InboundTopic
from haspbridge.signalk.bus import StreamBundle

VOLTAGE = "electrical.batteries.1.voltage"
PAGES = '{"page":5,"id":51,"obj":"label","text":"--"}'


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeBroker:
    """Records what the session asks of the broker."""

    def __init__(
        self,
        url: str,
        *,
        client_id: str,
        verify_tls: bool,
        reconnect_period: float,
        on_event: Any,
    ) -> None:
        self.url = url
        self.client_id = client_id
        self.verify_tls = verify_tls
        self.reconnect_period = reconnect_period
        self.on_event = on_event
        self.published: list[tuple[str, str, int, bool]] = []
        self.subscribed: list[str] = []
        self.started = False
        self.stopped = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    async def publish(self, topic: str, payload: str, *, qos: int = 1, retain: bool = True) -> bool:
        self.published.append((topic, payload, qos, retain))
        return True

    async def subscribe(self, topic: str, *, qos: int = 1) -> bool:
        self.subscribed.append(topic)
        return True


class BrokerFactory:
    def __init__(self) -> None:
        self.brokers: list[FakeBroker] = []

    def __call__(self, url: str, **kwargs: Any) -> FakeBroker:
        broker = FakeBroker(url, **kwargs)
        self.brokers.append(broker)
        return broker

    @property
    def broker(self) -> FakeBroker:
        return self.brokers[-1]


def _config(**overrides: Any) -> BridgeConfig:
    data: dict[str, Any] = {
        "mqtt_broker_address": "mqtt://localhost:1883",
        "nodes": [
            HaspNode(
                nodename="plate",
                pages=PAGES,
                paths=[PathConfig(path=VOLTAGE, keyword="p5b51.val", interval=2)],
            )
        ],
    }
    data.update(overrides)
    return BridgeConfig(**data)


async def _drain() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture()
def factory() -> BrokerFactory:
    return BrokerFactory()


@pytest.fixture()
def bundle() -> StreamBundle:
    return StreamBundle()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def statuses() -> list[SessionStatus]:
    return []


@pytest_asyncio.fixture()
async def session(
    factory: BrokerFactory,
    bundle: StreamBundle,
    clock: FakeClock,
    statuses: list[SessionStatus],
) -> AsyncIterator[BridgeSession]:
    s = BridgeSession(
        _config(),
        bundle,
        "ABC123",
        broker_factory=factory,
        clock=clock,
        on_status=statuses.append,
    )
    await s.start()
    yield s
    await s.stop()


async def _connect(session: BridgeSession) -> None:
    await session.handle_event(BrokerEvent(BrokerEventKind.CONNECT))


class TestConstruction:
    def test_missing_system_id(self, bundle: StreamBundle) -> None:
        with pytest.raises(ConfigurationError):
            BridgeSession(_config(), bundle, "")

    def test_duplicate_binding_rejected(self, bundle: StreamBundle) -> None:
        node = HaspNode(
            paths=[
                PathConfig(path=VOLTAGE, keyword="a"),
                PathConfig(path=VOLTAGE, keyword="b"),
            ]
        )
        with pytest.raises(ConfigurationError):
            BridgeSession(_config(nodes=[node]), bundle, "ABC123")

    def test_initial_state(self, bundle: StreamBundle) -> None:
        s = BridgeSession(_config(), bundle, "ABC123")
        assert s.connection_state is ConnectionState.DISCONNECTED
        assert s.started is False
        assert s.publisher_count == 0
        assert len(s.bindings) == 1


class TestStart:
    @pytest.mark.asyncio
    async def test_broker_parameters(
        self, session: BridgeSession, factory: BrokerFactory
    ) -> None:
        broker = factory.broker
        assert broker.url == "mqtt://localhost:1883"
        assert broker.client_id == "signalk/ABC123"
        assert broker.verify_tls is True
        assert broker.reconnect_period == 5.0
        assert broker.started is True

    @pytest.mark.asyncio
    async def test_insecure_tls_passed(self, bundle: StreamBundle, factory: BrokerFactory) -> None:
        s = BridgeSession(
            _config(reject_unauthorized=False), bundle, "ABC123", broker_factory=factory
        )
        await s.start()
        assert factory.broker.verify_tls is False
        await s.stop()

    @pytest.mark.asyncio
    async def test_nothing_published_before_connect(
        self, session: BridgeSession, factory: BrokerFactory
    ) -> None:
        assert factory.broker.published == []
        assert session.publisher_count == 0
        assert session.status == SessionStatus("Connecting to MQTT broker")

    @pytest.mark.asyncio
    async def test_teardown_registered(self, session: BridgeSession) -> None:
        # Sweep cancellation and broker disconnect.
        assert session.teardown_count == 2

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(
        self, session: BridgeSession, factory: BrokerFactory
    ) -> None:
        await session.start()
        assert len(factory.brokers) == 1


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_publishes_pages_then_attaches(
        self,
        session: BridgeSession,
        factory: BrokerFactory,
        statuses: list[SessionStatus],
    ) -> None:
        await _connect(session)

        assert session.connection_state is ConnectionState.CONNECTED
        assert factory.broker.published == [
            ("hasp/plate/command", "jsonl " + PAGES, 1, True),
        ]
        assert session.publisher_count == 1
        assert factory.broker.subscribed == ["+/signalk/ABC123/#"]
        assert SessionStatus("MQTT Connected") in statuses

    @pytest.mark.asyncio
    async def test_reconnect_republishes_pages_without_duplicate_publishers(
        self, session: BridgeSession, factory: BrokerFactory, bundle: StreamBundle
    ) -> None:
        await _connect(session)
        await session.handle_event(BrokerEvent(BrokerEventKind.CLOSE))
        await _connect(session)

        pages = [p for p in factory.broker.published if p[1].startswith("jsonl ")]
        assert len(pages) == 2
        assert session.publisher_count == 1
        assert bundle.subscriber_count(VOLTAGE) == 1
        assert session.attach_publishers() == 0

    @pytest.mark.asyncio
    async def test_connecting_event(self, session: BridgeSession) -> None:
        await session.handle_event(BrokerEvent(BrokerEventKind.CONNECTING))
        assert session.connection_state is ConnectionState.CONNECTING

    @pytest.mark.asyncio
    async def test_error_event(
        self, session: BridgeSession, statuses: list[SessionStatus]
    ) -> None:
        await session.handle_event(
            BrokerEvent(BrokerEventKind.ERROR, error=BrokerConnectionError("refused"))
        )
        assert session.connection_state is ConnectionState.DISCONNECTED
        assert statuses[-1] == SessionStatus("Error connecting to MQTT broker: refused", True)

    @pytest.mark.asyncio
    async def test_close_event_keeps_publishers(
        self, session: BridgeSession, statuses: list[SessionStatus]
    ) -> None:
        await _connect(session)
        await session.handle_event(BrokerEvent(BrokerEventKind.CLOSE))
        assert session.connection_state is ConnectionState.DISCONNECTED
        assert session.publisher_count == 1
        assert statuses[-1].error is True

    @pytest.mark.asyncio
    async def test_publisher_lookup(self, session: BridgeSession) -> None:
        assert session.publisher_for("plate", VOLTAGE) is None
        await _connect(session)

        publisher = session.publisher_for("plate", VOLTAGE)
        assert publisher is not None
        assert publisher.attached is True
        assert publisher.binding.keyword == "p5b51.val"
        assert session.publisher_for("other", VOLTAGE) is None


class TestPublishGating:
    @pytest.mark.asyncio
    async def test_publish_dropped_while_disconnected(
        self, session: BridgeSession, factory: BrokerFactory
    ) -> None:
        assert await session.publish("hasp/plate/command", "p5b51.val=1") is False
        assert factory.broker.published == []
        assert session.drop_count == 1

    @pytest.mark.asyncio
    async def test_publish_while_connected(
        self, session: BridgeSession, factory: BrokerFactory
    ) -> None:
        await _connect(session)
        assert await session.publish("hasp/plate/command", "p5b51.val=1") is True
        assert factory.broker.published[-1] == ("hasp/plate/command", "p5b51.val=1", 1, True)

    @pytest.mark.asyncio
    async def test_values_dropped_after_close(
        self,
        session: BridgeSession,
        factory: BrokerFactory,
        bundle: StreamBundle,
        clock: FakeClock,
    ) -> None:
        await _connect(session)
        await session.handle_event(BrokerEvent(BrokerEventKind.CLOSE))
        published = len(factory.broker.published)

        bundle.push(VOLTAGE, 12.6)
        await _drain()

        assert len(factory.broker.published) == published
        assert session.drop_count == 1

    @pytest.mark.asyncio
    async def test_rejected_publish_counts_as_drop(
        self, session: BridgeSession, factory: BrokerFactory
    ) -> None:
        await _connect(session)
        factory.broker.publish = AsyncMock(return_value=False)  # type: ignore[method-assign]
        assert await session.publish("t", "x") is False
        assert session.drop_count == 1


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_plate_voltage_example(
        self,
        session: BridgeSession,
        factory: BrokerFactory,
        bundle: StreamBundle,
        clock: FakeClock,
    ) -> None:
        await _connect(session)

        for t, value in ((0.0, 12.6), (0.1, 12.7), (2.1, 12.8)):
            clock.now = t
            bundle.push(VOLTAGE, value)
            await _drain()

        assert factory.broker.published == [
            ("hasp/plate/command", "jsonl " + PAGES, 1, True),
            ("hasp/plate/command", "p5b51.val=12.6", 1, True),
            ("hasp/plate/command", "p5b51.val=12.8", 1, True),
        ]
        assert session.publish_count == 3

    @pytest.mark.asyncio
    async def test_two_nodes_share_a_path(
        self, factory: BrokerFactory, bundle: StreamBundle, clock: FakeClock
    ) -> None:
        config = _config(
            nodes=[
                HaspNode(nodename="plate", paths=[PathConfig(path=VOLTAGE, keyword="p5b51.val")]),
                HaspNode(nodename="helm", paths=[PathConfig(path=VOLTAGE, keyword="p1b1.text")]),
            ]
        )
        s = BridgeSession(config, bundle, "ABC123", broker_factory=factory, clock=clock)
        await s.start()
        await _connect(s)
        bundle.push(VOLTAGE, 13)
        await _drain()

        updates = [p[:2] for p in factory.broker.published if not p[1].startswith("jsonl")]
        assert sorted(updates) == [
            ("hasp/helm/command", "p1b1.text=13"),
            ("hasp/plate/command", "p5b51.val=13"),
        ]
        await s.stop()


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_detaches_and_disconnects(
        self,
        session: BridgeSession,
        factory: BrokerFactory,
        bundle: StreamBundle,
        statuses: list[SessionStatus],
    ) -> None:
        await _connect(session)
        await session.stop()

        assert factory.broker.stopped is True
        assert session.teardown_count == 0
        assert session.publisher_count == 0
        assert bundle.subscriber_count() == 0
        assert session.connection_state is ConnectionState.DISCONNECTED
        assert statuses[-1] == SessionStatus("Stopped")

    @pytest.mark.asyncio
    async def test_no_emission_after_stop(
        self,
        session: BridgeSession,
        factory: BrokerFactory,
        bundle: StreamBundle,
    ) -> None:
        await _connect(session)
        await session.stop()
        published = len(factory.broker.published)

        bundle.push(VOLTAGE, 12.6)
        await _drain()

        assert len(factory.broker.published) == published

    @pytest.mark.asyncio
    async def test_stop_twice(self, session: BridgeSession) -> None:
        await session.stop()
        await session.stop()
        assert session.started is False

    @pytest.mark.asyncio
    async def test_stop_without_start(self, bundle: StreamBundle) -> None:
        statuses: list[SessionStatus] = []
        s = BridgeSession(_config(), bundle, "ABC123", on_status=statuses.append)
        await s.stop()
        assert statuses == []
        assert s.status == SessionStatus("Not started")

    @pytest.mark.asyncio
    async def test_teardown_runs_in_registration_order(self, session: BridgeSession) -> None:
        order: list[str] = []

        async def first() -> None:
            order.append("async")

        session.add_teardown(first)
        session.add_teardown(lambda: order.append("sync"))
        await session.stop()
        assert order == ["async", "sync"]

    @pytest.mark.asyncio
    async def test_failing_teardown_does_not_block_others(
        self, session: BridgeSession, factory: BrokerFactory
    ) -> None:
        def boom() -> None:
            raise RuntimeError("teardown failed")

        session.add_teardown(boom)
        ran: list[bool] = []
        session.add_teardown(lambda: ran.append(True))
        await session.stop()
        assert ran == [True]
        assert factory.broker.stopped is True


class TestInbound:
    @pytest.mark.asyncio
    async def test_matching_system_dispatched(self, session: BridgeSession) -> None:
        handler = AsyncMock()
        session.register_action("read", handler)

        accepted = await session.handle_message("read/signalk/ABC123/foo", b" 42 ")

        assert accepted is True
        handler.assert_awaited_once()
        topic, message = handler.await_args.args
        assert topic == InboundTopic("read", "signalk", "ABC123", "foo")
        assert message == "42"

    @pytest.mark.asyncio
    async def test_other_system_ignored(self, session: BridgeSession) -> None:
        handler = AsyncMock()
        session.register_action("read", handler)
        assert await session.handle_message("read/signalk/XYZ999/foo", b"x") is False
        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_action_accepted_without_handler(self, session: BridgeSession) -> None:
        assert await session.handle_message("write/signalk/ABC123/foo", b"x") is True

    @pytest.mark.asyncio
    async def test_short_topic_ignored(self, session: BridgeSession) -> None:
        assert await session.handle_message("read", b"") is False

    @pytest.mark.asyncio
    async def test_message_event_routed(self, session: BridgeSession) -> None:
        handler = AsyncMock()
        session.register_action("keepalive", handler)
        await session.handle_event(
            BrokerEvent(
                BrokerEventKind.MESSAGE, topic="keepalive/signalk/ABC123/x", payload=b"60"
            )
        )
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_handler_failure_contained(self, session: BridgeSession) -> None:
        session.register_action("read", AsyncMock(side_effect=RuntimeError("bad")))
        assert await session.handle_message("read/signalk/ABC123/foo", b"x") is True


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_removes_expired(self, bundle: StreamBundle) -> None:
        now = [0.0]
        registry = SubscriptionRegistry(clock=lambda: now[0])
        s = BridgeSession(_config(), bundle, "ABC123", registry=registry)
        registry.register("read/signalk/ABC123/foo", s.subscription_ttl)
        now[0] = 61.0
        assert s.sweep_subscriptions() == {"read/signalk/ABC123/foo"}

    @pytest.mark.asyncio
    async def test_sweep_task_runs(self, bundle: StreamBundle, factory: BrokerFactory) -> None:
        now = [0.0]
        registry = SubscriptionRegistry(clock=lambda: now[0])
        registry.register("T", 5)
        now[0] = 10.0
        s = BridgeSession(
            _config(sweep_interval=0.01),
            bundle,
            "ABC123",
            broker_factory=factory,
            registry=registry,
        )
        await s.start()
        await asyncio.sleep(0.05)
        assert "T" not in registry
        await s.stop()


class TestStartSession:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("system_id", [None, ""])
    async def test_missing_system_id(
        self, system_id: str | None, bundle: StreamBundle, factory: BrokerFactory
    ) -> None:
        with pytest.raises(ConfigurationError, match="UUID or MMSI"):
            await start_session(_config(), bundle, system_id, broker_factory=factory)
        assert factory.brokers == []

    @pytest.mark.asyncio
    async def test_missing_broker_address(
        self, bundle: StreamBundle, factory: BrokerFactory
    ) -> None:
        with pytest.raises(ConfigurationError):
            await start_session(
                _config(mqtt_broker_address=None), bundle, "ABC123", broker_factory=factory
            )
        assert factory.brokers == []

    @pytest.mark.asyncio
    async def test_returns_started_session(
        self, bundle: StreamBundle, factory: BrokerFactory
    ) -> None:
        s = await start_session(_config(), bundle, "ABC123", broker_factory=factory)
        assert s.started is True
        assert s.system_id == "ABC123"
        await s.stop()
