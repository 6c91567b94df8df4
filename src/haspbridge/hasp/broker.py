"""MQTT broker connection for the openHASP side of the bridge.

Wraps :class:`aiomqtt.Client` in a reconnect loop with a fixed period and
turns every transport change into a :class:`BrokerEvent` delivered to a
single ``on_event`` callback:

- ``CONNECTING`` : a connection attempt is starting
- ``CONNECT``    : the broker accepted the connection (fires on every reconnect)
- ``ERROR``      : a connection attempt failed (:class:`BrokerConnectionError`)
- ``CLOSE``      : an established connection was lost (:class:`BrokerClosedError`)
- ``MESSAGE``    : an inbound message arrived on a subscribed topic

Events are delivered one at a time on the event loop that runs the client,
so the receiver never sees two events concurrently.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import ssl
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote, urlparse

import aiomqtt

from haspbridge._internal.async_utils import cancel_task
from haspbridge.errors import BrokerClosedError, BrokerConnectionError, ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_PERIOD = 5.0
DEFAULT_KEEPALIVE = 60

_PLAIN_SCHEMES = {"mqtt": 1883, "tcp": 1883}
_TLS_SCHEMES = {"mqtts": 8883, "ssl": 8883, "tls": 8883}


class ConnectionState(enum.Enum):
    """Broker connection state as tracked by the session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class BrokerEventKind(enum.Enum):
    CONNECTING = "connecting"
    CONNECT = "connect"
    ERROR = "error"
    CLOSE = "close"
    MESSAGE = "message"


@dataclass(frozen=True, slots=True)
class BrokerEvent:
    """A transport change or inbound message."""

    kind: BrokerEventKind
    error: Exception | None = None
    topic: str | None = None
    payload: bytes = b""


@dataclass(frozen=True, slots=True)
class BrokerAddress:
    """Connection parameters parsed from a broker URL."""

    hostname: str
    port: int
    username: str | None = None
    password: str | None = None
    tls: bool = False

    def __repr__(self) -> str:
        password = "***" if self.password else None
        return (
            f"BrokerAddress(hostname={self.hostname!r}, port={self.port}, "
            f"username={self.username!r}, password={password!r}, tls={self.tls})"
        )


def parse_broker_url(url: str) -> BrokerAddress:
    """Parse ``mqtt://[user:pass@]host[:port]`` (or ``mqtts://``) into a :class:`BrokerAddress`.

    Raises :class:`ConfigurationError` for unsupported schemes or a missing host.
    """
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    if scheme in _PLAIN_SCHEMES:
        tls = False
        default_port = _PLAIN_SCHEMES[scheme]
    elif scheme in _TLS_SCHEMES:
        tls = True
        default_port = _TLS_SCHEMES[scheme]
    else:
        raise ConfigurationError(
            f"Unsupported MQTT broker URL scheme {parsed.scheme!r}. Use mqtt:// or mqtts://."
        )
    if not parsed.hostname:
        raise ConfigurationError(f"MQTT broker URL has no host: {url!r}")
    return BrokerAddress(
        hostname=parsed.hostname,
        port=parsed.port or default_port,
        username=unquote(parsed.username) if parsed.username else None,
        password=unquote(parsed.password) if parsed.password else None,
        tls=tls,
    )


def redact_broker_url(url: str) -> str:
    """Return *url* with its password replaced by ``***``."""
    parsed = urlparse(url)
    if not parsed.password:
        return url
    return url.replace(f":{parsed.password}@", ":***@", 1)


def _tls_context(verify: bool) -> ssl.SSLContext:
    ctx = ssl.create_default_context()
    if not verify:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    return ctx


def _payload_bytes(payload: Any) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return str(payload).encode("utf-8")


class BrokerClient:
    """Reconnecting MQTT client.

    The client does not gate publishes on connection state itself beyond
    having a live connection object; the session decides what to drop.
    Publish and subscribe failures are logged and reported as ``False``,
    never raised.
    """

    def __init__(
        self,
        url: str,
        *,
        client_id: str,
        verify_tls: bool = True,
        keepalive: int = DEFAULT_KEEPALIVE,
        reconnect_period: float = DEFAULT_RECONNECT_PERIOD,
        on_event: Callable[[BrokerEvent], Awaitable[None]] | None = None,
    ) -> None:
        self._address = parse_broker_url(url)
        self._client_id = client_id
        self._verify_tls = verify_tls
        self._keepalive = keepalive
        self._reconnect_period = reconnect_period
        self._on_event = on_event
        self._client: aiomqtt.Client | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = False
        self._publish_count = 0
        self._connect_count = 0

    @property
    def address(self) -> BrokerAddress:
        return self._address

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def reconnect_period(self) -> float:
        return self._reconnect_period

    @property
    def publish_count(self) -> int:
        return self._publish_count

    @property
    def connect_count(self) -> int:
        return self._connect_count

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _build_client(self) -> aiomqtt.Client:
        kwargs: dict[str, Any] = {
            "hostname": self._address.hostname,
            "port": self._address.port,
            "username": self._address.username,
            "password": self._address.password,
            "identifier": self._client_id,
            "keepalive": self._keepalive,
        }
        if self._address.tls:
            kwargs["tls_context"] = _tls_context(self._verify_tls)
            kwargs["tls_insecure"] = not self._verify_tls
        return aiomqtt.Client(**kwargs)

    async def _emit(self, event: BrokerEvent) -> None:
        if self._on_event is None:
            return
        try:
            await self._on_event(event)
        except Exception:
            logger.warning("Broker event handler failed for %s", event.kind.value, exc_info=True)

    async def start(self) -> None:
        """Start the connect/reconnect loop in the background."""
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name=f"mqtt:{self._client_id}")

    async def _run(self) -> None:
        while not self._stopping:
            await self._emit(BrokerEvent(BrokerEventKind.CONNECTING))
            client = self._build_client()
            connected = False
            try:
                async with client:
                    self._client = client
                    connected = True
                    self._connect_count += 1
                    logger.info(
                        "Connected to MQTT broker %s:%d as %s",
                        self._address.hostname,
                        self._address.port,
                        self._client_id,
                    )
                    await self._emit(BrokerEvent(BrokerEventKind.CONNECT))
                    async for message in client.messages:
                        await self._emit(
                            BrokerEvent(
                                BrokerEventKind.MESSAGE,
                                topic=message.topic.value,
                                payload=_payload_bytes(message.payload),
                            )
                        )
            except aiomqtt.MqttError as exc:
                self._client = None
                if self._stopping:
                    break
                if connected:
                    logger.warning("MQTT connection closed: %s", exc)
                    await self._emit(
                        BrokerEvent(BrokerEventKind.CLOSE, error=BrokerClosedError(str(exc)))
                    )
                else:
                    logger.warning("Error connecting to MQTT broker: %s", exc)
                    await self._emit(
                        BrokerEvent(BrokerEventKind.ERROR, error=BrokerConnectionError(str(exc)))
                    )
            else:
                self._client = None
                if self._stopping:
                    break
                await self._emit(BrokerEvent(BrokerEventKind.CLOSE))
            finally:
                self._client = None

            logger.info("Reconnecting to MQTT broker in %.1fs", self._reconnect_period)
            await asyncio.sleep(self._reconnect_period)

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        qos: int = 1,
        retain: bool = True,
    ) -> bool:
        """Publish *payload* to *topic*.  Returns ``True`` if the broker accepted it."""
        client = self._client
        if client is None:
            return False
        try:
            await client.publish(topic, payload, qos=qos, retain=retain)
        except aiomqtt.MqttError:
            logger.warning("Publish to %s failed, discarding", topic, exc_info=True)
            return False
        self._publish_count += 1
        return True

    async def subscribe(self, topic: str, *, qos: int = 1) -> bool:
        """Subscribe to *topic*.  Returns ``True`` on success."""
        client = self._client
        if client is None:
            return False
        try:
            await client.subscribe(topic, qos=qos)
        except aiomqtt.MqttError:
            logger.warning("Subscribe to %s failed", topic, exc_info=True)
            return False
        logger.debug("Subscribed to %s", topic)
        return True

    async def stop(self) -> None:
        """Disconnect from the broker and stop reconnecting."""
        self._stopping = True
        task, self._task = self._task, None
        await cancel_task(task)
        self._client = None
        logger.info("MQTT client %s stopped", self._client_id)
