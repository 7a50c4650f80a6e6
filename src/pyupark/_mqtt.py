"""Internal MQTT runtime for the hardware message bus.

paho-mqtt runs its network loop on a background thread. Inbound messages
are routed into :class:`pyupark.ingestion.mqtt.HardwareMessage` records on
that thread and handed to the asyncio loop with ``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from pyupark.config import UparkConfig
from pyupark.exceptions import UparkTransportError
from pyupark.ingestion.mqtt import INBOUND_SUFFIXES, HardwareMessage, build_hardware_message

_RECONNECT_MIN_DELAY = 1
_RECONNECT_MAX_DELAY = 60


@dataclass(frozen=True)
class MqttBootstrap:
    """Broker data required to connect to the hardware bus."""

    broker_host: str
    broker_port: int
    topic_prefix: str
    client_id: str | None = None
    tls: bool = False

    @classmethod
    def from_config(cls, config: UparkConfig, *, client_id: str | None = None) -> MqttBootstrap:
        return cls(
            broker_host=config.mqtt_broker_host,
            broker_port=config.mqtt_broker_port,
            topic_prefix=config.topic_prefix,
            client_id=client_id,
            tls=config.mqtt_tls,
        )

    @property
    def subscriptions(self) -> list[str]:
        return [self.topic(suffix) for suffix in INBOUND_SUFFIXES]

    def topic(self, suffix: str) -> str:
        return f"{self.topic_prefix}{suffix}"


class UparkMqttRuntime:
    """Threaded paho-mqtt runtime feeding hardware messages onto an asyncio loop.

    Also serves as the engine's :class:`pyupark.notify.HardwareLink`.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        on_message: Callable[[HardwareMessage], None],
        keepalive: int = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._on_message = on_message
        self._keepalive = keepalive
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._bootstrap: MqttBootstrap | None = None
        self._connected = False

    @property
    def is_running(self) -> bool:
        return self._client is not None

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _handle_connect(
        self, client: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _props: Any
    ) -> None:
        bootstrap = self._bootstrap
        if reason_code.value != 0 or bootstrap is None:
            self._logger.warning("MQTT connect refused: %s", reason_code)
            return
        self._connected = True
        # No persistent session: subscribe again after every reconnect.
        client.subscribe([(topic, 0) for topic in bootstrap.subscriptions])
        self._logger.info("Hardware bus connected at %s:%s", bootstrap.broker_host, bootstrap.broker_port)

    def _handle_disconnect(
        self, _client: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _props: Any
    ) -> None:
        was_connected = self._connected
        self._connected = False
        if was_connected and self._client is not None:
            self._logger.warning("Hardware bus connection lost: %s", reason_code)

    def _handle_message(self, _client: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        bootstrap = self._bootstrap
        if bootstrap is None:
            return
        try:
            message = build_hardware_message(msg.topic, msg.payload, bootstrap.topic_prefix)
            self._loop.call_soon_threadsafe(self._on_message, message)
        except Exception:
            self._logger.debug("Dropping MQTT message on %s", msg.topic, exc_info=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, bootstrap: MqttBootstrap) -> None:
        """Connect to the broker and start the network thread.

        Raises whatever paho raises when the initial connect fails; later
        disconnects are retried by paho with backoff.
        """
        self.stop()
        self._logger.debug("Starting hardware bus client for %s:%s", bootstrap.broker_host, bootstrap.broker_port)

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=bootstrap.client_id or "",
        )
        client.enable_logger(self._logger)
        client.reconnect_delay_set(min_delay=_RECONNECT_MIN_DELAY, max_delay=_RECONNECT_MAX_DELAY)
        if bootstrap.tls:
            client.tls_set()
        client.on_connect = self._handle_connect
        client.on_disconnect = self._handle_disconnect
        client.on_message = self._handle_message

        self._bootstrap = bootstrap
        try:
            client.connect(bootstrap.broker_host, bootstrap.broker_port, keepalive=self._keepalive)
        except Exception:
            self._bootstrap = None
            raise
        client.loop_start()
        self._client = client

    def stop(self) -> None:
        client = self._client
        self._client = None
        self._connected = False
        self._bootstrap = None
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("Hardware bus client stopped")

    # ------------------------------------------------------------------
    # HardwareLink
    # ------------------------------------------------------------------

    async def send(self, topic_suffix: str, payload: str) -> None:
        """Publish *payload* on ``<prefix><topic_suffix>``."""
        client = self._client
        bootstrap = self._bootstrap
        if client is None or bootstrap is None:
            raise UparkTransportError("MQTT runtime is not running", topic=topic_suffix)
        topic = bootstrap.topic(topic_suffix)
        info = client.publish(topic, payload, qos=0)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise UparkTransportError(f"MQTT publish to {topic} failed rc={info.rc}", topic=topic)
        self._logger.debug("Published %s=%s", topic, payload)
