"""Internal MQTT broker connection runtime."""

from __future__ import annotations

import asyncio
import logging
import secrets
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, cast
from urllib.parse import unquote

import paho.mqtt.client as mqtt

from georelay._constants import CONNECT_TIMEOUT, KEEPALIVE, MQTT_PORT, MQTTS_PORT, RECONNECT_PERIOD
from georelay.config import BrokerCredentials
from georelay.exceptions import BrokerConnectionError, NotConnectedError, PublishFailureError
from georelay.ingestion.mqtt import RawMessage

_TLS_SCHEMES = frozenset({"mqtts", "ssl", "tls"})
_PLAIN_SCHEMES = frozenset({"mqtt", "tcp"})


class ConnectionState(StrEnum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    OFFLINE = "offline"
    CLOSED = "closed"


@dataclass(frozen=True)
class BrokerAddress:
    """Parsed broker endpoint."""

    host: str
    port: int
    tls: bool = False
    username: str | None = None
    password: str | None = None


def parse_broker_address(raw_broker: str) -> BrokerAddress:
    """Parse ``mqtt[s]://[user:pass@]host[:port]`` or a bare ``host[:port]``."""
    value = raw_broker.strip()
    if not value:
        raise ValueError("Broker value is empty")

    scheme = "mqtt"
    if "://" in value:
        scheme, value = value.split("://", 1)
        scheme = scheme.lower()
    if scheme not in _TLS_SCHEMES | _PLAIN_SCHEMES:
        raise ValueError(f"Unsupported broker scheme: {scheme}")
    tls = scheme in _TLS_SCHEMES

    if "/" in value:
        value = value.split("/", 1)[0]

    username: str | None = None
    password: str | None = None
    if "@" in value:
        userinfo, value = value.rsplit("@", 1)
        user, _, secret = userinfo.partition(":")
        username = unquote(user) or None
        password = unquote(secret) or None

    host, _, maybe_port = value.rpartition(":")
    if host and maybe_port.isdigit():
        return BrokerAddress(host, int(maybe_port), tls, username, password)
    return BrokerAddress(value, MQTTS_PORT if tls else MQTT_PORT, tls, username, password)


def _build_client_id() -> str:
    return f"georelay-{secrets.token_hex(4)}"


def _default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
        client_id=client_id,
        protocol=mqtt.MQTTv311,
        clean_session=True,
    )


class BrokerConnector:
    """Threaded paho-mqtt runtime that hands raw messages to an asyncio loop.

    Owns exactly one logical broker connection. Messages are delivered at
    QoS 0 (at most once) to ``on_message`` via ``call_soon_threadsafe``,
    which keeps per-topic arrival order. Unexpected disconnects are retried
    on a fixed period until :meth:`close` is called.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        on_message: Callable[[RawMessage], None],
        topics: Sequence[str],
        connect_timeout: float = CONNECT_TIMEOUT,
        reconnect_period: float = RECONNECT_PERIOD,
        keepalive: int = KEEPALIVE,
        client_factory: Callable[[str], Any] = _default_client_factory,
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._on_message = on_message
        self._topics = tuple(topics)
        self._connect_timeout = connect_timeout
        self._reconnect_period = reconnect_period
        self._keepalive = keepalive
        self._client_factory = client_factory
        self._logger = logger or logging.getLogger(__name__)
        self._client: Any = None
        self._state = ConnectionState.CLOSED
        self._closing = False
        self._terminated = False
        self._connack = threading.Event()
        self._refusal: str | None = None
        self._lock = threading.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        """Whether the broker link is currently up."""
        return self._state == ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState, detail: Any = None) -> None:
        with self._lock:
            previous = self._state
            self._state = state
        if previous == state:
            return
        if detail is not None:
            self._logger.warning("MQTT %s: %s", state, detail)
        elif state == ConnectionState.OFFLINE:
            self._logger.warning("MQTT %s", state)
        else:
            self._logger.info("MQTT %s", state)

    def connect(self, address: str, credentials: BrokerCredentials | None = None) -> BrokerAddress:
        """Connect, subscribe, and start the network loop.

        Blocks until the broker acknowledges the connection. Raises
        :class:`BrokerConnectionError` when the broker is unreachable within
        the connect timeout or refuses the connection.
        """
        if self._terminated:
            raise BrokerConnectionError("Broker connector is closed", address=address)
        self._stop_client(ConnectionState.CLOSED)
        parsed = parse_broker_address(address)
        if credentials is None and parsed.username and parsed.password:
            credentials = BrokerCredentials(parsed.username, parsed.password)

        client = self._client_factory(_build_client_id())
        client.enable_logger(self._logger)
        if credentials is not None:
            client.username_pw_set(credentials.username, credentials.password)
            self._logger.info("Using MQTT authentication user=%s", credentials.username)
        else:
            self._logger.info("No MQTT authentication (anonymous)")
        if parsed.tls:
            client.tls_set()
        client.reconnect_delay_set(min_delay=self._reconnect_period, max_delay=self._reconnect_period)
        client.connect_timeout = self._connect_timeout

        client.on_connect = self._handle_connect
        client.on_connect_fail = self._handle_connect_fail
        client.on_disconnect = self._handle_disconnect
        client.on_message = self._handle_message
        client.on_subscribe = self._handle_subscribe

        self._closing = False
        self._refusal = None
        self._connack.clear()
        self._set_state(ConnectionState.CONNECTING)
        self._logger.debug(
            "MQTT connect requested host=%s port=%s tls=%s topics=%s",
            parsed.host,
            parsed.port,
            parsed.tls,
            self._topics,
        )

        try:
            client.connect(parsed.host, parsed.port, keepalive=self._keepalive)
        except (OSError, ValueError) as exc:
            self._set_state(ConnectionState.OFFLINE, exc)
            raise BrokerConnectionError(
                f"Cannot reach MQTT broker {parsed.host}:{parsed.port}: {exc}",
                address=address,
            ) from exc

        self._client = client
        client.loop_start()

        if not self._connack.wait(self._connect_timeout):
            self._stop_client(ConnectionState.OFFLINE)
            raise BrokerConnectionError(
                f"MQTT broker {parsed.host}:{parsed.port} did not answer within {self._connect_timeout:g}s",
                address=address,
            )
        if self._refusal is not None:
            refusal = self._refusal
            self._stop_client(ConnectionState.OFFLINE)
            raise BrokerConnectionError(f"MQTT broker refused connection: {refusal}", address=address)
        if self._terminated:
            self._stop_client(ConnectionState.CLOSED)
            raise BrokerConnectionError("Broker connector closed while connecting", address=address)
        return parsed

    def publish(self, topic: str, payload: bytes) -> None:
        """Publish at QoS 0.

        Raises :class:`NotConnectedError` when the link is down and
        :class:`PublishFailureError` when the client rejects the message,
        including topics paho refuses outright.
        """
        client = self._client
        if client is None or not self.is_connected:
            raise NotConnectedError("MQTT client not connected")
        try:
            info = client.publish(topic, payload, qos=0)
        except ValueError as exc:
            # paho rejects wildcard topics and oversized payloads up front.
            raise PublishFailureError(str(exc), topic=topic) from exc
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishFailureError(mqtt.error_string(info.rc), topic=topic)

    def close(self) -> None:
        """Disconnect and stop the network loop; no further reconnects."""
        self._terminated = True
        self._stop_client(ConnectionState.CLOSED)
        self._set_state(ConnectionState.CLOSED)

    def _stop_client(self, final_state: ConnectionState) -> None:
        client = self._client
        self._client = None
        self._closing = True
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()
            self._set_state(final_state)
            self._logger.debug("MQTT network loop stopped")

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _handle_connect(
        self,
        client: Any,
        _userdata: Any,
        _flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if reason_code.value != 0:
            self._refusal = str(reason_code)
            self._logger.warning("MQTT connect failed: %s", reason_code)
            self._connack.set()
            return
        self._set_state(ConnectionState.CONNECTED)
        for topic in self._topics:
            result, _mid = client.subscribe(topic, qos=0)
            if result != mqtt.MQTT_ERR_SUCCESS:
                self._logger.error("Error subscribing to topic %s: %s", topic, mqtt.error_string(result))
            else:
                self._logger.info("Subscribed to topic %s", topic)
        self._connack.set()

    def _handle_connect_fail(self, _client: Any, _userdata: Any) -> None:
        if not self._closing:
            self._set_state(ConnectionState.OFFLINE, "broker unreachable, retrying")

    def _handle_disconnect(
        self,
        _client: Any,
        _userdata: Any,
        _disconnect_flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if self._closing:
            return
        self._set_state(ConnectionState.RECONNECTING, reason_code)

    def _handle_subscribe(self, _client: Any, _userdata: Any, mid: Any, reason_codes: Any, _properties: Any) -> None:
        self._logger.debug("MQTT subscription acknowledged mid=%s codes=%s", mid, reason_codes)

    def _handle_message(self, _client: Any, _userdata: Any, msg: Any) -> None:
        message = RawMessage(topic=msg.topic, payload=bytes(msg.payload))
        try:
            self._loop.call_soon_threadsafe(self._on_message, message)
        except RuntimeError:
            self._logger.debug("Dropping MQTT message on %s: event loop closed", msg.topic)
