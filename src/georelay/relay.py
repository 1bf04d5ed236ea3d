"""Relay service wiring the broker connector, normalizer and fan-out bus."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any

from georelay._mqtt import BrokerConnector, ConnectionState, parse_broker_address
from georelay._redact import redact_url
from georelay.bus import FanoutBus
from georelay.config import RelayConfig
from georelay.exceptions import BrokerConnectionError, NotConnectedError, RelayConfigError
from georelay.ingestion.mqtt import RawMessage, normalize_message
from georelay.ingestion.normalize import utc_now_iso

_logger = logging.getLogger(__name__)

ConnectorFactory = Callable[..., BrokerConnector]


class RelayService:
    """Relays broker telemetry to every connected viewer.

    Usage::

        async with RelayService(config) as relay:
            subscription = relay.bus.subscribe()
            async for message in subscription:
                ...

    The broker connection is established in the background; an unreachable
    broker is retried on ``config.reconnect_period`` and only ever shows up
    as ``brokerConnected: false`` in :meth:`health`.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        connector_factory: ConnectorFactory = BrokerConnector,
    ) -> None:
        self._config = config
        self._connector_factory = connector_factory
        self._connector: BrokerConnector | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._closing = False
        self.bus = FanoutBus(
            broker=self,
            publish_prefix=config.publish_prefix,
            queue_size=config.queue_size,
        )

    @property
    def config(self) -> RelayConfig:
        return self._config

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> RelayService:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    async def start(self) -> None:
        """Create the broker connector and begin connecting in the background."""
        if self._connector is not None:
            return
        try:
            parse_broker_address(self._config.broker_url)
        except ValueError as exc:
            raise RelayConfigError(f"Invalid broker address: {exc}") from exc
        loop = asyncio.get_running_loop()
        self._closing = False
        self._connector = self._connector_factory(
            loop=loop,
            on_message=self._on_raw_message,
            topics=(self._config.topic_badges, self._config.topic_geofence),
            connect_timeout=self._config.connect_timeout,
            reconnect_period=self._config.reconnect_period,
            keepalive=self._config.keepalive,
        )
        _logger.info("Connecting to MQTT broker %s", redact_url(self._config.broker_url))
        _logger.info(
            "Topics badges=%s geofence=%s",
            self._config.topic_badges,
            self._config.topic_geofence,
        )
        self._connect_task = asyncio.create_task(self._connect_until_up(self._connector))

    async def _connect_until_up(self, connector: BrokerConnector) -> None:
        loop = asyncio.get_running_loop()
        while not self._closing:
            try:
                await loop.run_in_executor(
                    None,
                    connector.connect,
                    self._config.broker_url,
                    self._config.credentials,
                )
                return
            except BrokerConnectionError as exc:
                if self._closing:
                    return
                _logger.warning(
                    "MQTT connect failed (%s); retrying in %gs",
                    exc,
                    self._config.reconnect_period,
                )
            await asyncio.sleep(self._config.reconnect_period)

    async def stop(self) -> None:
        """Tear down the broker connection and disconnect every subscriber."""
        self._closing = True
        task = self._connect_task
        self._connect_task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        connector = self._connector
        self._connector = None
        if connector is not None:
            try:
                await asyncio.get_running_loop().run_in_executor(None, connector.close)
            except Exception:
                _logger.debug("MQTT connector close failed", exc_info=True)
        self.bus.close()

    # ------------------------------------------------------------------
    # Broker link (used by the bus)
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        connector = self._connector
        return connector is not None and connector.is_connected

    @property
    def broker_state(self) -> ConnectionState:
        connector = self._connector
        return connector.state if connector is not None else ConnectionState.CLOSED

    def publish(self, topic: str, payload: bytes) -> None:
        connector = self._connector
        if connector is None:
            raise NotConnectedError("MQTT client not connected")
        connector.publish(topic, payload)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def _on_raw_message(self, raw: RawMessage) -> None:
        message = normalize_message(raw.topic, raw.payload)
        if message is None:
            return
        self.bus.broadcast(message)

    # ------------------------------------------------------------------
    # Health / config surface
    # ------------------------------------------------------------------

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "brokerConnected": self.is_connected,
            "timestamp": utc_now_iso(),
        }

    def config_view(self) -> dict[str, Any]:
        return {
            "broker": redact_url(self._config.broker_url),
            "topics": {
                "badges": self._config.topic_badges,
                "geofence": self._config.topic_geofence,
            },
        }
