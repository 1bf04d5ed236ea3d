from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

import pytest
from aiohttp.test_utils import TestClient, TestServer

from georelay.bus import FanoutBus
from georelay.config import RelayConfig
from georelay.exceptions import NotConnectedError
from georelay.ingestion.mqtt import normalize_message
from georelay.relay import RelayService
from georelay.server import create_app
from georelay.state.events import BusEvent
from georelay.state.store import StateStore
from georelay.viewer import ViewerClient, ViewerSession


class _OfflineBroker:
    is_connected = False

    def publish(self, topic: str, payload: bytes) -> None:  # pragma: no cover
        raise AssertionError("should not publish while offline")


def _store() -> StateStore:
    return StateStore(clock=lambda: datetime(2026, 1, 1, tzinfo=UTC))


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_session_applies_bus_messages_in_order() -> None:
    bus = FanoutBus(broker=_OfflineBroker())
    session = ViewerSession(_store(), bus.subscribe())
    session.start()

    for lat in (1.0, 2.0, 3.0):
        message = normalize_message("old/assets/b1/location", f'{{"lat": {lat}, "lon": 0}}'.encode())
        assert message is not None
        bus.broadcast(message)
    bus.emit(BusEvent.GEOFENCE_EVENT, {"id": "b1", "hook": "geofence_b1_lobby", "detect": "exit"})

    await _wait_for(lambda: session.applied == 4)
    await session.stop()

    badge = session.store.get_badge("b1")
    assert badge is not None
    assert [p.lat for p in badge.history] == [1.0, 2.0, 3.0]
    assert badge.status == {"geofence_b1_lobby": "exit"}


@pytest.mark.asyncio
async def test_session_surfaces_publish_errors_as_popups() -> None:
    bus = FanoutBus(broker=_OfflineBroker())
    subscription = bus.subscribe()
    session = ViewerSession(_store(), subscription)
    session.start()

    bus.publish_request(subscription, {"mac": "b1", "latitude": 1, "longitude": 2})

    await _wait_for(lambda: session.applied == 1)
    await session.stop()

    [popup] = session.store.active_notifications()
    assert popup.type == "error"
    assert popup.message == "Failed to publish to MQTT: MQTT client not connected"


class _IdleConnector:
    def __init__(self, **_: object) -> None:
        self.state = "offline"
        self.is_connected = False

    def connect(self, address: str, credentials: object = None) -> None:
        return None

    def publish(self, topic: str, payload: bytes) -> None:  # pragma: no cover
        raise AssertionError("should not publish while offline")

    def close(self) -> None:
        pass


@pytest.mark.asyncio
async def test_websocket_client_drives_store() -> None:
    relay = RelayService(RelayConfig(), connector_factory=_IdleConnector)  # type: ignore[arg-type]
    async with TestClient(TestServer(create_app(relay))) as http:
        client = ViewerClient(str(http.make_url("/ws")), _store(), session=http.session)
        async with client:
            assert client.connected
            runner = asyncio.create_task(client.run())
            await _wait_for(lambda: relay.bus.subscriber_count == 1)

            await client.send_test_update({"mac": "t1", "latitude": 1.0, "longitude": 2.0, "radius": 6})
            await client.publish_badge_location("t1", 1.0, 2.0)
            await client.request_geofences()

            await _wait_for(lambda: client.store.get_badge("t1") is not None and bool(client.store.active_notifications()))

        await asyncio.wait_for(runner, timeout=2)

    badge = client.store.get_badge("t1")
    assert badge is not None
    assert badge.radius == 6.0
    [popup] = client.store.active_notifications()
    assert popup.type == "error"
    assert not client.connected


@pytest.mark.asyncio
async def test_websocket_client_requires_connection() -> None:
    client = ViewerClient("http://127.0.0.1:9/ws", _store())

    with pytest.raises(NotConnectedError):
        await client.request_geofences()
