"""Viewer-side drivers feeding bus messages into a :class:`StateStore`.

Each driver owns one consumer task; the store is only ever mutated from
that task.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp
from pydantic import ValidationError

from georelay._redact import redact_for_log
from georelay.bus import Subscription
from georelay.exceptions import NotConnectedError
from georelay.state.events import BusMessage, ViewerRequest
from georelay.state.store import StateStore

_logger = logging.getLogger(__name__)


class ViewerSession:
    """Drive a store from an in-process bus subscription."""

    def __init__(self, store: StateStore, subscription: Subscription) -> None:
        self.store = store
        self._subscription = subscription
        self._task: asyncio.Task[None] | None = None
        self.applied = 0

    async def run(self) -> None:
        """Apply messages until the subscription is closed."""
        async for message in self._subscription:
            if self.store.apply(message):
                self.applied += 1

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._subscription.close()
        task = self._task
        self._task = None
        if task is not None:
            await task


class ViewerClient:
    """Drive a store from a relay WebSocket.

    Usage::

        client = ViewerClient("http://localhost:3001/ws", StateStore())
        async with client:
            await client.send_test_update({"mac": "aa", "latitude": 1.0, "longitude": 2.0})
            await client.run()
    """

    def __init__(
        self,
        url: str,
        store: StateStore,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url
        self.store = store
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    async def __aenter__(self) -> ViewerClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self._ws = await self._session.ws_connect(self._url)
        _logger.info("Connected to relay %s", self._url)

    async def close(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is not None:
            await ws.close()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def run(self) -> None:
        """Apply incoming frames until the relay closes the socket."""
        ws = self._require_ws()
        async for frame in ws:
            if frame.type == aiohttp.WSMsgType.TEXT:
                self._apply_frame(frame.data)
            elif frame.type == aiohttp.WSMsgType.ERROR:
                _logger.warning("Relay WebSocket error: %s", ws.exception())
                break
        _logger.info("Disconnected from relay %s", self._url)

    def _apply_frame(self, raw: str) -> bool:
        try:
            message = BusMessage.model_validate_json(raw)
        except ValidationError:
            _logger.warning("Ignoring malformed relay frame: %s", redact_for_log(raw))
            return False
        return self.store.apply(message)

    def _require_ws(self) -> aiohttp.ClientWebSocketResponse:
        if self._ws is None or self._ws.closed:
            raise NotConnectedError("Viewer is not connected to the relay")
        return self._ws

    async def _send(self, event: ViewerRequest, data: dict[str, Any]) -> None:
        await self._require_ws().send_json({"event": str(event), "data": data})

    async def send_test_update(self, data: dict[str, Any]) -> None:
        await self._send(ViewerRequest.TEST_BADGE_UPDATE, data)

    async def publish_badge_location(
        self,
        mac: str,
        latitude: float,
        longitude: float,
        radius: float | None = None,
    ) -> None:
        data: dict[str, Any] = {"mac": mac, "latitude": latitude, "longitude": longitude}
        if radius is not None:
            data["radius"] = radius
        await self._send(ViewerRequest.PUBLISH_BADGE_LOCATION, data)

    async def request_geofences(self) -> None:
        await self._send(ViewerRequest.REQUEST_GEOFENCES, {})
