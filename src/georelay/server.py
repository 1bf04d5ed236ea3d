"""aiohttp application exposing the relay to viewers.

Routes:
- ``GET /api/health``: liveness plus broker link state
- ``GET /api/config``: broker address (credentials masked) and topics
- ``GET /ws``: fan-out channel; JSON frames ``{"event": ..., "data": ...}``
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from aiohttp import WSMsgType, web

from georelay.bus import Subscription
from georelay.relay import RelayService

_logger = logging.getLogger(__name__)

RELAY_KEY: web.AppKey[RelayService] = web.AppKey("relay", RelayService)

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


@web.middleware
async def cors_middleware(
    request: web.Request,
    handler: Callable[[web.Request], Awaitable[web.StreamResponse]],
) -> web.StreamResponse:
    if request.method == "OPTIONS":
        return web.Response(status=204, headers=_CORS_HEADERS)
    response = await handler(request)
    if not response.prepared:
        response.headers.update(_CORS_HEADERS)
    return response


async def health(request: web.Request) -> web.Response:
    return web.json_response(request.app[RELAY_KEY].health())


async def config_view(request: web.Request) -> web.Response:
    return web.json_response(request.app[RELAY_KEY].config_view())


async def _pump(ws: web.WebSocketResponse, subscription: Subscription) -> None:
    async for message in subscription:
        if ws.closed:
            return
        try:
            await ws.send_json(message.to_wire())
        except ConnectionResetError:
            _logger.debug("Viewer %s went away mid-send", subscription.id)
            return


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    relay = request.app[RELAY_KEY]
    ws = web.WebSocketResponse(heartbeat=30.0)
    await ws.prepare(request)

    subscription = relay.bus.subscribe()
    pump = asyncio.create_task(_pump(ws, subscription))
    try:
        async for frame in ws:
            if frame.type == WSMsgType.TEXT:
                try:
                    envelope = json.loads(frame.data)
                except json.JSONDecodeError:
                    _logger.warning("Ignoring non-JSON frame from %s", subscription.id)
                    continue
                if not isinstance(envelope, dict) or not isinstance(envelope.get("event"), str):
                    _logger.warning("Ignoring malformed frame from %s", subscription.id)
                    continue
                try:
                    relay.bus.handle_inbound(subscription, envelope["event"], envelope.get("data"))
                except Exception:
                    _logger.exception("Failed to handle %s from %s", envelope["event"], subscription.id)
            elif frame.type == WSMsgType.ERROR:
                _logger.warning("WebSocket %s closed with error: %s", subscription.id, ws.exception())
    finally:
        relay.bus.unsubscribe(subscription)
        pump.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await pump
    return ws


async def _relay_context(app: web.Application) -> AsyncIterator[None]:
    relay = app[RELAY_KEY]
    await relay.start()
    yield
    await relay.stop()


def create_app(relay: RelayService) -> web.Application:
    """Build the viewer-facing application around *relay*.

    The relay is started and stopped with the application.
    """
    app = web.Application(middlewares=[cors_middleware])
    app[RELAY_KEY] = relay
    app.router.add_get("/api/health", health)
    app.router.add_get("/api/config", config_view)
    app.router.add_get("/ws", websocket_handler)
    app.cleanup_ctx.append(_relay_context)
    return app
