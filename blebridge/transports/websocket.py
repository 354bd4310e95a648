"""WebSocket connector implementation using aiohttp."""

from __future__ import annotations

import asyncio
import logging

import aiohttp

from blebridge.transports.base import WebSocketFrame

LOGGER = logging.getLogger(__name__)

_CLOSING_TYPES = frozenset(
    {
        aiohttp.WSMsgType.CLOSE,
        aiohttp.WSMsgType.CLOSING,
        aiohttp.WSMsgType.CLOSED,
        aiohttp.WSMsgType.ERROR,
    }
)


class AiohttpConnection:
    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._session = session
        self._ws = ws

    async def send(self, text: str) -> None:
        await self._ws.send_str(text)

    async def receive(self) -> WebSocketFrame | None:
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                return WebSocketFrame(msg.data)
            if msg.type == aiohttp.WSMsgType.BINARY:
                return WebSocketFrame(bytes(msg.data))
            if msg.type in _CLOSING_TYPES:
                if msg.type == aiohttp.WSMsgType.ERROR:
                    LOGGER.warning("WebSocket error frame: %s", self._ws.exception())
                return None
            # ping/pong are answered by aiohttp itself

    async def close(self) -> None:
        try:
            await self._ws.close()
        finally:
            await self._session.close()


class AiohttpConnector:
    def __init__(self, *, handshake_timeout_s: float = 10.0, heartbeat_s: float | None = 30.0) -> None:
        self._handshake_timeout_s = handshake_timeout_s
        self._heartbeat_s = heartbeat_s

    async def open(self, url: str) -> AiohttpConnection:
        session = aiohttp.ClientSession()
        try:
            ws = await asyncio.wait_for(
                session.ws_connect(url, heartbeat=self._heartbeat_s),
                timeout=self._handshake_timeout_s,
            )
        except BaseException:
            await session.close()
            raise
        return AiohttpConnection(session, ws)
