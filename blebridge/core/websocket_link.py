"""WebSocket Link: one socket, inbound classification and reconnection.

Every inbound frame lands on exactly one channel. Text that parses as a JSON
object with a string `type` goes to control listeners; everything else,
including every binary frame, goes to raw listeners.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import math
from collections.abc import Callable
from typing import Any

from blebridge.core.errors import ConnectError
from blebridge.core.events import Listeners, Unsubscribe
from blebridge.core.model import ControlMessage, RawMessage, WebSocketLinkState, now_ms
from blebridge.transports.base import WebSocketConnection, WebSocketConnector, WebSocketFrame

LOGGER = logging.getLogger(__name__)

DEFAULT_RECONNECT_INTERVAL_MS = 5_000
DEFAULT_MAX_RECONNECT_ATTEMPTS = 5


def classify_frame(frame: WebSocketFrame) -> ControlMessage | RawMessage:
    if frame.is_binary:
        return RawMessage(data=base64.b64encode(frame.data).decode("ascii"), is_binary=True)

    text = frame.data
    try:
        parsed = json.loads(text)
    except ValueError:
        return RawMessage(data=text)
    if not isinstance(parsed, dict) or not isinstance(parsed.get("type"), str):
        return RawMessage(data=text)

    timestamp = parsed.get("timestamp")
    if (
        not isinstance(timestamp, (int, float))
        or isinstance(timestamp, bool)
        or not math.isfinite(timestamp)
    ):
        # json accepts NaN and overflows 1e400 to inf
        timestamp = now_ms()
    return ControlMessage(type=parsed["type"], data=parsed.get("data"), timestamp=int(timestamp))


def _consume_outcome(task: asyncio.Future[None]) -> None:
    # Handshakes abandoned by disconnect() may finish with nobody awaiting them.
    if not task.cancelled():
        task.exception()


class _Session:
    """State tied to one open socket."""

    def __init__(self, connection: WebSocketConnection) -> None:
        self.connection = connection
        self.outbox: asyncio.Queue[str] = asyncio.Queue()
        self.reader: asyncio.Task[None] | None = None
        self.writer: asyncio.Task[None] | None = None

    def cancel(self) -> None:
        for task in (self.reader, self.writer):
            if task is not None and task is not asyncio.current_task():
                task.cancel()


class WebSocketLink:
    def __init__(
        self,
        url: str,
        connector: WebSocketConnector,
        *,
        auto_reconnect: bool = True,
        reconnect_interval_ms: int = DEFAULT_RECONNECT_INTERVAL_MS,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
    ) -> None:
        self.url = url
        self._connector = connector
        self._auto_reconnect = auto_reconnect
        self._reconnect_interval_s = reconnect_interval_ms / 1000
        self._max_reconnect_attempts = max_reconnect_attempts

        self._state = WebSocketLinkState.DISCONNECTED
        self._session: _Session | None = None
        self._opening: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._reconnect_attempts = 0

        self._status_listeners: Listeners[WebSocketLinkState] = Listeners("WebSocket status")
        self._control_listeners: Listeners[ControlMessage] = Listeners("WebSocket control")
        self._raw_listeners: Listeners[RawMessage] = Listeners("WebSocket raw")

    @property
    def state(self) -> WebSocketLinkState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is WebSocketLinkState.CONNECTED and self._session is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None

    def add_status_listener(self, callback: Callable[[WebSocketLinkState], None]) -> Unsubscribe:
        return self._status_listeners.add(callback)

    def add_control_listener(self, callback: Callable[[ControlMessage], None]) -> Unsubscribe:
        return self._control_listeners.add(callback)

    def add_raw_listener(self, callback: Callable[[RawMessage], None]) -> Unsubscribe:
        return self._raw_listeners.add(callback)

    async def connect(self) -> None:
        """Open the socket, or join the handshake already in flight.

        Resets the reconnect budget. Raises ConnectError if the handshake fails.
        """
        if self.is_connected:
            return
        if self._opening is None:
            self._cancel_reconnect()
            self._reconnect_attempts = 0
        await self._open()

    async def disconnect(self) -> None:
        """Close the socket and suppress reconnection until connect() is called."""
        self._cancel_reconnect()
        opening, self._opening = self._opening, None
        if opening is not None:
            opening.cancel()

        session, self._session = self._session, None
        if session is not None:
            session.cancel()
            try:
                await session.connection.close()
            except Exception:
                LOGGER.exception("Error closing WebSocket %s", self.url)
        self._set_state(WebSocketLinkState.DISCONNECTED)

    def send(self, message: dict[str, Any]) -> bool:
        """Queue a structured message; False when the socket is not open."""
        session = self._session
        if session is None or self._state is not WebSocketLinkState.CONNECTED:
            return False
        session.outbox.put_nowait(json.dumps(message))
        return True

    def send_data(self, message_type: str, payload: Any) -> bool:
        return self.send({"type": message_type, "data": payload, "timestamp": now_ms()})

    async def _open(self) -> None:
        if self._opening is None:
            self._opening = asyncio.ensure_future(self._handshake())
            self._opening.add_done_callback(_consume_outcome)
        opening = self._opening
        try:
            await asyncio.shield(opening)
        finally:
            if opening.done() and self._opening is opening:
                self._opening = None

    async def _handshake(self) -> None:
        self._set_state(WebSocketLinkState.CONNECTING)
        LOGGER.info("WebSocket connecting to %s", self.url)
        try:
            connection = await self._connector.open(self.url)
        except asyncio.CancelledError:
            raise ConnectError(f"WebSocket connect to {self.url} aborted") from None
        except Exception as exc:
            self._set_state(WebSocketLinkState.ERROR)
            raise ConnectError(f"WebSocket connect to {self.url} failed: {exc}") from exc

        session = _Session(connection)
        session.reader = asyncio.create_task(self._read_loop(session))
        session.writer = asyncio.create_task(self._write_loop(session))
        self._session = session
        self._reconnect_attempts = 0
        self._set_state(WebSocketLinkState.CONNECTED)
        LOGGER.info("WebSocket connected to %s", self.url)

    async def _read_loop(self, session: _Session) -> None:
        try:
            while True:
                frame = await session.connection.receive()
                if frame is None:
                    break
                try:
                    self._dispatch(frame)
                except Exception:
                    LOGGER.exception("Dropping WebSocket frame that could not be dispatched")
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("WebSocket receive failed")
        self._on_closed(session)

    async def _write_loop(self, session: _Session) -> None:
        while True:
            text = await session.outbox.get()
            try:
                await session.connection.send(text)
            except Exception:
                LOGGER.exception("WebSocket send failed")
                break
        if self._session is not session:
            return
        self._on_closed(session)
        try:
            await session.connection.close()
        except Exception:
            LOGGER.exception("Error closing WebSocket %s", self.url)

    def _dispatch(self, frame: WebSocketFrame) -> None:
        message = classify_frame(frame)
        if isinstance(message, ControlMessage):
            self._control_listeners.emit(message)
        else:
            self._raw_listeners.emit(message)

    def _on_closed(self, session: _Session) -> None:
        if self._session is not session:
            # closed by disconnect()
            return
        self._session = None
        session.cancel()
        LOGGER.info("WebSocket %s closed", self.url)
        self._set_state(WebSocketLinkState.DISCONNECTED)
        if self._auto_reconnect:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_attempts >= self._max_reconnect_attempts:
            LOGGER.warning(
                "WebSocket reconnect budget exhausted after %d attempts", self._reconnect_attempts
            )
            return
        self._reconnect_attempts += 1
        self._reconnect_task = asyncio.create_task(self._reconnect_after(self._reconnect_attempts))

    async def _reconnect_after(self, attempt: int) -> None:
        await asyncio.sleep(self._reconnect_interval_s)
        self._reconnect_task = None
        LOGGER.info(
            "Attempting to reconnect (%d/%d)", attempt, self._max_reconnect_attempts
        )
        try:
            await self._open()
        except ConnectError as exc:
            LOGGER.info("%s", exc)
            if self._state is WebSocketLinkState.ERROR:
                self._schedule_reconnect()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _set_state(self, state: WebSocketLinkState) -> None:
        if state is self._state:
            return
        LOGGER.debug("WebSocket state %s -> %s", self._state.value, state.value)
        self._state = state
        self._status_listeners.emit(state)
