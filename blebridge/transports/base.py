"""Transport interfaces.

These are the narrow primitives the links consume: a BLE radio able to scan
and open GATT connections, and a WebSocket connector able to open one socket.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from blebridge.core.model import BleLinkState, Characteristic, DiscoveredDevice


class BlePeripheral(Protocol):
    """An open GATT connection to one peripheral."""

    @property
    def id(self) -> str: ...

    @property
    def name(self) -> str | None: ...

    async def discover(self) -> list[Characteristic]:
        """Return every characteristic of every service, in discovery order."""

    async def read(self, service_uuid: str, characteristic_uuid: str) -> bytes: ...

    async def write(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        data: bytes,
        *,
        response: bool = True,
    ) -> None: ...

    async def start_notify(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        callback: Callable[[bytes], None],
    ) -> None: ...

    async def stop_notify(self, service_uuid: str, characteristic_uuid: str) -> None: ...

    async def disconnect(self) -> None: ...


class BleRadio(Protocol):
    def on_radio_state(self, callback: Callable[[BleLinkState], None]) -> None:
        """Register for power-state changes; the current state is reported immediately."""

    async def start_scan(self, on_device: Callable[[DiscoveredDevice], None]) -> None: ...

    async def stop_scan(self) -> None: ...

    async def connect(
        self,
        device_id: str,
        on_disconnect: Callable[[], None],
    ) -> BlePeripheral: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class WebSocketFrame:
    data: str | bytes

    @property
    def is_binary(self) -> bool:
        return isinstance(self.data, bytes)


class WebSocketConnection(Protocol):
    async def send(self, text: str) -> None: ...

    async def receive(self) -> WebSocketFrame | None:
        """Return the next data frame, or None once the socket is closed."""

    async def close(self) -> None: ...


class WebSocketConnector(Protocol):
    async def open(self, url: str) -> WebSocketConnection: ...
