from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest

from blebridge.core.model import BleLinkState, BridgeConfig, Characteristic, DiscoveredDevice
from blebridge.transports.base import WebSocketFrame

SERVICE = "0000ffe0-0000-1000-8000-00805f9b34fb"
NOTIFY_CHAR = "0000ffe1-0000-1000-8000-00805f9b34fb"
WRITE_CHAR = "0000ffe2-0000-1000-8000-00805f9b34fb"
OTHER_SERVICE = "0000180f-0000-1000-8000-00805f9b34fb"
OTHER_WRITE_CHAR = "00002a19-0000-1000-8000-00805f9b34fb"


class FakePeripheral:
    def __init__(
        self,
        device_id: str,
        name: str | None = None,
        characteristics: list[Characteristic] | None = None,
    ) -> None:
        self._id = device_id
        self._name = name
        self.characteristics = list(characteristics or [])
        self.values: dict[tuple[str, str], bytes] = {}
        self.writes: list[tuple[str, str, bytes, bool]] = []
        self.notify_callbacks: dict[tuple[str, str], Callable[[bytes], None]] = {}
        self.discover_error: Exception | None = None
        self.write_error: Exception | None = None
        self.disconnect_error: Exception | None = None
        self.disconnected = False

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str | None:
        return self._name

    async def discover(self) -> list[Characteristic]:
        if self.discover_error is not None:
            raise self.discover_error
        return list(self.characteristics)

    async def read(self, service_uuid: str, characteristic_uuid: str) -> bytes:
        return self.values.get((service_uuid, characteristic_uuid), b"")

    async def write(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        data: bytes,
        *,
        response: bool = True,
    ) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.writes.append((service_uuid, characteristic_uuid, data, response))

    async def start_notify(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        callback: Callable[[bytes], None],
    ) -> None:
        self.notify_callbacks[(service_uuid, characteristic_uuid)] = callback

    async def stop_notify(self, service_uuid: str, characteristic_uuid: str) -> None:
        self.notify_callbacks.pop((service_uuid, characteristic_uuid), None)

    async def disconnect(self) -> None:
        self.disconnected = True
        if self.disconnect_error is not None:
            raise self.disconnect_error

    def notify(self, service_uuid: str, characteristic_uuid: str, data: bytes) -> None:
        self.notify_callbacks[(service_uuid, characteristic_uuid)](data)


class FakeRadio:
    def __init__(self, state: BleLinkState = BleLinkState.POWERED_ON) -> None:
        self.state = state
        self.peripherals: dict[str, FakePeripheral] = {}
        self.scanning = False
        self.scan_starts = 0
        self.auto_advertise: list[DiscoveredDevice] = []
        self.connect_error: Exception | None = None
        self.connect_gate: asyncio.Event | None = None
        self.connects: list[str] = []
        self.closed = False
        self._state_callback: Callable[[BleLinkState], None] | None = None
        self._on_device: Callable[[DiscoveredDevice], None] | None = None
        self._disconnect_callbacks: dict[str, Callable[[], None]] = {}

    def on_radio_state(self, callback: Callable[[BleLinkState], None]) -> None:
        self._state_callback = callback
        callback(self.state)

    def set_state(self, state: BleLinkState) -> None:
        self.state = state
        assert self._state_callback is not None
        self._state_callback(state)

    async def start_scan(self, on_device: Callable[[DiscoveredDevice], None]) -> None:
        self.scanning = True
        self.scan_starts += 1
        self._on_device = on_device
        for device in self.auto_advertise:
            on_device(device)

    async def stop_scan(self) -> None:
        self.scanning = False

    def advertise(self, device: DiscoveredDevice) -> None:
        assert self._on_device is not None
        self._on_device(device)

    async def connect(self, device_id: str, on_disconnect: Callable[[], None]) -> FakePeripheral:
        self.connects.append(device_id)
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        if device_id not in self.peripherals:
            raise RuntimeError(f"Device {device_id} not found")
        self._disconnect_callbacks[device_id] = on_disconnect
        return self.peripherals[device_id]

    def drop(self, device_id: str) -> None:
        self._disconnect_callbacks[device_id]()

    async def close(self) -> None:
        self.closed = True


class FakeConnection:
    def __init__(self) -> None:
        self.inbound: asyncio.Queue[WebSocketFrame | None] = asyncio.Queue()
        self.sent: list[str] = []
        self.closed = False
        self.send_error: Exception | None = None

    async def send(self, text: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(text)

    async def receive(self) -> WebSocketFrame | None:
        return await self.inbound.get()

    async def close(self) -> None:
        self.closed = True
        self.inbound.put_nowait(None)

    def push(self, data: str | bytes) -> None:
        self.inbound.put_nowait(WebSocketFrame(data))

    def push_json(self, message_type: str, data: Any = None) -> None:
        self.push(json.dumps({"type": message_type, "data": data, "timestamp": 1}))

    def drop(self) -> None:
        self.inbound.put_nowait(None)

    def messages(self, message_type: str | None = None) -> list[dict[str, Any]]:
        decoded = [json.loads(text) for text in self.sent]
        if message_type is None:
            return decoded
        return [m for m in decoded if m["type"] == message_type]


class FakeConnector:
    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.urls: list[str] = []
        self.fail = False
        self.gate: asyncio.Event | None = None

    @property
    def opens(self) -> int:
        return len(self.urls)

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]

    async def open(self, url: str) -> FakeConnection:
        self.urls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise OSError("connection refused")
        connection = FakeConnection()
        self.connections.append(connection)
        return connection


def make_peripheral(device_id: str = "AA:BB:CC:11:22:33", name: str | None = "Sensor") -> FakePeripheral:
    return FakePeripheral(
        device_id,
        name,
        [
            Characteristic(NOTIFY_CHAR, SERVICE, readable=True, notifiable=True),
            Characteristic(WRITE_CHAR, SERVICE, writable=True),
            Characteristic(OTHER_WRITE_CHAR, OTHER_SERVICE, readable=True, writable=True),
        ],
    )


@pytest.fixture
def peripheral() -> FakePeripheral:
    return make_peripheral()


@pytest.fixture
def radio(peripheral: FakePeripheral) -> FakeRadio:
    fake = FakeRadio()
    fake.peripherals[peripheral.id] = peripheral
    return fake


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def config() -> BridgeConfig:
    return BridgeConfig(
        websocket_url="ws://backend.test/ws",
        reconnect_interval_ms=1,
        max_reconnect_attempts=3,
        scan_duration_ms=50,
    )


@pytest.fixture
def settle() -> Callable[[], Any]:
    async def _settle(rounds: int = 20) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle
