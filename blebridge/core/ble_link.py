"""BLE Link: one peripheral connection and its characteristic traffic."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from blebridge.core.errors import (
    BluetoothUnavailable,
    BridgeError,
    CharacteristicNotFound,
    CharacteristicOperationFailed,
    ConnectionFailed,
    NotConnected,
    ScanFailed,
)
from blebridge.core.events import Listeners, Unsubscribe
from blebridge.core.model import (
    RADIO_STATES,
    BleLinkState,
    BleMessage,
    Characteristic,
    DiscoveredDevice,
)
from blebridge.transports.base import BlePeripheral, BleRadio

LOGGER = logging.getLogger(__name__)

DEFAULT_SCAN_DURATION_MS = 10_000


@dataclass(eq=False)
class ConnectedDevice:
    peripheral: BlePeripheral
    characteristics: tuple[Characteristic, ...]
    subscriptions: set[tuple[str, str]] = field(default_factory=set)

    @property
    def id(self) -> str:
        return self.peripheral.id

    @property
    def name(self) -> str | None:
        return self.peripheral.name

    def find(self, service_uuid: str, characteristic_uuid: str) -> Characteristic:
        service_key = service_uuid.lower()
        char_key = characteristic_uuid.lower()
        for char in self.characteristics:
            if char.service_uuid.lower() == service_key and char.uuid.lower() == char_key:
                return char
        raise CharacteristicNotFound(
            f"Characteristic {characteristic_uuid} not found in service {service_uuid} "
            f"on device {self.id}"
        )

    def first_writable(self) -> Characteristic | None:
        return next((c for c in self.characteristics if c.writable), None)


class BleLink:
    def __init__(self, radio: BleRadio, *, scan_duration_ms: int = DEFAULT_SCAN_DURATION_MS) -> None:
        self._radio = radio
        self._scan_duration_ms = scan_duration_ms
        self._state = BleLinkState.UNKNOWN
        self._radio_state = BleLinkState.UNKNOWN
        self._scanning = False
        self._scan_deadline: asyncio.Task[None] | None = None
        self._discovered: dict[str, DiscoveredDevice] = {}
        self._device: ConnectedDevice | None = None
        self._connect_token: object | None = None

        self._status_listeners: Listeners[BleLinkState] = Listeners("BLE status")
        self._device_listeners: Listeners[list[DiscoveredDevice]] = Listeners("BLE device")
        self._message_listeners: Listeners[BleMessage] = Listeners("BLE message")

        self._radio.on_radio_state(self._on_radio_state)

    @property
    def state(self) -> BleLinkState:
        return self._state

    @property
    def radio_ready(self) -> bool:
        return self._radio_state is BleLinkState.POWERED_ON

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    @property
    def is_connected(self) -> bool:
        return self._state is BleLinkState.CONNECTED and self._device is not None

    @property
    def connected_device(self) -> ConnectedDevice | None:
        return self._device

    @property
    def discovered_devices(self) -> list[DiscoveredDevice]:
        return list(self._discovered.values())

    def characteristics(self) -> list[Characteristic]:
        return list(self._require_device().characteristics)

    def add_status_listener(self, callback: Callable[[BleLinkState], None]) -> Unsubscribe:
        return self._status_listeners.add(callback)

    def add_device_listener(self, callback: Callable[[list[DiscoveredDevice]], None]) -> Unsubscribe:
        return self._device_listeners.add(callback)

    def add_message_listener(self, callback: Callable[[BleMessage], None]) -> Unsubscribe:
        return self._message_listeners.add(callback)

    # -- scanning ---------------------------------------------------------

    async def start_scanning(self, duration_ms: int | None = None) -> bool:
        """Start a scan that stops itself after `duration_ms`.

        Returns False without touching the discovered-device map when a scan
        is already running.
        """
        if self._scanning:
            LOGGER.debug("BLE scan already in progress")
            return False
        self._require_radio()

        timeout_s = (duration_ms or self._scan_duration_ms) / 1000
        self._discovered.clear()
        self._scanning = True
        self._set_state(BleLinkState.SCANNING)
        LOGGER.info("Starting BLE scan for %.1fs", timeout_s)

        try:
            await self._radio.start_scan(self._on_advertisement)
        except asyncio.CancelledError:
            self._scanning = False
            self._set_state(self._rest_state())
            raise
        except Exception as exc:
            self._scanning = False
            self._set_state(self._rest_state())
            raise ScanFailed(f"BLE scan failed to start: {exc}") from exc

        if not self._scanning:
            # stop_scanning() ran while the radio was still starting up
            await self._radio.stop_scan()
            return True
        self._scan_deadline = asyncio.create_task(self._expire_scan(timeout_s))
        return True

    async def stop_scanning(self) -> None:
        if not self._scanning:
            return
        self._scanning = False
        self._cancel_scan_deadline()
        try:
            await self._radio.stop_scan()
        except Exception:
            LOGGER.exception("Error stopping BLE scan")
        if self._state is BleLinkState.SCANNING:
            self._set_state(self._rest_state())
        LOGGER.info("BLE scan stopped (%d devices)", len(self._discovered))

    async def _expire_scan(self, timeout_s: float) -> None:
        await asyncio.sleep(timeout_s)
        self._scan_deadline = None
        await self.stop_scanning()

    def _cancel_scan_deadline(self) -> None:
        task, self._scan_deadline = self._scan_deadline, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _on_advertisement(self, device: DiscoveredDevice) -> None:
        if not self._scanning:
            return
        if self._discovered.get(device.id) == device:
            return
        self._discovered[device.id] = device
        self._device_listeners.emit(self.discovered_devices)

    # -- connection -------------------------------------------------------

    async def connect_to_device(self, device_id: str) -> ConnectedDevice:
        self._require_radio()
        if self._device is not None:
            if self._device.id == device_id:
                return self._device
            await self.disconnect()

        token = object()
        self._connect_token = token
        self._set_state(BleLinkState.CONNECTING)
        LOGGER.info("Connecting to device %s", device_id)

        peripheral: BlePeripheral | None = None
        try:
            peripheral = await self._radio.connect(device_id, lambda: self._on_device_lost(token))
            characteristics = await peripheral.discover()
            if not self.radio_ready:
                raise BluetoothUnavailable(f"Bluetooth radio is {self._radio_state.value}")
        except asyncio.CancelledError:
            await self._abandon(peripheral)
            self._connect_token = None
            self._set_state(self._rest_state())
            raise
        except Exception as exc:
            await self._abandon(peripheral)
            self._connect_token = None
            self._set_state(self._rest_state())
            raise ConnectionFailed(f"Connection to {device_id} failed: {exc}") from exc

        self._device = ConnectedDevice(peripheral=peripheral, characteristics=tuple(characteristics))
        self._set_state(BleLinkState.CONNECTED)
        LOGGER.info(
            "Connected to device %s (%d characteristics)",
            peripheral.name or peripheral.id,
            len(characteristics),
        )
        return self._device

    async def disconnect(self) -> None:
        device = self._device
        if device is None:
            return
        self._device = None
        self._connect_token = None
        self._set_state(BleLinkState.DISCONNECTED)
        try:
            await device.peripheral.disconnect()
        except Exception:
            LOGGER.exception("Error disconnecting from device %s", device.id)
        self._set_state(self._rest_state())
        LOGGER.info("Disconnected from device %s", device.id)

    async def _abandon(self, peripheral: BlePeripheral | None) -> None:
        if peripheral is None:
            return
        try:
            await peripheral.disconnect()
        except Exception:
            LOGGER.debug("Error releasing half-open connection", exc_info=True)

    def _on_device_lost(self, token: object) -> None:
        if self._connect_token is not token or self._device is None:
            return
        LOGGER.info("Device %s disconnected", self._device.id)
        self._device = None
        self._connect_token = None
        self._set_state(BleLinkState.DISCONNECTED)

    # -- characteristics --------------------------------------------------

    async def read_characteristic(self, service_uuid: str, characteristic_uuid: str) -> str:
        """Read a characteristic and return its value base64-encoded."""
        device = self._require_device()
        char = device.find(service_uuid, characteristic_uuid)
        try:
            data = await device.peripheral.read(char.service_uuid, char.uuid)
        except BridgeError:
            raise
        except Exception as exc:
            raise CharacteristicOperationFailed(f"Read of {char.uuid} failed: {exc}") from exc
        return base64.b64encode(data).decode("ascii")

    async def write_characteristic(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        value: str,
        *,
        response: bool = True,
    ) -> None:
        """Write a base64-encoded value to a characteristic."""
        device = self._require_device()
        char = device.find(service_uuid, characteristic_uuid)
        try:
            data = base64.b64decode(value, validate=True)
        except binascii.Error as exc:
            raise CharacteristicOperationFailed(f"Value for {char.uuid} is not valid base64") from exc
        try:
            await device.peripheral.write(char.service_uuid, char.uuid, data, response=response)
        except BridgeError:
            raise
        except Exception as exc:
            raise CharacteristicOperationFailed(f"Write to {char.uuid} failed: {exc}") from exc

    async def subscribe_to_characteristic(
        self,
        service_uuid: str,
        characteristic_uuid: str,
    ) -> Callable[[], Awaitable[None]]:
        """Forward notifications of a characteristic to message listeners.

        Subscribing twice to the same characteristic replaces the first
        subscription. Returns a coroutine function that cancels it.
        """
        device = self._require_device()
        char = device.find(service_uuid, characteristic_uuid)
        key = (char.service_uuid, char.uuid)
        if key in device.subscriptions:
            await self._stop_notify(device, char)

        def _on_value(data: bytes) -> None:
            if self._device is not device:
                return
            self._message_listeners.emit(
                BleMessage(
                    device_id=device.id,
                    service_uuid=char.service_uuid,
                    characteristic_uuid=char.uuid,
                    data=base64.b64encode(data).decode("ascii"),
                )
            )

        try:
            await device.peripheral.start_notify(char.service_uuid, char.uuid, _on_value)
        except BridgeError:
            raise
        except Exception as exc:
            raise CharacteristicOperationFailed(f"Subscribe to {char.uuid} failed: {exc}") from exc
        device.subscriptions.add(key)
        LOGGER.info("Subscribed to %s/%s", char.service_uuid, char.uuid)

        async def _unsubscribe() -> None:
            if self._device is device:
                await self._stop_notify(device, char)

        return _unsubscribe

    async def unsubscribe_from_characteristic(self, service_uuid: str, characteristic_uuid: str) -> None:
        device = self._require_device()
        await self._stop_notify(device, device.find(service_uuid, characteristic_uuid))

    async def _stop_notify(self, device: ConnectedDevice, char: Characteristic) -> None:
        key = (char.service_uuid, char.uuid)
        if key not in device.subscriptions:
            return
        device.subscriptions.discard(key)
        try:
            await device.peripheral.stop_notify(char.service_uuid, char.uuid)
        except Exception:
            LOGGER.exception("Error unsubscribing from %s", char.uuid)

    # -- radio ------------------------------------------------------------

    def _on_radio_state(self, state: BleLinkState) -> None:
        previous, self._radio_state = self._radio_state, state
        if previous is not state:
            LOGGER.info("BLE radio state: %s", state.value)
        if state is BleLinkState.POWERED_ON:
            if self._state in RADIO_STATES:
                self._set_state(BleLinkState.POWERED_ON)
            return

        # Losing power ends the scan and the connection without radio calls.
        if self._scanning:
            self._scanning = False
            self._cancel_scan_deadline()
        self._connect_token = None
        if self._device is not None:
            LOGGER.warning("Radio %s, dropping device %s", state.value, self._device.id)
            self._device = None
            self._set_state(BleLinkState.DISCONNECTED)
        self._set_state(state)

    async def close(self) -> None:
        await self.stop_scanning()
        await self.disconnect()
        try:
            await self._radio.close()
        except Exception:
            LOGGER.exception("Error releasing BLE radio")
        self._status_listeners.clear()
        self._device_listeners.clear()
        self._message_listeners.clear()

    # -- helpers ----------------------------------------------------------

    def _require_radio(self) -> None:
        if not self.radio_ready:
            raise BluetoothUnavailable(f"Bluetooth radio is {self._radio_state.value}")

    def _require_device(self) -> ConnectedDevice:
        if self._device is None:
            raise NotConnected("No device connected")
        return self._device

    def _rest_state(self) -> BleLinkState:
        if self._scanning:
            return BleLinkState.SCANNING
        if self._device is not None:
            return BleLinkState.CONNECTED
        if self.radio_ready:
            return BleLinkState.POWERED_ON
        return self._radio_state

    def _set_state(self, state: BleLinkState) -> None:
        if state is self._state:
            return
        LOGGER.debug("BLE state %s -> %s", self._state.value, state.value)
        self._state = state
        self._status_listeners.emit(state)
