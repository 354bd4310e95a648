"""Bridge coordinator relaying between the BLE Link and the WebSocket Link."""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Callable
from typing import Any

from blebridge.core.ble_link import BleLink
from blebridge.core.commands import (
    Command,
    Connect,
    Disconnect,
    ReadCharacteristic,
    ScanStart,
    ScanStop,
    SubscribeCharacteristic,
    UnsubscribeCharacteristic,
    WriteCharacteristic,
    parse_command,
)
from blebridge.core.errors import (
    CommandValidationError,
    ConnectError,
    NoBleDeviceConnected,
    NoWritableCharacteristic,
)
from blebridge.core.events import Listeners, Unsubscribe
from blebridge.core.model import (
    BleLinkState,
    BleMessage,
    BridgeConfig,
    BridgeEvent,
    BridgeMessage,
    BridgeStatus,
    ControlMessage,
    DiscoveredDevice,
    MessageSource,
    RawMessage,
    WebSocketLinkState,
)
from blebridge.core.websocket_link import WebSocketLink
from blebridge.transports.base import BleRadio, WebSocketConnector

LOGGER = logging.getLogger(__name__)


class BridgeCoordinator:
    """Owns one BLE Link and one WebSocket Link and translates between them.

    Inbound WebSocket traffic is queued and handled one message at a time in
    arrival order. Control commands drive the BLE Link; raw payloads are
    written to the first writable characteristic of the connected device.
    BLE notifications travel the other way as `characteristic_notification`
    messages. Any transport state change republishes the combined status.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        radio: BleRadio,
        connector: WebSocketConnector,
    ) -> None:
        self.config = config
        self._ble = BleLink(radio, scan_duration_ms=config.scan_duration_ms)
        self._ws = WebSocketLink(
            config.websocket_url,
            connector,
            auto_reconnect=config.auto_reconnect,
            reconnect_interval_ms=config.reconnect_interval_ms,
            max_reconnect_attempts=config.max_reconnect_attempts,
        )
        self._active = False
        self._inbox: asyncio.Queue[ControlMessage | RawMessage] = asyncio.Queue()
        self._dispatcher: asyncio.Task[None] | None = None

        self._status_listeners: Listeners[BridgeStatus] = Listeners("bridge status")
        self._message_listeners: Listeners[BridgeMessage] = Listeners("bridge message")

        self._subscriptions: list[Unsubscribe] = [
            self._ws.add_control_listener(self._enqueue),
            self._ws.add_raw_listener(self._enqueue),
            self._ws.add_status_listener(self._on_transport_state),
            self._ble.add_status_listener(self._on_transport_state),
            self._ble.add_message_listener(self._on_ble_message),
            self._ble.add_device_listener(self._on_devices),
        ]

    @property
    def ble_link(self) -> BleLink:
        return self._ble

    @property
    def websocket_link(self) -> WebSocketLink:
        return self._ws

    @property
    def is_active(self) -> bool:
        return self._active

    def status(self) -> BridgeStatus:
        return BridgeStatus(
            websocket=self._ws.state,
            ble=self._ble.state,
            bridge_active=self._active,
        )

    def is_fully_connected(self) -> bool:
        # BLE must be idle and ready to accept device_connect, not holding a device.
        return (
            self._active
            and self._ws.state is WebSocketLinkState.CONNECTED
            and self._ble.state is BleLinkState.POWERED_ON
        )

    def add_status_listener(self, callback: Callable[[BridgeStatus], None]) -> Unsubscribe:
        return self._status_listeners.add(callback)

    def add_message_listener(self, callback: Callable[[BridgeMessage], None]) -> Unsubscribe:
        return self._message_listeners.add(callback)

    async def start_bridge(self) -> None:
        LOGGER.info("Starting bridge to %s", self.config.websocket_url)
        try:
            await self._ws.connect()
        except ConnectError:
            LOGGER.error("Failed to start bridge: WebSocket connect failed")
            self._status_listeners.emit(self.status())
            raise
        self._active = True
        self._ensure_dispatcher()
        self._publish_status()
        LOGGER.info("Bridge started")

    async def stop_bridge(self) -> None:
        LOGGER.info("Stopping bridge")
        self._active = False
        self._stop_dispatcher()
        try:
            await self._ws.disconnect()
        except Exception:
            LOGGER.exception("Error disconnecting WebSocket during teardown")
        try:
            await self._ble.stop_scanning()
            await self._ble.disconnect()
        except Exception:
            LOGGER.exception("Error disconnecting BLE during teardown")
        self._publish_status()
        LOGGER.info("Bridge stopped")

    async def close(self) -> None:
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []
        await self.stop_bridge()
        await self._ble.close()
        self._status_listeners.clear()
        self._message_listeners.clear()

    # -- inbound WebSocket traffic ----------------------------------------

    def _enqueue(self, message: ControlMessage | RawMessage) -> None:
        self._inbox.put_nowait(message)
        self._ensure_dispatcher()

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch_loop())

    def _stop_dispatcher(self) -> None:
        task, self._dispatcher = self._dispatcher, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._inbox = asyncio.Queue()

    async def _dispatch_loop(self) -> None:
        inbox = self._inbox
        while True:
            message = await inbox.get()
            if isinstance(message, ControlMessage):
                await self.handle_control_message(message)
            else:
                await self.handle_raw_message(message)

    async def handle_control_message(self, message: ControlMessage) -> None:
        """Run one control command; failures become `error` bridge messages."""
        self._trace("Received WebSocket message: %s", message.type)
        try:
            command = parse_command(message)
        except CommandValidationError as exc:
            LOGGER.warning("Dropping malformed control message: %s", exc)
            return
        if command is None:
            LOGGER.info("Unknown WebSocket message type: %s", message.type)
            return

        try:
            await self._execute(command)
        except Exception as exc:
            LOGGER.warning("Error handling %s: %s", message.type, exc)
            self._publish(
                BridgeEvent.ERROR,
                {"message": str(exc), "originalMessage": message.to_dict()},
            )

    async def _execute(self, command: Command) -> None:
        ble = self._ble
        if isinstance(command, ScanStart):
            await ble.start_scanning(command.duration_ms or self.config.scan_duration_ms)
        elif isinstance(command, ScanStop):
            await ble.stop_scanning()
        elif isinstance(command, Connect):
            device = await ble.connect_to_device(command.device_id)
            self._publish(
                BridgeEvent.DEVICE_CONNECTED,
                {"deviceId": command.device_id, "device": {"id": device.id, "name": device.name}},
            )
        elif isinstance(command, Disconnect):
            await ble.disconnect()
            self._publish(BridgeEvent.DEVICE_DISCONNECTED, {})
        elif isinstance(command, ReadCharacteristic):
            value = await ble.read_characteristic(command.service_uuid, command.characteristic_uuid)
            self._publish(
                BridgeEvent.CHARACTERISTIC_READ,
                {
                    "serviceUuid": command.service_uuid,
                    "characteristicUuid": command.characteristic_uuid,
                    "value": value,
                },
            )
        elif isinstance(command, WriteCharacteristic):
            await ble.write_characteristic(
                command.service_uuid, command.characteristic_uuid, command.value
            )
        elif isinstance(command, SubscribeCharacteristic):
            await ble.subscribe_to_characteristic(command.service_uuid, command.characteristic_uuid)
        elif isinstance(command, UnsubscribeCharacteristic):
            await ble.unsubscribe_from_characteristic(
                command.service_uuid, command.characteristic_uuid
            )

    async def handle_raw_message(self, message: RawMessage) -> None:
        self._trace("Received raw WebSocket payload (%d chars)", len(message.data))
        try:
            await self.forward_raw(message)
        except Exception as exc:
            LOGGER.warning("Error forwarding raw payload: %s", exc)
            self._publish(
                BridgeEvent.ERROR,
                {
                    "message": str(exc),
                    "originalMessage": {"data": message.data, "isBinary": message.is_binary},
                },
            )

    async def forward_raw(self, message: RawMessage) -> None:
        """Write a raw payload to the first writable characteristic found."""
        device = self._ble.connected_device
        if device is None:
            raise NoBleDeviceConnected("No BLE device connected")
        target = device.first_writable()
        if target is None:
            raise NoWritableCharacteristic(f"Device {device.id} exposes no writable characteristic")

        if message.is_binary:
            value = message.data
        else:
            value = base64.b64encode(message.data.encode("utf-8")).decode("ascii")
        await self._ble.write_characteristic(target.service_uuid, target.uuid, value)

    # -- BLE events and status --------------------------------------------

    def _on_ble_message(self, message: BleMessage) -> None:
        self._trace("Received BLE notification from %s", message.characteristic_uuid)
        payload = {
            "deviceId": message.device_id,
            "serviceUuid": message.service_uuid,
            "characteristicUuid": message.characteristic_uuid,
            "data": message.data,
            "timestamp": message.timestamp,
        }
        try:
            self._publish(BridgeEvent.CHARACTERISTIC_NOTIFICATION, payload, source=MessageSource.BLE)
        except Exception as exc:
            LOGGER.warning("Error relaying BLE notification: %s", exc)
            self._publish(BridgeEvent.ERROR, {"message": str(exc), "originalMessage": payload})

    def _on_devices(self, devices: list[DiscoveredDevice]) -> None:
        self._publish(
            BridgeEvent.DEVICE_DISCOVERED,
            {"devices": [device.to_dict() for device in devices]},
            source=MessageSource.BLE,
        )

    def _on_transport_state(self, _state: Any) -> None:
        self._publish_status()

    def _publish_status(self) -> None:
        status = self.status()
        self._status_listeners.emit(status)
        self._publish(BridgeEvent.STATUS_UPDATE, status.to_dict())

    def _publish(
        self,
        event: BridgeEvent,
        payload: Any,
        *,
        source: MessageSource = MessageSource.BRIDGE,
    ) -> None:
        message = BridgeMessage(type=event, payload=payload, source=source)
        if self._ws.is_connected:
            self._ws.send({"type": event.value, "data": payload, "timestamp": message.timestamp})
        self._message_listeners.emit(message)

    def _trace(self, msg: str, *args: Any) -> None:
        LOGGER.log(logging.INFO if self.config.log_messages else logging.DEBUG, msg, *args)
