"""Stable public API for building tooling on top of blebridge.

This module is the supported integration surface for third-party callers.
Applications build one coordinator with `create_bridge` at their composition
root and pass it to whatever observes or drives it.
"""

from __future__ import annotations

from blebridge.core.ble_link import BleLink, ConnectedDevice
from blebridge.core.bridge import BridgeCoordinator
from blebridge.core.config import load_config
from blebridge.core.errors import (
    BluetoothUnavailable,
    BridgeError,
    CharacteristicNotFound,
    CharacteristicOperationFailed,
    CommandValidationError,
    ConfigError,
    ConnectError,
    ConnectionFailed,
    NoBleDeviceConnected,
    NotConnected,
    NoWritableCharacteristic,
    ScanFailed,
    TransportError,
)
from blebridge.core.model import (
    BleLinkState,
    BleMessage,
    BridgeConfig,
    BridgeEvent,
    BridgeMessage,
    BridgeStatus,
    Characteristic,
    ControlMessage,
    DiscoveredDevice,
    MessageSource,
    RawMessage,
    WebSocketLinkState,
)
from blebridge.core.websocket_link import WebSocketLink
from blebridge.transports.base import BleRadio, WebSocketConnector
from blebridge.transports.ble_gatt import BleakRadio
from blebridge.transports.websocket import AiohttpConnector

__all__ = [
    "BluetoothUnavailable",
    "BridgeError",
    "CharacteristicNotFound",
    "CharacteristicOperationFailed",
    "CommandValidationError",
    "ConfigError",
    "ConnectError",
    "ConnectionFailed",
    "NoBleDeviceConnected",
    "NotConnected",
    "NoWritableCharacteristic",
    "ScanFailed",
    "TransportError",
    "BleLinkState",
    "BleMessage",
    "BridgeConfig",
    "BridgeEvent",
    "BridgeMessage",
    "BridgeStatus",
    "Characteristic",
    "ControlMessage",
    "DiscoveredDevice",
    "MessageSource",
    "RawMessage",
    "WebSocketLinkState",
    "BleLink",
    "ConnectedDevice",
    "WebSocketLink",
    "BridgeCoordinator",
    "BleakRadio",
    "AiohttpConnector",
    "create_bridge",
    "load_config",
]


def create_bridge(
    config: BridgeConfig,
    *,
    radio: BleRadio | None = None,
    connector: WebSocketConnector | None = None,
) -> BridgeCoordinator:
    """Build a coordinator wired to bleak and aiohttp unless primitives are given."""
    return BridgeCoordinator(
        config,
        radio=radio or BleakRadio(),
        connector=connector or AiohttpConnector(),
    )
