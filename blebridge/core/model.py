"""Core data models shared by the links, the coordinator and the CLI."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def now_ms() -> int:
    return int(time.time() * 1000)


class BleLinkState(str, Enum):
    UNKNOWN = "unknown"
    UNSUPPORTED = "unsupported"
    UNAUTHORIZED = "unauthorized"
    POWERED_OFF = "powered_off"
    POWERED_ON = "powered_on"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


# States reported by the radio itself, as opposed to link lifecycle states.
RADIO_STATES = frozenset(
    {
        BleLinkState.UNKNOWN,
        BleLinkState.UNSUPPORTED,
        BleLinkState.UNAUTHORIZED,
        BleLinkState.POWERED_OFF,
        BleLinkState.POWERED_ON,
    }
)


class WebSocketLinkState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class MessageSource(str, Enum):
    WEBSOCKET = "websocket"
    BLE = "ble"
    BRIDGE = "bridge"


class BridgeEvent(str, Enum):
    DEVICE_CONNECTED = "device_connected"
    DEVICE_DISCONNECTED = "device_disconnected"
    DEVICE_DISCOVERED = "device_discovered"
    CHARACTERISTIC_READ = "characteristic_read"
    CHARACTERISTIC_NOTIFICATION = "characteristic_notification"
    STATUS_UPDATE = "status_update"
    ERROR = "error"


@dataclass(frozen=True)
class DiscoveredDevice:
    id: str
    name: str | None = None
    signal_strength: int | None = None
    connectable: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "rssi": self.signal_strength,
            "isConnectable": self.connectable,
        }


@dataclass(frozen=True)
class Characteristic:
    uuid: str
    service_uuid: str
    readable: bool = False
    writable: bool = False
    notifiable: bool = False


@dataclass(frozen=True)
class BleMessage:
    device_id: str
    service_uuid: str
    characteristic_uuid: str
    data: str
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class ControlMessage:
    """Structured frame received on the WebSocket control channel."""

    type: str
    data: Any = None
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data, "timestamp": self.timestamp}


@dataclass(frozen=True)
class RawMessage:
    """Opaque frame received on the WebSocket raw channel.

    Binary frames are carried base64-encoded with `is_binary` set.
    """

    data: str
    is_binary: bool = False
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class BridgeStatus:
    websocket: WebSocketLinkState
    ble: BleLinkState
    bridge_active: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "websocket": self.websocket.value,
            "ble": self.ble.value,
            "bridgeActive": self.bridge_active,
        }


@dataclass(frozen=True)
class BridgeMessage:
    type: BridgeEvent
    payload: Any
    source: MessageSource = MessageSource.BRIDGE
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class BridgeConfig:
    websocket_url: str
    auto_reconnect: bool = True
    reconnect_interval_ms: int = 5000
    max_reconnect_attempts: int = 10
    scan_duration_ms: int = 10000
    log_messages: bool = True
