"""Domain-specific errors for blebridge."""


class BridgeError(Exception):
    """Base error for blebridge."""


class ConfigError(BridgeError):
    """Raised when a configuration file cannot be read or does not validate."""


class CommandValidationError(BridgeError):
    """Raised when a control message payload does not match its command schema."""


class TransportError(BridgeError):
    """Base transport error."""


class ConnectError(TransportError):
    """Raised when the WebSocket open handshake fails."""


class BluetoothUnavailable(TransportError):
    """Raised when the radio is not powered on or no BLE backend is installed."""


class ScanFailed(TransportError):
    """Raised when the radio refuses to start a scan."""


class ConnectionFailed(TransportError):
    """Raised on BLE connect or service discovery failures."""


class NotConnected(TransportError):
    """Raised when a characteristic operation is attempted with no device connected."""


class CharacteristicNotFound(TransportError):
    """Raised when a service/characteristic pair is absent from discovery results."""


class NoBleDeviceConnected(TransportError):
    """Raised when a raw payload arrives while no BLE device is connected."""


class NoWritableCharacteristic(TransportError):
    """Raised when the connected device exposes no writable characteristic."""


class CharacteristicOperationFailed(TransportError):
    """Raised when a read, write or subscription on a characteristic fails."""
