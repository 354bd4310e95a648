"""BLE GATT radio implementation backed by bleak."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from blebridge.core.errors import BluetoothUnavailable, CharacteristicNotFound
from blebridge.core.model import BleLinkState, Characteristic, DiscoveredDevice

LOGGER = logging.getLogger(__name__)

_WRITE_PROPERTIES = frozenset({"write", "write-without-response"})
_NOTIFY_PROPERTIES = frozenset({"notify", "indicate"})


def _load_bleak() -> Any:
    try:
        import bleak  # type: ignore
    except Exception as exc:  # pragma: no cover - import failure path
        raise BluetoothUnavailable(
            "BLE transport requires 'bleak'. Install dependency and retry."
        ) from exc
    return bleak


class BleakPeripheral:
    def __init__(self, client: Any, *, name: str | None = None) -> None:
        self._client = client
        self._name = name

    @property
    def id(self) -> str:
        return self._client.address

    @property
    def name(self) -> str | None:
        return self._name

    async def discover(self) -> list[Characteristic]:
        # bleak resolves the GATT table while connecting.
        characteristics: list[Characteristic] = []
        for service in self._client.services:
            for char in service.characteristics:
                properties = set(char.properties)
                characteristics.append(
                    Characteristic(
                        uuid=char.uuid,
                        service_uuid=service.uuid,
                        readable="read" in properties,
                        writable=bool(properties & _WRITE_PROPERTIES),
                        notifiable=bool(properties & _NOTIFY_PROPERTIES),
                    )
                )
        return characteristics

    def _resolve(self, service_uuid: str, characteristic_uuid: str) -> Any:
        service = self._client.services.get_service(service_uuid)
        char = service.get_characteristic(characteristic_uuid) if service is not None else None
        if char is None:
            raise CharacteristicNotFound(
                f"Characteristic {characteristic_uuid} not found in service {service_uuid}"
            )
        return char

    async def read(self, service_uuid: str, characteristic_uuid: str) -> bytes:
        char = self._resolve(service_uuid, characteristic_uuid)
        return bytes(await self._client.read_gatt_char(char))

    async def write(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        data: bytes,
        *,
        response: bool = True,
    ) -> None:
        char = self._resolve(service_uuid, characteristic_uuid)
        await self._client.write_gatt_char(char, data, response=response)

    async def start_notify(
        self,
        service_uuid: str,
        characteristic_uuid: str,
        callback: Callable[[bytes], None],
    ) -> None:
        char = self._resolve(service_uuid, characteristic_uuid)

        def _notify_handler(_: Any, data: bytearray) -> None:
            callback(bytes(data))

        await self._client.start_notify(char, _notify_handler)

    async def stop_notify(self, service_uuid: str, characteristic_uuid: str) -> None:
        char = self._resolve(service_uuid, characteristic_uuid)
        await self._client.stop_notify(char)

    async def disconnect(self) -> None:
        await self._client.disconnect()


class BleakRadio:
    """Scanner and connection factory for the local Bluetooth adapter.

    bleak exposes no power-state notifications, so the radio reports
    `powered_on` once bleak imports and `unsupported` otherwise.
    """

    def __init__(self, *, connect_timeout_s: float = 10.0) -> None:
        self._connect_timeout_s = connect_timeout_s
        self._scanner: Any = None
        self._names: dict[str, str | None] = {}

    def on_radio_state(self, callback: Callable[[BleLinkState], None]) -> None:
        try:
            _load_bleak()
        except BluetoothUnavailable as exc:
            LOGGER.warning("%s", exc)
            callback(BleLinkState.UNSUPPORTED)
            return
        callback(BleLinkState.POWERED_ON)

    async def start_scan(self, on_device: Callable[[DiscoveredDevice], None]) -> None:
        bleak = _load_bleak()

        def _detected(device: Any, advertisement: Any) -> None:
            name = advertisement.local_name or device.name
            self._names[device.address] = name
            on_device(
                DiscoveredDevice(
                    id=device.address,
                    name=name,
                    signal_strength=advertisement.rssi,
                )
            )

        scanner = bleak.BleakScanner(detection_callback=_detected)
        await scanner.start()
        self._scanner = scanner

    async def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            await scanner.stop()

    async def connect(self, device_id: str, on_disconnect: Callable[[], None]) -> BleakPeripheral:
        bleak = _load_bleak()
        client = bleak.BleakClient(
            device_id,
            disconnected_callback=lambda _client: on_disconnect(),
            timeout=self._connect_timeout_s,
        )
        await client.connect()
        return BleakPeripheral(client, name=self._names.get(device_id))

    async def close(self) -> None:
        await self.stop_scan()
