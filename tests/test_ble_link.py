from __future__ import annotations

import asyncio

import pytest

from blebridge.core.ble_link import BleLink
from blebridge.core.errors import (
    BluetoothUnavailable,
    CharacteristicNotFound,
    ConnectionFailed,
    NotConnected,
    ScanFailed,
)
from blebridge.core.model import BleLinkState, BleMessage, DiscoveredDevice
from conftest import NOTIFY_CHAR, SERVICE, WRITE_CHAR, FakePeripheral, FakeRadio

DEVICE_ID = "AA:BB:CC:11:22:33"


def _record_states(link: BleLink) -> list[BleLinkState]:
    states: list[BleLinkState] = []
    link.add_status_listener(states.append)
    return states


def test_initial_state_follows_radio() -> None:
    assert BleLink(FakeRadio()).state is BleLinkState.POWERED_ON
    assert BleLink(FakeRadio(BleLinkState.UNSUPPORTED)).state is BleLinkState.UNSUPPORTED


@pytest.mark.asyncio
async def test_scan_keeps_one_entry_per_device_with_latest_values(radio: FakeRadio) -> None:
    link = BleLink(radio)
    snapshots: list[list[DiscoveredDevice]] = []
    link.add_device_listener(snapshots.append)

    assert await link.start_scanning(60_000) is True
    assert link.state is BleLinkState.SCANNING

    radio.advertise(DiscoveredDevice("11:11", "first", -80))
    radio.advertise(DiscoveredDevice("22:22", None, -60))
    radio.advertise(DiscoveredDevice("11:11", "renamed", -40))

    devices = {d.id: d for d in link.discovered_devices}
    assert set(devices) == {"11:11", "22:22"}
    assert devices["11:11"].name == "renamed"
    assert devices["11:11"].signal_strength == -40
    assert len(snapshots) == 3
    await link.stop_scanning()


@pytest.mark.asyncio
async def test_repeated_identical_advertisement_does_not_republish(radio: FakeRadio) -> None:
    link = BleLink(radio)
    snapshots: list[list[DiscoveredDevice]] = []
    link.add_device_listener(snapshots.append)
    await link.start_scanning(60_000)

    radio.advertise(DiscoveredDevice("11:11", "first", -80))
    radio.advertise(DiscoveredDevice("11:11", "first", -80))

    assert len(snapshots) == 1
    await link.stop_scanning()


@pytest.mark.asyncio
async def test_start_scanning_while_scanning_is_noop(radio: FakeRadio) -> None:
    link = BleLink(radio)
    await link.start_scanning(60_000)
    radio.advertise(DiscoveredDevice("11:11", "first", -80))

    assert await link.start_scanning(60_000) is False
    assert link.state is BleLinkState.SCANNING
    assert [d.id for d in link.discovered_devices] == ["11:11"]
    assert radio.scan_starts == 1
    await link.stop_scanning()


@pytest.mark.asyncio
async def test_new_scan_clears_discovered_devices(radio: FakeRadio) -> None:
    link = BleLink(radio)
    await link.start_scanning(60_000)
    radio.advertise(DiscoveredDevice("11:11", "first", -80))
    await link.stop_scanning()

    await link.start_scanning(60_000)
    assert link.discovered_devices == []
    await link.stop_scanning()


@pytest.mark.asyncio
async def test_scan_stops_after_duration(radio: FakeRadio) -> None:
    link = BleLink(radio)
    await link.start_scanning(10)
    assert radio.scanning is True

    await asyncio.sleep(0.1)

    assert radio.scanning is False
    assert link.is_scanning is False
    assert link.state is BleLinkState.POWERED_ON


@pytest.mark.asyncio
async def test_stop_scanning_returns_to_connected_when_device_connected(radio: FakeRadio) -> None:
    link = BleLink(radio)
    await link.connect_to_device(DEVICE_ID)
    await link.start_scanning(60_000)

    await link.stop_scanning()

    assert link.state is BleLinkState.CONNECTED


@pytest.mark.asyncio
async def test_stop_scanning_when_idle_is_noop(radio: FakeRadio) -> None:
    link = BleLink(radio)
    states = _record_states(link)

    await link.stop_scanning()

    assert states == []
    assert link.state is BleLinkState.POWERED_ON


@pytest.mark.asyncio
async def test_scan_requires_powered_radio() -> None:
    link = BleLink(FakeRadio(BleLinkState.POWERED_OFF))
    with pytest.raises(BluetoothUnavailable):
        await link.start_scanning()
    assert link.state is BleLinkState.POWERED_OFF


@pytest.mark.asyncio
async def test_scan_start_failure_reverts_state(radio: FakeRadio, monkeypatch: pytest.MonkeyPatch) -> None:
    async def failing_start(on_device):
        raise RuntimeError("adapter busy")

    monkeypatch.setattr(radio, "start_scan", failing_start)
    link = BleLink(radio)

    with pytest.raises(ScanFailed):
        await link.start_scanning()
    assert link.is_scanning is False
    assert link.state is BleLinkState.POWERED_ON


@pytest.mark.asyncio
async def test_connect_discovers_characteristics(radio: FakeRadio, peripheral: FakePeripheral) -> None:
    link = BleLink(radio)
    states = _record_states(link)

    device = await link.connect_to_device(DEVICE_ID)

    assert states == [BleLinkState.CONNECTING, BleLinkState.CONNECTED]
    assert link.is_connected
    assert device.id == DEVICE_ID
    assert link.characteristics() == peripheral.characteristics


@pytest.mark.asyncio
async def test_connect_failure_reverts_to_powered_on(radio: FakeRadio) -> None:
    radio.connect_error = RuntimeError("peer refused")
    link = BleLink(radio)

    with pytest.raises(ConnectionFailed) as exc:
        await link.connect_to_device(DEVICE_ID)

    assert "peer refused" in str(exc.value)
    assert link.connected_device is None
    assert link.state is BleLinkState.POWERED_ON


@pytest.mark.asyncio
async def test_discovery_failure_releases_connection(radio: FakeRadio, peripheral: FakePeripheral) -> None:
    peripheral.discover_error = RuntimeError("GATT error 133")
    link = BleLink(radio)

    with pytest.raises(ConnectionFailed):
        await link.connect_to_device(DEVICE_ID)

    assert peripheral.disconnected is True
    assert link.connected_device is None
    assert link.state is BleLinkState.POWERED_ON


@pytest.mark.asyncio
async def test_cancelled_connect_is_not_left_connecting(radio: FakeRadio) -> None:
    radio.connect_gate = asyncio.Event()
    link = BleLink(radio)

    task = asyncio.create_task(link.connect_to_device(DEVICE_ID))
    await asyncio.sleep(0)
    assert link.state is BleLinkState.CONNECTING
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert link.state is BleLinkState.POWERED_ON


@pytest.mark.asyncio
async def test_remote_disconnect_clears_device(radio: FakeRadio) -> None:
    link = BleLink(radio)
    await link.connect_to_device(DEVICE_ID)

    radio.drop(DEVICE_ID)

    assert link.connected_device is None
    assert link.state is BleLinkState.DISCONNECTED


@pytest.mark.asyncio
async def test_explicit_disconnect_passes_through_disconnected(radio: FakeRadio, peripheral: FakePeripheral) -> None:
    link = BleLink(radio)
    await link.connect_to_device(DEVICE_ID)
    states = _record_states(link)

    await link.disconnect()
    radio.drop(DEVICE_ID)

    assert peripheral.disconnected is True
    assert states == [BleLinkState.DISCONNECTED, BleLinkState.POWERED_ON]
    assert link.connected_device is None


@pytest.mark.asyncio
async def test_disconnect_error_still_completes_teardown(radio: FakeRadio, peripheral: FakePeripheral) -> None:
    peripheral.disconnect_error = RuntimeError("already gone")
    link = BleLink(radio)
    await link.connect_to_device(DEVICE_ID)

    await link.disconnect()

    assert link.connected_device is None
    assert link.state is BleLinkState.POWERED_ON


@pytest.mark.asyncio
async def test_disconnect_without_device_is_noop(radio: FakeRadio) -> None:
    link = BleLink(radio)
    states = _record_states(link)
    await link.disconnect()
    assert states == []


@pytest.mark.asyncio
async def test_characteristic_operations_require_connection(radio: FakeRadio) -> None:
    link = BleLink(radio)
    with pytest.raises(NotConnected):
        await link.read_characteristic(SERVICE, NOTIFY_CHAR)
    with pytest.raises(NotConnected):
        await link.write_characteristic(SERVICE, WRITE_CHAR, "AQID")
    with pytest.raises(NotConnected):
        await link.subscribe_to_characteristic(SERVICE, NOTIFY_CHAR)


@pytest.mark.asyncio
async def test_read_returns_base64(radio: FakeRadio, peripheral: FakePeripheral) -> None:
    peripheral.values[(SERVICE, NOTIFY_CHAR)] = b"\x01\x02\x03"
    link = BleLink(radio)
    await link.connect_to_device(DEVICE_ID)

    assert await link.read_characteristic(SERVICE.upper(), NOTIFY_CHAR) == "AQID"


@pytest.mark.asyncio
async def test_write_decodes_base64_and_uses_response(radio: FakeRadio, peripheral: FakePeripheral) -> None:
    link = BleLink(radio)
    await link.connect_to_device(DEVICE_ID)

    await link.write_characteristic(SERVICE, WRITE_CHAR, "AQID")

    assert peripheral.writes == [(SERVICE, WRITE_CHAR, b"\x01\x02\x03", True)]


@pytest.mark.asyncio
async def test_write_to_unknown_characteristic_raises(radio: FakeRadio) -> None:
    link = BleLink(radio)
    await link.connect_to_device(DEVICE_ID)

    with pytest.raises(CharacteristicNotFound):
        await link.write_characteristic(SERVICE, "0000dead-0000-1000-8000-00805f9b34fb", "AQID")


@pytest.mark.asyncio
async def test_subscription_publishes_notifications_until_cancelled(
    radio: FakeRadio, peripheral: FakePeripheral
) -> None:
    link = BleLink(radio)
    messages: list[BleMessage] = []
    link.add_message_listener(messages.append)
    await link.connect_to_device(DEVICE_ID)

    unsubscribe = await link.subscribe_to_characteristic(SERVICE, NOTIFY_CHAR)
    peripheral.notify(SERVICE, NOTIFY_CHAR, b"\x01\x02\x03")
    await unsubscribe()

    assert len(messages) == 1
    assert messages[0].device_id == DEVICE_ID
    assert messages[0].characteristic_uuid == NOTIFY_CHAR
    assert messages[0].data == "AQID"
    assert peripheral.notify_callbacks == {}


@pytest.mark.asyncio
async def test_resubscribe_replaces_previous_subscription(radio: FakeRadio, peripheral: FakePeripheral) -> None:
    link = BleLink(radio)
    messages: list[BleMessage] = []
    link.add_message_listener(messages.append)
    await link.connect_to_device(DEVICE_ID)

    await link.subscribe_to_characteristic(SERVICE, NOTIFY_CHAR)
    await link.subscribe_to_characteristic(SERVICE, NOTIFY_CHAR)
    peripheral.notify(SERVICE, NOTIFY_CHAR, b"\x01")

    assert len(messages) == 1


@pytest.mark.asyncio
async def test_radio_power_loss_drops_connection_and_scan(radio: FakeRadio) -> None:
    link = BleLink(radio)
    await link.connect_to_device(DEVICE_ID)
    await link.start_scanning(60_000)
    states = _record_states(link)

    radio.set_state(BleLinkState.POWERED_OFF)

    assert link.connected_device is None
    assert link.is_scanning is False
    assert states == [BleLinkState.DISCONNECTED, BleLinkState.POWERED_OFF]

    radio.set_state(BleLinkState.POWERED_ON)
    assert link.state is BleLinkState.POWERED_ON
