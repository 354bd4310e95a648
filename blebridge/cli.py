"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import typer

from blebridge.api import create_bridge
from blebridge.core.ble_link import BleLink
from blebridge.core.config import dump_config, load_config
from blebridge.core.errors import BridgeError
from blebridge.core.model import (
    BleLinkState,
    BridgeConfig,
    BridgeEvent,
    BridgeMessage,
    BridgeStatus,
    DiscoveredDevice,
)
from blebridge.transports.ble_gatt import BleakRadio

app = typer.Typer(help="Relay data between a BLE peripheral and a WebSocket backend")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _echo_status(status: BridgeStatus) -> None:
    typer.echo(
        f"status websocket={status.websocket.value} ble={status.ble.value} "
        f"active={str(status.bridge_active).lower()}"
    )


def _echo_message(message: BridgeMessage) -> None:
    if message.type is BridgeEvent.STATUS_UPDATE:
        return
    typer.echo(f"[{message.source.value}] {message.type.value} {json.dumps(message.payload)}")


async def _run_bridge(settings: BridgeConfig, seconds: float | None) -> None:
    bridge = create_bridge(settings)
    bridge.add_status_listener(_echo_status)
    bridge.add_message_listener(_echo_message)
    try:
        await bridge.start_bridge()
        if seconds is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(seconds)
    finally:
        await bridge.close()


async def _scan(duration_ms: int) -> list[DiscoveredDevice]:
    link = BleLink(BleakRadio(), scan_duration_ms=duration_ms)
    finished = asyncio.Event()

    def _on_state(state: BleLinkState) -> None:
        if state is not BleLinkState.SCANNING:
            finished.set()

    link.add_status_listener(_on_state)
    try:
        await link.start_scanning()
        await finished.wait()
        return link.discovered_devices
    finally:
        await link.close()


@app.command("run")
def run_bridge(
    url: str | None = typer.Option(None, "--url", help="WebSocket backend URL"),
    config: Path | None = typer.Option(None, "--config", help="Path to config YAML"),
    seconds: float | None = typer.Option(None, "--seconds", help="Stop after this many seconds"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Start the bridge and print status changes and bridge messages."""
    _configure_logging(verbose)
    try:
        settings = load_config(config, websocket_url=url)
        asyncio.run(_run_bridge(settings, seconds))
    except BridgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        typer.echo("Bridge stopped")


@app.command("scan")
def scan_devices(
    duration: int = typer.Option(10000, "--duration", help="Scan duration in milliseconds"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Scan for BLE devices and list what was seen."""
    _configure_logging(verbose)
    try:
        devices = asyncio.run(_scan(duration))
    except BridgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    if not devices:
        typer.echo("No BLE devices found")
        return
    for device in sorted(devices, key=lambda d: d.signal_strength or -999, reverse=True):
        rssi = "?" if device.signal_strength is None else str(device.signal_strength)
        typer.echo(f"{device.id} {device.name or '<unknown-device>'} rssi={rssi}")


@app.command("config")
def show_config(
    url: str | None = typer.Option(None, "--url", help="WebSocket backend URL"),
    config: Path | None = typer.Option(None, "--config", help="Path to config YAML"),
) -> None:
    """Print the resolved configuration."""
    try:
        settings = load_config(config, websocket_url=url)
    except BridgeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None
    typer.echo(dump_config(settings), nl=False)


def run() -> None:
    app()


if __name__ == "__main__":
    run()
