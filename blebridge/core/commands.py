"""Control commands accepted on the WebSocket control channel.

Each recognized `type` maps to one frozen dataclass. Payloads are validated
against `blebridge/schemas/commands.schema.json` before a command object is
built, so the coordinator never sees partially-formed data.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from typing import Any, Union

from jsonschema import ValidationError, validators

from blebridge.core.errors import CommandValidationError
from blebridge.core.model import ControlMessage


@dataclass(frozen=True)
class ScanStart:
    duration_ms: int | None = None


@dataclass(frozen=True)
class ScanStop:
    pass


@dataclass(frozen=True)
class Connect:
    device_id: str


@dataclass(frozen=True)
class Disconnect:
    pass


@dataclass(frozen=True)
class ReadCharacteristic:
    service_uuid: str
    characteristic_uuid: str


@dataclass(frozen=True)
class WriteCharacteristic:
    service_uuid: str
    characteristic_uuid: str
    value: str


@dataclass(frozen=True)
class SubscribeCharacteristic:
    service_uuid: str
    characteristic_uuid: str


@dataclass(frozen=True)
class UnsubscribeCharacteristic:
    service_uuid: str
    characteristic_uuid: str


Command = Union[
    ScanStart,
    ScanStop,
    Connect,
    Disconnect,
    ReadCharacteristic,
    WriteCharacteristic,
    SubscribeCharacteristic,
    UnsubscribeCharacteristic,
]


@lru_cache(maxsize=1)
def _load_schemas() -> dict[str, Any]:
    schema_text = resources.files("blebridge.schemas").joinpath("commands.schema.json").read_text(
        encoding="utf-8"
    )
    return json.loads(schema_text)


@lru_cache(maxsize=None)
def _validator_for(command_type: str) -> Any:
    document = _load_schemas()
    schema = dict(document["commands"][command_type])
    schema["$schema"] = document["$schema"]
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def command_types() -> tuple[str, ...]:
    return tuple(_load_schemas()["commands"].keys())


def _build(command_type: str, data: dict[str, Any]) -> Command:
    if command_type == "device_scan_start":
        return ScanStart(duration_ms=data.get("duration"))
    if command_type == "device_scan_stop":
        return ScanStop()
    if command_type == "device_connect":
        return Connect(device_id=data["deviceId"])
    if command_type == "device_disconnect":
        return Disconnect()
    if command_type == "characteristic_read":
        return ReadCharacteristic(data["serviceUuid"], data["characteristicUuid"])
    if command_type == "characteristic_write":
        return WriteCharacteristic(data["serviceUuid"], data["characteristicUuid"], data["value"])
    if command_type == "characteristic_subscribe":
        return SubscribeCharacteristic(data["serviceUuid"], data["characteristicUuid"])
    return UnsubscribeCharacteristic(data["serviceUuid"], data["characteristicUuid"])


def parse_command(message: ControlMessage) -> Command | None:
    """Build the command carried by `message`.

    Returns None for unrecognized command types. Raises
    CommandValidationError when a recognized type carries a malformed payload.
    """
    if message.type not in command_types():
        return None

    data = {} if message.data is None else message.data
    try:
        _validator_for(message.type).validate(data)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise CommandValidationError(
            f"Invalid payload for '{message.type}'{where}: {exc.message}"
        ) from exc
    return _build(message.type, data)
