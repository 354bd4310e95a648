"""Configuration loading and validation for YAML-based blebridge settings."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from blebridge.core.errors import ConfigError
from blebridge.core.model import BridgeConfig

LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


def _load_schema_validator() -> Any:
    schema_text = resources.files("blebridge.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def default_config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "blebridge/config.yaml"


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at root")
    return loaded


def load_config(path: Path | None = None, **overrides: Any) -> BridgeConfig:
    """Build a BridgeConfig from a YAML file plus keyword overrides.

    Without an explicit `path` the XDG default location is read if it exists.
    Overrides set to None are ignored so CLI options can be passed through.
    """
    source = path or default_config_path()
    doc: dict[str, Any] = {}
    if path is not None or source.exists():
        doc = _read_yaml(source)
        LOGGER.debug("Loaded config from %s", source)
    doc.update({key: value for key, value in overrides.items() if value is not None})

    try:
        _load_schema_validator().validate(doc)
    except ValidationError as exc:
        where = ".".join(str(p) for p in exc.path)
        where = f" ({where})" if where else ""
        raise ConfigError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    if "websocket_url" not in doc:
        raise ConfigError(
            f"No WebSocket URL configured. Set websocket_url in {source} or pass --url."
        )
    return BridgeConfig(**doc)


def dump_config(config: BridgeConfig) -> str:
    return yaml.safe_dump(asdict(config), sort_keys=False)
