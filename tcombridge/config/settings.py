"""Settings loader for the Tcom bridge.

Configuration is loaded from a single TOML file. The ``TCOMBRIDGE_CONFIG``
environment variable may name that file; it is the only environment input.
Individual values are never overridden from the environment.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any

from marshmallow import ValidationError

from ..const import CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH
from .model import BridgeConfig, RuntimeConfig, SerialSettings
from .schema import BridgeConfigSchema, RuntimeConfigSchema

logger = logging.getLogger(__name__)

_config_source = "defaults"


def resolve_config_path(path: str | os.PathLike[str] | None = None) -> Path:
    """Return the configuration file path honouring ``TCOMBRIDGE_CONFIG``."""
    if path is not None:
        return Path(path).expanduser()
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH.expanduser()


def read_config_file(path: Path) -> dict[str, Any]:
    """Read the raw TOML mapping; a missing file yields an empty mapping."""
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except FileNotFoundError:
        logger.info("Configuration file %s not found; using defaults.", path)
        return {}


def load_runtime_config(path: str | os.PathLike[str] | None = None) -> RuntimeConfig:
    """Load and validate the runtime configuration."""
    global _config_source

    config_path = resolve_config_path(path)
    raw = read_config_file(config_path)
    try:
        config: RuntimeConfig = RuntimeConfigSchema().load(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration in {config_path}: {exc.messages}") from exc

    _config_source = str(config_path) if raw else "defaults"
    return config


def parse_bridge_config(raw: dict[str, Any]) -> BridgeConfig:
    """Validate a bridge session mapping coming from a caller."""
    try:
        return BridgeConfigSchema().load(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid bridge configuration: {exc.messages}") from exc


def get_config_source() -> str:
    return _config_source


__all__ = [
    "BridgeConfig",
    "RuntimeConfig",
    "SerialSettings",
    "get_config_source",
    "load_runtime_config",
    "parse_bridge_config",
    "read_config_file",
    "resolve_config_path",
]
