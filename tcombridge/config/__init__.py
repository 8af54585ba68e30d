"""Configuration helpers for the Tcom bridge."""

from . import logging, settings  # noqa: F401  # pyright: ignore[reportUnusedImport]
from .model import BridgeConfig, RuntimeConfig, SerialSettings

__all__ = ["BridgeConfig", "RuntimeConfig", "SerialSettings", "logging", "settings"]
