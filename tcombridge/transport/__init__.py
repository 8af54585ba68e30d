"""Serial transport for the Tcom bridge."""

from .serial import (
    ControlSignals,
    DeviceHandle,
    DeviceOpener,
    SerialEndpoint,
    open_device,
    simplify_path,
)

__all__ = [
    "ControlSignals",
    "DeviceHandle",
    "DeviceOpener",
    "SerialEndpoint",
    "open_device",
    "simplify_path",
]
