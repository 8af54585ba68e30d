"""Error taxonomy for the Tcom bridge."""

from __future__ import annotations

from enum import StrEnum


class BridgeError(Exception):
    """Base class for bridge failures reported to callers."""


class BridgeConfigurationError(BridgeError):
    """A session cannot start because its configuration is incomplete."""


class OpenErrorKind(StrEnum):
    OCCUPIED = "occupied"
    NOT_FOUND = "not_found"
    OTHER = "other"


class SerialOpenError(BridgeError):
    """Raised when a device handle cannot be opened.

    The message always carries the simplified port path so it can be shown to
    the user as-is.
    """

    def __init__(self, kind: OpenErrorKind, path: str, detail: str = "") -> None:
        self.kind = kind
        self.path = path
        self.detail = detail
        super().__init__(self._render())

    def _render(self) -> str:
        if self.kind is OpenErrorKind.OCCUPIED:
            return f"Port {self.path} is occupied by another application"
        if self.kind is OpenErrorKind.NOT_FOUND:
            return f"Port {self.path} not found"
        return f"Failed to open port {self.path}: {self.detail}"


class PortNotOpenError(BridgeError):
    """A write targeted a handle that is not open."""


class PairToolError(BridgeError):
    """The virtual port pair utility failed or is not configured."""


__all__ = [
    "BridgeConfigurationError",
    "BridgeError",
    "OpenErrorKind",
    "PairToolError",
    "PortNotOpenError",
    "SerialOpenError",
]
