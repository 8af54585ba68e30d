"""General-purpose utilities for the Tcom bridge."""

from __future__ import annotations

import logging
from collections.abc import Iterable

__all__ = [
    "coerce_payload",
    "log_hexdump",
]


def log_hexdump(logger_instance: logging.Logger, level: int, label: str, data: bytes) -> None:
    """Log binary data in hexadecimal format.

    Format: [HEXDUMP] %s: %s
    """
    if not logger_instance.isEnabledFor(level):
        return

    hex_str = data.hex(" ").upper()
    logger_instance.log(level, "[HEXDUMP] %s: %s", label, hex_str)


def coerce_payload(data: str | bytes | bytearray | memoryview | Iterable[int]) -> bytes:
    """Normalise a write payload to bytes. Strings are UTF-8 encoded."""
    if isinstance(data, bytes):
        return data
    if isinstance(data, str):
        return data.encode("utf-8")
    if isinstance(data, (bytearray, memoryview)):
        return bytes(data)
    if isinstance(data, int):
        raise TypeError("payload must be bytes, str or a sequence of byte values")
    return bytes(data)
