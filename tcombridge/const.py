"""Shared constants for the Tcom bridge."""

from __future__ import annotations

from pathlib import Path
from typing import Final

# Write queue timing (seconds)
DEFAULT_FORWARD_WRITE_TIMEOUT: Final[float] = 1.5
DEFAULT_MANUAL_WRITE_TIMEOUT: Final[float] = 1.0
DEFAULT_WRITE_QUEUE_LIMIT: Final[int] = 256

# Partner presence polling
DEFAULT_PARTNER_POLL_INTERVAL: Final[float] = 1.0

# Serial defaults
DEFAULT_BAUDRATE: Final[int] = 115200
DEFAULT_DATA_BITS: Final[int] = 8
DEFAULT_STOP_BITS: Final[float] = 1
DEFAULT_PARITY: Final[str] = "none"
VALID_DATA_BITS: Final[tuple[int, ...]] = (5, 6, 7, 8)
VALID_STOP_BITS: Final[tuple[float, ...]] = (1, 1.5, 2)
VALID_PARITIES: Final[tuple[str, ...]] = ("none", "even", "odd", "mark", "space")

# Windows device namespace prefix
EXTENDED_PATH_PREFIX: Final[str] = "\\\\.\\"

# Driver pair tool (com0com setupc)
DEFAULT_PAIR_TOOL_TIMEOUT: Final[float] = 10.0

# Caller-level start retry (0 disables)
DEFAULT_START_RETRY_ATTEMPTS: Final[int] = 0
DEFAULT_START_RETRY_DELAY: Final[float] = 1.0

# Logging
DEFAULT_DEBUG_LOGGING: Final[bool] = False

# Metrics
DEFAULT_METRICS_ENABLED: Final[bool] = False
DEFAULT_METRICS_HOST: Final[str] = "127.0.0.1"
DEFAULT_METRICS_PORT: Final[int] = 9131

# Configuration file
CONFIG_ENV_VAR: Final[str] = "TCOMBRIDGE_CONFIG"
DEFAULT_CONFIG_PATH: Final[Path] = Path("~/.config/tcombridge/config.toml")

# Known signatures of asynchronous driver faults raised after an abrupt close
# of a loopback pair (aborted overlapped I/O on Windows).
DEFAULT_FAULT_SIGNATURES: Final[tuple[str, ...]] = (
    r"WinError 995",
    r"The I/O operation has been aborted because of either a thread exit or an application request",
    r"ClearCommError failed",
    r"GetOverlappedResult failed",
)
