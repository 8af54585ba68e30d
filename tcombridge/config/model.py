"""Data model for Tcom bridge configuration."""

from __future__ import annotations

from dataclasses import dataclass, field

import msgspec

from ..const import (
    DEFAULT_BAUDRATE,
    DEFAULT_DATA_BITS,
    DEFAULT_DEBUG_LOGGING,
    DEFAULT_FAULT_SIGNATURES,
    DEFAULT_FORWARD_WRITE_TIMEOUT,
    DEFAULT_MANUAL_WRITE_TIMEOUT,
    DEFAULT_METRICS_ENABLED,
    DEFAULT_METRICS_HOST,
    DEFAULT_METRICS_PORT,
    DEFAULT_PAIR_TOOL_TIMEOUT,
    DEFAULT_PARITY,
    DEFAULT_PARTNER_POLL_INTERVAL,
    DEFAULT_START_RETRY_ATTEMPTS,
    DEFAULT_START_RETRY_DELAY,
    DEFAULT_STOP_BITS,
    DEFAULT_WRITE_QUEUE_LIMIT,
)


class SerialSettings(msgspec.Struct, frozen=True):
    """Line settings applied when a device handle is opened."""

    baud_rate: int = DEFAULT_BAUDRATE
    data_bits: int = DEFAULT_DATA_BITS
    stop_bits: float = DEFAULT_STOP_BITS
    parity: str = DEFAULT_PARITY


class BridgeConfig(msgspec.Struct, kw_only=True):
    """Per-session bridge configuration.

    ``virtual_port`` is the loopback endpoint the bridge opens itself; the
    partner application opens its sibling (``paired_port``).
    """

    virtual_port: str | None = None
    physical_port: str | None = None
    baud_rate: int = DEFAULT_BAUDRATE
    data_bits: int = DEFAULT_DATA_BITS
    stop_bits: float = DEFAULT_STOP_BITS
    parity: str = DEFAULT_PARITY
    paired_port: str | None = None
    auto_destroy_pair: bool = False

    @property
    def serial_settings(self) -> SerialSettings:
        return SerialSettings(
            baud_rate=self.baud_rate,
            data_bits=self.data_bits,
            stop_bits=self.stop_bits,
            parity=self.parity,
        )


def _sessions_factory() -> dict[str, BridgeConfig]:
    return {}


@dataclass(slots=True)
class RuntimeConfig:
    """Strongly typed configuration for the bridge process."""

    debug_logging: bool = DEFAULT_DEBUG_LOGGING
    forward_write_timeout: float = DEFAULT_FORWARD_WRITE_TIMEOUT
    manual_write_timeout: float = DEFAULT_MANUAL_WRITE_TIMEOUT
    partner_poll_interval: float = DEFAULT_PARTNER_POLL_INTERVAL
    write_queue_limit: int = DEFAULT_WRITE_QUEUE_LIMIT
    pair_tool_path: str | None = None
    pair_tool_timeout: float = DEFAULT_PAIR_TOOL_TIMEOUT
    start_retry_attempts: int = DEFAULT_START_RETRY_ATTEMPTS
    start_retry_delay: float = DEFAULT_START_RETRY_DELAY
    metrics_enabled: bool = DEFAULT_METRICS_ENABLED
    metrics_host: str = DEFAULT_METRICS_HOST
    metrics_port: int = DEFAULT_METRICS_PORT
    fault_signatures: tuple[str, ...] = DEFAULT_FAULT_SIGNATURES
    sessions: dict[str, BridgeConfig] = field(default_factory=_sessions_factory)

    def __post_init__(self) -> None:
        self.forward_write_timeout = self._require_positive("forward_write_timeout", self.forward_write_timeout)
        self.manual_write_timeout = self._require_positive("manual_write_timeout", self.manual_write_timeout)
        self.partner_poll_interval = self._require_positive("partner_poll_interval", self.partner_poll_interval)
        self.write_queue_limit = int(self._require_positive("write_queue_limit", self.write_queue_limit))
        self.start_retry_attempts = max(0, int(self.start_retry_attempts))

    @staticmethod
    def _require_positive(name: str, value: float) -> float:
        if value <= 0:
            raise ValueError(f"{name} must be positive")
        return value
