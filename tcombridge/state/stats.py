"""Traffic and fault counters for observability."""

from __future__ import annotations

import time
from typing import Any

import msgspec

from .queues import WriteResult, WriteStatus


class BridgeStats(msgspec.Struct):
    """Process-wide bridge counters.

    Simple counters with monotonic increments only.
    """

    bytes_tx: int = 0
    bytes_rx: int = 0
    writes_ok: int = 0
    write_timeouts: int = 0
    write_failures: int = 0
    writes_skipped: int = 0
    writes_rejected: int = 0
    sessions_started: int = 0
    sessions_failed: int = 0
    sessions_stopped: int = 0
    faults_suppressed: int = 0
    last_tx_unix: float = 0.0
    last_rx_unix: float = 0.0

    def record_tx(self, nbytes: int) -> None:
        self.bytes_tx += nbytes
        self.last_tx_unix = time.time()

    def record_rx(self, nbytes: int) -> None:
        self.bytes_rx += nbytes
        self.last_rx_unix = time.time()

    def record_write(self, result: WriteResult) -> None:
        match result.status:
            case WriteStatus.WRITTEN:
                self.writes_ok += 1
            case WriteStatus.TIMED_OUT:
                self.write_timeouts += 1
            case WriteStatus.FAILED:
                self.write_failures += 1
            case WriteStatus.SKIPPED:
                self.writes_skipped += 1
            case WriteStatus.REJECTED:
                self.writes_rejected += 1

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


__all__ = ["BridgeStats"]
