"""Per-endpoint write queues for bridge sessions."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import msgspec

from ..const import DEFAULT_WRITE_QUEUE_LIMIT

logger = logging.getLogger("tcombridge.queue")

WriteFn = Callable[[], Awaitable[Any]]


class WriteStatus(StrEnum):
    WRITTEN = "written"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    SKIPPED = "skipped"
    REJECTED = "rejected"


class WriteResult(msgspec.Struct, frozen=True):
    """Outcome of one queued write."""

    status: WriteStatus
    label: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is WriteStatus.WRITTEN


def _never_stopping() -> bool:
    return False


class _PendingWrite(msgspec.Struct):
    write_fn: WriteFn
    timeout: float
    label: str
    future: asyncio.Future[WriteResult]


class WriteQueue:
    """FIFO of write operations against a single handle.

    Entries run strictly one after another. An entry resolves when its write
    completes or its timeout elapses, whichever comes first; a timed-out write
    is left running in the background and the queue moves on. The
    ``is_stopping`` predicate is consulted before each entry starts so queued
    work drains as *skipped* once the owning session begins to stop.
    """

    def __init__(
        self,
        name: str,
        *,
        limit: int = DEFAULT_WRITE_QUEUE_LIMIT,
        is_stopping: Callable[[], bool] | None = None,
        on_result: Callable[[WriteResult], None] | None = None,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.name = name
        self._limit = limit
        self._is_stopping = is_stopping or _never_stopping
        self._on_result = on_result
        self._log = log or logger
        self._pending: deque[_PendingWrite] = deque()
        self._worker: asyncio.Task[None] | None = None
        self._lingering: set[asyncio.Future[Any]] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def __repr__(self) -> str:
        return f"WriteQueue({self.name!r}, pending={len(self._pending)})"

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def busy(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def lingering(self) -> int:
        """Timed-out writes that have not finished yet."""
        return len(self._lingering)

    def enqueue(
        self,
        write_fn: WriteFn,
        *,
        timeout: float,
        label: str = "",
    ) -> asyncio.Future[WriteResult]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[WriteResult] = loop.create_future()

        if self._is_stopping():
            self._resolve(future, WriteResult(WriteStatus.SKIPPED, label))
            return future

        if len(self._pending) >= self._limit:
            self._log.warning("Write queue %s full (%d pending); rejecting %s", self.name, len(self._pending), label)
            self._resolve(
                future,
                WriteResult(WriteStatus.REJECTED, label, "Write queue full"),
            )
            return future

        self._pending.append(_PendingWrite(write_fn=write_fn, timeout=timeout, label=label, future=future))
        if not self.busy:
            self._worker = loop.create_task(self._drain(), name=f"write-queue-{self.name}")
        return future

    def clear(self) -> int:
        """Resolve every pending entry as skipped; the running write is untouched."""
        dropped = 0
        while self._pending:
            entry = self._pending.popleft()
            self._resolve(entry.future, WriteResult(WriteStatus.SKIPPED, entry.label))
            dropped += 1
        return dropped

    async def join(self) -> None:
        worker = self._worker
        if worker is not None and not worker.done():
            await asyncio.shield(worker)

    async def _drain(self) -> None:
        while self._pending:
            entry = self._pending.popleft()
            if self._is_stopping():
                result = WriteResult(WriteStatus.SKIPPED, entry.label)
            else:
                try:
                    result = await self._run(entry)
                except asyncio.CancelledError:
                    self._resolve(entry.future, WriteResult(WriteStatus.SKIPPED, entry.label))
                    self.clear()
                    raise
            self._resolve(entry.future, result)

    async def _run(self, entry: _PendingWrite) -> WriteResult:
        try:
            task = asyncio.ensure_future(entry.write_fn())
        except Exception as exc:
            self._log.debug("Write %s on %s raised synchronously", entry.label, self.name, exc_info=True)
            return WriteResult(WriteStatus.FAILED, entry.label, str(exc) or type(exc).__name__)

        done, _ = await asyncio.wait({task}, timeout=entry.timeout)
        if not done:
            self._log.warning(
                "Write %s on %s timed out after %.2fs; advancing queue",
                entry.label,
                self.name,
                entry.timeout,
            )
            self._lingering.add(task)
            task.add_done_callback(self._collect_late)
            return WriteResult(WriteStatus.TIMED_OUT, entry.label)

        if task.cancelled():
            return WriteResult(WriteStatus.FAILED, entry.label, "Write cancelled")
        exc = task.exception()
        if exc is not None:
            self._log.debug("Write %s on %s failed: %s", entry.label, self.name, exc)
            return WriteResult(WriteStatus.FAILED, entry.label, str(exc) or type(exc).__name__)
        return WriteResult(WriteStatus.WRITTEN, entry.label)

    def _collect_late(self, task: asyncio.Future[Any]) -> None:
        self._lingering.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.debug("Late write on %s finished with error: %s", self.name, exc)
        else:
            self._log.debug("Late write on %s finished", self.name)

    def _resolve(self, future: asyncio.Future[WriteResult], result: WriteResult) -> None:
        if not future.done():
            future.set_result(result)
        if self._on_result is not None:
            try:
                self._on_result(result)
            except Exception:
                self._log.exception("Write result observer failed on %s", self.name)


__all__ = ["WriteFn", "WriteQueue", "WriteResult", "WriteStatus"]
