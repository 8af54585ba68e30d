"""Process-wide guard against asynchronous serial driver faults.

Some loopback drivers complete overlapped I/O after the handle that started it
has been closed. The resulting exception surfaces outside any call context
that could catch it: in a reader thread, in a transport callback or as an
uncaught exception. :class:`FaultGuard` recognises those by message and keeps
them from taking the process down; every other exception goes to the hook
that was installed before.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sys
import threading
from collections.abc import Callable, Iterable
from types import TracebackType
from typing import Any

from .const import DEFAULT_FAULT_SIGNATURES

logger = logging.getLogger("tcombridge.fault_guard")

ExceptHook = Callable[[type[BaseException], BaseException, TracebackType | None], Any]
ThreadHook = Callable[[threading.ExceptHookArgs], Any]
LoopHandler = Callable[[asyncio.AbstractEventLoop, dict[str, Any]], object]


class FaultGuard:
    """Install once at process start; ``uninstall`` restores previous hooks."""

    def __init__(
        self,
        signatures: Iterable[str] = DEFAULT_FAULT_SIGNATURES,
        *,
        on_suppressed: Callable[[BaseException | str], None] | None = None,
    ) -> None:
        self._patterns = tuple(re.compile(signature, re.IGNORECASE) for signature in signatures)
        self._on_suppressed = on_suppressed
        self._installed = False
        self._previous_excepthook: ExceptHook | None = None
        self._previous_threadhook: ThreadHook | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._previous_loop_handler: LoopHandler | None = None
        self.suppressed = 0

    @property
    def installed(self) -> bool:
        return self._installed

    def matches(self, exc: BaseException | str | None) -> bool:
        if exc is None:
            return False
        text = exc if isinstance(exc, str) else f"{type(exc).__name__}: {exc}"
        return any(pattern.search(text) for pattern in self._patterns)

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Hook ``sys``, ``threading`` and *loop* (or the running loop)."""
        if self._installed:
            return
        self._previous_excepthook = sys.excepthook
        self._previous_threadhook = threading.excepthook
        sys.excepthook = self._excepthook
        threading.excepthook = self._threadhook
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
        if loop is not None:
            self.attach_loop(loop)
        self._installed = True
        logger.debug("Fault guard installed with %d signatures", len(self._patterns))

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._loop is loop:
            return
        self._detach_loop()
        self._loop = loop
        self._previous_loop_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._loop_handler)

    def uninstall(self) -> None:
        if not self._installed:
            return
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
        if self._previous_threadhook is not None:
            threading.excepthook = self._previous_threadhook
        self._detach_loop()
        self._installed = False

    def _detach_loop(self) -> None:
        loop, self._loop = self._loop, None
        if loop is not None and not loop.is_closed():
            loop.set_exception_handler(self._previous_loop_handler)
        self._previous_loop_handler = None

    def _suppress(self, source: str, exc: BaseException | str) -> None:
        self.suppressed += 1
        logger.warning("Suppressed driver fault from %s: %s", source, exc)
        if self._on_suppressed is not None:
            self._on_suppressed(exc)

    def _excepthook(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        if self.matches(exc):
            self._suppress("main thread", exc)
            return
        logger.critical("Uncaught exception", exc_info=(exc_type, exc, tb))
        previous = self._previous_excepthook or sys.__excepthook__
        previous(exc_type, exc, tb)

    def _threadhook(self, args: threading.ExceptHookArgs) -> None:
        if self.matches(args.exc_value):
            thread_name = args.thread.name if args.thread is not None else "thread"
            self._suppress(thread_name, args.exc_value)  # type: ignore[arg-type]
            return
        if args.exc_value is not None:
            logger.critical(
                "Uncaught exception in thread %s",
                args.thread.name if args.thread is not None else "?",
                exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
            )
        previous = self._previous_threadhook or threading.__excepthook__
        previous(args)

    def _loop_handler(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        if self.matches(exc) or (exc is None and self.matches(context.get("message"))):
            self._suppress("event loop", exc if exc is not None else str(context.get("message")))
            return
        previous = self._previous_loop_handler
        if previous is not None:
            previous(loop, context)
        else:
            loop.default_exception_handler(context)


__all__ = ["FaultGuard"]
