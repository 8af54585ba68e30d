"""Serial device handles built on pyserial-asyncio-fast.

A :class:`DeviceHandle` wraps one asyncio serial transport and exposes
callback-style data/error/close notifications through explicit
:class:`~tcombridge.events.Subscription` handles. Writes complete only once the
transport has handed every byte to the driver, so a loopback endpoint whose
partner never reads can block a write forever; callers bound that with the
write queue timeout.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Final, Protocol, cast

import msgspec
import serial

# pyserial-asyncio-fast is mandatory; do not guard this import.
import serial_asyncio_fast  # type: ignore

from ..config.model import SerialSettings
from ..const import EXTENDED_PATH_PREFIX
from ..errors import OpenErrorKind, PortNotOpenError, SerialOpenError
from ..events import Subscription
from ..util import log_hexdump

logger = logging.getLogger("tcombridge.transport")

CLOSE_TIMEOUT: Final[float] = 2.0

BYTESIZE_MAP: Final[dict[int, int]] = {
    5: serial.FIVEBITS,
    6: serial.SIXBITS,
    7: serial.SEVENBITS,
    8: serial.EIGHTBITS,
}
PARITY_MAP: Final[dict[str, str]] = {
    "none": serial.PARITY_NONE,
    "even": serial.PARITY_EVEN,
    "odd": serial.PARITY_ODD,
    "mark": serial.PARITY_MARK,
    "space": serial.PARITY_SPACE,
}
STOPBITS_MAP: Final[dict[float, float]] = {
    1: serial.STOPBITS_ONE,
    1.5: serial.STOPBITS_ONE_POINT_FIVE,
    2: serial.STOPBITS_TWO,
}

_OCCUPIED_RE = re.compile(
    r"access is denied|access denied|permissionerror|permission denied|resource busy|\[errno 13\]|\[errno 16\]",
    re.IGNORECASE,
)
_NOT_FOUND_RE = re.compile(
    r"cannot find|not found|no such file|filenotfounderror|\[errno 2\]",
    re.IGNORECASE,
)
_COM_NAME_RE = re.compile(r"COM\d+", re.IGNORECASE)

DataCallback = Callable[[bytes], None]
ErrorCallback = Callable[[BaseException], None]
CloseCallback = Callable[[], None]
SerialConnector = Callable[..., Awaitable[tuple[asyncio.BaseTransport, asyncio.BaseProtocol]]]


def simplify_path(path: str) -> str:
    """Strip the Windows device namespace prefix (``\\\\.\\COM11`` -> ``COM11``)."""
    if path.startswith(EXTENDED_PATH_PREFIX):
        return path[len(EXTENDED_PATH_PREFIX) :]
    return path


def extended_path(path: str) -> str | None:
    """Return the extended device-path form, or None if there is none to try."""
    if path.startswith(EXTENDED_PATH_PREFIX):
        return None
    if _COM_NAME_RE.fullmatch(path):
        return f"{EXTENDED_PATH_PREFIX}{path}"
    return None


def classify_open_error(exc: BaseException | None) -> OpenErrorKind:
    if exc is None:
        return OpenErrorKind.OTHER
    if isinstance(exc, PermissionError):
        return OpenErrorKind.OCCUPIED
    if isinstance(exc, FileNotFoundError):
        return OpenErrorKind.NOT_FOUND
    text = f"{type(exc).__name__}: {exc}"
    if _OCCUPIED_RE.search(text):
        return OpenErrorKind.OCCUPIED
    if _NOT_FOUND_RE.search(text):
        return OpenErrorKind.NOT_FOUND
    return OpenErrorKind.OTHER


class ControlSignals(msgspec.Struct, frozen=True):
    """Snapshot of the modem status lines."""

    cd: bool = False
    dsr: bool = False
    cts: bool = False

    @property
    def partner_present(self) -> bool:
        # A loopback driver mirrors the partner's DTR/RTS onto these lines.
        return self.cd or self.dsr or self.cts


class SerialEndpoint(Protocol):
    """Structural interface shared by real handles and test doubles."""

    path: str
    display_path: str
    role: str

    @property
    def is_open(self) -> bool: ...

    def on_data(self, callback: DataCallback) -> Subscription: ...

    def on_error(self, callback: ErrorCallback) -> Subscription: ...

    def on_close(self, callback: CloseCallback) -> Subscription: ...

    def clear_listeners(self) -> None: ...

    async def write(self, data: bytes) -> None: ...

    def control_signals(self) -> ControlSignals: ...

    async def close(self) -> None: ...


DeviceOpener = Callable[..., Awaitable[SerialEndpoint]]


class FlowControlMixin:
    """Implement asyncio flow control logic."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._paused = False
        self._drain_waiter: asyncio.Future[None] | None = None
        self._connection_lost = False

    def pause_writing(self) -> None:
        self._paused = True

    def resume_writing(self) -> None:
        self._paused = False
        if self._drain_waiter and not self._drain_waiter.done():
            self._drain_waiter.set_result(None)
            self._drain_waiter = None

    def connection_lost(self, exc: Exception | None) -> None:
        self._connection_lost = True
        if self._drain_waiter and not self._drain_waiter.done():
            if exc:
                self._drain_waiter.set_exception(exc)
            else:
                self._drain_waiter.set_exception(ConnectionResetError("Port closed"))
            self._drain_waiter = None

    async def drain_helper(self) -> None:
        if self._connection_lost:
            raise ConnectionResetError("Port closed")
        if not self._paused:
            return
        if self._drain_waiter is None:
            self._drain_waiter = self._loop.create_future()
        await self._drain_waiter


class EndpointProtocol(asyncio.Protocol, FlowControlMixin):
    """Protocol dispatching transport callbacks to the owning handle."""

    def __init__(self, handle: DeviceHandle) -> None:
        FlowControlMixin.__init__(self)
        self._handle = handle
        self.transport: asyncio.Transport | None = None
        self.closed: asyncio.Future[None] = self._loop.create_future()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = cast(asyncio.Transport, transport)
        # Pause on any buffered byte so drain waits until the driver took everything.
        self.transport.set_write_buffer_limits(high=0, low=0)

    def pause_writing(self) -> None:
        FlowControlMixin.pause_writing(self)

    def resume_writing(self) -> None:
        FlowControlMixin.resume_writing(self)

    def data_received(self, data: bytes) -> None:
        self._handle._dispatch_data(data)

    def connection_lost(self, exc: Exception | None) -> None:
        FlowControlMixin.connection_lost(self, exc)
        self.transport = None
        if exc is not None:
            self._handle._dispatch_error(exc)
        self._handle._dispatch_close()
        if not self.closed.done():
            self.closed.set_result(None)


class DeviceHandle:
    """Open/close/write primitive over a named serial device."""

    def __init__(self, path: str, settings: SerialSettings, *, role: str = "device") -> None:
        self.path = path
        self.display_path = simplify_path(path)
        self.settings = settings
        self.role = role
        self._transport: asyncio.Transport | None = None
        self._protocol: EndpointProtocol | None = None
        self._data_listeners: list[DataCallback] = []
        self._error_listeners: list[ErrorCallback] = []
        self._close_listeners: list[CloseCallback] = []

    def __repr__(self) -> str:
        return f"DeviceHandle({self.role}={self.display_path!r}, open={self.is_open})"

    @property
    def is_open(self) -> bool:
        transport = self._transport
        return transport is not None and not transport.is_closing() and self._protocol is not None and self._protocol.transport is not None

    async def open(self, *, connector: SerialConnector | None = None) -> None:
        """Open the device; pyserial errors propagate unchanged."""
        if self._transport is not None:
            raise RuntimeError(f"{self.display_path} is already open")
        loop = asyncio.get_running_loop()
        connect = connector or serial_asyncio_fast.create_serial_connection
        transport, protocol = await connect(
            loop,
            functools.partial(EndpointProtocol, self),
            self.path,
            baudrate=self.settings.baud_rate,
            bytesize=BYTESIZE_MAP[self.settings.data_bits],
            parity=PARITY_MAP[self.settings.parity],
            stopbits=STOPBITS_MAP[self.settings.stop_bits],
        )
        self._transport = cast(asyncio.Transport, transport)
        self._protocol = cast(EndpointProtocol, protocol)
        logger.info(
            "Opened %s port %s at %d baud",
            self.role,
            self.display_path,
            self.settings.baud_rate,
        )

    # --- subscriptions ---------------------------------------------------

    def on_data(self, callback: DataCallback) -> Subscription:
        self._data_listeners.append(callback)
        return Subscription(functools.partial(_discard, self._data_listeners, callback))

    def on_error(self, callback: ErrorCallback) -> Subscription:
        self._error_listeners.append(callback)
        return Subscription(functools.partial(_discard, self._error_listeners, callback))

    def on_close(self, callback: CloseCallback) -> Subscription:
        self._close_listeners.append(callback)
        return Subscription(functools.partial(_discard, self._close_listeners, callback))

    def clear_listeners(self) -> None:
        self._data_listeners.clear()
        self._error_listeners.clear()
        self._close_listeners.clear()

    def _dispatch_data(self, data: bytes) -> None:
        log_hexdump(logger, logging.DEBUG, f"{self.role} < {self.display_path}", data)
        for callback in tuple(self._data_listeners):
            try:
                callback(data)
            except Exception:
                logger.exception("Data listener failed on %s", self.display_path)

    def _dispatch_error(self, exc: BaseException) -> None:
        for callback in tuple(self._error_listeners):
            try:
                callback(exc)
            except Exception:
                logger.exception("Error listener failed on %s", self.display_path)

    def _dispatch_close(self) -> None:
        for callback in tuple(self._close_listeners):
            try:
                callback()
            except Exception:
                logger.exception("Close listener failed on %s", self.display_path)

    # --- I/O -------------------------------------------------------------

    async def write(self, data: bytes) -> None:
        transport = self._transport
        protocol = self._protocol
        if transport is None or protocol is None or transport.is_closing():
            raise PortNotOpenError(f"Port {self.display_path} is not open")
        transport.write(data)
        log_hexdump(logger, logging.DEBUG, f"{self.role} > {self.display_path}", data)
        await protocol.drain_helper()

    def control_signals(self) -> ControlSignals:
        transport = self._transport
        if transport is None:
            raise PortNotOpenError(f"Port {self.display_path} is not open")
        serial_instance: Any = getattr(transport, "serial", None)
        if serial_instance is None:
            raise PortNotOpenError(f"Port {self.display_path} is not open")
        return ControlSignals(
            cd=bool(serial_instance.cd),
            dsr=bool(serial_instance.dsr),
            cts=bool(serial_instance.cts),
        )

    async def close(self) -> None:
        """Close the device, aborting if pending output never drains."""
        transport = self._transport
        protocol = self._protocol
        if transport is None or protocol is None:
            return
        try:
            if not transport.is_closing():
                transport.close()
            try:
                await asyncio.wait_for(asyncio.shield(protocol.closed), CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning("Close of %s stalled with pending output; aborting", self.display_path)
                transport.abort()
        finally:
            self._transport = None
        logger.info("Closed %s port %s", self.role, self.display_path)


def _discard(listeners: list[Any], callback: Any) -> None:
    try:
        listeners.remove(callback)
    except ValueError:
        pass


@dataclass(slots=True)
class OpenAttempt:
    """Outcome of one construction attempt; a retry produces a new record."""

    path: str
    handle: DeviceHandle | None = None
    error: BaseException | None = None


async def _attempt_open(
    path: str,
    settings: SerialSettings,
    role: str,
    connector: SerialConnector | None,
) -> OpenAttempt:
    handle = DeviceHandle(path, settings, role=role)
    try:
        await handle.open(connector=connector)
    except (serial.SerialException, OSError, ValueError) as exc:
        return OpenAttempt(path=path, error=exc)
    return OpenAttempt(path=path, handle=handle)


async def open_device(
    path: str,
    settings: SerialSettings,
    *,
    role: str = "device",
    connector: SerialConnector | None = None,
) -> DeviceHandle:
    """Open *path*, retrying once with the extended device path.

    Raises:
        SerialOpenError: both attempts failed; the message names the
            simplified path.
    """
    attempt = await _attempt_open(path, settings, role, connector)
    if attempt.handle is not None:
        return attempt.handle

    kind = classify_open_error(attempt.error)
    fallback = extended_path(path)
    if kind is not OpenErrorKind.OTHER and fallback is not None:
        logger.info("Open of %s failed (%s); retrying as %s", path, attempt.error, fallback)
        attempt = await _attempt_open(fallback, settings, role, connector)
        if attempt.handle is not None:
            return attempt.handle
        kind = classify_open_error(attempt.error)

    logger.error("Could not open %s port %s: %s", role, simplify_path(path), attempt.error)
    raise SerialOpenError(kind, simplify_path(path), str(attempt.error)) from attempt.error


__all__ = [
    "ControlSignals",
    "DeviceHandle",
    "DeviceOpener",
    "EndpointProtocol",
    "OpenAttempt",
    "SerialEndpoint",
    "classify_open_error",
    "extended_path",
    "open_device",
    "simplify_path",
]
