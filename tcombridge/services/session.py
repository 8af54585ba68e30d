"""A single virtual <-> physical bridge session."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from transitions import Machine

from ..config.logging import SessionLogger
from ..config.model import BridgeConfig
from ..const import DEFAULT_FORWARD_WRITE_TIMEOUT, DEFAULT_PARTNER_POLL_INTERVAL, DEFAULT_WRITE_QUEUE_LIMIT
from ..errors import BridgeConfigurationError, BridgeError, PortNotOpenError
from ..events import (
    ClosedEvent,
    DataEvent,
    Endpoint,
    ErrorEvent,
    EventBus,
    PartnerStatusEvent,
    Subscription,
    TrafficType,
)
from ..state.queues import WriteQueue, WriteResult, WriteStatus
from ..state.stats import BridgeStats
from ..transport.serial import DeviceOpener, SerialEndpoint, open_device
from .partner import PartnerMonitor

logger = logging.getLogger("tcombridge.session")


class BridgeSession:
    """Owns both device handles of one session and the pipes between them.

    A session is either fully open (both handles) or fully closed: a failure
    while opening closes whichever handle did open before the error is
    re-raised. Incoming bytes on one endpoint are written to the other through
    that endpoint's :class:`WriteQueue`.
    """

    if TYPE_CHECKING:
        # FSM generated methods and attributes for static analysis
        fsm_state: str
        begin_open: Callable[[], bool]
        open_succeeded: Callable[[], bool]
        open_failed: Callable[[], bool]
        begin_stop: Callable[[], bool]
        finish_stop: Callable[[], bool]

    STATE_UNSTARTED = "unstarted"
    STATE_OPENING = "opening"
    STATE_FORWARDING = "forwarding"
    STATE_STOPPING = "stopping"
    STATE_CLOSED = "closed"

    def __init__(
        self,
        session_id: str,
        config: BridgeConfig,
        *,
        events: EventBus,
        opener: DeviceOpener = open_device,
        forward_write_timeout: float = DEFAULT_FORWARD_WRITE_TIMEOUT,
        partner_poll_interval: float = DEFAULT_PARTNER_POLL_INTERVAL,
        write_queue_limit: int = DEFAULT_WRITE_QUEUE_LIMIT,
        stats: BridgeStats | None = None,
    ) -> None:
        self.session_id = session_id
        self.config = config
        self._events = events
        self._opener = opener
        self._forward_timeout = forward_write_timeout
        self._poll_interval = partner_poll_interval
        self._stats = stats
        self._log = SessionLogger(logger, session_id)
        self.virtual: SerialEndpoint | None = None
        self.physical: SerialEndpoint | None = None
        self.partner: PartnerMonitor | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._subscriptions: list[Subscription] = []
        self.queues: dict[Endpoint, WriteQueue] = {
            endpoint: WriteQueue(
                f"{session_id}:{endpoint}",
                limit=write_queue_limit,
                is_stopping=self._stopping_check,
                on_result=stats.record_write if stats is not None else None,
                log=SessionLogger(logging.getLogger("tcombridge.queue"), session_id, endpoint),
            )
            for endpoint in Endpoint
        }

        self.state_machine = Machine(
            model=self,
            states=[
                self.STATE_UNSTARTED,
                self.STATE_OPENING,
                self.STATE_FORWARDING,
                self.STATE_STOPPING,
                self.STATE_CLOSED,
            ],
            initial=self.STATE_UNSTARTED,
            auto_transitions=False,
            ignore_invalid_triggers=True,
            model_attribute="fsm_state",
        )
        self.state_machine.add_transition("begin_open", self.STATE_UNSTARTED, self.STATE_OPENING)
        self.state_machine.add_transition("open_succeeded", self.STATE_OPENING, self.STATE_FORWARDING)
        self.state_machine.add_transition("open_failed", self.STATE_OPENING, self.STATE_CLOSED)
        self.state_machine.add_transition(
            "begin_stop", [self.STATE_UNSTARTED, self.STATE_OPENING, self.STATE_FORWARDING], self.STATE_STOPPING
        )
        self.state_machine.add_transition("finish_stop", self.STATE_STOPPING, self.STATE_CLOSED)

    def __repr__(self) -> str:
        return f"BridgeSession({self.session_id!r}, state={self.fsm_state})"

    @property
    def is_stopping(self) -> bool:
        return self.fsm_state in (self.STATE_STOPPING, self.STATE_CLOSED)

    @property
    def is_forwarding(self) -> bool:
        return self.fsm_state == self.STATE_FORWARDING

    def _stopping_check(self) -> bool:
        return self.is_stopping

    def handle(self, endpoint: Endpoint) -> SerialEndpoint | None:
        return self.virtual if endpoint is Endpoint.VIRTUAL else self.physical

    # --- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        """Open both endpoints concurrently and begin forwarding.

        Raises:
            BridgeConfigurationError: a port path is missing.
            SerialOpenError: either endpoint failed to open.
        """
        if self.fsm_state != self.STATE_UNSTARTED:
            raise RuntimeError(f"Session {self.session_id} already started")

        self.begin_open()
        virtual_port = self.config.virtual_port
        physical_port = self.config.physical_port
        if not virtual_port or not physical_port:
            self.open_failed()
            raise BridgeConfigurationError("Both virtual_port and physical_port are required")

        settings = self.config.serial_settings
        results = await asyncio.gather(
            self._opener(virtual_port, settings, role=Endpoint.VIRTUAL.value),
            self._opener(physical_port, settings, role=Endpoint.PHYSICAL.value),
            return_exceptions=True,
        )
        opened = [result for result in results if not isinstance(result, BaseException)]
        failures = [result for result in results if isinstance(result, BaseException)]
        if failures:
            await self._force_close(opened)
            self.open_failed()
            raise failures[0]

        self.virtual, self.physical = opened[0], opened[1]
        self._attach_listeners(self.virtual, self.physical)

        self.partner = PartnerMonitor(
            self.virtual.control_signals,
            session_id=self.session_id,
            on_change=self._on_partner_change,
            interval=self._poll_interval,
        )
        self._poll_task = asyncio.create_task(self.partner.run(), name=f"partner-{self.session_id}")
        self.open_succeeded()
        self._log.info(
            "Forwarding %s <-> %s",
            self.virtual.display_path,
            self.physical.display_path,
        )

    async def stop(self) -> None:
        """Tear the session down; calling it again is a no-op."""
        if self.is_stopping:
            return
        self.begin_stop()

        poll_task, self._poll_task = self._poll_task, None
        if poll_task is not None:
            poll_task.cancel()
            await asyncio.gather(poll_task, return_exceptions=True)

        self._detach_listeners()
        for queue in self.queues.values():
            queue.clear()

        handles = [handle for handle in (self.virtual, self.physical) if handle is not None]
        results = await asyncio.gather(*(handle.close() for handle in handles), return_exceptions=True)
        for handle, result in zip(handles, results):
            if isinstance(result, BaseException):
                self._log.for_endpoint(handle.role).warning("Error closing port %s: %s", handle.display_path, result)

        self.finish_stop()
        self._log.info("Session stopped")

    async def _force_close(self, handles: list[SerialEndpoint]) -> None:
        for handle in handles:
            handle.clear_listeners()
        results = await asyncio.gather(*(handle.close() for handle in handles), return_exceptions=True)
        for handle, result in zip(handles, results):
            if isinstance(result, BaseException):
                self._log.for_endpoint(handle.role).warning("Error releasing port %s: %s", handle.display_path, result)
            else:
                self._log.for_endpoint(handle.role).info("Released port %s after failed start", handle.display_path)

    # --- forwarding ------------------------------------------------------

    def _attach_listeners(self, virtual: SerialEndpoint, physical: SerialEndpoint) -> None:
        self._detach_listeners()
        for endpoint, handle in ((Endpoint.VIRTUAL, virtual), (Endpoint.PHYSICAL, physical)):
            handle.clear_listeners()
            self._subscriptions.extend(
                (
                    handle.on_data(functools.partial(self._on_data, endpoint)),
                    handle.on_error(functools.partial(self._on_error, endpoint, handle)),
                    handle.on_close(functools.partial(self._on_closed, endpoint, handle)),
                )
            )

    def _detach_listeners(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription()
        for handle in (self.virtual, self.physical):
            if handle is not None:
                handle.clear_listeners()

    def _on_data(self, origin: Endpoint, data: bytes) -> None:
        if self.is_stopping:
            return
        target = origin.opposite
        handle = self.handle(target)
        if origin is Endpoint.VIRTUAL:
            traffic = TrafficType.TX
            if self._stats is not None:
                self._stats.record_tx(len(data))
        else:
            traffic = TrafficType.RX
            if self._stats is not None:
                self._stats.record_rx(len(data))
        self._events.emit(DataEvent(self.session_id, traffic, bytes(data)))

        if handle is None:
            return
        future = self.queues[target].enqueue(
            functools.partial(handle.write, bytes(data)),
            timeout=self._forward_timeout,
            label=f"forward {origin}->{target}",
        )
        future.add_done_callback(functools.partial(self._on_forward_done, target))

    def _on_forward_done(self, target: Endpoint, future: asyncio.Future[WriteResult]) -> None:
        if future.cancelled() or self.is_stopping:
            return
        result = future.result()
        handle = self.handle(target)
        path = handle.display_path if handle is not None else str(target)
        match result.status:
            case WriteStatus.FAILED:
                self._events.emit(
                    ErrorEvent(self.session_id, f"Write to {target} port {path} failed: {result.error}")
                )
            case WriteStatus.REJECTED:
                self._events.emit(ErrorEvent(self.session_id, f"Write queue full for {target} port {path}"))
            case _:
                pass

    def _on_error(self, origin: Endpoint, handle: SerialEndpoint, exc: BaseException) -> None:
        if self.is_stopping:
            return
        self._log.for_endpoint(origin).error("Port %s error: %s", handle.display_path, exc)
        self._events.emit(ErrorEvent(self.session_id, f"{origin.capitalize()} port {handle.display_path} error: {exc}"))

    def _on_closed(self, origin: Endpoint, handle: SerialEndpoint) -> None:
        if self.is_stopping:
            return
        self._log.for_endpoint(origin).warning("Port %s closed unexpectedly", handle.display_path)
        self._events.emit(ClosedEvent(self.session_id, origin, handle.display_path))

    def _on_partner_change(self, connected: bool) -> None:
        self._events.emit(PartnerStatusEvent(self.session_id, connected))

    # --- manual injection -------------------------------------------------

    async def send(self, target: Endpoint, data: bytes, *, timeout: float) -> WriteResult:
        """Queue a manual write behind any forwarded traffic to *target*."""
        handle = self.handle(target)
        if handle is None or not handle.is_open or self.is_stopping:
            raise PortNotOpenError(f"Port {target} is not open")
        return await self.queues[target].enqueue(
            functools.partial(handle.write, data),
            timeout=timeout,
            label="manual write",
        )

    def partner_present(self) -> bool:
        """Probe the virtual endpoint's control lines right now."""
        if self.virtual is None:
            return False
        try:
            return self.virtual.control_signals().partner_present
        except (BridgeError, OSError, ValueError, AttributeError) as exc:
            self._log.debug("Control line probe failed: %s", exc)
            return False


__all__ = ["BridgeSession"]
