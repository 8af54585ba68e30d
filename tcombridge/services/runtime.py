"""Command surface for starting, stopping and writing to bridge sessions."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

import msgspec
import serial

from ..config.logging import SessionLogger
from ..config.model import BridgeConfig, RuntimeConfig
from ..config.settings import parse_bridge_config
from ..errors import BridgeError, PairToolError, PortNotOpenError
from ..events import BridgeEvent, Endpoint, EventBus, EventCallback, Subscription
from ..state.queues import WriteStatus
from ..state.registry import SessionRegistry
from ..state.stats import BridgeStats
from ..transport.serial import DeviceOpener, open_device
from ..util import coerce_payload
from .pairs import PairTool
from .session import BridgeSession

logger = logging.getLogger("tcombridge.service")


def _session_log(session_id: str, endpoint: str | None = None) -> SessionLogger:
    return SessionLogger(logger, session_id, endpoint)


class CommandResult(msgspec.Struct, frozen=True):
    """Reply to a start/stop/write request."""

    success: bool
    error: str | None = None

    @classmethod
    def ok(cls) -> CommandResult:
        return cls(success=True)

    @classmethod
    def fail(cls, error: str) -> CommandResult:
        return cls(success=False, error=error)


_OK = CommandResult.ok()


class BridgeService:
    """Service façade over the session registry.

    Every request is answered with a :class:`CommandResult`; failures are
    never raised to the caller. Start and stop for the same session id are
    serialised, so overlapping requests cannot leave two handle pairs open.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        *,
        registry: SessionRegistry | None = None,
        events: EventBus | None = None,
        opener: DeviceOpener = open_device,
        pair_tool: PairTool | None = None,
        stats: BridgeStats | None = None,
    ) -> None:
        self.config = config
        self.registry = registry if registry is not None else SessionRegistry()
        self.events = events if events is not None else EventBus()
        self.stats = stats if stats is not None else BridgeStats()
        self._opener = opener
        if pair_tool is None and config.pair_tool_path:
            pair_tool = PairTool(config.pair_tool_path, timeout=config.pair_tool_timeout)
        self.pair_tool = pair_tool

    async def __aenter__(self) -> BridgeService:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.stop_all()

    def subscribe(self, callback: EventCallback) -> Subscription:
        return self.events.subscribe(callback)

    def emit(self, event: BridgeEvent) -> None:
        self.events.emit(event)

    def is_running(self, session_id: str) -> bool:
        return session_id in self.registry

    def sessions(self) -> dict[str, BridgeSession]:
        return self.registry.sessions()

    # --- start -------------------------------------------------------------

    async def start(self, session_id: str, config: BridgeConfig | Mapping[str, Any]) -> CommandResult:
        """Start (or restart) *session_id* with *config*."""
        if not isinstance(config, BridgeConfig):
            try:
                config = parse_bridge_config(dict(config))
            except ValueError as exc:
                return CommandResult.fail(str(exc))

        async with self.registry.lock(session_id):
            config = await self._resolve_paired_port(session_id, config)
            if session_id in self.registry:
                _session_log(session_id).info("Already running; restarting")
                await self._stop_locked(session_id, destroy_pair=False)

            self.registry.remember_config(session_id, config)
            session = BridgeSession(
                session_id,
                config,
                events=self.events,
                opener=self._opener,
                forward_write_timeout=self.config.forward_write_timeout,
                partner_poll_interval=self.config.partner_poll_interval,
                write_queue_limit=self.config.write_queue_limit,
                stats=self.stats,
            )
            try:
                await session.start()
            except BridgeError as exc:
                self.stats.sessions_failed += 1
                _session_log(session_id).error("Failed to start: %s", exc)
                return CommandResult.fail(str(exc))
            except (serial.SerialException, OSError, ValueError, KeyError) as exc:
                self.stats.sessions_failed += 1
                _session_log(session_id).error("Failed to start: %s", exc, exc_info=True)
                return CommandResult.fail(str(exc) or type(exc).__name__)

            self.registry.add(session)
            self.stats.sessions_started += 1
            return _OK

    async def _resolve_paired_port(self, session_id: str, config: BridgeConfig) -> BridgeConfig:
        if config.paired_port or not config.virtual_port or self.pair_tool is None:
            return config
        try:
            paired = await self.pair_tool.find_paired_port(config.virtual_port)
        except PairToolError as exc:
            _session_log(session_id).warning("Could not look up paired port: %s", exc)
            return config
        if paired is None:
            return config
        _session_log(session_id).info("Partner port for %s is %s", config.virtual_port, paired)
        return msgspec.structs.replace(config, paired_port=paired)

    # --- stop --------------------------------------------------------------

    async def stop(self, session_id: str) -> CommandResult:
        """Stop *session_id*. Always succeeds; unknown ids are a no-op."""
        async with self.registry.lock(session_id):
            await self._stop_locked(session_id, destroy_pair=True)
        return _OK

    async def stop_all(self) -> None:
        for session_id in list(self.registry):
            await self.stop(session_id)

    async def _stop_locked(self, session_id: str, *, destroy_pair: bool) -> None:
        session = self.registry.get(session_id)
        if session is None:
            _session_log(session_id).debug("Stop requested for idle session")
            return
        await session.stop()
        self.registry.remove(session_id)
        self.stats.sessions_stopped += 1
        if destroy_pair:
            await self._destroy_pair(session_id, session.config)

    async def _destroy_pair(self, session_id: str, config: BridgeConfig) -> None:
        if not config.auto_destroy_pair or not config.virtual_port:
            return
        if self.pair_tool is None:
            _session_log(session_id).warning("auto_destroy_pair set but no pair_tool_path configured")
            return
        try:
            pair = await self.pair_tool.find_pair(config.virtual_port)
            if pair is None:
                _session_log(session_id).warning("No driver pair contains %s; nothing to destroy", config.virtual_port)
                return
            await self.pair_tool.remove_pair(pair.pair_id)
        except PairToolError as exc:
            _session_log(session_id).warning("Could not destroy driver pair: %s", exc)
            return

        stored = self.registry.config(session_id) or config
        self.registry.remember_config(
            session_id,
            msgspec.structs.replace(stored, virtual_port=None, paired_port=None),
        )

    # --- write -------------------------------------------------------------

    async def write(
        self,
        session_id: str,
        target: Endpoint | str,
        data: str | bytes | bytearray | memoryview | Iterable[int],
    ) -> CommandResult:
        """Inject *data* into one endpoint of a running session."""
        session = self.registry.get(session_id)
        if session is None:
            return CommandResult.fail("Session not found")
        try:
            endpoint = Endpoint(target)
        except ValueError:
            return CommandResult.fail(f"Unknown target {target!r}")
        try:
            payload = coerce_payload(data)
        except (TypeError, ValueError) as exc:
            return CommandResult.fail(f"Invalid payload: {exc}")

        try:
            result = await session.send(endpoint, payload, timeout=self.config.manual_write_timeout)
        except PortNotOpenError as exc:
            return CommandResult.fail(str(exc))

        match result.status:
            case WriteStatus.WRITTEN:
                return _OK
            case WriteStatus.TIMED_OUT:
                _session_log(session_id, endpoint).warning("Manual write of %d bytes timed out; still pending", len(payload))
                return _OK
            case WriteStatus.SKIPPED:
                return CommandResult.fail("Session is stopping")
            case WriteStatus.REJECTED:
                return CommandResult.fail("Write queue full")
            case _:
                if endpoint is Endpoint.VIRTUAL and not session.partner_present():
                    port = session.config.paired_port or session.config.virtual_port
                    return CommandResult.fail(f"Partner software has not opened the port {port}")
                return CommandResult.fail(result.error or "Write failed")


__all__ = ["BridgeService", "CommandResult"]
