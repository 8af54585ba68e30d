#!/usr/bin/env python3
"""Async orchestrator for the Tcom bridge daemon.

Loads the configuration, installs the driver fault guard, starts every
configured session and keeps forwarding until SIGINT/SIGTERM, then stops all
sessions before exiting.

Architecture:
    main() -> BridgeDaemon.run()
        ├── FaultGuard (sys / threading / loop hooks)
        ├── BridgeService (one BridgeSession per configured session)
        ├── event logger (EventBus subscriber)
        └── prometheus-exporter (optional)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from typing import NoReturn

import msgspec
import tenacity

from .config.logging import configure_logging
from .config.model import BridgeConfig, RuntimeConfig
from .config.settings import get_config_source, load_runtime_config
from .errors import PairToolError
from .events import BridgeEvent, DataEvent, ErrorEvent, encode_event
from .fault_guard import FaultGuard
from .metrics import PrometheusExporter
from .services.pairs import PairTool
from .services.runtime import BridgeService, CommandResult

logger = logging.getLogger("tcombridge")
event_logger = logging.getLogger("tcombridge.events")


class _StartCallbacks:
    """Helper to avoid nested functions in the start retry loop."""

    __slots__ = ("session_id",)

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id

    def before_sleep(self, retry_state: tenacity.RetryCallState) -> None:
        result = retry_state.outcome.result() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        error = result.error if isinstance(result, CommandResult) else None
        logger.warning("Start of %s failed (%s); retrying in %.1fs", self.session_id, error, delay)

    @staticmethod
    def give_up(retry_state: tenacity.RetryCallState) -> CommandResult | None:
        return retry_state.outcome.result() if retry_state.outcome else None


def _start_failed(result: CommandResult | None) -> bool:
    return result is None or not result.success


class BridgeDaemon:
    """Main orchestrator for the bridge daemon.

    Attributes:
        config: Runtime configuration loaded from TOML.
        service: BridgeService answering start/stop/write requests.
        guard: Driver fault guard installed for the daemon's lifetime.
        exporter: Optional Prometheus metrics exporter.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        *,
        service: BridgeService | None = None,
        guard: FaultGuard | None = None,
    ) -> None:
        self.config = config
        self.service = service if service is not None else BridgeService(config)
        self.guard = guard if guard is not None else FaultGuard(
            config.fault_signatures,
            on_suppressed=self._record_fault,
        )
        self.exporter: PrometheusExporter | None = None
        if config.metrics_enabled:
            self.exporter = PrometheusExporter(self.service, config.metrics_host, config.metrics_port)

    def _record_fault(self, _exc: BaseException | str) -> None:
        self.service.stats.faults_suppressed += 1

    async def start_session(self, session_id: str, config: BridgeConfig) -> CommandResult:
        """Start one session, retrying per ``start_retry_attempts``."""
        callbacks = _StartCallbacks(session_id)
        retryer = tenacity.AsyncRetrying(
            stop=tenacity.stop_after_attempt(self.config.start_retry_attempts + 1),
            wait=tenacity.wait_fixed(self.config.start_retry_delay),
            retry=tenacity.retry_if_result(_start_failed),
            before_sleep=callbacks.before_sleep,
            retry_error_callback=callbacks.give_up,
        )
        result = CommandResult.fail("Start not attempted")
        async for attempt in retryer:
            with attempt:
                result = await self.service.start(session_id, config)
            if attempt.retry_state.outcome is not None and not attempt.retry_state.outcome.failed:
                attempt.retry_state.set_result(result)
        if result.success:
            logger.info("Session %s started", session_id)
        else:
            logger.error("Session %s could not be started: %s", session_id, result.error)
        return result

    def _log_event(self, event: BridgeEvent) -> None:
        if isinstance(event, DataEvent):
            if event_logger.isEnabledFor(logging.DEBUG):
                event_logger.debug("%s", encode_event(event).decode("utf-8"), extra={"session_id": event.session_id})
            return
        level = logging.WARNING if isinstance(event, ErrorEvent) else logging.INFO
        event_logger.log(level, "%s", encode_event(event).decode("utf-8"), extra={"session_id": event.session_id})

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                # Proactor loops have no add_signal_handler.
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Main async entry point."""
        loop = asyncio.get_running_loop()
        self.guard.install(loop)
        stop_event = stop_event or asyncio.Event()
        self._install_signal_handlers(loop, stop_event)
        subscription = self.service.subscribe(self._log_event)

        exporter_task: asyncio.Task[None] | None = None
        if self.exporter is not None:
            exporter_task = asyncio.create_task(self.exporter.run(), name="prometheus-exporter")

        try:
            async with self.service:
                for session_id, session_config in self.config.sessions.items():
                    await self.start_session(session_id, session_config)
                if not self.config.sessions:
                    logger.warning("No sessions configured; waiting for shutdown")
                await stop_event.wait()
                logger.info("Shutdown requested; stopping %d session(s)", len(self.service.registry))
        finally:
            if exporter_task is not None:
                exporter_task.cancel()
                await asyncio.gather(exporter_task, return_exceptions=True)
            subscription()
            self.guard.uninstall()
            logger.info("Tcom bridge daemon stopped.", extra=self.service.stats.as_dict())


async def list_pairs(config: RuntimeConfig) -> int:
    if not config.pair_tool_path:
        logger.error("pair_tool_path is not configured")
        return 1
    tool = PairTool(config.pair_tool_path, timeout=config.pair_tool_timeout)
    try:
        pairs = await tool.list_pairs()
    except PairToolError as exc:
        logger.error("%s", exc)
        return 1
    for pair in pairs:
        sys.stdout.write(msgspec.json.encode(pair).decode("utf-8") + "\n")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tcombridge", description="Virtual <-> physical serial port bridge")
    parser.add_argument("--config", metavar="PATH", help="configuration file (default: $TCOMBRIDGE_CONFIG)")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    parser.add_argument("--list-pairs", action="store_true", help="print installed driver pairs and exit")
    return parser


def _loop_factory():  # pragma: no cover (platform dependent)
    if sys.platform == "win32":
        return None
    # uvloop is mandatory wherever it is available.
    import uvloop

    return uvloop.new_event_loop


def main(argv: Sequence[str] | None = None) -> NoReturn:  # pragma: no cover (Entry point wrapper)
    args = build_parser().parse_args(argv)
    try:
        config = load_runtime_config(args.config)
    except ValueError as exc:
        sys.stderr.write(f"{exc}\n")
        sys.exit(2)
    if args.debug:
        config.debug_logging = True
    configure_logging(config)

    if args.list_pairs:
        sys.exit(asyncio.run(list_pairs(config)))

    logger.info(
        "Starting Tcom bridge daemon with %d session(s) from %s",
        len(config.sessions),
        get_config_source(),
    )

    try:
        daemon = BridgeDaemon(config)
        asyncio.run(daemon.run(), loop_factory=_loop_factory())
        sys.exit(0)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        sys.exit(0)
    except OSError as exc:
        logger.critical("System/OS error during daemon execution: %s", exc, exc_info=True)
        sys.exit(1)
    except RuntimeError as exc:
        logger.critical("Daemon aborted due to runtime error: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
