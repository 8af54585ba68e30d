"""Prometheus exporter for the Tcom bridge.

Metrics are read straight from the running :class:`BridgeService` at scrape
time: process-wide traffic and write counters from :class:`BridgeStats`, and
per-session gauges labelled by ``session`` (and ``endpoint`` for the write
queues).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

from prometheus_client import CollectorRegistry
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, InfoMetricFamily
from prometheus_client.exposition import choose_encoder
from prometheus_client.registry import Collector

from .events import Endpoint

if TYPE_CHECKING:
    from .services.runtime import BridgeService

logger = logging.getLogger("tcombridge.metrics")

_METRIC_PATHS = frozenset({"/", "/metrics"})
_MAX_HEADER_BYTES = 8192


class BridgeCollector(Collector):
    """Project the service's counters and sessions onto metric families."""

    def __init__(self, service: BridgeService) -> None:
        self._service = service

    def collect(self) -> Iterator[Any]:
        stats = self._service.stats

        traffic = CounterMetricFamily(
            "tcombridge_bytes", "Bytes forwarded between endpoints", labels=("direction",)
        )
        traffic.add_metric(("tx",), stats.bytes_tx)
        traffic.add_metric(("rx",), stats.bytes_rx)
        yield traffic

        last_seen = GaugeMetricFamily(
            "tcombridge_last_traffic_timestamp_seconds",
            "Unix time of the last forwarded chunk",
            labels=("direction",),
        )
        last_seen.add_metric(("tx",), stats.last_tx_unix)
        last_seen.add_metric(("rx",), stats.last_rx_unix)
        yield last_seen

        writes = CounterMetricFamily("tcombridge_writes", "Queued writes by outcome", labels=("status",))
        writes.add_metric(("written",), stats.writes_ok)
        writes.add_metric(("timed_out",), stats.write_timeouts)
        writes.add_metric(("failed",), stats.write_failures)
        writes.add_metric(("skipped",), stats.writes_skipped)
        writes.add_metric(("rejected",), stats.writes_rejected)
        yield writes

        lifecycle = CounterMetricFamily("tcombridge_sessions", "Session lifecycle outcomes", labels=("outcome",))
        lifecycle.add_metric(("started",), stats.sessions_started)
        lifecycle.add_metric(("failed",), stats.sessions_failed)
        lifecycle.add_metric(("stopped",), stats.sessions_stopped)
        yield lifecycle

        faults = CounterMetricFamily("tcombridge_faults_suppressed", "Driver faults swallowed by the fault guard")
        faults.add_metric((), stats.faults_suppressed)
        yield faults

        yield from self._collect_sessions()

    def _collect_sessions(self) -> Iterator[Any]:
        forwarding = GaugeMetricFamily(
            "tcombridge_session_forwarding", "1 while the session forwards traffic", labels=("session",)
        )
        partner = GaugeMetricFamily(
            "tcombridge_partner_connected",
            "1 while the partner application holds the virtual port open",
            labels=("session",),
        )
        depth = GaugeMetricFamily(
            "tcombridge_write_queue_depth", "Writes waiting behind the one in flight", labels=("session", "endpoint")
        )
        lingering = GaugeMetricFamily(
            "tcombridge_write_queue_lingering",
            "Timed-out writes still owned by the driver",
            labels=("session", "endpoint"),
        )
        ports = InfoMetricFamily("tcombridge_session", "Ports bound by each session", labels=("session",))

        for session_id, session in sorted(self._service.sessions().items()):
            forwarding.add_metric((session_id,), 1.0 if session.is_forwarding else 0.0)
            connected = session.partner is not None and session.partner.connected
            partner.add_metric((session_id,), 1.0 if connected else 0.0)
            for endpoint in Endpoint:
                queue = session.queues[endpoint]
                depth.add_metric((session_id, endpoint.value), len(queue))
                lingering.add_metric((session_id, endpoint.value), queue.lingering)
            ports.add_metric(
                (session_id,),
                {
                    "state": session.fsm_state,
                    "virtual_port": session.config.virtual_port or "",
                    "physical_port": session.config.physical_port or "",
                    "paired_port": session.config.paired_port or "",
                },
            )

        yield forwarding
        yield partner
        yield depth
        yield lingering
        yield ports


class PrometheusExporter:
    """Serve the bridge collector over a minimal asyncio HTTP listener."""

    def __init__(self, service: BridgeService, host: str, port: int) -> None:
        self._host = host
        self._port = port
        self._server: asyncio.AbstractServer | None = None
        self.registry = CollectorRegistry()
        self.registry.register(BridgeCollector(service))

    @property
    def port(self) -> int:
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await asyncio.start_server(self._serve, host=self._host, port=self._port)
        logger.info("Prometheus exporter listening on %s:%d", self._host, self.port)

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        await server.wait_closed()
        logger.info("Prometheus exporter stopped")

    async def run(self) -> None:
        await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    def render(self, accept: str | None = None) -> tuple[bytes, str]:
        """Encode the registry in the format *accept* asks for."""
        encoder, content_type = choose_encoder(accept or "")
        return encoder(self.registry), content_type

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            head = await reader.readuntil(b"\r\n\r\n")
            status, body, content_type = self._respond(head)
            writer.write(
                (
                    f"HTTP/1.1 {status.value} {status.phrase}\r\n"
                    f"Content-Type: {content_type}\r\n"
                    f"Content-Length: {len(body)}\r\n"
                    "Connection: close\r\n\r\n"
                ).encode("ascii")
                + body
            )
            await writer.drain()
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, ConnectionError) as exc:
            logger.debug("Dropped metrics request: %s", exc)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    def _respond(self, head: bytes) -> tuple[HTTPStatus, bytes, str]:
        if len(head) > _MAX_HEADER_BYTES:
            return HTTPStatus.REQUEST_HEADER_FIELDS_TOO_LARGE, b"", "text/plain"
        request_line, *header_lines = head.decode("latin-1").split("\r\n")
        parts = request_line.split()
        if len(parts) != 3:
            return HTTPStatus.BAD_REQUEST, b"", "text/plain"
        method, target, _version = parts
        if method != "GET":
            return HTTPStatus.METHOD_NOT_ALLOWED, b"", "text/plain"
        if target.split("?", 1)[0] not in _METRIC_PATHS:
            return HTTPStatus.NOT_FOUND, b"", "text/plain"

        accept = None
        for line in header_lines:
            name, _, value = line.partition(":")
            if name.strip().lower() == "accept":
                accept = value.strip()
        body, content_type = self.render(accept)
        return HTTPStatus.OK, body, content_type


__all__ = ["BridgeCollector", "PrometheusExporter"]
