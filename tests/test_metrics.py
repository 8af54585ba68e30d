"""Tests for the Prometheus exporter."""

from __future__ import annotations

import asyncio

import pytest

from tcombridge.config.model import BridgeConfig
from tcombridge.events import Endpoint
from tcombridge.metrics import PrometheusExporter
from tcombridge.services.runtime import BridgeService
from tcombridge.transport.serial import ControlSignals

from tests.mocks import FakeOpener, wait_until


@pytest.mark.asyncio
async def test_render_exports_counters(service: BridgeService, bridge_config: BridgeConfig) -> None:
    await service.start("s1", bridge_config)
    service.stats.record_tx(5)
    service.stats.faults_suppressed = 2

    body, content_type = PrometheusExporter(service, "127.0.0.1", 0).render()
    text = body.decode("utf-8")

    assert content_type.startswith("text/plain")
    assert 'tcombridge_bytes_total{direction="tx"} 5.0' in text
    assert 'tcombridge_sessions_total{outcome="started"} 1.0' in text
    assert "tcombridge_faults_suppressed_total 2.0" in text
    await service.stop("s1")


@pytest.mark.asyncio
async def test_render_exports_per_session_gauges(
    service: BridgeService, bridge_config: BridgeConfig, opener: FakeOpener
) -> None:
    await service.start("s1", bridge_config)
    virtual = opener.latest("COM5")
    physical = opener.latest("COM11")
    physical.write_gate = asyncio.Event()
    virtual.signals = ControlSignals(dsr=True)

    virtual.feed(b"first")
    virtual.feed(b"second")
    queue = service.registry.queue("s1", Endpoint.PHYSICAL)
    assert queue is not None
    await wait_until(lambda: len(queue) == 1)
    session = service.registry.get("s1")
    assert session is not None and session.partner is not None
    await wait_until(lambda: session.partner.connected)

    text = PrometheusExporter(service, "127.0.0.1", 0).render()[0].decode("utf-8")

    assert 'tcombridge_session_forwarding{session="s1"} 1.0' in text
    assert 'tcombridge_partner_connected{session="s1"} 1.0' in text
    assert 'tcombridge_write_queue_depth{endpoint="physical",session="s1"} 1.0' in text
    assert 'virtual_port="COM5"' in text
    assert 'state="forwarding"' in text

    physical.write_gate.set()
    await service.stop("s1")


@pytest.mark.asyncio
async def test_render_honours_openmetrics_accept(service: BridgeService) -> None:
    body, content_type = PrometheusExporter(service, "127.0.0.1", 0).render("application/openmetrics-text")

    assert content_type.startswith("application/openmetrics-text")
    assert body.endswith(b"# EOF\n")


async def _request(port: int, request: str) -> bytes:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(request.encode("ascii"))
    await writer.drain()
    response = await reader.read()
    writer.close()
    await writer.wait_closed()
    return response


@pytest.mark.asyncio
async def test_http_endpoint_serves_metrics(service: BridgeService) -> None:
    exporter = PrometheusExporter(service, "127.0.0.1", 0)
    await exporter.start()
    try:
        assert exporter.port != 0
        ok = await _request(exporter.port, "GET /metrics HTTP/1.1\r\nHost: localhost\r\n\r\n")
        missing = await _request(exporter.port, "GET /nope HTTP/1.1\r\nHost: localhost\r\n\r\n")
        posted = await _request(exporter.port, "POST /metrics HTTP/1.1\r\nHost: localhost\r\n\r\n")
    finally:
        await exporter.stop()

    assert ok.startswith(b"HTTP/1.1 200 OK")
    assert b"tcombridge_writes_total" in ok
    assert missing.startswith(b"HTTP/1.1 404 Not Found")
    assert posted.startswith(b"HTTP/1.1 405 Method Not Allowed")
