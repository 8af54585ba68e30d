"""Tests for BridgeSession lifecycle and partner detection."""

from __future__ import annotations

import logging

import pytest

from tcombridge.config.model import BridgeConfig
from tcombridge.errors import BridgeConfigurationError, OpenErrorKind, SerialOpenError
from tcombridge.events import EventBus
from tcombridge.services.partner import PARTNER_CLOSED, PARTNER_OPEN, PartnerMonitor, next_partner_state
from tcombridge.services.session import BridgeSession
from tcombridge.state.stats import BridgeStats
from tcombridge.transport.serial import ControlSignals

from tests.mocks import EventRecorder, FakeOpener


def _session(opener: FakeOpener, config: BridgeConfig, recorder: EventRecorder | None = None) -> BridgeSession:
    bus = EventBus()
    if recorder is not None:
        bus.subscribe(recorder)
    return BridgeSession(
        "s1",
        config,
        events=bus,
        opener=opener,
        forward_write_timeout=0.2,
        partner_poll_interval=0.01,
        stats=BridgeStats(),
    )


@pytest.mark.asyncio
async def test_session_lifecycle_states(opener: FakeOpener, bridge_config: BridgeConfig) -> None:
    session = _session(opener, bridge_config)
    assert session.fsm_state == BridgeSession.STATE_UNSTARTED
    assert session.is_stopping is False

    await session.start()
    assert session.fsm_state == BridgeSession.STATE_FORWARDING
    assert session.is_forwarding
    assert opener.calls == [("COM5", "virtual"), ("COM11", "physical")]

    await session.stop()
    assert session.fsm_state == BridgeSession.STATE_CLOSED
    assert session.is_stopping is True


@pytest.mark.asyncio
async def test_session_cannot_start_twice(opener: FakeOpener, bridge_config: BridgeConfig) -> None:
    session = _session(opener, bridge_config)
    await session.start()
    with pytest.raises(RuntimeError):
        await session.start()
    await session.stop()


@pytest.mark.asyncio
async def test_missing_port_closes_session(opener: FakeOpener) -> None:
    session = _session(opener, BridgeConfig(physical_port="COM11"))
    with pytest.raises(BridgeConfigurationError):
        await session.start()
    assert session.fsm_state == BridgeSession.STATE_CLOSED
    assert opener.calls == []


@pytest.mark.asyncio
async def test_virtual_failure_reported_first(opener: FakeOpener, bridge_config: BridgeConfig) -> None:
    opener.failures["COM5"] = SerialOpenError(OpenErrorKind.NOT_FOUND, "COM5")
    opener.failures["COM11"] = SerialOpenError(OpenErrorKind.OCCUPIED, "COM11")
    session = _session(opener, bridge_config)

    with pytest.raises(SerialOpenError, match="Port COM5 not found"):
        await session.start()
    assert session.fsm_state == BridgeSession.STATE_CLOSED
    assert opener.opened == []


@pytest.mark.asyncio
async def test_physical_failure_closes_virtual(opener: FakeOpener, bridge_config: BridgeConfig) -> None:
    opener.failures["COM11"] = SerialOpenError(OpenErrorKind.OCCUPIED, "COM11")
    session = _session(opener, bridge_config)

    with pytest.raises(SerialOpenError, match="occupied"):
        await session.start()
    assert [endpoint.close_calls for endpoint in opener.opened] == [1]
    assert session.virtual is None
    assert session.physical is None


@pytest.mark.asyncio
async def test_stop_before_start_is_clean(opener: FakeOpener, bridge_config: BridgeConfig) -> None:
    session = _session(opener, bridge_config)
    await session.stop()
    assert session.fsm_state == BridgeSession.STATE_CLOSED
    await session.stop()


@pytest.mark.asyncio
async def test_stop_cancels_partner_poll(opener: FakeOpener, bridge_config: BridgeConfig) -> None:
    session = _session(opener, bridge_config)
    await session.start()
    task = session._poll_task
    assert task is not None and not task.done()

    await session.stop()
    assert task.cancelled()


@pytest.mark.asyncio
async def test_listeners_are_removed_on_stop(opener: FakeOpener, bridge_config: BridgeConfig) -> None:
    session = _session(opener, bridge_config)
    await session.start()
    virtual = opener.latest("COM5")
    assert virtual.listener_count == 3

    await session.stop()
    assert virtual.listener_count == 0


def test_next_partner_state_is_pure() -> None:
    assert next_partner_state(PARTNER_CLOSED, False) == PARTNER_CLOSED
    assert next_partner_state(PARTNER_CLOSED, True) == PARTNER_OPEN
    assert next_partner_state(PARTNER_OPEN, True) == PARTNER_OPEN
    assert next_partner_state(PARTNER_OPEN, False) == PARTNER_CLOSED


def test_partner_monitor_reports_transitions_only() -> None:
    samples = iter([False, False, True, True, False])
    changes: list[bool] = []
    monitor = PartnerMonitor(
        lambda: ControlSignals(cts=next(samples)),
        session_id="s1",
        on_change=changes.append,
        interval=1.0,
    )

    for _ in range(5):
        monitor.poll_once()

    assert changes == [True, False]
    assert monitor.fsm_state == PARTNER_CLOSED


def test_partner_monitor_swallows_read_failures() -> None:
    changes: list[bool] = []

    def _broken() -> ControlSignals:
        raise OSError("ClearCommError failed")

    monitor = PartnerMonitor(_broken, session_id="s1", on_change=changes.append)
    assert monitor.poll_once() is False
    assert monitor.connected is False
    assert changes == []


def test_partner_monitor_observe_returns_change() -> None:
    monitor = PartnerMonitor(ControlSignals, session_id="s1", on_change=lambda _connected: None)
    assert monitor.observe(True) is True
    assert monitor.connected is True
    assert monitor.observe(True) is False
    assert monitor.observe(False) is True


def test_partner_monitor_rejects_bad_interval() -> None:
    with pytest.raises(ValueError):
        PartnerMonitor(ControlSignals, session_id="s1", on_change=lambda _connected: None, interval=0)


@pytest.mark.asyncio
async def test_session_logs_carry_session_and_endpoint(
    opener: FakeOpener, bridge_config: BridgeConfig, caplog: pytest.LogCaptureFixture
) -> None:
    session = _session(opener, bridge_config)
    with caplog.at_level(logging.INFO, logger="tcombridge.session"):
        await session.start()
        opener.latest("COM11").drop()
        await session.stop()

    records = [record for record in caplog.records if record.name == "tcombridge.session"]
    assert records
    assert all(getattr(record, "session_id", None) == "s1" for record in records)
    closed = [record for record in records if "closed unexpectedly" in record.getMessage()]
    assert [getattr(record, "endpoint", None) for record in closed] == ["physical"]
