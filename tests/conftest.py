"""Pytest configuration for Tcom bridge tests."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

PACKAGE_ROOT = Path(__file__).resolve().parents[1]
if str(PACKAGE_ROOT) not in sys.path:
    sys.path.insert(0, str(PACKAGE_ROOT))

from tcombridge.config.model import BridgeConfig, RuntimeConfig  # noqa: E402
from tcombridge.services.runtime import BridgeService  # noqa: E402

from tests.mocks import EventRecorder, FakeOpener  # noqa: E402


@pytest.fixture(autouse=True)
def reset_logging_handlers():
    """Close and remove all logging handlers after each test to prevent ResourceWarnings."""
    yield
    root = logging.getLogger()
    for handler in root.handlers[:]:
        try:
            handler.close()
        except (OSError, RuntimeError):
            pass
        root.removeHandler(handler)


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Never read the developer's real configuration file."""
    monkeypatch.setenv("TCOMBRIDGE_CONFIG", str(tmp_path / "missing.toml"))


@pytest.fixture()
def runtime_config() -> RuntimeConfig:
    return RuntimeConfig(
        debug_logging=False,
        forward_write_timeout=0.2,
        manual_write_timeout=0.2,
        partner_poll_interval=0.01,
        write_queue_limit=16,
        pair_tool_path=None,
        start_retry_attempts=0,
        start_retry_delay=0.0,
    )


@pytest.fixture()
def bridge_config() -> BridgeConfig:
    return BridgeConfig(virtual_port="COM5", physical_port="COM11")


@pytest.fixture()
def opener() -> FakeOpener:
    return FakeOpener()


@pytest.fixture()
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture()
def service(runtime_config: RuntimeConfig, opener: FakeOpener, recorder: EventRecorder) -> BridgeService:
    bridge = BridgeService(runtime_config, opener=opener)
    bridge.subscribe(recorder)
    return bridge
