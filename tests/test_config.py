"""Tests for configuration loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from tcombridge.config import settings
from tcombridge.config.model import BridgeConfig, RuntimeConfig, SerialSettings
from tcombridge.const import DEFAULT_FAULT_SIGNATURES, DEFAULT_FORWARD_WRITE_TIMEOUT, DEFAULT_MANUAL_WRITE_TIMEOUT

SAMPLE = """
debug_logging = true
manual_write_timeout = 0.5
write_queue_limit = 32
pair_tool_path = "  C:/Program Files/com0com/setupc.exe  "

[sessions.printer]
virtual_port = "COM5"
physical_port = " COM11 "
baud_rate = 9600
parity = "EVEN"
paired_port = "COM6"
auto_destroy_pair = true

[sessions.logger]
virtual_port = "COM7"
physical_port = "/dev/ttyUSB0"
"""


def test_missing_file_yields_defaults() -> None:
    config = settings.load_runtime_config()

    assert config.forward_write_timeout == DEFAULT_FORWARD_WRITE_TIMEOUT
    assert config.manual_write_timeout == DEFAULT_MANUAL_WRITE_TIMEOUT
    assert config.sessions == {}
    assert config.fault_signatures == DEFAULT_FAULT_SIGNATURES
    assert settings.get_config_source() == "defaults"


def test_load_from_env_path(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path = tmp_path / "config.toml"
    path.write_text(SAMPLE, encoding="utf-8")
    monkeypatch.setenv("TCOMBRIDGE_CONFIG", str(path))

    config = settings.load_runtime_config()

    assert config.debug_logging is True
    assert config.manual_write_timeout == 0.5
    assert config.write_queue_limit == 32
    assert config.pair_tool_path == "C:/Program Files/com0com/setupc.exe"
    printer = config.sessions["printer"]
    assert printer.physical_port == "COM11"
    assert printer.parity == "even"
    assert printer.auto_destroy_pair is True
    assert printer.serial_settings == SerialSettings(baud_rate=9600, data_bits=8, stop_bits=1, parity="even")
    assert config.sessions["logger"].baud_rate == 115200
    assert settings.get_config_source() == str(path)


def test_explicit_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path = tmp_path / "explicit.toml"
    path.write_text("write_queue_limit = 4\n", encoding="utf-8")
    monkeypatch.setenv("TCOMBRIDGE_CONFIG", str(tmp_path / "other.toml"))

    assert settings.resolve_config_path(path) == path
    assert settings.load_runtime_config(path).write_queue_limit == 4


@pytest.mark.parametrize(
    "snippet",
    [
        "forward_write_timeout = 0\n",
        "write_queue_limit = 0\n",
        "metrics_port = 70000\n",
        '[sessions.a]\nvirtual_port = "COM5"\nphysical_port = "COM11"\ndata_bits = 9\n',
        '[sessions.a]\nvirtual_port = "COM5"\nphysical_port = "COM11"\nstop_bits = 3\n',
        '[sessions.a]\nvirtual_port = "COM5"\nphysical_port = "com5"\n',
    ],
)
def test_invalid_values_are_rejected(tmp_path: Path, snippet: str) -> None:
    path = tmp_path / "bad.toml"
    path.write_text(snippet, encoding="utf-8")

    with pytest.raises(ValueError, match="Invalid configuration"):
        settings.load_runtime_config(path)


def test_parse_bridge_config_normalises_blank_ports() -> None:
    config = settings.parse_bridge_config({"virtual_port": "  ", "physical_port": "COM11", "stop_bits": 1.5})

    assert config == BridgeConfig(virtual_port=None, physical_port="COM11", stop_bits=1.5)


def test_parse_bridge_config_accepts_camel_case_keys() -> None:
    config = settings.parse_bridge_config(
        {
            "virtualPort": "COM5",
            "physicalPort": "COM11",
            "baudRate": 9600,
            "dataBits": 7,
            "stopBits": 2,
            "parity": "Even",
            "autoDestroyPair": True,
        }
    )

    assert config == BridgeConfig(
        virtual_port="COM5",
        physical_port="COM11",
        baud_rate=9600,
        data_bits=7,
        stop_bits=2,
        parity="even",
        auto_destroy_pair=True,
    )


def test_parse_bridge_config_prefers_snake_case_when_both_given() -> None:
    config = settings.parse_bridge_config({"baudRate": 9600, "baud_rate": 57600, "physicalPort": "COM11"})

    assert config.baud_rate == 57600
    assert config.physical_port == "COM11"

def test_parse_bridge_config_rejects_unknown_parity() -> None:
    with pytest.raises(ValueError, match="Invalid bridge configuration"):
        settings.parse_bridge_config({"parity": "sideways"})


def test_runtime_config_rejects_non_positive_timeouts() -> None:
    with pytest.raises(ValueError, match="manual_write_timeout"):
        RuntimeConfig(manual_write_timeout=0)
    assert RuntimeConfig(start_retry_attempts=-3).start_retry_attempts == 0
