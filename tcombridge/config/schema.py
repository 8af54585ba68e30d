"""Marshmallow schemas for RuntimeConfig validation."""

from __future__ import annotations

from typing import Any, Dict

from marshmallow import Schema, ValidationError, fields, post_load, pre_load, validate, validates_schema

from ..const import (
    DEFAULT_BAUDRATE,
    DEFAULT_DATA_BITS,
    DEFAULT_FAULT_SIGNATURES,
    DEFAULT_FORWARD_WRITE_TIMEOUT,
    DEFAULT_MANUAL_WRITE_TIMEOUT,
    DEFAULT_METRICS_HOST,
    DEFAULT_METRICS_PORT,
    DEFAULT_PAIR_TOOL_TIMEOUT,
    DEFAULT_PARITY,
    DEFAULT_PARTNER_POLL_INTERVAL,
    DEFAULT_START_RETRY_ATTEMPTS,
    DEFAULT_START_RETRY_DELAY,
    DEFAULT_STOP_BITS,
    DEFAULT_WRITE_QUEUE_LIMIT,
    VALID_DATA_BITS,
    VALID_PARITIES,
    VALID_STOP_BITS,
)
from .model import BridgeConfig, RuntimeConfig


_CAMEL_CASE_KEYS: Dict[str, str] = {
    "virtualPort": "virtual_port",
    "physicalPort": "physical_port",
    "baudRate": "baud_rate",
    "dataBits": "data_bits",
    "stopBits": "stop_bits",
    "pairedPort": "paired_port",
    "autoDestroyPair": "auto_destroy_pair",
}


class BridgeConfigSchema(Schema):
    """Schema for a single bridge session."""

    virtual_port = fields.Str(load_default=None, allow_none=True)
    physical_port = fields.Str(load_default=None, allow_none=True)
    baud_rate = fields.Int(load_default=DEFAULT_BAUDRATE, validate=validate.Range(min=50))
    data_bits = fields.Int(load_default=DEFAULT_DATA_BITS, validate=validate.OneOf(VALID_DATA_BITS))
    stop_bits = fields.Float(load_default=DEFAULT_STOP_BITS, validate=validate.OneOf(VALID_STOP_BITS))
    parity = fields.Str(load_default=DEFAULT_PARITY, validate=validate.OneOf(VALID_PARITIES))
    paired_port = fields.Str(load_default=None, allow_none=True)
    auto_destroy_pair = fields.Bool(load_default=False)

    @pre_load
    def normalize_ports(self, data: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        data = dict(data)
        # Command callers send camelCase keys; the snake_case spelling wins when both appear.
        for camel, snake in _CAMEL_CASE_KEYS.items():
            if camel in data:
                value = data.pop(camel)
                data.setdefault(snake, value)
        for key in ("virtual_port", "physical_port", "paired_port"):
            value = data.get(key)
            if isinstance(value, str):
                data[key] = value.strip() or None
        if isinstance(data.get("parity"), str):
            data["parity"] = data["parity"].lower()
        return data

    @post_load
    def make_config(self, data: Dict[str, Any], **kwargs: Any) -> BridgeConfig:
        return BridgeConfig(**data)


class RuntimeConfigSchema(Schema):
    """Declarative validation schema for the bridge process configuration."""

    debug_logging = fields.Bool(load_default=False)

    # Write queues
    forward_write_timeout = fields.Float(
        load_default=DEFAULT_FORWARD_WRITE_TIMEOUT, validate=validate.Range(min=0.05)
    )
    manual_write_timeout = fields.Float(load_default=DEFAULT_MANUAL_WRITE_TIMEOUT, validate=validate.Range(min=0.05))
    write_queue_limit = fields.Int(load_default=DEFAULT_WRITE_QUEUE_LIMIT, validate=validate.Range(min=1))

    # Partner presence
    partner_poll_interval = fields.Float(
        load_default=DEFAULT_PARTNER_POLL_INTERVAL, validate=validate.Range(min=0.05)
    )

    # Driver pair tool
    pair_tool_path = fields.Str(load_default=None, allow_none=True)
    pair_tool_timeout = fields.Float(load_default=DEFAULT_PAIR_TOOL_TIMEOUT, validate=validate.Range(min=0.1))

    # Caller retry policy
    start_retry_attempts = fields.Int(load_default=DEFAULT_START_RETRY_ATTEMPTS, validate=validate.Range(min=0))
    start_retry_delay = fields.Float(load_default=DEFAULT_START_RETRY_DELAY, validate=validate.Range(min=0.0))

    # Metrics
    metrics_enabled = fields.Bool(load_default=False)
    metrics_host = fields.Str(load_default=DEFAULT_METRICS_HOST)
    metrics_port = fields.Int(load_default=DEFAULT_METRICS_PORT, validate=validate.Range(min=0, max=65535))

    fault_signatures = fields.List(fields.Str(), load_default=list(DEFAULT_FAULT_SIGNATURES))

    sessions = fields.Dict(
        keys=fields.Str(validate=validate.Length(min=1)),
        values=fields.Nested(BridgeConfigSchema),
        load_default=dict,
    )

    @pre_load
    def normalize_tool_path(self, data: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        data = dict(data)
        tool = data.get("pair_tool_path")
        if isinstance(tool, str):
            data["pair_tool_path"] = tool.strip() or None
        return data

    @validates_schema
    def validate_session_ports(self, data: Dict[str, Any], **kwargs: Any) -> None:
        sessions: Dict[str, BridgeConfig] = data.get("sessions") or {}
        for session_id, session in sessions.items():
            if (
                session.virtual_port is not None
                and session.physical_port is not None
                and session.virtual_port.upper() == session.physical_port.upper()
            ):
                raise ValidationError(
                    f"session '{session_id}': virtual_port and physical_port must differ",
                    field_name="sessions",
                )

    @post_load
    def make_config(self, data: Dict[str, Any], **kwargs: Any) -> RuntimeConfig:
        data["fault_signatures"] = tuple(data["fault_signatures"])
        return RuntimeConfig(**data)
