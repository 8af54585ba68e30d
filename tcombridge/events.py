"""Observability events published by bridge sessions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Union

import msgspec

logger = logging.getLogger("tcombridge.events")


class Endpoint(StrEnum):
    VIRTUAL = "virtual"
    PHYSICAL = "physical"

    @property
    def opposite(self) -> Endpoint:
        return Endpoint.PHYSICAL if self is Endpoint.VIRTUAL else Endpoint.VIRTUAL


class TrafficType(StrEnum):
    # Bytes the partner application sent into the virtual endpoint.
    TX = "TX"
    # Bytes the physical device sent.
    RX = "RX"


class DataEvent(msgspec.Struct, frozen=True, tag="data", tag_field="event"):
    session_id: str
    type: TrafficType
    data: bytes


class ErrorEvent(msgspec.Struct, frozen=True, tag="error", tag_field="event"):
    session_id: str
    message: str


class ClosedEvent(msgspec.Struct, frozen=True, tag="closed", tag_field="event"):
    session_id: str
    origin: Endpoint
    path: str


class PartnerStatusEvent(msgspec.Struct, frozen=True, tag="partner-status", tag_field="event"):
    session_id: str
    connected: bool


BridgeEvent = Union[DataEvent, ErrorEvent, ClosedEvent, PartnerStatusEvent]
EventCallback = Callable[[BridgeEvent], None]

_event_encoder = msgspec.json.Encoder()


def encode_event(event: BridgeEvent) -> bytes:
    """Encode an event as a single JSON document (bytes are base64)."""
    return _event_encoder.encode(event)


class Subscription:
    """Handle returned by ``subscribe``; calling it detaches the listener."""

    __slots__ = ("_detach", "_active")

    def __init__(self, detach: Callable[[], None]) -> None:
        self._detach = detach
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def __call__(self) -> None:
        if not self._active:
            return
        self._active = False
        self._detach()


class EventBus:
    """Fan-out of bridge events to subscribers.

    Subscriber failures are logged and never reach the publisher, so a faulty
    consumer cannot stall forwarding.
    """

    def __init__(self) -> None:
        self._subscribers: list[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> Subscription:
        self._subscribers.append(callback)
        return Subscription(lambda: self._remove(callback))

    def _remove(self, callback: EventCallback) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def __len__(self) -> int:
        return len(self._subscribers)

    def emit(self, event: BridgeEvent) -> None:
        for callback in tuple(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed for %s", type(event).__name__)


__all__ = [
    "BridgeEvent",
    "ClosedEvent",
    "DataEvent",
    "Endpoint",
    "ErrorEvent",
    "EventBus",
    "EventCallback",
    "PartnerStatusEvent",
    "Subscription",
    "TrafficType",
    "encode_event",
]
