"""Shared fakes for Tcom bridge tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, TypeVar

from tcombridge.config.model import SerialSettings
from tcombridge.events import BridgeEvent, Subscription
from tcombridge.services.pairs import PairInfo
from tcombridge.transport.serial import ControlSignals, simplify_path

EventT = TypeVar("EventT")


class FakeEndpoint:
    """In-memory stand-in for a DeviceHandle."""

    def __init__(self, path: str, *, role: str = "device") -> None:
        self.path = path
        self.display_path = simplify_path(path)
        self.role = role
        self.opened = True
        self.written: list[bytes] = []
        self.signals = ControlSignals()
        self.signal_error: BaseException | None = None
        self.write_error: BaseException | None = None
        self.write_gate: asyncio.Event | None = None
        self.close_error: BaseException | None = None
        self.close_calls = 0
        self._data: list[Callable[[bytes], None]] = []
        self._errors: list[Callable[[BaseException], None]] = []
        self._closes: list[Callable[[], None]] = []

    @property
    def is_open(self) -> bool:
        return self.opened

    @property
    def listener_count(self) -> int:
        return len(self._data) + len(self._errors) + len(self._closes)

    def on_data(self, callback: Callable[[bytes], None]) -> Subscription:
        self._data.append(callback)
        return Subscription(lambda: _discard(self._data, callback))

    def on_error(self, callback: Callable[[BaseException], None]) -> Subscription:
        self._errors.append(callback)
        return Subscription(lambda: _discard(self._errors, callback))

    def on_close(self, callback: Callable[[], None]) -> Subscription:
        self._closes.append(callback)
        return Subscription(lambda: _discard(self._closes, callback))

    def clear_listeners(self) -> None:
        self._data.clear()
        self._errors.clear()
        self._closes.clear()

    def feed(self, data: bytes) -> None:
        for callback in tuple(self._data):
            callback(data)

    def fail(self, exc: BaseException) -> None:
        for callback in tuple(self._errors):
            callback(exc)

    def drop(self) -> None:
        self.opened = False
        for callback in tuple(self._closes):
            callback()

    async def write(self, data: bytes) -> None:
        if self.write_error is not None:
            raise self.write_error
        if self.write_gate is not None:
            await self.write_gate.wait()
        self.written.append(data)

    def control_signals(self) -> ControlSignals:
        if self.signal_error is not None:
            raise self.signal_error
        return self.signals

    async def close(self) -> None:
        self.close_calls += 1
        self.opened = False
        if self.close_error is not None:
            raise self.close_error


def _discard(listeners: list[Any], callback: Any) -> None:
    if callback in listeners:
        listeners.remove(callback)


class FakeOpener:
    """DeviceOpener double: opens FakeEndpoints or raises configured failures."""

    def __init__(self) -> None:
        self.failures: dict[str, BaseException] = {}
        self.calls: list[tuple[str, str]] = []
        self.opened: list[FakeEndpoint] = []
        self.settings: list[SerialSettings] = []

    async def __call__(self, path: str, settings: SerialSettings, *, role: str = "device") -> FakeEndpoint:
        self.calls.append((path, role))
        self.settings.append(settings)
        await asyncio.sleep(0)
        failure = self.failures.get(path)
        if failure is not None:
            raise failure
        endpoint = FakeEndpoint(path, role=role)
        self.opened.append(endpoint)
        return endpoint

    def latest(self, path: str) -> FakeEndpoint:
        for endpoint in reversed(self.opened):
            if endpoint.path == path:
                return endpoint
        raise KeyError(path)


class EventRecorder:
    """EventBus subscriber that keeps every event."""

    def __init__(self) -> None:
        self.events: list[BridgeEvent] = []

    def __call__(self, event: BridgeEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type[EventT]) -> list[EventT]:
        return [event for event in self.events if isinstance(event, event_type)]


class FakePairTool:
    def __init__(self, pairs: list[PairInfo] | None = None) -> None:
        self.pairs = list(pairs or [])
        self.removed: list[str] = []

    async def list_pairs(self) -> list[PairInfo]:
        return list(self.pairs)

    async def find_pair(self, port: str) -> PairInfo | None:
        for pair in self.pairs:
            if pair.contains(port):
                return pair
        return None

    async def find_paired_port(self, port: str) -> str | None:
        pair = await self.find_pair(port)
        return pair.sibling(port) if pair is not None else None

    async def remove_pair(self, pair_id: str) -> None:
        self.removed.append(pair_id)
        self.pairs = [pair for pair in self.pairs if pair.pair_id != pair_id]


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)
