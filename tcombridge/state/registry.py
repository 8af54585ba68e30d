"""Registry of running bridge sessions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..config.model import BridgeConfig
from ..events import Endpoint
from .queues import WriteQueue

if TYPE_CHECKING:
    from ..services.session import BridgeSession

logger = logging.getLogger("tcombridge.registry")


@dataclass(slots=True)
class _IdLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SessionRegistry:
    """Maps session ids to running sessions and their write queues.

    Absence of an id means "not running". The last configuration used for an
    id is kept even after the session stops so a later stop can still act on
    it. Start and stop for one id are serialised through :meth:`lock`.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, BridgeSession] = {}
        self._queues: dict[tuple[str, Endpoint], WriteQueue] = {}
        self._configs: dict[str, BridgeConfig] = {}
        self._locks: dict[str, _IdLock] = {}

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[str]:
        return iter(tuple(self._sessions))

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        """Hold the start/stop lock for *session_id*.

        The lock lives only while someone holds or waits for it.
        """
        entry = self._locks.get(session_id)
        if entry is None:
            entry = self._locks[session_id] = _IdLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(session_id) is entry:
                del self._locks[session_id]

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    def get(self, session_id: str) -> BridgeSession | None:
        return self._sessions.get(session_id)

    def sessions(self) -> dict[str, BridgeSession]:
        return dict(self._sessions)

    def add(self, session: BridgeSession) -> None:
        session_id = session.session_id
        if session_id in self._sessions:
            raise KeyError(f"Session {session_id} is already registered")
        self._sessions[session_id] = session
        for endpoint, queue in session.queues.items():
            self._queues[(session_id, endpoint)] = queue
        logger.debug("Registered session %s", session_id)

    def remove(self, session_id: str) -> BridgeSession | None:
        session = self._sessions.pop(session_id, None)
        self.drop_queues(session_id)
        if session is not None:
            logger.debug("Unregistered session %s", session_id)
        return session

    def queue(self, session_id: str, endpoint: Endpoint) -> WriteQueue | None:
        return self._queues.get((session_id, endpoint))

    def drop_queues(self, session_id: str) -> None:
        for endpoint in Endpoint:
            queue = self._queues.pop((session_id, endpoint), None)
            if queue is not None:
                queue.clear()

    def remember_config(self, session_id: str, config: BridgeConfig) -> None:
        self._configs[session_id] = config

    def config(self, session_id: str) -> BridgeConfig | None:
        return self._configs.get(session_id)


__all__ = ["SessionRegistry"]
