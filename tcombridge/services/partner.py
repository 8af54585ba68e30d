"""Partner presence detection on the virtual endpoint.

A loopback driver mirrors the partner application's DTR/RTS onto the virtual
endpoint's CD/DSR/CTS lines. The monitor samples those lines on a fixed cadence
and reports only transitions.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Final

import serial
from transitions import Machine

from ..config.logging import SessionLogger
from ..const import DEFAULT_PARTNER_POLL_INTERVAL
from ..errors import BridgeError
from ..transport.serial import ControlSignals

PARTNER_CLOSED: Final[str] = "partner_closed"
PARTNER_OPEN: Final[str] = "partner_open"

SignalReader = Callable[[], ControlSignals]
PartnerCallback = Callable[[bool], None]


def next_partner_state(state: str, connected: bool) -> str:
    """Pure transition function: the state a sample of *connected* leads to."""
    del state  # two-state machine: the sample alone decides
    return PARTNER_OPEN if connected else PARTNER_CLOSED


class PartnerMonitor:
    """Edge-triggered partner presence tracker."""

    if TYPE_CHECKING:
        # FSM generated methods and attributes for static analysis
        fsm_state: str
        partner_appeared: Callable[[], bool]
        partner_vanished: Callable[[], bool]

    def __init__(
        self,
        read_signals: SignalReader,
        *,
        session_id: str,
        on_change: PartnerCallback,
        interval: float = DEFAULT_PARTNER_POLL_INTERVAL,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be greater than zero")
        self._read_signals = read_signals
        self._on_change = on_change
        self._interval = interval
        self._logger = logger or SessionLogger(logging.getLogger("tcombridge.partner"), session_id, "virtual")

        self.state_machine = Machine(
            model=self,
            states=[PARTNER_CLOSED, PARTNER_OPEN],
            initial=PARTNER_CLOSED,
            auto_transitions=False,
            ignore_invalid_triggers=True,
            model_attribute="fsm_state",
        )
        self.state_machine.add_transition(trigger="partner_appeared", source=PARTNER_CLOSED, dest=PARTNER_OPEN)
        self.state_machine.add_transition(trigger="partner_vanished", source=PARTNER_OPEN, dest=PARTNER_CLOSED)

    @property
    def connected(self) -> bool:
        return self.fsm_state == PARTNER_OPEN

    @property
    def interval(self) -> float:
        return self._interval

    def observe(self, connected: bool) -> bool:
        """Feed one sample; returns True when the partner state changed."""
        target = next_partner_state(self.fsm_state, connected)
        if target == self.fsm_state:
            return False
        if target == PARTNER_OPEN:
            self.partner_appeared()
        else:
            self.partner_vanished()
        return True

    def poll_once(self) -> bool:
        try:
            signals = self._read_signals()
        except (BridgeError, serial.SerialException, OSError, ValueError, AttributeError) as exc:
            self._logger.debug("Control line read failed: %s", exc)
            return False

        if not self.observe(signals.partner_present):
            return False

        self._logger.info("Partner %s", "connected" if self.connected else "disconnected")
        try:
            self._on_change(self.connected)
        except Exception:
            self._logger.exception("Partner status callback failed")
        return True

    async def run(self) -> None:
        """Sample the control lines until cancelled."""
        try:
            while True:
                await asyncio.sleep(self._interval)
                self.poll_once()
        except asyncio.CancelledError:
            self._logger.debug("Partner monitor cancelled")
            raise


__all__ = [
    "PARTNER_CLOSED",
    "PARTNER_OPEN",
    "PartnerMonitor",
    "next_partner_state",
]
