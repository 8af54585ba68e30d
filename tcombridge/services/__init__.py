"""Bridge services: sessions, partner detection and the command surface."""

from .runtime import BridgeService, CommandResult
from .session import BridgeSession

__all__ = ["BridgeService", "BridgeSession", "CommandResult"]
