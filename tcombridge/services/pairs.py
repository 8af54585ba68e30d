"""Driver pair management through the com0com ``setupc`` utility.

``setupc list`` prints one line per port of every installed pair::

    CNCA0 PortName=COM11,EmuBR=yes
    CNCB0 PortName=COM12

Ports ``CNCAn`` and ``CNCBn`` form pair ``n``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import subprocess
from pathlib import Path

import msgspec

from ..const import DEFAULT_PAIR_TOOL_TIMEOUT
from ..errors import PairToolError

logger = logging.getLogger("tcombridge.pairs")

_PORT_LINE_RE = re.compile(r"^([A-Z0-9]+)\s+PortName=([^,\s]+)", re.IGNORECASE)
_SIDE_A = "CNCA"
_SIDE_B = "CNCB"


class PairInfo(msgspec.Struct, frozen=True):
    """One installed loopback pair."""

    port_a: str
    port_b: str
    pair_id: str

    def contains(self, port: str) -> bool:
        wanted = port.upper()
        return self.port_a.upper() == wanted or self.port_b.upper() == wanted

    def sibling(self, port: str) -> str | None:
        wanted = port.upper()
        if self.port_a.upper() == wanted:
            return self.port_b
        if self.port_b.upper() == wanted:
            return self.port_a
        return None


def parse_pairs(output: str) -> list[PairInfo]:
    """Group ``setupc list`` output into pairs; unmatched halves are ignored."""
    names: dict[str, str] = {}
    for raw_line in output.splitlines():
        match = _PORT_LINE_RE.match(raw_line.strip())
        if match:
            names[match.group(1).upper()] = match.group(2)

    pairs: list[PairInfo] = []
    for device_id, port_name in names.items():
        if not device_id.startswith(_SIDE_A):
            continue
        index = device_id[len(_SIDE_A) :]
        partner = names.get(f"{_SIDE_B}{index}")
        if partner is not None:
            pairs.append(PairInfo(port_a=port_name, port_b=partner, pair_id=index))
    return pairs


class PairTool:
    """Async wrapper around the ``setupc`` executable."""

    def __init__(self, tool_path: str, *, timeout: float = DEFAULT_PAIR_TOOL_TIMEOUT) -> None:
        self._tool_path = tool_path
        self._timeout = timeout

    @property
    def tool_path(self) -> str:
        return self._tool_path

    async def _run(self, *args: str) -> str:
        tool = Path(self._tool_path)
        # setupc resolves its driver files relative to its own directory.
        cwd = str(tool.parent) if tool.parent != Path(".") else None
        logger.debug("Running %s %s", self._tool_path, " ".join(args))
        try:
            proc = await asyncio.create_subprocess_exec(
                self._tool_path,
                *args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
            )
        except OSError as exc:
            raise PairToolError(f"Cannot run {self._tool_path}: {exc}") from exc

        try:
            async with asyncio.timeout(self._timeout):
                stdout, stderr = await proc.communicate()
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise PairToolError(f"{self._tool_path} {args[0]} timed out after {self._timeout:.1f}s") from None

        text = stdout.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            detail = (stderr.decode("utf-8", errors="replace") + text).strip()
            raise PairToolError(f"{self._tool_path} {args[0]} failed ({proc.returncode}): {detail}")
        return text

    async def list_pairs(self) -> list[PairInfo]:
        return parse_pairs(await self._run("list"))

    async def create_pair(self, external_port: str, internal_port: str) -> None:
        """Install a pair: *external_port* for the partner, *internal_port* for the bridge."""
        await self._run("install", f"PortName={external_port}", f"PortName={internal_port}")
        logger.info("Created driver pair %s <-> %s", external_port, internal_port)

    async def remove_pair(self, pair_id: str) -> None:
        await self._run("remove", pair_id)
        logger.info("Removed driver pair %s", pair_id)

    async def find_pair(self, port: str) -> PairInfo | None:
        for pair in await self.list_pairs():
            if pair.contains(port):
                return pair
        return None

    async def find_paired_port(self, port: str) -> str | None:
        pair = await self.find_pair(port)
        return pair.sibling(port) if pair is not None else None


__all__ = ["PairInfo", "PairTool", "parse_pairs"]
