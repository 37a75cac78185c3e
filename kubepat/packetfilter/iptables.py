"""Async wrapper around the iptables binary.

Every command is executed with ``subprocess.run`` inside
``asyncio.to_thread`` so the event loop is never blocked, and with ``-w``
so concurrent writers wait for the xtables lock instead of failing.
"""

from __future__ import annotations

import asyncio
import subprocess

import structlog

from kubepat.errors import PacketFilterError

_log = structlog.get_logger(component="packetfilter.iptables")

# iptables exits with 1 when ``-C`` finds no matching rule.
_EXIT_RULE_NOT_FOUND = 1


class Iptables:
    """Packet-filter command interface: append, check, clear chain, list rules."""

    def __init__(self, path: str = "iptables") -> None:
        self._path = path

    async def _run(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        command = [self._path, "-w", *args]
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                command,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except OSError as exc:
            raise PacketFilterError(command, str(exc)) from exc
        _log.debug("iptables_command", command=" ".join(command), returncode=result.returncode)
        return result

    async def _exec(self, args: list[str]) -> str:
        result = await self._run(args)
        if result.returncode != 0:
            raise PacketFilterError([self._path, "-w", *args], result.stderr, result.returncode)
        return result.stdout

    async def append(self, table: str, chain: str, *rulespec: str) -> None:
        await self._exec(["-t", table, "-A", chain, *rulespec])

    async def check(self, table: str, chain: str, *rulespec: str) -> bool:
        """Return True if the rule already exists in *chain*."""
        args = ["-t", table, "-C", chain, *rulespec]
        result = await self._run(args)
        if result.returncode == 0:
            return True
        if result.returncode == _EXIT_RULE_NOT_FOUND:
            return False
        raise PacketFilterError([self._path, "-w", *args], result.stderr, result.returncode)

    async def append_unique(self, table: str, chain: str, *rulespec: str) -> bool:
        """Append the rule unless it exists. Returns True if it was appended."""
        if await self.check(table, chain, *rulespec):
            return False
        await self.append(table, chain, *rulespec)
        return True

    async def clear_chain(self, table: str, chain: str) -> None:
        """Flush every rule in *chain*."""
        await self._exec(["-t", table, "-F", chain])

    async def list_rules(self, table: str, chain: str) -> list[str]:
        """Return the rules of *chain* in ``iptables -S`` form."""
        output = await self._exec(["-t", table, "-S", chain])
        return [line for line in output.splitlines() if line.strip()]
