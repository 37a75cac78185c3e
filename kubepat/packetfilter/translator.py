"""Translate forwarding entries into iptables DNAT rules.

Claimed ports are tracked per protocol for the duration of one pass so
that two entries cannot redirect the same (protocol, port). ``clear()``
must open every pass: it resets the claims and flushes the PREROUTING
chain, so nothing installed by an earlier pass survives.
"""

from __future__ import annotations

from collections.abc import Set

import structlog

from kubepat.errors import PacketFilterError, PortConflict
from kubepat.models.resources import ForwardingEntry, Protocol
from kubepat.packetfilter.iptables import Iptables

_log = structlog.get_logger(component="packetfilter.translator")

NAT_TABLE = "nat"
PREROUTING = "PREROUTING"
POSTROUTING = "POSTROUTING"


class PacketFilterTranslator:
    """Applies ForwardingEntry values as destination-NAT rules on *interface*."""

    def __init__(self, iptables: Iptables, interface: str = "eth0") -> None:
        self._ipt = iptables
        self._interface = interface
        self._ports: dict[Protocol, set[int]] = {protocol: set() for protocol in Protocol}

    @property
    def interface(self) -> str:
        return self._interface

    async def setup(self) -> None:
        """Install the egress masquerade rule. Independent of per-pass state."""
        appended = await self._ipt.append_unique(
            NAT_TABLE, POSTROUTING, "-o", self._interface, "-j", "MASQUERADE"
        )
        _log.info("masquerade_configured", interface=self._interface, appended=appended)

    async def clear(self) -> None:
        """Forget every claimed port and flush the PREROUTING chain."""
        for ports in self._ports.values():
            ports.clear()
        await self._ipt.clear_chain(NAT_TABLE, PREROUTING)

    async def forward(self, entry: ForwardingEntry) -> None:
        """Claim the entry's external port and append its DNAT rule.

        Raises:
            PortConflict: the (protocol, port) was already claimed in this pass.
            PacketFilterError: the rule could not be appended.
        """
        self._claim(entry)
        await self._ipt.append(
            NAT_TABLE,
            PREROUTING,
            "-p", entry.protocol.value.lower(),
            "-i", self._interface,
            "--dport", str(entry.source_port),
            "-j", "DNAT",
            "--to-destination", entry.destination,
        )  # fmt: skip

    def _claim(self, entry: ForwardingEntry) -> None:
        ports = self._ports[entry.protocol]
        if entry.source_port in ports:
            raise PortConflict(entry.translation, entry.protocol.value, entry.source_port, service=entry.service)
        ports.add(entry.source_port)

    def claimed(self, protocol: Protocol) -> Set[int]:
        """Ports claimed for *protocol* since the last clear()."""
        return frozenset(self._ports[protocol])

    async def rules(self) -> list[str]:
        """Read back the installed PREROUTING rules."""
        return await self._ipt.list_rules(NAT_TABLE, PREROUTING)

    async def print_rules(self) -> list[str]:
        """Log the installed rules. Failures only degrade observability."""
        try:
            rules = await self.rules()
        except PacketFilterError as exc:
            _log.warning("list_rules_failed", chain=PREROUTING, error=str(exc))
            return []
        _log.info("prerouting_rules", chain=PREROUTING, rules=rules)
        return rules
