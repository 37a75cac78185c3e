"""Packet filter integration: iptables command interface and DNAT translator."""

from kubepat.packetfilter.iptables import Iptables
from kubepat.packetfilter.translator import PacketFilterTranslator

__all__ = ["Iptables", "PacketFilterTranslator"]
