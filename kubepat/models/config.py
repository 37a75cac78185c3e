"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class LoadBalancerConfig:
    """Load-balancer services that advertise the external ports, per protocol.

    An empty string disables synchronization for that protocol.
    """

    tcp_service: str = "kube-pat/kube-pat-tcp"
    udp_service: str = "kube-pat/kube-pat-udp"


@dataclass
class PacketFilterConfig:
    """iptables configuration."""

    interface: str = "eth0"
    iptables_path: str = "iptables"


@dataclass
class CacheConfig:
    """Watch cache configuration."""

    sync_timeout_seconds: int = 60


@dataclass
class APIConfig:
    """REST API configuration."""

    enabled: bool = True
    port: int = 8080


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"


@dataclass
class KubePATConfig:
    """Top-level kube-pat configuration."""

    load_balancer: LoadBalancerConfig = field(default_factory=LoadBalancerConfig)
    packet_filter: PacketFilterConfig = field(default_factory=PacketFilterConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)
