"""Configuration loading from environment variables."""

from __future__ import annotations

import os
import re

from kubepat.models.config import (
    APIConfig,
    CacheConfig,
    KubePATConfig,
    LoadBalancerConfig,
    LogConfig,
    PacketFilterConfig,
)

_RE_INTERFACE = re.compile(r"^[A-Za-z0-9_.@:-]{1,15}$")


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"KUBEPAT_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    val = int(_env(key, str(default)))
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _validate_service_ref(value: str) -> str:
    value = value.strip()
    if not value:
        return value
    if not re.match(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?/[a-z0-9]([-a-z0-9]*[a-z0-9])?$", value):
        raise ValueError(f"Invalid load balancer service reference: {value!r}. Must be <namespace>/<name>")
    return value


def _validate_interface(value: str) -> str:
    if not _RE_INTERFACE.match(value):
        raise ValueError(f"Invalid network interface name: {value!r}")
    return value


def _validate_log_level(value: str) -> str:
    valid = {"debug", "info", "warning", "error"}
    if value.lower() not in valid:
        raise ValueError(f"Invalid log level: {value}. Must be one of {valid}")
    return value.lower()


def load_config() -> KubePATConfig:
    """Load configuration from KUBEPAT_* environment variables."""
    return KubePATConfig(
        load_balancer=LoadBalancerConfig(
            tcp_service=_validate_service_ref(_env("TCP_SERVICE", "kube-pat/kube-pat-tcp")),
            udp_service=_validate_service_ref(_env("UDP_SERVICE", "kube-pat/kube-pat-udp")),
        ),
        packet_filter=PacketFilterConfig(
            interface=_validate_interface(_env("INTERFACE", "eth0")),
            iptables_path=_env("IPTABLES_PATH", "iptables"),
        ),
        cache=CacheConfig(
            sync_timeout_seconds=_env_int("CACHE_SYNC_TIMEOUT", 60, min_val=5, max_val=600),
        ),
        api=APIConfig(
            enabled=_env_bool("API_ENABLED", True),
            port=_env_int("API_PORT", 8080, min_val=1024, max_val=65535),
        ),
        log=LogConfig(
            level=_validate_log_level(_env("LOG_LEVEL", "info")),
        ),
    )
