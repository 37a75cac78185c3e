"""Tests for KUBEPAT_* environment configuration."""

from __future__ import annotations

import pytest

from kubepat.config import load_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    import os

    for key in list(os.environ):
        if key.startswith("KUBEPAT_"):
            monkeypatch.delenv(key)


def test_defaults() -> None:
    config = load_config()
    assert config.load_balancer.tcp_service == "kube-pat/kube-pat-tcp"
    assert config.load_balancer.udp_service == "kube-pat/kube-pat-udp"
    assert config.packet_filter.interface == "eth0"
    assert config.packet_filter.iptables_path == "iptables"
    assert config.cache.sync_timeout_seconds == 60
    assert config.api.enabled is True
    assert config.api.port == 8080
    assert config.log.level == "info"


def test_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KUBEPAT_TCP_SERVICE", "edge/lb-tcp")
    monkeypatch.setenv("KUBEPAT_UDP_SERVICE", "")
    monkeypatch.setenv("KUBEPAT_INTERFACE", "ens5")
    monkeypatch.setenv("KUBEPAT_API_ENABLED", "false")
    monkeypatch.setenv("KUBEPAT_LOG_LEVEL", "DEBUG")
    config = load_config()
    assert config.load_balancer.tcp_service == "edge/lb-tcp"
    assert config.load_balancer.udp_service == ""
    assert config.packet_filter.interface == "ens5"
    assert config.api.enabled is False
    assert config.log.level == "debug"


def test_numeric_values_are_clamped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KUBEPAT_API_PORT", "80")
    monkeypatch.setenv("KUBEPAT_CACHE_SYNC_TIMEOUT", "100000")
    config = load_config()
    assert config.api.port == 1024
    assert config.cache.sync_timeout_seconds == 600


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("TCP_SERVICE", "missing-namespace"),
        ("UDP_SERVICE", "Upper/Case"),
        ("INTERFACE", "eth0; rm -rf /"),
        ("LOG_LEVEL", "verbose"),
        ("API_PORT", "not-a-number"),
    ],
)
def test_invalid_values_raise(monkeypatch: pytest.MonkeyPatch, key: str, value: str) -> None:
    monkeypatch.setenv(f"KUBEPAT_{key}", value)
    with pytest.raises(ValueError):
        load_config()
