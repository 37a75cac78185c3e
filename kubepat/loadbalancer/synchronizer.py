"""Keep a load balancer's advertised ports equal to the required external ports.

For each protocol with a configured target service:
    * required ports are derived from the current ResourceCache contents;
    * an empty required set never produces a write (the API rejects a
      service without ports and the load balancer would be torn down);
    * an unchanged set never produces a write, so the controller does not
      feed its own Service events back into another pass;
    * otherwise the ports of that protocol are replaced, ports of other
      protocols on the same service are preserved.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Mapping, Set
from enum import StrEnum

import structlog

from kubepat.cache.resource_cache import ResourceCache
from kubepat.errors import ConfigurationFailure
from kubepat.loadbalancer.client import LoadBalancerClient, LoadBalancerService
from kubepat.models.resources import ObjectRef, Protocol, ServicePort
from kubepat.observability.metrics import loadbalancer_updates_total

_log = structlog.get_logger(component="loadbalancer.synchronizer")

_MAX_PORT_NAME = 63
_RE_INVALID_LABEL_CHARS = re.compile(r"[^a-z0-9-]+")


class SyncResult(StrEnum):
    """Outcome of synchronizing one protocol."""

    UPDATED = "updated"
    UNCHANGED = "unchanged"
    EMPTY = "empty"
    UNCONFIGURED = "unconfigured"
    SKIPPED = "skipped"


def port_name(translation: str, protocol: Protocol, port: int) -> str:
    """Deterministic DNS-label port name: ``<ns>-<name>-<protocol>-<port>``.

    Names over the 63-character label limit are truncated and given a
    digest of the untruncated name.
    """
    name = _sanitize(f"{translation}-{protocol.value}-{port}")
    if len(name) <= _MAX_PORT_NAME:
        return name
    return _with_digest(name, name, port)


def _sanitize(value: str) -> str:
    return _RE_INVALID_LABEL_CHARS.sub("-", value.lower()).strip("-")


def _with_digest(name: str, seed: str, port: int) -> str:
    suffix = f"-{hashlib.sha1(seed.encode()).hexdigest()[:8]}-{port}"
    return name[: _MAX_PORT_NAME - len(suffix)].rstrip("-") + suffix


def _unique_name(name: str, seed: str, port: int, taken: Set[str]) -> str:
    # Service port names must be unique across every protocol on the Service.
    attempt = 0
    while name in taken:
        attempt += 1
        name = _with_digest(name, f"{seed}#{attempt}", port)
    return name


class LoadBalancerSynchronizer:
    """Synchronizes load-balancer port lists with the forwarding table."""

    def __init__(
        self,
        cache: ResourceCache,
        client: LoadBalancerClient,
        targets: Mapping[Protocol, ObjectRef | str],
    ) -> None:
        self._cache = cache
        self._client = client
        # Empty targets mean "not configured" and are dropped here.
        self._targets = {protocol: target for protocol, target in targets.items() if target}

    @property
    def protocols(self) -> list[Protocol]:
        """Protocols with a configured load-balancer target."""
        return list(self._targets)

    def target(self, protocol: Protocol) -> ObjectRef:
        """Resolve the configured target for *protocol*.

        Raises:
            ConfigurationFailure: no target, or the target is not ``namespace/name``.
        """
        target = self._targets.get(protocol)
        if target is None:
            raise ConfigurationFailure(f"no load balancer configured for {protocol}")
        if isinstance(target, ObjectRef):
            return target
        try:
            return ObjectRef.parse(target)
        except ValueError as exc:
            raise ConfigurationFailure(f"invalid load balancer for {protocol}: {exc}") from exc

    def required_ports(self, protocol: Protocol, current: LoadBalancerService | None = None) -> list[ServicePort]:
        """Service ports required for *protocol*, sorted by port number.

        Node ports already allocated on *current* are carried over. Names never
        repeat a name held by a port of another protocol on *current*, or by
        another required port.
        """
        node_ports: dict[int, int | None] = {}
        taken: set[str] = set()
        if current is not None:
            node_ports = {p.port: p.node_port for p in current.ports if p.protocol == protocol}
            taken = {p.name for p in current.ports if p.protocol != protocol and p.name}

        ports = []
        for port, entry in sorted(self._cache.required_ports(protocol).items()):
            name = port_name(entry.translation, protocol, port)
            name = _unique_name(name, f"{entry.translation}/{protocol.value}/{port}", port, taken)
            taken.add(name)
            ports.append(ServicePort(port=port, protocol=protocol, name=name, node_port=node_ports.get(port)))
        return ports

    async def synchronize(self, protocol: Protocol) -> SyncResult:
        """Bring the load balancer for *protocol* in line with the cache.

        Raises:
            LoadBalancerError: fetching or updating the service failed.
        """
        if protocol not in self._targets:
            return SyncResult.UNCONFIGURED

        try:
            ref = self.target(protocol)
            lb = await self._client.get(ref)
        except ConfigurationFailure as exc:
            _log.warning("loadbalancer_sync_skipped", protocol=protocol.value, error=str(exc))
            return SyncResult.SKIPPED

        required = self.required_ports(protocol, current=lb)
        if not required:
            # Never write an empty port list.
            _log.debug("loadbalancer_no_required_ports", protocol=protocol.value, service=str(ref))
            return SyncResult.EMPTY

        if {p.port for p in required} == lb.advertised(protocol):
            return SyncResult.UNCHANGED

        ports = [p for p in lb.ports if p.protocol != protocol] + required
        await self._client.replace_ports(lb, ports)
        loadbalancer_updates_total.labels(protocol=protocol.value).inc()
        _log.info(
            "loadbalancer_updated",
            protocol=protocol.value,
            service=str(ref),
            previous=sorted(lb.advertised(protocol)),
            ports=[p.port for p in required],
        )
        return SyncResult.UPDATED
