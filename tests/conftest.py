"""Shared fixtures for kube-pat tests.

Provides in-memory stand-ins for the two external interfaces (iptables and
the load-balancer API) plus a fully wired controller, so tests can exercise
complete reconciliation passes without a kernel or a cluster.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest

from kubepat.cache.collection import WatchedCollection
from kubepat.cache.resource_cache import ResourceCache
from kubepat.controller.reconciler import ReconciliationController
from kubepat.errors import ConfigurationFailure, PacketFilterError
from kubepat.loadbalancer.client import LoadBalancerService
from kubepat.loadbalancer.synchronizer import LoadBalancerSynchronizer
from kubepat.models.resources import (
    PAT_KIND,
    AddressTranslationSpec,
    ObjectRef,
    Protocol,
    ServicePort,
    ServiceSnapshot,
)
from kubepat.packetfilter.translator import PacketFilterTranslator

TCP_LB = ObjectRef("kube-pat", "kube-pat-tcp")
UDP_LB = ObjectRef("kube-pat", "kube-pat-udp")

# ---------------------------------------------------------------------------
# Object factory helpers
# ---------------------------------------------------------------------------


def make_pat_dict(
    name: str = "web",
    service: str = "web-svc",
    port: Any = 8080,
    namespace: str = "default",
    resource_version: str = "1",
    created: str = "2026-01-01T00:00:00Z",
) -> dict[str, Any]:
    """Raw PortAddressTranslation object as delivered by the API."""
    return {
        "apiVersion": "k8s.deslauriers.io/v1beta1",
        "kind": PAT_KIND,
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": resource_version,
            "creationTimestamp": created,
        },
        "spec": {"service": service, "port": port},
    }


def make_service_dict(
    name: str = "web-svc",
    cluster_ip: str = "10.0.0.5",
    port: int = 80,
    protocol: str = "TCP",
    type_: str = "ClusterIP",
    namespace: str = "default",
    resource_version: str = "1",
    ports: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Raw Service object as delivered by the API."""
    return {
        "metadata": {"name": name, "namespace": namespace, "resourceVersion": resource_version},
        "spec": {
            "type": type_,
            "clusterIP": cluster_ip,
            "ports": ports if ports is not None else [{"port": port, "protocol": protocol}],
        },
    }


def make_pat(**kwargs: Any) -> AddressTranslationSpec:
    return AddressTranslationSpec.from_dict(make_pat_dict(**kwargs))


def make_service(**kwargs: Any) -> ServiceSnapshot:
    return ServiceSnapshot.from_dict(make_service_dict(**kwargs))


# ---------------------------------------------------------------------------
# Fakes for the external interfaces
# ---------------------------------------------------------------------------


class FakeIptables:
    """In-memory iptables with the same async interface as ``Iptables``."""

    def __init__(self) -> None:
        self.chains: dict[tuple[str, str], list[tuple[str, ...]]] = {}
        self.clear_calls = 0
        self.append_calls = 0
        self.fail_clear = False
        self.fail_list = False
        self.fail_append_ports: set[int] = set()

    def _chain(self, table: str, chain: str) -> list[tuple[str, ...]]:
        return self.chains.setdefault((table, chain), [])

    async def append(self, table: str, chain: str, *rulespec: str) -> None:
        self.append_calls += 1
        if "--dport" in rulespec and int(rulespec[rulespec.index("--dport") + 1]) in self.fail_append_ports:
            raise PacketFilterError(["iptables", "-A", chain, *rulespec], "iptables: Resource temporarily unavailable.", 4)
        self._chain(table, chain).append(tuple(rulespec))

    async def check(self, table: str, chain: str, *rulespec: str) -> bool:
        return tuple(rulespec) in self._chain(table, chain)

    async def append_unique(self, table: str, chain: str, *rulespec: str) -> bool:
        if await self.check(table, chain, *rulespec):
            return False
        await self.append(table, chain, *rulespec)
        return True

    async def clear_chain(self, table: str, chain: str) -> None:
        self.clear_calls += 1
        if self.fail_clear:
            raise PacketFilterError(["iptables", "-t", table, "-F", chain], "iptables: Permission denied.", 4)
        self.chains[(table, chain)] = []

    async def list_rules(self, table: str, chain: str) -> list[str]:
        if self.fail_list:
            raise PacketFilterError(["iptables", "-t", table, "-S", chain], "iptables: Permission denied.", 4)
        return [f"-P {chain} ACCEPT"] + [f"-A {chain} {' '.join(r)}" for r in self._chain(table, chain)]

    def rules(self, table: str = "nat", chain: str = "PREROUTING") -> list[tuple[str, ...]]:
        return list(self._chain(table, chain))


class FakeLoadBalancerClient:
    """In-memory load-balancer API with call counting."""

    def __init__(self) -> None:
        self.services: dict[ObjectRef, LoadBalancerService] = {}
        self.get_calls = 0
        self.replace_calls: list[tuple[ObjectRef, list[ServicePort]]] = []
        self.fail_get: Exception | None = None
        self.fail_replace: Exception | None = None

    def add(self, ref: ObjectRef, ports: list[ServicePort] | None = None) -> LoadBalancerService:
        lb = LoadBalancerService(namespace=ref.namespace, name=ref.name, ports=list(ports or []), resource_version="1")
        self.services[ref] = lb
        return lb

    async def get(self, ref: ObjectRef) -> LoadBalancerService:
        self.get_calls += 1
        if self.fail_get is not None:
            raise self.fail_get
        lb = self.services.get(ref)
        if lb is None:
            raise ConfigurationFailure(f"load balancer service {ref} not found")
        return LoadBalancerService(
            namespace=lb.namespace,
            name=lb.name,
            ports=list(lb.ports),
            resource_version=lb.resource_version,
        )

    async def replace_ports(self, lb: LoadBalancerService, ports: list[ServicePort]) -> LoadBalancerService:
        if self.fail_replace is not None:
            raise self.fail_replace
        self.replace_calls.append((lb.ref, list(ports)))
        stored = self.services[lb.ref]
        stored.ports = list(ports)
        stored.resource_version = str(int(stored.resource_version) + 1)
        return stored

    def advertised(self, ref: ObjectRef) -> list[int]:
        return [p.port for p in self.services[ref].ports]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def translations() -> WatchedCollection[AddressTranslationSpec]:
    collection: WatchedCollection[AddressTranslationSpec] = WatchedCollection(PAT_KIND)
    collection.mark_synced()
    return collection


@pytest.fixture
def services() -> WatchedCollection[ServiceSnapshot]:
    collection: WatchedCollection[ServiceSnapshot] = WatchedCollection("Service")
    collection.mark_synced()
    return collection


@pytest.fixture
def cache(
    translations: WatchedCollection[AddressTranslationSpec],
    services: WatchedCollection[ServiceSnapshot],
) -> ResourceCache:
    return ResourceCache(translations, services)


@pytest.fixture
def iptables() -> FakeIptables:
    return FakeIptables()


@pytest.fixture
def translator(iptables: FakeIptables) -> PacketFilterTranslator:
    return PacketFilterTranslator(iptables, interface="eth0")  # type: ignore[arg-type]


@pytest.fixture
def lb_client() -> FakeLoadBalancerClient:
    client = FakeLoadBalancerClient()
    client.add(TCP_LB, [ServicePort(port=1, protocol=Protocol.TCP, name="placeholder")])
    client.add(UDP_LB, [ServicePort(port=1, protocol=Protocol.UDP, name="placeholder")])
    return client


@pytest.fixture
def synchronizer(cache: ResourceCache, lb_client: FakeLoadBalancerClient) -> LoadBalancerSynchronizer:
    return LoadBalancerSynchronizer(
        cache=cache,
        client=lb_client,  # type: ignore[arg-type]
        targets={Protocol.TCP: TCP_LB, Protocol.UDP: UDP_LB},
    )


@pytest.fixture
async def controller(
    cache: ResourceCache,
    translator: PacketFilterTranslator,
    synchronizer: LoadBalancerSynchronizer,
) -> AsyncIterator[ReconciliationController]:
    ctrl = ReconciliationController(cache, translator, synchronizer)
    cache.subscribe(ctrl.on_cache_event)
    yield ctrl
    await ctrl.stop()
