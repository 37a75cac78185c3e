"""Tests for the ResourceCache join between translation specs and services."""

from __future__ import annotations

import pytest

from kubepat.cache.collection import CacheEvent, EventAction, WatchedCollection
from kubepat.cache.resource_cache import ResourceCache
from kubepat.errors import CacheNotSynced, EntryFailure, LookupFailure, ValidationFailure
from kubepat.models.resources import AddressTranslationSpec, ForwardingEntry, Protocol, ServiceSnapshot
from tests.conftest import make_pat, make_service


class TestResolve:
    def test_joins_first_service_port(self, cache: ResourceCache, services: WatchedCollection[ServiceSnapshot]) -> None:
        services.upsert(
            make_service(
                ports=[{"port": 53, "protocol": "UDP"}, {"port": 9153, "protocol": "TCP"}],
            )
        )
        entry = cache.resolve(make_pat(port=5353))
        assert entry == ForwardingEntry(
            protocol=Protocol.UDP,
            source_port=5353,
            destination_ip="10.0.0.5",
            destination_port=53,
            translation="default/web",
            service="default/web-svc",
        )

    def test_missing_service(self, cache: ResourceCache) -> None:
        with pytest.raises(LookupFailure) as info:
            cache.resolve(make_pat())
        assert info.value.translation == "default/web"
        assert info.value.service == "default/web-svc"

    def test_service_looked_up_in_spec_namespace(
        self, cache: ResourceCache, services: WatchedCollection[ServiceSnapshot]
    ) -> None:
        services.upsert(make_service(namespace="other"))
        with pytest.raises(LookupFailure):
            cache.resolve(make_pat(namespace="default"))

    @pytest.mark.parametrize("type_", ["NodePort", "LoadBalancer", "ExternalName"])
    def test_non_cluster_ip_service(
        self, cache: ResourceCache, services: WatchedCollection[ServiceSnapshot], type_: str
    ) -> None:
        services.upsert(make_service(type_=type_))
        with pytest.raises(ValidationFailure, match="must be of type ClusterIP"):
            cache.resolve(make_pat())

    def test_headless_service(self, cache: ResourceCache, services: WatchedCollection[ServiceSnapshot]) -> None:
        services.upsert(make_service(cluster_ip="None"))
        with pytest.raises(ValidationFailure, match="headless"):
            cache.resolve(make_pat())

    def test_service_without_ports(self, cache: ResourceCache, services: WatchedCollection[ServiceSnapshot]) -> None:
        services.upsert(make_service(ports=[]))
        with pytest.raises(ValidationFailure, match="no ports"):
            cache.resolve(make_pat())

    @pytest.mark.parametrize("port", [-1, 0, 65536])
    def test_port_out_of_range(
        self, cache: ResourceCache, services: WatchedCollection[ServiceSnapshot], port: int
    ) -> None:
        services.upsert(make_service())
        with pytest.raises(ValidationFailure, match="outside"):
            cache.resolve(make_pat(port=port))


class TestEntries:
    def test_skips_failures_and_reports_them(
        self,
        cache: ResourceCache,
        translations: WatchedCollection[AddressTranslationSpec],
        services: WatchedCollection[ServiceSnapshot],
    ) -> None:
        services.upsert(make_service(name="good"))
        services.upsert(make_service(name="public", type_="LoadBalancer"))
        translations.upsert(make_pat(name="a", service="good", port=8080))
        translations.upsert(make_pat(name="b", service="missing", port=8081))
        translations.upsert(make_pat(name="c", service="public", port=8082))

        failures: list[EntryFailure] = []
        entries = list(cache.entries(on_failure=failures.append))

        assert [e.translation for e in entries] == ["default/a"]
        assert {(type(f), f.translation) for f in failures} == {
            (LookupFailure, "default/b"),
            (ValidationFailure, "default/c"),
        }

    def test_table_is_restartable_and_reflects_new_state(
        self,
        cache: ResourceCache,
        translations: WatchedCollection[AddressTranslationSpec],
        services: WatchedCollection[ServiceSnapshot],
    ) -> None:
        services.upsert(make_service())
        translations.upsert(make_pat(name="a", port=1000))
        table = cache.entries()
        assert [e.source_port for e in table] == [1000]

        translations.upsert(make_pat(name="b", port=2000))
        assert [e.source_port for e in table] == [1000, 2000]
        assert [e.source_port for e in table] == [1000, 2000]

    def test_oldest_spec_first(
        self,
        cache: ResourceCache,
        translations: WatchedCollection[AddressTranslationSpec],
        services: WatchedCollection[ServiceSnapshot],
    ) -> None:
        services.upsert(make_service())
        translations.upsert(make_pat(name="zz-old", created="2025-01-01T00:00:00Z"))
        translations.upsert(make_pat(name="aa-new", created="2026-06-01T00:00:00Z"))
        assert [e.translation for e in cache.entries()] == ["default/zz-old", "default/aa-new"]


class TestRequiredPorts:
    def test_first_entry_owns_port_and_protocols_are_separate(
        self,
        cache: ResourceCache,
        translations: WatchedCollection[AddressTranslationSpec],
        services: WatchedCollection[ServiceSnapshot],
    ) -> None:
        services.upsert(make_service(name="tcp-svc"))
        services.upsert(make_service(name="udp-svc", port=53, protocol="UDP"))
        translations.upsert(make_pat(name="first", service="tcp-svc", port=53, created="2025-01-01T00:00:00Z"))
        translations.upsert(make_pat(name="second", service="tcp-svc", port=53, created="2025-02-01T00:00:00Z"))
        translations.upsert(make_pat(name="dns", service="udp-svc", port=53))

        tcp = cache.required_ports(Protocol.TCP)
        udp = cache.required_ports(Protocol.UDP)
        assert list(tcp) == [53]
        assert tcp[53].translation == "default/first"
        assert list(udp) == [53]
        assert udp[53].translation == "default/dns"


class TestSync:
    def test_ensure_synced(self) -> None:
        translations: WatchedCollection[AddressTranslationSpec] = WatchedCollection("PortAddressTranslation")
        services: WatchedCollection[ServiceSnapshot] = WatchedCollection("Service")
        cache = ResourceCache(translations, services)

        with pytest.raises(CacheNotSynced, match="PortAddressTranslation, Service"):
            cache.ensure_synced()
        translations.mark_synced()
        with pytest.raises(CacheNotSynced, match="Service"):
            cache.ensure_synced()
        services.mark_synced()
        cache.ensure_synced()
        assert cache.synced


def test_subscribe_receives_events_from_both_collections(
    cache: ResourceCache,
    translations: WatchedCollection[AddressTranslationSpec],
    services: WatchedCollection[ServiceSnapshot],
) -> None:
    events: list[CacheEvent] = []
    cache.subscribe(events.append)
    services.upsert(make_service())
    translations.upsert(make_pat())
    translations.remove("default", "web")
    assert [(e.kind, e.action) for e in events] == [
        ("Service", EventAction.ADDED),
        ("PortAddressTranslation", EventAction.ADDED),
        ("PortAddressTranslation", EventAction.DELETED),
    ]
