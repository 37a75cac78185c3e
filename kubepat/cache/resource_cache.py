"""ResourceCache: the joined view over translation specs and services.

The cache never mutates anything. Every call to ``entries()`` returns a
ForwardingTable whose iteration recomputes the join from the current
contents of the two watched collections, so a table can be walked again
(restarted) and always reflects the latest state.

Join rules for each AddressTranslationSpec:
    * the referenced service is looked up in the spec's namespace;
      absent -> LookupFailure
    * the service must be ClusterIP with a routable cluster IP and at least
      one port, and the spec's port must be a valid port number;
      otherwise -> ValidationFailure
    * the service's first declared port supplies the protocol and the
      destination port; the spec's port becomes the external port.

Failures are logged, counted, reported to an optional callback and the
spec is skipped.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator

import structlog

from kubepat.cache.collection import ChangeHandler, WatchedCollection
from kubepat.errors import CacheNotSynced, EntryFailure, LookupFailure, ValidationFailure
from kubepat.models.resources import (
    MAX_PORT,
    MIN_PORT,
    AddressTranslationSpec,
    ForwardingEntry,
    Protocol,
    ServiceSnapshot,
    ServiceType,
)
from kubepat.observability.metrics import entry_failures_total

_log = structlog.get_logger(component="cache.resource_cache")

FailureHandler = Callable[[EntryFailure], None]


def _spec_order(spec: AddressTranslationSpec) -> tuple[str, str, str]:
    # Oldest spec first: it keeps its port when a later one collides.
    return (spec.creation_timestamp, spec.namespace, spec.name)


class ForwardingTable:
    """Lazy, restartable sequence of ForwardingEntry values."""

    def __init__(
        self,
        cache: ResourceCache,
        on_failure: FailureHandler | None = None,
        report: bool = True,
    ) -> None:
        self._cache = cache
        self._on_failure = on_failure
        self._report = report

    def __iter__(self) -> Iterator[ForwardingEntry]:
        for spec in sorted(self._cache.translations.list(), key=_spec_order):
            try:
                yield self._cache.resolve(spec)
            except EntryFailure as failure:
                if self._report:
                    self._cache.report_failure(failure, self._on_failure)


class ResourceCache:
    """Read-only joined view over the translation and service collections."""

    def __init__(
        self,
        translations: WatchedCollection[AddressTranslationSpec],
        services: WatchedCollection[ServiceSnapshot],
    ) -> None:
        self.translations = translations
        self.services = services

    def subscribe(self, handler: ChangeHandler) -> None:
        """Register *handler* for change events on either collection."""
        self.translations.subscribe(handler)
        self.services.subscribe(handler)

    @property
    def synced(self) -> bool:
        return self.translations.synced and self.services.synced

    def ensure_synced(self) -> None:
        """Raise CacheNotSynced until both collections have completed their initial list."""
        pending = [c.kind for c in (self.translations, self.services) if not c.synced]
        if pending:
            raise CacheNotSynced(f"watch caches not synced: {', '.join(pending)}")

    def entries(self, on_failure: FailureHandler | None = None, report: bool = True) -> ForwardingTable:
        """Return the forwarding table; ``report=False`` skips failure logging and metrics."""
        return ForwardingTable(self, on_failure, report=report)

    def resolve(self, spec: AddressTranslationSpec) -> ForwardingEntry:
        """Join *spec* with its service.

        Raises:
            LookupFailure: the referenced service is not in the cache.
            ValidationFailure: the spec or the service cannot be translated.
        """
        service = self.services.get(*spec.service_key)
        service_id = f"{spec.namespace}/{spec.service}"
        if service is None:
            raise LookupFailure(spec.identity, f"failed to fetch service {service_id}", service=service_id)
        if not MIN_PORT <= spec.port <= MAX_PORT:
            raise ValidationFailure(
                spec.identity,
                f"port {spec.port} of {spec.identity} is outside {MIN_PORT}-{MAX_PORT}",
                service=service_id,
            )
        if service.type != ServiceType.CLUSTER_IP:
            raise ValidationFailure(
                spec.identity,
                f"service {service_id} must be of type ClusterIP to be compatible with {spec.identity}",
                service=service_id,
            )
        if service.headless:
            raise ValidationFailure(spec.identity, f"service {service_id} is headless", service=service_id)
        if not service.ports:
            raise ValidationFailure(spec.identity, f"service {service_id} declares no ports", service=service_id)

        port = service.ports[0]
        return ForwardingEntry(
            protocol=port.protocol,
            source_port=spec.port,
            destination_ip=service.cluster_ip,
            destination_port=port.port,
            translation=spec.identity,
            service=service.identity,
        )

    def required_ports(self, protocol: Protocol) -> dict[int, ForwardingEntry]:
        """External ports needed for *protocol*, mapped to the entry that owns each.

        The first entry claiming a port wins, matching the packet filter.
        Failures were already reported by the pass that built the table.
        """
        ports: dict[int, ForwardingEntry] = {}
        for entry in self.entries(report=False):
            if entry.protocol == protocol:
                ports.setdefault(entry.source_port, entry)
        return ports

    def report_failure(self, failure: EntryFailure, on_failure: FailureHandler | None = None) -> None:
        entry_failures_total.labels(reason=failure.reason).inc()
        _log.warning(
            f"{failure.reason}_failure",
            translation=failure.translation,
            service=failure.service or None,
            error=str(failure),
        )
        if on_failure is not None:
            on_failure(failure)
