"""Resource data structures: watched objects and the derived forwarding table.

AddressTranslationSpec and ServiceSnapshot are parsed from the raw dicts
delivered by the watch streams. ForwardingEntry is derived on every
reconciliation pass and never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

# PortAddressTranslation custom resource coordinates.
PAT_GROUP = "k8s.deslauriers.io"
PAT_VERSION = "v1beta1"
PAT_PLURAL = "portaddresstranslations"
PAT_KIND = "PortAddressTranslation"

MIN_PORT = 1
MAX_PORT = 65535


class Protocol(StrEnum):
    """L4 protocol of a service port."""

    TCP = "TCP"
    UDP = "UDP"
    SCTP = "SCTP"


class ServiceType(StrEnum):
    """Kubernetes service types."""

    CLUSTER_IP = "ClusterIP"
    NODE_PORT = "NodePort"
    LOAD_BALANCER = "LoadBalancer"
    EXTERNAL_NAME = "ExternalName"


@dataclass(frozen=True)
class ObjectRef:
    """A ``namespace/name`` reference to a namespaced object."""

    namespace: str
    name: str

    @classmethod
    def parse(cls, value: str) -> ObjectRef:
        """Parse ``namespace/name``.

        Raises:
            ValueError: if either part is missing.
        """
        namespace, sep, name = value.partition("/")
        if not sep or not namespace or not name or "/" in name:
            raise ValueError(f"expected <namespace>/<name>, got {value!r}")
        return cls(namespace=namespace, name=name)

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ServicePort:
    """One port/protocol pair declared on a Service."""

    port: int
    protocol: Protocol = Protocol.TCP
    name: str = ""
    target_port: int | str | None = None
    node_port: int | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ServicePort:
        return cls(
            port=int(raw["port"]),
            protocol=Protocol(raw.get("protocol") or Protocol.TCP),
            name=str(raw.get("name") or ""),
            target_port=raw.get("targetPort"),
            node_port=raw.get("nodePort"),
        )


def _metadata(raw: dict[str, Any]) -> dict[str, Any]:
    metadata = raw.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        raise ValueError("object has no metadata.name")
    return metadata


@dataclass(frozen=True)
class AddressTranslationSpec:
    """A declared intent mapping an external port to a service in the same namespace.

    Immutable once read into a reconciliation pass.
    """

    namespace: str
    name: str
    service: str
    port: int
    resource_version: str = ""
    creation_timestamp: str = ""

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AddressTranslationSpec:
        """Build from a raw PortAddressTranslation object.

        Range checking of ``port`` is left to the cache so that an
        out-of-range port is reported as a validation failure for the
        owning spec rather than a parse error.

        Raises:
            ValueError: if ``spec.service`` is missing or ``spec.port`` is not an integer.
        """
        metadata = _metadata(raw)
        spec = raw.get("spec") or {}
        service = spec.get("service")
        if not service:
            raise ValueError(f"{metadata.get('namespace', '')}/{metadata['name']}: spec.service is required")
        port = spec.get("port")
        if isinstance(port, bool) or not isinstance(port, int):
            raise ValueError(f"{metadata.get('namespace', '')}/{metadata['name']}: spec.port must be an integer")
        return cls(
            namespace=str(metadata.get("namespace") or ""),
            name=str(metadata["name"]),
            service=str(service),
            port=port,
            resource_version=str(metadata.get("resourceVersion") or ""),
            creation_timestamp=str(metadata.get("creationTimestamp") or ""),
        )

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    @property
    def service_key(self) -> tuple[str, str]:
        return (self.namespace, self.service)

    @property
    def identity(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ServiceSnapshot:
    """The subset of a core Service needed to build a forwarding entry."""

    namespace: str
    name: str
    cluster_ip: str
    type: str = ServiceType.CLUSTER_IP
    ports: tuple[ServicePort, ...] = field(default_factory=tuple)
    resource_version: str = ""

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ServiceSnapshot:
        metadata = _metadata(raw)
        spec = raw.get("spec") or {}
        return cls(
            namespace=str(metadata.get("namespace") or ""),
            name=str(metadata["name"]),
            cluster_ip=str(spec.get("clusterIP") or ""),
            type=str(spec.get("type") or ServiceType.CLUSTER_IP),
            ports=tuple(ServicePort.from_dict(p) for p in spec.get("ports") or []),
            resource_version=str(metadata.get("resourceVersion") or ""),
        )

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    @property
    def identity(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def headless(self) -> bool:
        return self.cluster_ip in ("", "None")


@dataclass(frozen=True)
class ForwardingEntry:
    """A resolved port-forwarding request.

    ``translation`` and ``service`` are ``namespace/name`` identities of the
    originating objects.
    """

    protocol: Protocol
    source_port: int
    destination_ip: str
    destination_port: int
    translation: str
    service: str

    @property
    def destination(self) -> str:
        return f"{self.destination_ip}:{self.destination_port}"
