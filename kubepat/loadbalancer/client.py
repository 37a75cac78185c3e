"""Load-balancer read/update access through kubernetes-asyncio.

The load balancer is an ordinary ``Service`` whose port list advertises
the external ports. Writes are read-modify-write with the fetched
resourceVersion; a concurrent writer surfaces as a 409 LoadBalancerError
and is not retried.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog
from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]
from kubernetes_asyncio.client.rest import ApiException  # type: ignore[import-untyped]

from kubepat.errors import ConfigurationFailure, LoadBalancerError
from kubepat.models.resources import ObjectRef, Protocol, ServicePort

_log = structlog.get_logger(component="loadbalancer.client")


@dataclass
class LoadBalancerService:
    """Current state of a load-balancer service as fetched from the API."""

    namespace: str
    name: str
    ports: list[ServicePort] = field(default_factory=list)
    resource_version: str = ""
    raw: Any = None

    @property
    def ref(self) -> ObjectRef:
        return ObjectRef(self.namespace, self.name)

    def advertised(self, protocol: Protocol) -> set[int]:
        """Ports currently advertised for *protocol*."""
        return {p.port for p in self.ports if p.protocol == protocol}


def _from_api(svc: Any) -> LoadBalancerService:
    ports = [
        ServicePort(
            port=int(p.port),
            protocol=Protocol(p.protocol or Protocol.TCP),
            name=p.name or "",
            target_port=p.target_port,
            node_port=p.node_port,
        )
        for p in (svc.spec.ports or [])
    ]
    return LoadBalancerService(
        namespace=svc.metadata.namespace,
        name=svc.metadata.name,
        ports=ports,
        resource_version=svc.metadata.resource_version or "",
        raw=svc,
    )


def _to_api(port: ServicePort) -> Any:
    return k8s_client.V1ServicePort(
        name=port.name or None,
        protocol=port.protocol.value,
        port=port.port,
        target_port=port.target_port,
        node_port=port.node_port,
    )


class LoadBalancerClient:
    """Fetches and rewrites the port list of load-balancer services."""

    def __init__(self, core_v1: Any | None = None) -> None:
        self._api = core_v1 if core_v1 is not None else k8s_client.CoreV1Api()

    async def get(self, ref: ObjectRef) -> LoadBalancerService:
        """Fetch the service named by *ref*.

        Raises:
            ConfigurationFailure: the service does not exist.
            LoadBalancerError: any other API or transport failure.
        """
        try:
            svc = await self._api.read_namespaced_service(name=ref.name, namespace=ref.namespace)
        except ApiException as exc:
            if exc.status == 404:
                raise ConfigurationFailure(f"load balancer service {ref} not found") from exc
            raise LoadBalancerError(f"failed to fetch load balancer service {ref}: {exc.status} {exc.reason}") from exc
        except Exception as exc:
            raise LoadBalancerError(f"failed to fetch load balancer service {ref}: {exc}") from exc
        return _from_api(svc)

    async def replace_ports(self, lb: LoadBalancerService, ports: list[ServicePort]) -> LoadBalancerService:
        """Write *ports* as the complete port list of *lb*.

        Raises:
            LoadBalancerError: the update was rejected or could not be sent.
        """
        body = lb.raw
        if body is None:
            raise LoadBalancerError(f"load balancer service {lb.ref} was not fetched from the API")
        body.spec.ports = [_to_api(p) for p in ports]
        try:
            updated = await self._api.replace_namespaced_service(name=lb.name, namespace=lb.namespace, body=body)
        except ApiException as exc:
            raise LoadBalancerError(f"failed to update load balancer service {lb.ref}: {exc.status} {exc.reason}") from exc
        except Exception as exc:
            raise LoadBalancerError(f"failed to update load balancer service {lb.ref}: {exc}") from exc
        _log.debug("loadbalancer_replaced", service=str(lb.ref), ports=[p.port for p in ports])
        return _from_api(updated)
