"""Load-balancer access and port synchronization."""

from kubepat.loadbalancer.client import LoadBalancerClient, LoadBalancerService
from kubepat.loadbalancer.synchronizer import LoadBalancerSynchronizer, SyncResult, port_name

__all__ = [
    "LoadBalancerClient",
    "LoadBalancerService",
    "LoadBalancerSynchronizer",
    "SyncResult",
    "port_name",
]
