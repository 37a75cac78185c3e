"""Cache layer for kube-pat.

Provides in-memory collections backed by Kubernetes watch streams and the
joined, read-only view the reconciliation controller derives its
forwarding table from.

Submodules:
    collection      -- WatchedCollection: keyed store with change notifications.
    resource_cache  -- ResourceCache: spec/service join producing ForwardingEntry values.
"""

from kubepat.cache.collection import CacheEvent, EventAction, WatchedCollection
from kubepat.cache.resource_cache import ForwardingTable, ResourceCache

__all__ = ["CacheEvent", "EventAction", "ForwardingTable", "ResourceCache", "WatchedCollection"]
