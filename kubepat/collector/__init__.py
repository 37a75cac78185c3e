"""Collector package for kube-pat.

Provides the Kubernetes list+watch loops that keep the watched collections
current and raise the change notifications that drive reconciliation.

Submodules
----------
watcher -- ResourceWatcher: relist recovery, reconnect with exponential back-off,
           plus factories for the PortAddressTranslation and Service watchers.
"""

from kubepat.collector.watcher import ResourceWatcher, service_watcher, translation_watcher

__all__ = ["ResourceWatcher", "service_watcher", "translation_watcher"]
