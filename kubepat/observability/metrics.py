"""Prometheus metrics for kube-pat.

All collectors live on the default registry and are exposed by the REST
API at ``/metrics``.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

reconcile_passes_total = Counter(
    "kubepat_reconcile_passes_total",
    "Reconciliation passes by outcome",
    ["outcome"],
)

reconcile_duration_seconds = Histogram(
    "kubepat_reconcile_duration_seconds",
    "Wall-clock duration of a reconciliation pass",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

forwarding_rules = Gauge(
    "kubepat_forwarding_rules",
    "DNAT rules installed by the last reconciliation pass",
    ["protocol"],
)

entry_failures_total = Counter(
    "kubepat_entry_failures_total",
    "Translation specs skipped during a pass",
    ["reason"],
)

loadbalancer_updates_total = Counter(
    "kubepat_loadbalancer_updates_total",
    "Load balancer port list writes",
    ["protocol"],
)

cache_events_total = Counter(
    "kubepat_cache_events_total",
    "Change notifications raised by the watched collections",
    ["kind", "action"],
)

watch_reconnects_total = Counter(
    "kubepat_watch_reconnects_total",
    "Watch stream reconnects by kind",
    ["kind"],
)
