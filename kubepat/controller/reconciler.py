"""Reconciliation controller: the serialized control loop.

Lifecycle::

    STOPPED --start()--> RUNNING --stop()--> STOPPED

While STOPPED, triggers and reconcile() calls are accepted and ignored, so
event handlers registered during bootstrap cannot race ahead of start().

Change notifications from both watched collections call ``trigger()``,
which may happen on any thread. Triggers set a single-slot pending flag
that one worker task drains, so a burst of events collapses into at most
one extra pass. Every pass runs under a lock; passes never overlap.

A pass:
    1. checks the cache has synced                 (ApplyFailure aborts)
    2. clears the packet-filter table              (ApplyFailure aborts)
    3. forwards every entry of the joined view     (entry failures skipped)
    4. synchronizes each configured load balancer  (ApplyFailure aborts)
    5. logs the installed rule set                 (failures ignored)
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

from kubepat.cache.collection import CacheEvent
from kubepat.cache.resource_cache import ResourceCache
from kubepat.errors import ApplyFailure, EntryFailure
from kubepat.loadbalancer.synchronizer import LoadBalancerSynchronizer, SyncResult
from kubepat.models.resources import ForwardingEntry, Protocol
from kubepat.observability.metrics import (
    forwarding_rules,
    reconcile_duration_seconds,
    reconcile_passes_total,
)
from kubepat.packetfilter.translator import PacketFilterTranslator

_log = structlog.get_logger(component="controller.reconciler")


class ControllerState(StrEnum):
    """Lifecycle state of the controller."""

    STOPPED = "stopped"
    RUNNING = "running"


@dataclass
class PassReport:
    """Outcome of a single reconciliation pass."""

    started_at: datetime
    finished_at: datetime | None = None
    applied: list[ForwardingEntry] = field(default_factory=list)
    failures: list[EntryFailure] = field(default_factory=list)
    sync: dict[Protocol, SyncResult] = field(default_factory=dict)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "applied": [
                {
                    "translation": e.translation,
                    "service": e.service,
                    "protocol": e.protocol.value,
                    "port": e.source_port,
                    "destination": e.destination,
                }
                for e in self.applied
            ],
            "failures": [
                {"reason": f.reason, "translation": f.translation, "service": f.service, "error": str(f)}
                for f in self.failures
            ],
            "sync": {protocol.value: result.value for protocol, result in self.sync.items()},
            "error": self.error,
        }


class ReconciliationController:
    """Derives the forwarding table from the cache and applies it."""

    def __init__(
        self,
        cache: ResourceCache,
        translator: PacketFilterTranslator,
        synchronizer: LoadBalancerSynchronizer,
    ) -> None:
        self._cache = cache
        self._translator = translator
        self._synchronizer = synchronizer

        self._state = ControllerState.STOPPED
        self._state_lock = threading.Lock()
        self._pass_lock = asyncio.Lock()
        self._pending = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._worker: asyncio.Task[None] | None = None

        self.last_report: PassReport | None = None
        self.passes = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> ControllerState:
        with self._state_lock:
            return self._state

    @property
    def running(self) -> bool:
        return self.state is ControllerState.RUNNING

    def _set_state(self, state: ControllerState) -> None:
        with self._state_lock:
            self._state = state

    async def start(self) -> PassReport | None:
        """Transition to RUNNING and converge with one unconditional pass.

        Raises:
            ApplyFailure: the initial pass was aborted. The controller stays RUNNING.
        """
        if self.running:
            return self.last_report
        self._loop = asyncio.get_running_loop()
        self._pending.clear()
        self._set_state(ControllerState.RUNNING)
        self._worker = asyncio.create_task(self._run_worker(), name="reconcile-worker")
        _log.info("controller_started", protocols=[p.value for p in self._synchronizer.protocols])
        return await self.reconcile()

    async def stop(self) -> None:
        """Transition to STOPPED. An in-flight pass is allowed to finish."""
        if not self.running:
            return
        self._set_state(ControllerState.STOPPED)
        self._pending.set()  # wake the worker so it can observe STOPPED
        worker, self._worker = self._worker, None
        if worker is not None:
            await worker
        _log.info("controller_stopped", passes=self.passes)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def on_cache_event(self, event: CacheEvent) -> None:
        """Cache subscription handler."""
        _log.debug(
            "cache_event",
            kind=event.kind,
            action=event.action.value,
            namespace=event.namespace,
            name=event.name,
        )
        self.trigger()

    def trigger(self) -> None:
        """Request a pass. Safe from any thread; bursts coalesce into one pass."""
        if not self.running or self._loop is None:
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is self._loop:
            self._pending.set()
        else:
            self._loop.call_soon_threadsafe(self._pending.set)

    async def _run_worker(self) -> None:
        while True:
            await self._pending.wait()
            if not self.running:
                return
            self._pending.clear()
            try:
                await self.reconcile()
            except ApplyFailure:
                # Already logged by reconcile(); the next trigger starts from a full clear.
                pass
            except Exception:  # noqa: BLE001
                _log.exception("reconcile_unexpected_error")

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self) -> PassReport | None:
        """Run one full pass. No-op (returns None) unless RUNNING.

        Raises:
            ApplyFailure: the pass was aborted by a pass-scoped failure.
        """
        if not self.running:
            return None
        async with self._pass_lock:
            if not self.running:
                return None
            report = PassReport(started_at=datetime.now(tz=UTC))
            t_start = time.monotonic()
            try:
                await self._apply(report)
            except ApplyFailure as exc:
                report.error = str(exc)
                reconcile_passes_total.labels(outcome="aborted").inc()
                _log.error("reconcile_aborted", error=str(exc), applied=len(report.applied))
                raise
            else:
                reconcile_passes_total.labels(outcome="ok").inc()
                _log.info(
                    "reconcile_complete",
                    applied=len(report.applied),
                    failures=len(report.failures),
                    sync={p.value: r.value for p, r in report.sync.items()},
                )
            finally:
                report.finished_at = datetime.now(tz=UTC)
                reconcile_duration_seconds.observe(time.monotonic() - t_start)
                self.last_report = report
                self.passes += 1
            return report

    async def _apply(self, report: PassReport) -> None:
        self._cache.ensure_synced()
        await self._translator.clear()

        for entry in self._cache.entries(on_failure=report.failures.append):
            _log.debug("configuring", translation=entry.translation, protocol=entry.protocol.value, port=entry.source_port)
            try:
                await self._translator.forward(entry)
            except EntryFailure as failure:
                self._cache.report_failure(failure, report.failures.append)
                continue
            report.applied.append(entry)

        for protocol in Protocol:
            forwarding_rules.labels(protocol=protocol.value).set(
                sum(1 for e in report.applied if e.protocol == protocol)
            )

        for protocol in self._synchronizer.protocols:
            report.sync[protocol] = await self._synchronizer.synchronize(protocol)

        await self._translator.print_rules()
