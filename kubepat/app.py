"""Application bootstrap for kube-pat.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → packet filter → cache
              → watchers (wait for sync) → load balancer → controller → REST

Shutdown is fully graceful: components are stopped in reverse startup order.
The controller is stopped before the watchers so that an in-flight pass
finishes against a still-populated cache.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any

from kubepat.config import load_config
from kubepat.models.config import KubePATConfig
from kubepat.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

    from kubepat.cache import ResourceCache
    from kubepat.collector import ResourceWatcher
    from kubepat.controller import ReconciliationController
    from kubepat.loadbalancer import LoadBalancerSynchronizer
    from kubepat.packetfilter import PacketFilterTranslator

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class KubePATApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started (or already stopped)
    is safe.
    """

    def __init__(self, config: KubePATConfig | None = None) -> None:
        self.config = config

        self._api_client: Any = None
        self._translator: PacketFilterTranslator | None = None
        self._cache: ResourceCache | None = None
        self._watchers: list[ResourceWatcher[Any]] = []
        self._synchronizer: LoadBalancerSynchronizer | None = None
        self._controller: ReconciliationController | None = None
        self._rest_server: Any = None

        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        """
        if self.config is None:
            self.config = load_config()

        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info("kubepat starting", version=_kubepat_version())

        await self._start_k8s_client()
        await self._start_packet_filter()
        self._start_cache()
        await self._start_watchers()
        self._start_synchronizer()
        await self._start_controller()
        await self._start_rest()

        self._running = True
        self._log.info("kubepat started")

    async def _start_k8s_client(self) -> None:
        """Load in-cluster config, falling back to kubeconfig."""
        assert self._log is not None
        self._log.debug("starting k8s client")
        try:
            import kubernetes_asyncio.config as k8s_config  # type: ignore[import-untyped]
            from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]

            try:
                k8s_config.load_incluster_config()
                self._log.info("k8s client configured from in-cluster service account")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s client configured from kubeconfig")
            self._api_client = k8s_client.ApiClient()
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    async def _start_packet_filter(self) -> None:
        """Create the translator and install the masquerade rule."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting packet filter")
        try:
            from kubepat.packetfilter import Iptables, PacketFilterTranslator

            translator = PacketFilterTranslator(
                Iptables(path=self.config.packet_filter.iptables_path),
                interface=self.config.packet_filter.interface,
            )
            await translator.setup()
            self._translator = translator
            self._log.info("packet filter started", interface=translator.interface)
        except Exception as exc:
            raise _ComponentError("packet_filter", exc) from exc

    def _start_cache(self) -> None:
        from kubepat.cache import ResourceCache, WatchedCollection
        from kubepat.models.resources import PAT_KIND

        self._cache = ResourceCache(
            translations=WatchedCollection(PAT_KIND),
            services=WatchedCollection("Service"),
        )

    async def _start_watchers(self) -> None:
        """Start the list+watch loops and block until both caches are synced."""
        assert self._log is not None
        assert self.config is not None
        assert self._cache is not None
        assert self._api_client is not None
        self._log.debug("starting watchers")
        try:
            from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]

            from kubepat.collector import service_watcher, translation_watcher

            self._watchers = [
                translation_watcher(k8s_client.CustomObjectsApi(self._api_client), self._cache.translations),
                service_watcher(k8s_client.CoreV1Api(self._api_client), self._cache.services),
            ]
            for watcher in self._watchers:
                await watcher.start()
            timeout = self.config.cache.sync_timeout_seconds
            await asyncio.gather(*(w.wait_synced(timeout) for w in self._watchers))
            self._log.info(
                "watch caches synced",
                translations=len(self._cache.translations),
                services=len(self._cache.services),
            )
        except Exception as exc:
            raise _ComponentError("watchers", exc) from exc

    def _start_synchronizer(self) -> None:
        assert self.config is not None
        assert self._cache is not None
        from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]

        from kubepat.loadbalancer import LoadBalancerClient, LoadBalancerSynchronizer
        from kubepat.models.resources import Protocol

        lb = self.config.load_balancer
        self._synchronizer = LoadBalancerSynchronizer(
            cache=self._cache,
            client=LoadBalancerClient(k8s_client.CoreV1Api(self._api_client)),
            targets={Protocol.TCP: lb.tcp_service, Protocol.UDP: lb.udp_service},
        )

    async def _start_controller(self) -> None:
        """Subscribe the controller to cache events and run the first pass."""
        assert self._log is not None
        assert self._cache is not None
        assert self._translator is not None
        assert self._synchronizer is not None
        from kubepat.controller import ReconciliationController
        from kubepat.errors import ApplyFailure

        controller = ReconciliationController(self._cache, self._translator, self._synchronizer)
        self._cache.subscribe(controller.on_cache_event)
        self._controller = controller
        try:
            await controller.start()
        except ApplyFailure as exc:
            # Not fatal: the controller is running and the next event retries from a full clear.
            self._log.warning("initial reconcile failed", error=str(exc))

    async def _start_rest(self) -> None:
        """Start the uvicorn REST server."""
        assert self._log is not None
        assert self.config is not None
        if not self.config.api.enabled:
            self._log.info("rest api disabled")
            return
        self._log.debug("starting rest api")
        try:
            import uvicorn

            from kubepat.api import create_app

            fastapi_app = create_app(
                controller=self._controller,
                cache=self._cache,
                translator=self._translator,
                config=self.config,
            )
            uv_config = uvicorn.Config(
                app=fastapi_app,
                host="0.0.0.0",
                port=self.config.api.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="rest-server")
            self._background_tasks.append(task)
            self._rest_server = server
            self._log.info("rest api started", port=self.config.api.port)
        except Exception as exc:
            raise _ComponentError("rest", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Gracefully stop all components in reverse startup order."""
        if not self._running and self._log is None:
            return

        log = self._log or get_logger("app")
        log.info("kubepat shutting down")
        self._running = False

        if self._rest_server is not None:
            self._rest_server.should_exit = True
        for task in reversed(self._background_tasks):
            try:
                await asyncio.wait_for(task, timeout=_SHUTDOWN_GRACE_SECONDS)
            except TimeoutError:
                task.cancel()
            except Exception as exc:  # noqa: BLE001
                log.error("background task raised during shutdown", task=task.get_name(), error=str(exc))
        self._background_tasks.clear()
        self._rest_server = None

        await self._stop_component("controller", self._controller)
        for watcher in reversed(self._watchers):
            await self._stop_component(f"watcher.{watcher.kind}", watcher)
        self._watchers = []
        await self._stop_k8s_client()

        log.info("kubepat stopped")

    async def _stop_component(self, name: str, component: object | None) -> None:
        """Call stop() on a component if it has that method, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None)
        if stop_fn is None:
            return
        try:
            result = stop_fn()
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=_SHUTDOWN_GRACE_SECONDS)
        except TimeoutError:
            log.warning("component stop timed out", component=name, timeout=_SHUTDOWN_GRACE_SECONDS)
        except Exception as exc:
            log.error("component stop raised an error", component=name, error=str(exc))

    async def _stop_k8s_client(self) -> None:
        """Close the shared kubernetes-asyncio ApiClient connection pool."""
        api_client, self._api_client = self._api_client, None
        if api_client is None:
            return
        log = self._log or get_logger("app")
        try:
            await api_client.close()
        except Exception as exc:
            log.debug("k8s client close raised (non-fatal)", error=str(exc))


def _kubepat_version() -> str:
    from kubepat import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main() -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = KubePATApp()
    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)

    try:
        await app.start()
        await shutdown.wait()
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical(
            "fatal startup error",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app.running:
            await app.stop()
