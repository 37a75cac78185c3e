"""List + watch loop feeding a WatchedCollection.

ResourceWatcher keeps one collection in step with the API server:

    * initial list -> ``replace_all`` + ``mark_synced``
    * watch from the list's resourceVersion; ADDED/MODIFIED -> upsert,
      DELETED -> remove, BOOKMARK -> advance the resourceVersion
    * 410 Gone (expired resourceVersion) -> relist
    * any other failure -> reconnect with capped exponential back-off

Objects that fail to parse are logged and skipped; they never reach the
collection.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

import structlog
from kubernetes_asyncio import watch  # type: ignore[import-untyped]
from kubernetes_asyncio.client.rest import ApiException  # type: ignore[import-untyped]

from kubepat.cache.collection import WatchedCollection
from kubepat.models.resources import (
    PAT_GROUP,
    PAT_KIND,
    PAT_PLURAL,
    PAT_VERSION,
    AddressTranslationSpec,
    ServiceSnapshot,
)
from kubepat.observability.metrics import watch_reconnects_total

_log = structlog.get_logger(component="collector.watcher")

_BACKOFF_INITIAL = 1.0
_BACKOFF_MAX = 30.0
_WATCH_TIMEOUT_SECONDS = 300
_HTTP_GONE = 410

T = TypeVar("T")


class _Gone(Exception):
    """The watch resourceVersion expired; a relist is required."""


class ResourceWatcher(Generic[T]):
    """Feeds *collection* from a kubernetes-asyncio list function.

    Args:
        kind:       Resource kind, used in logs and metrics.
        collection: Collection to keep up to date.
        list_fn:    Coroutine function returning the list (and watchable via ``watch=True``).
        parse:      Converts a raw object dict into the collection's item type.
        list_args:  Positional arguments for *list_fn*.
        to_dict:    Converts an item of the list response into a raw dict.
    """

    def __init__(
        self,
        kind: str,
        collection: WatchedCollection[Any],
        list_fn: Callable[..., Awaitable[Any]],
        parse: Callable[[dict[str, Any]], T],
        list_args: tuple[Any, ...] = (),
        to_dict: Callable[[Any], dict[str, Any]] | None = None,
    ) -> None:
        self.kind = kind
        self._collection = collection
        self._list_fn = list_fn
        self._parse = parse
        self._list_args = list_args
        self._to_dict = to_dict or (lambda item: item)
        self._resource_version = ""
        self._synced = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"watch-{self.kind}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def wait_synced(self, timeout: float) -> None:
        """Block until the initial list has been loaded.

        Raises:
            TimeoutError: the list did not complete within *timeout* seconds.
        """
        await asyncio.wait_for(self._synced.wait(), timeout=timeout)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        backoff = _BACKOFF_INITIAL
        needs_list = True
        while True:
            try:
                if needs_list:
                    await self._relist()
                    needs_list = False
                await self._watch()
                backoff = _BACKOFF_INITIAL
            except asyncio.CancelledError:
                raise
            except _Gone:
                _log.info("watch_expired_relisting", kind=self.kind)
                needs_list = True
            except Exception as exc:  # noqa: BLE001
                watch_reconnects_total.labels(kind=self.kind).inc()
                _log.warning("watch_failed", kind=self.kind, error=str(exc), retry_in=backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, _BACKOFF_MAX)

    async def _relist(self) -> None:
        response = await self._list_fn(*self._list_args)
        raw = response if isinstance(response, dict) else None
        items = raw.get("items", []) if raw is not None else (response.items or [])
        metadata = raw.get("metadata", {}) if raw is not None else {"resourceVersion": response.metadata.resource_version}

        objs = []
        for item in items:
            parsed = self._parse_or_skip(self._to_dict(item))
            if parsed is not None:
                objs.append(parsed)
        events = self._collection.replace_all(objs)
        self._resource_version = str(metadata.get("resourceVersion") or "")
        self._collection.mark_synced()
        self._synced.set()
        _log.info("relisted", kind=self.kind, count=len(objs), changes=len(events))

    async def _watch(self) -> None:
        w = watch.Watch()
        try:
            async with w.stream(
                self._list_fn,
                *self._list_args,
                resource_version=self._resource_version,
                timeout_seconds=_WATCH_TIMEOUT_SECONDS,
                allow_watch_bookmarks=True,
            ) as stream:
                async for event in stream:
                    self._handle_event(str(event.get("type", "")), event.get("raw_object") or {})
        except ApiException as exc:
            if exc.status == _HTTP_GONE:
                raise _Gone() from exc
            raise

    def _handle_event(self, event_type: str, raw: dict[str, Any]) -> None:
        metadata = raw.get("metadata") or {}
        if event_type == "ERROR":
            if raw.get("code") == _HTTP_GONE:
                raise _Gone()
            raise RuntimeError(f"watch error: {raw.get('reason', '')}: {raw.get('message', '')}")

        if metadata.get("resourceVersion"):
            self._resource_version = str(metadata["resourceVersion"])

        if event_type in ("ADDED", "MODIFIED"):
            parsed = self._parse_or_skip(raw)
            if parsed is not None:
                self._collection.upsert(parsed)
            elif self._collection.remove(
                str(metadata.get("namespace") or ""), str(metadata.get("name") or "")
            ):
                _log.warning(
                    "invalid_object_removed",
                    kind=self.kind,
                    namespace=metadata.get("namespace"),
                    name=metadata.get("name"),
                )
        elif event_type == "DELETED":
            name = str(metadata.get("name") or "")
            if name:
                self._collection.remove(str(metadata.get("namespace") or ""), name)

    def _parse_or_skip(self, raw: dict[str, Any]) -> T | None:
        try:
            return self._parse(raw)
        except (ValueError, KeyError, TypeError) as exc:
            metadata = raw.get("metadata") or {}
            _log.warning(
                "invalid_object_skipped",
                kind=self.kind,
                namespace=metadata.get("namespace"),
                name=metadata.get("name"),
                error=str(exc),
            )
            return None


def translation_watcher(
    custom_objects: Any,
    collection: WatchedCollection[AddressTranslationSpec],
) -> ResourceWatcher[AddressTranslationSpec]:
    """Watcher for PortAddressTranslation resources in every namespace."""
    return ResourceWatcher(
        kind=PAT_KIND,
        collection=collection,
        list_fn=custom_objects.list_cluster_custom_object,
        list_args=(PAT_GROUP, PAT_VERSION, PAT_PLURAL),
        parse=AddressTranslationSpec.from_dict,
    )


def service_watcher(
    core_v1: Any,
    collection: WatchedCollection[ServiceSnapshot],
) -> ResourceWatcher[ServiceSnapshot]:
    """Watcher for core Services in every namespace."""
    return ResourceWatcher(
        kind="Service",
        collection=collection,
        list_fn=core_v1.list_service_for_all_namespaces,
        parse=ServiceSnapshot.from_dict,
        to_dict=core_v1.api_client.sanitize_for_serialization,
    )
