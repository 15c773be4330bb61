from __future__ import annotations

import copy
import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from orchestrator.src.events import Added, Deleted, EventChannel, ResourceKind, Updated
from orchestrator.src.metrics import METRICS
from orchestrator.src.objects import list_items, list_resource_version, object_key, resource_version
from orchestrator.src.store import IndexedStore


class ResourceWatcher:
    """List-then-watch feed for one resource kind, publishing typed events.

    The Kubernetes watch API only reports the new object on ``MODIFIED``, so
    the watcher keeps the last-seen object per ``namespace/name`` key and
    turns each notification into :class:`Added`, :class:`Updated` (old and
    new) or :class:`Deleted` on its :class:`EventChannel`.  The same store
    answers point reads (:meth:`get`) without an API round trip.

    There is no periodic resync: the initial listing is replayed as
    ``Added`` events and, after a ``410 Gone``, a fresh listing is diffed
    against the store so nothing observed during the gap is lost.
    """

    def __init__(
        self,
        kind: ResourceKind,
        list_fn: Callable[..., Any],
        channel: EventChannel,
        *,
        list_kwargs: dict[str, Any] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.list_kwargs = dict(list_kwargs or {})
        self.channel = channel
        self.logger = logger or logging.getLogger(__name__)

        self.synced = threading.Event()
        self._objects: IndexedStore[str, Any] = IndexedStore(f"{kind.value}-objects")
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def get(self, key: str) -> Any | None:
        """Return a copy of the last-seen object for ``namespace/name``."""
        obj, _ = self._objects.get(key)
        return copy.deepcopy(obj)

    def _publish(self, event: Added | Updated | Deleted) -> None:
        METRICS.watch_events_total.labels(
            kind=self.kind.value, event=type(event).__name__.lower()
        ).inc()
        self.channel.publish(event)

    def _observe(self, obj: Any) -> None:
        key = object_key(obj)
        if key is None:
            self.logger.warning("Ignoring %s object without metadata.name", self.kind.value)
            return
        old, found = self._objects.get(key)
        self._objects.put(key, obj)
        if found:
            self._publish(Updated(old=old, new=obj))
        else:
            self._publish(Added(obj=obj))

    def _forget(self, obj: Any) -> None:
        key = object_key(obj)
        if key is None:
            return
        last_seen = self._objects.pop(key)
        self._publish(Deleted(obj=obj if obj is not None else last_seen))

    def _apply_listing(self, listing: Any, *, initial: bool) -> None:
        """Replay a full listing into the store.

        On the initial listing every object becomes ``Added``.  On a re-list
        objects whose resourceVersion moved become ``Updated`` and objects
        no longer present become ``Deleted``.
        """
        seen: set[str] = set()
        for obj in list_items(listing):
            key = object_key(obj)
            if key is None:
                continue
            seen.add(key)
            old, found = self._objects.get(key)
            if found and resource_version(old) == resource_version(obj):
                continue
            self._observe(obj)

        if initial:
            return
        for key in set(self._objects.keys()) - seen:
            last_seen = self._objects.pop(key)
            if last_seen is not None:
                self._publish(Deleted(obj=last_seen))

    def handle_watch_event(self, event_type: str, obj: Any) -> None:
        if event_type in {"ADDED", "MODIFIED"}:
            self._observe(obj)
        elif event_type == "DELETED":
            self._forget(obj)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list(self) -> tuple[Any, str | None]:
        listing = self.list_fn(**self.list_kwargs)
        return listing, list_resource_version(listing)

    def _access_denied(self, exc: ApiException, phase: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied for %s during %s (status=%s). "
            "Check RBAC and service account permissions.",
            self.kind.value,
            phase,
            exc.status,
        )
        METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
        self.synced.clear()
        return True

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List, replay, then stream changes until shutdown.

        1. Retries the initial list with jittered exponential backoff.
        2. Publishes the listing as ``Added`` events and marks the feed synced.
        3. Streams from the listing's resourceVersion.
        4. On ``410 Gone`` re-lists and diffs against the local store.
        5. On other errors backs off (capped at 30 s) and reconnects.

        ``401`` / ``403`` stop the feed for good.
        """
        stop = shutdown_event or threading.Event()
        kind = self.kind.value

        resource_version_: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                listing, resource_version_ = self._list()
                self._apply_listing(listing, initial=True)
                self.synced.set()
                self.logger.info(
                    "Initial %s listing replayed; watching from resourceVersion %s",
                    kind,
                    resource_version_,
                )
                break
            except ApiException as exc:
                if self._access_denied(exc, "initial list"):
                    return
                self.logger.exception("Initial %s list failed", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version_,
                    timeout_seconds=300,
                    **self.list_kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    rv = resource_version(obj)
                    if rv:
                        resource_version_ = rv
                    self.handle_watch_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", kind)
                    try:
                        listing, resource_version_ = self._list()
                        self._apply_listing(listing, initial=False)
                    except ApiException as relist_exc:
                        if self._access_denied(relist_exc, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list %s after 410", kind)
                        METRICS.watch_errors_total.labels(kind=kind).inc()
                        resource_version_ = None
                    continue

                if self._access_denied(exc, "watch"):
                    return

                self.logger.exception("Kubernetes API watch error for %s", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", kind)
                METRICS.watch_errors_total.labels(kind=kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.synced.clear()

    def start(self, shutdown_event: threading.Event) -> threading.Thread:
        self._thread = threading.Thread(
            target=self.run_forever,
            kwargs={"shutdown_event": shutdown_event},
            name=f"watch-{self.kind.value}",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = None) -> None:
        self.request_stop()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
