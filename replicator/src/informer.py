from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from replicator.src.keys import KEY_SEPARATOR, InvalidKeyError, meta_namespace_key
from replicator.src.metrics import METRICS

EventHandler = Callable[[Any], None]
_SYNC_POLL_SECONDS = 0.1


class ConfigMapInformer:
    """Eventually-consistent local mirror of every ConfigMap in the cluster.

    Follows the usual list-then-watch protocol:

    1. List all ConfigMaps (retrying with jittered exponential backoff),
       replace the store with the result and mark the cache synced.
    2. Watch from the list's ``resourceVersion``, applying ``ADDED``,
       ``MODIFIED`` and ``DELETED`` events to the store.
    3. On ``410 Gone`` (etcd compaction) re-list and diff the store against the
       fresh snapshot, so additions and removals missed while disconnected are
       still delivered to subscribers.
    4. ``401`` / ``403`` are RBAC problems; the loop stops with a clear log
       line instead of retrying forever and :meth:`has_failed` turns true.

    Subscribers are notified on additions and removals only.  The store never
    contains an object the API server did not send, but it can lag the live
    state arbitrarily.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        watch_timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
        watch_factory: Callable[[], Any] = watch.Watch,
    ) -> None:
        self.core_api = core_api
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._watch_factory = watch_factory

        self._store: dict[str, Any] = {}
        self._store_lock = threading.Lock()
        self._handlers: list[tuple[EventHandler, EventHandler]] = []
        self._synced = threading.Event()
        self._failed = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._active_watcher: Any = None
        self._watcher_lock = threading.Lock()

    def subscribe(self, on_add: EventHandler, on_delete: EventHandler) -> None:
        self._handlers.append((on_add, on_delete))

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def has_failed(self) -> bool:
        """True once the list/watch loop has exited without being asked to stop."""
        return self._failed.is_set()

    def wait_for_sync(
        self,
        stop_event: threading.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> bool:
        """Block until the initial list has been applied.

        Returns ``False`` if ``stop_event`` fires, the informer is stopped or has
        failed, or ``timeout_seconds`` elapses first.
        """
        deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
        while not self._synced.is_set():
            if self._stop.is_set() or self._failed.is_set():
                return False
            if stop_event is not None and stop_event.is_set():
                return False
            wait_seconds = _SYNC_POLL_SECONDS
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                wait_seconds = min(wait_seconds, remaining)
            self._synced.wait(timeout=wait_seconds)
        return True

    def get_by_key(self, namespace: str, name: str) -> Any | None:
        with self._store_lock:
            return self._store.get(f"{namespace}{KEY_SEPARATOR}{name}")

    def start(self) -> threading.Thread:
        """Run the list/watch loop in a daemon thread."""
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="configmap-informer", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, join_timeout_seconds: float = 5.0) -> None:
        """Stop the loop and interrupt any open watch stream."""
        self._stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=join_timeout_seconds)

    def _dispatch(self, obj: Any, *, added: bool) -> None:
        for on_add, on_delete in self._handlers:
            handler = on_add if added else on_delete
            try:
                handler(obj)
            except Exception:
                self.logger.exception("ConfigMap event handler failed")

    def _key_for(self, obj: Any) -> str | None:
        try:
            return meta_namespace_key(obj)
        except InvalidKeyError as exc:
            self.logger.warning("Skipping ConfigMap without a usable key: %s", exc)
            return None

    def _replace(self, items: list[Any]) -> None:
        """Swap the store for a full listing and notify about the difference."""
        fresh: dict[str, Any] = {}
        for obj in items:
            key = self._key_for(obj)
            if key is not None:
                fresh[key] = obj

        with self._store_lock:
            previous = self._store
            self._store = fresh
            METRICS.cache_objects.set(len(fresh))

        for key, obj in previous.items():
            if key not in fresh:
                self._dispatch(obj, added=False)
        for key, obj in fresh.items():
            if key not in previous:
                self._dispatch(obj, added=True)

    def handle_watch_event(self, event_type: str, obj: Any) -> None:
        """Apply one watch event to the store and notify subscribers."""
        if event_type not in {"ADDED", "MODIFIED", "DELETED"}:
            return
        key = self._key_for(obj)
        if key is None:
            return

        with self._store_lock:
            if event_type == "DELETED":
                known = self._store.pop(key, None) is not None
            else:
                known = key in self._store
                self._store[key] = obj
            METRICS.cache_objects.set(len(self._store))

        if event_type == "DELETED":
            if known:
                self._dispatch(obj, added=False)
        elif not known:
            # A MODIFIED for an unknown key means we missed its ADDED.
            self._dispatch(obj, added=True)

    def _list(self) -> str | None:
        listing = self.core_api.list_config_map_for_all_namespaces()
        self._replace(list(getattr(listing, "items", None) or []))
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._stop.is_set()

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Run the list/watch loop until stopped.

        If the loop gives up on its own (RBAC denial or an error escaping the
        loop) :meth:`has_failed` turns true so owners can stop relying on the
        cache.
        """
        stop = stop_event or threading.Event()
        self._failed.clear()
        try:
            self._list_and_watch(stop)
        finally:
            if not self._should_stop(stop):
                self._failed.set()
                self.logger.error("ConfigMap informer exited; the cache is no longer updated")

    def _list_and_watch(self, stop: threading.Event) -> None:
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list()
                self._synced.set()
                self.logger.info(
                    "ConfigMap cache synced with %d object(s) at resourceVersion %s",
                    len(self._store),
                    resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial ConfigMap list "
                        "(status=%s). Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    return
                self.logger.exception("Initial Kubernetes ConfigMap list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial ConfigMap list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = self._watch_factory()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                if resource_version is None:
                    resource_version = self._list()

                stream = watcher.stream(
                    self.core_api.list_config_map_for_all_namespaces,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version

                    self.handle_watch_event(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
