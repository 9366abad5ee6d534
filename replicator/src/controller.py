from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from replicator.src.config import DEFAULT_SOURCE_ANNOTATION_KEY, ReplicatorConfig
from replicator.src.informer import ConfigMapInformer
from replicator.src.keys import InvalidKeyError, meta_namespace_key, split_key
from replicator.src.kube import create_replica, replace_replica_data
from replicator.src.metrics import METRICS
from replicator.src.policy import ReplicationPolicy
from replicator.src.workqueue import RateLimitingQueue, default_controller_rate_limiter

QUEUE_NAME = "configmap-replicator"


class ControllerState(str, Enum):
    CREATED = "created"
    WAITING_FOR_SYNC = "waiting_for_sync"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class ResourceNotCachedError(LookupError):
    """The origin ConfigMap is not (or not yet) present in the local cache."""


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one reconciliation pass for a single origin ConfigMap.

    ``skipped`` is set when the policy excludes the origin, in which case no
    API call was made.
    """

    namespace: str
    name: str
    created: tuple[str, ...] = ()
    updated: tuple[str, ...] = ()
    unchanged: tuple[str, ...] = ()
    skipped: bool = False

    @property
    def writes(self) -> int:
        return len(self.created) + len(self.updated)


def normalize_data(raw_data: Any) -> dict[str, str]:
    """Coerce ConfigMap ``data`` into a plain ``dict[str, str]`` for comparison.

    ``None`` data (a ConfigMap without a ``data`` field) compares equal to an
    empty mapping.
    """
    if not isinstance(raw_data, dict):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_data.items()
        if isinstance(k, str)
    }


def _is_terminating(namespace: Any) -> bool:
    phase = getattr(getattr(namespace, "status", None), "phase", None)
    return phase == "Terminating"


class ConfigMapReplicator:
    """Keeps a copy of every tracked ConfigMap in every eligible namespace.

    Cache notifications are translated into ``<namespace>/<name>`` keys on a
    rate-limited work queue.  Worker threads pop keys and reconcile them
    level-triggered: the origin is re-read from the cache, namespaces and
    replicas are read live from the API server, and only the missing or
    drifted replicas are written.  A pass that hits any API error is retried
    as a whole with per-key exponential backoff; because each pass recomputes
    the desired state from scratch, partially applied passes are safe to redo.

    Lifecycle: ``CREATED -> WAITING_FOR_SYNC -> RUNNING -> STOPPING -> STOPPED``.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        informer: ConfigMapInformer,
        queue: RateLimitingQueue,
        policy: ReplicationPolicy,
        workers: int = 1,
        cache_sync_timeout_seconds: float = 60,
        source_annotation_key: str = DEFAULT_SOURCE_ANNOTATION_KEY,
        poll_interval_seconds: float = 0.5,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.core_api = core_api
        self.informer = informer
        self.queue = queue
        self.policy = policy
        self.workers = workers
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.source_annotation_key = source_annotation_key
        self.poll_interval_seconds = poll_interval_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._state = ControllerState.CREATED
        self._state_lock = threading.Lock()
        self._worker_threads: list[threading.Thread] = []
        self.cache_failed = False

        informer.subscribe(on_add=self.handle_add, on_delete=self.handle_delete)

    @property
    def state(self) -> ControllerState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: ControllerState) -> None:
        with self._state_lock:
            previous = self._state
            self._state = state
        self.logger.info("Controller state %s -> %s", previous.value, state.value)

    # ------------------------------------------------------------------
    # Event translation
    # ------------------------------------------------------------------

    def handle_add(self, obj: Any) -> None:
        self._enqueue(obj, "added")

    def handle_delete(self, obj: Any) -> None:
        self._enqueue(obj, "deleted")

    def _enqueue(self, obj: Any, reason: str) -> None:
        try:
            key = meta_namespace_key(obj)
        except InvalidKeyError as exc:
            self.logger.warning("Dropping ConfigMap %s event: %s", reason, exc)
            return
        self.logger.debug("ConfigMap %s %s; enqueueing", key, reason)
        self.queue.add(key)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def sync_key(self, key: str) -> SyncResult:
        """Drive every eligible namespace toward holding a copy of the ConfigMap at ``key``.

        Raises :class:`InvalidKeyError` for malformed keys,
        :class:`ResourceNotCachedError` when the origin is missing from the
        cache, and ``ApiException`` on the first failed API call, leaving the
        remaining namespaces for the retried pass.
        """
        namespace, name = split_key(key)
        if not self.policy.accepts_origin(namespace, name):
            self.logger.debug("ConfigMap %s is not a replication origin; skipping", key)
            return SyncResult(namespace=namespace, name=name, skipped=True)

        origin = self.informer.get_by_key(namespace, name)
        if origin is None:
            raise ResourceNotCachedError(f"ConfigMap {key} not found in cache")
        desired = normalize_data(getattr(origin, "data", None))

        namespaces = self.core_api.list_namespace()

        created: list[str] = []
        updated: list[str] = []
        unchanged: list[str] = []
        for target_namespace in getattr(namespaces, "items", None) or []:
            target = getattr(getattr(target_namespace, "metadata", None), "name", None)
            if not target or not self.policy.accepts_target(target, origin_namespace=namespace):
                continue
            if _is_terminating(target_namespace):
                self.logger.debug("Namespace %s is terminating; not replicating %s", target, key)
                continue

            try:
                existing = self.core_api.read_namespaced_config_map(name=name, namespace=target)
            except ApiException as exc:
                if exc.status != 404:
                    raise
                create_replica(
                    core_api=self.core_api,
                    namespace=target,
                    name=name,
                    data=desired,
                    annotations={self.source_annotation_key: key},
                )
                created.append(target)
                METRICS.replica_writes_total.labels(action="create").inc()
                self.logger.info("Created replica of %s in namespace %s", key, target)
                continue

            if normalize_data(getattr(existing, "data", None)) == desired:
                unchanged.append(target)
                continue

            if not self.policy.update_on_drift:
                self.logger.debug(
                    "Replica %s/%s differs from %s but updates are disabled", target, name, key
                )
                unchanged.append(target)
                continue

            replace_replica_data(core_api=self.core_api, existing=existing, data=desired)
            updated.append(target)
            METRICS.replica_writes_total.labels(action="update").inc()
            self.logger.info("Updated drifted replica of %s in namespace %s", key, target)

        return SyncResult(
            namespace=namespace,
            name=name,
            created=tuple(created),
            updated=tuple(updated),
            unchanged=tuple(unchanged),
        )

    def _retry(self, key: str) -> None:
        delay_seconds = self.queue.add_rate_limited(key)
        METRICS.sync_total.labels(result="retry").inc()
        self.logger.info(
            "Retrying %s in %.3fs (requeue %d)",
            key,
            delay_seconds,
            self.queue.num_requeues(key),
        )

    def _process_key(self, key: str) -> SyncResult | None:
        try:
            result = self.sync_key(key)
        except InvalidKeyError:
            self.logger.error("Discarding invalid work queue key %r", key)
            self.queue.forget(key)
            METRICS.sync_total.labels(result="invalid").inc()
            return None
        except ResourceNotCachedError as exc:
            # Also the path for deleted origins: replicas are left in place and
            # the key keeps retrying at the backoff cap.
            self.logger.warning("%s; will retry", exc)
            self._retry(key)
            return None
        except ApiException as exc:
            self.logger.warning(
                "Kubernetes API error while syncing %s (status=%s, reason=%s)",
                key,
                exc.status,
                exc.reason,
            )
            self._retry(key)
            return None
        except Exception:
            self.logger.exception("Unexpected error while syncing %s", key)
            self._retry(key)
            return None

        self.queue.forget(key)
        METRICS.sync_total.labels(result="skipped" if result.skipped else "success").inc()
        if result.writes:
            self.logger.info(
                "Synced %s: created in %d namespace(s), updated in %d, %d already current",
                key,
                len(result.created),
                len(result.updated),
                len(result.unchanged),
            )
        return result

    def process_next_item(self) -> bool:
        """Reconcile one key from the queue.  Returns ``False`` once the queue shuts down."""
        key, shutdown = self.queue.get()
        if shutdown or key is None:
            return False
        try:
            self._process_key(key)
        finally:
            self.queue.done(key)
        return True

    def run_worker(self) -> None:
        while self.process_next_item():
            pass

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Request a cooperative stop; :meth:`run` returns once workers have drained."""
        self._external_stop.set()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _check_cache_failed(self) -> bool:
        if self.informer.has_failed():
            if not self.cache_failed:
                self.logger.error("ConfigMap cache stopped updating; shutting down workers")
            self.cache_failed = True
        return self.cache_failed

    def _wait_for_cache_sync(self, stop: threading.Event) -> bool:
        deadline = time.monotonic() + self.cache_sync_timeout_seconds
        while not self._should_stop(stop) and not self.informer.has_failed():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            # Short slices so request_stop() is noticed while waiting.
            if self.informer.wait_for_sync(
                stop, timeout_seconds=min(self.poll_interval_seconds, remaining)
            ):
                return True
        return False

    def _start_workers(self) -> None:
        self._worker_threads = [
            threading.Thread(target=self.run_worker, name=f"replicator-worker-{index}", daemon=True)
            for index in range(self.workers)
        ]
        for thread in self._worker_threads:
            thread.start()

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Wait for the cache, run the workers and block until a stop is requested.

        A cache that has not synced within ``cache_sync_timeout_seconds`` is
        logged and the workers start anyway: passes against an incomplete
        cache fail with :class:`ResourceNotCachedError` and are retried.

        If the informer gives up (for example on an RBAC denial) the controller
        drops readiness and stops instead of working from a frozen cache; check
        :attr:`cache_failed` afterwards to tell this apart from a requested stop.
        """
        stop = stop_event or threading.Event()
        self.cache_failed = False

        self._set_state(ControllerState.WAITING_FOR_SYNC)
        if (
            not self._wait_for_cache_sync(stop)
            and not self._should_stop(stop)
            and not self.informer.has_failed()
        ):
            self.logger.warning(
                "ConfigMap cache not synced after %ss; starting workers anyway",
                self.cache_sync_timeout_seconds,
            )

        if not self._should_stop(stop) and not self._check_cache_failed():
            self._start_workers()
            self._set_state(ControllerState.RUNNING)
            self.ready.set()
            while not self._should_stop(stop) and not self._check_cache_failed():
                stop.wait(timeout=self.poll_interval_seconds)

        self._set_state(ControllerState.STOPPING)
        self.ready.clear()
        self.queue.shut_down()
        for thread in self._worker_threads:
            thread.join()
        self._worker_threads = []
        self._set_state(ControllerState.STOPPED)


def build_controller(
    core_api: CoreV1Api,
    informer: ConfigMapInformer,
    config: ReplicatorConfig,
) -> ConfigMapReplicator:
    """Construct a :class:`ConfigMapReplicator` and its work queue from loaded config."""
    rate_limiter = default_controller_rate_limiter(
        base_delay=config.retry_base_delay_ms / 1000.0,
        max_delay=float(config.retry_max_delay_seconds),
        qps=float(config.queue_qps),
        burst=config.queue_burst,
    )
    return ConfigMapReplicator(
        core_api=core_api,
        informer=informer,
        queue=RateLimitingQueue(rate_limiter=rate_limiter, name=QUEUE_NAME),
        policy=config.replication_policy(),
        workers=config.workers,
        cache_sync_timeout_seconds=config.cache_sync_timeout_seconds,
        source_annotation_key=config.source_annotation_key,
    )
