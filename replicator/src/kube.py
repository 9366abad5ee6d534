from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoreV1Api, V1ConfigMap, V1ObjectMeta
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_api() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def create_replica(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    data: Mapping[str, str],
    annotations: Mapping[str, str] | None = None,
) -> Any:
    """Create a ConfigMap named ``name`` in ``namespace`` holding a copy of ``data``.

    Raises ``ApiException`` (``409``) when another actor created the object
    first; callers retry the whole reconciliation in that case.
    """
    body = V1ConfigMap(
        metadata=V1ObjectMeta(
            name=name,
            namespace=namespace,
            annotations=dict(annotations) if annotations else None,
        ),
        data=dict(data),
    )
    return core_api.create_namespaced_config_map(namespace=namespace, body=body)


def replace_replica_data(core_api: CoreV1Api, existing: Any, data: Mapping[str, str]) -> Any:
    """Overwrite the ``data`` of a live-read ConfigMap.

    The object is sent back with the ``resourceVersion`` it was read at, so the
    API server rejects the write with ``409 Conflict`` if someone else changed
    it in between.
    """
    existing.data = dict(data)
    return core_api.replace_namespaced_config_map(
        name=existing.metadata.name,
        namespace=existing.metadata.namespace,
        body=existing,
    )
