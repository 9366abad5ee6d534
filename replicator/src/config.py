from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from replicator.src.policy import ReplicationPolicy

DEFAULT_IGNORED_NAMESPACES = (
    "default",
    "kube-system",
    "kube-public",
    "kube-node-lease",
    "local-path-storage",
)
DEFAULT_SOURCE_ANNOTATION_KEY = "configmap-replicator.io/source"
REPLICATION_MODES = ("all", "pair")


class ConfigError(ValueError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ReplicatorConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        ignored_namespaces: Namespaces that are never a replication origin or target.
        mode: ``"all"`` replicates every ConfigMap everywhere; ``"pair"`` copies a
              single ConfigMap from ``source_namespace`` to ``target_namespace``
              and never overwrites an existing replica.
    """

    ignored_namespaces: frozenset[str]
    mode: str = "all"
    source_namespace: str | None = None
    source_name: str | None = None
    target_namespace: str | None = None
    source_annotation_key: str = DEFAULT_SOURCE_ANNOTATION_KEY
    workers: int = 1
    cache_sync_timeout_seconds: int = 60
    retry_base_delay_ms: int = 5
    retry_max_delay_seconds: int = 1000
    queue_qps: int = 10
    queue_burst: int = 100
    health_port: int = 8080

    def replication_policy(self) -> ReplicationPolicy:
        if self.mode == "pair":
            if not (self.source_namespace and self.source_name and self.target_namespace):
                raise ConfigError("pair mode requires source namespace, name and target namespace")
            return ReplicationPolicy.single_pair(
                source_namespace=self.source_namespace,
                source_name=self.source_name,
                target_namespace=self.target_namespace,
                ignored_namespaces=self.ignored_namespaces,
            )
        return ReplicationPolicy.all_namespaces(self.ignored_namespaces)


def env_int(
    env: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_csv(value: str | None) -> frozenset[str]:
    if value is None:
        return frozenset()
    return frozenset(part.strip() for part in value.split(",") if part.strip())


def _optional(env: Mapping[str, str], name: str) -> str | None:
    value = env.get(name, "").strip()
    return value or None


def load_config(env: Mapping[str, str] | None = None) -> ReplicatorConfig:
    """Load controller config from the environment.

    ``IGNORED_NAMESPACES`` falls back to the cluster system namespaces when
    unset; set it to an empty string to replicate into every namespace.
    ``REPLICATION_MODE=pair`` requires ``SOURCE_NAMESPACE``, ``SOURCE_NAME``
    and ``TARGET_NAMESPACE``.
    """
    values = env if env is not None else os.environ

    raw_ignored = values.get("IGNORED_NAMESPACES")
    ignored = (
        frozenset(DEFAULT_IGNORED_NAMESPACES) if raw_ignored is None else parse_csv(raw_ignored)
    )

    mode = values.get("REPLICATION_MODE", "all").strip().lower() or "all"
    if mode not in REPLICATION_MODES:
        raise ConfigError(
            f"REPLICATION_MODE must be one of {', '.join(REPLICATION_MODES)}, got: {mode!r}"
        )

    source_namespace = _optional(values, "SOURCE_NAMESPACE")
    source_name = _optional(values, "SOURCE_NAME")
    target_namespace = _optional(values, "TARGET_NAMESPACE")
    if mode == "pair":
        missing = [
            name
            for name, value in (
                ("SOURCE_NAMESPACE", source_namespace),
                ("SOURCE_NAME", source_name),
                ("TARGET_NAMESPACE", target_namespace),
            )
            if value is None
        ]
        if missing:
            raise ConfigError(f"REPLICATION_MODE=pair requires {', '.join(missing)}")
        if source_namespace == target_namespace:
            raise ConfigError("SOURCE_NAMESPACE and TARGET_NAMESPACE must differ")
        for name, value in (
            ("SOURCE_NAMESPACE", source_namespace),
            ("TARGET_NAMESPACE", target_namespace),
        ):
            if value in ignored:
                raise ConfigError(f"{name} {value!r} is listed in IGNORED_NAMESPACES")

    source_annotation_key = (
        values.get("SOURCE_ANNOTATION_KEY", DEFAULT_SOURCE_ANNOTATION_KEY).strip()
        or DEFAULT_SOURCE_ANNOTATION_KEY
    )

    retry_base_delay_ms = env_int(values, "RETRY_BASE_DELAY_MS", 5, minimum=1)
    retry_max_delay_seconds = env_int(values, "RETRY_MAX_DELAY_SECONDS", 1000, minimum=1)
    if retry_max_delay_seconds * 1000 < retry_base_delay_ms:
        raise ConfigError("RETRY_MAX_DELAY_SECONDS must not be smaller than RETRY_BASE_DELAY_MS")

    return ReplicatorConfig(
        ignored_namespaces=ignored,
        mode=mode,
        source_namespace=source_namespace,
        source_name=source_name,
        target_namespace=target_namespace,
        source_annotation_key=source_annotation_key,
        workers=env_int(values, "WORKERS", 1, minimum=1, maximum=64),
        cache_sync_timeout_seconds=env_int(values, "CACHE_SYNC_TIMEOUT_SECONDS", 60, minimum=1),
        retry_base_delay_ms=retry_base_delay_ms,
        retry_max_delay_seconds=retry_max_delay_seconds,
        queue_qps=env_int(values, "QUEUE_QPS", 10, minimum=1),
        queue_burst=env_int(values, "QUEUE_BURST", 100, minimum=1),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=0, maximum=65535),
    )
