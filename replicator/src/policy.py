from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass


@dataclass(frozen=True)
class ReplicationPolicy:
    """Which ConfigMaps are replicated, where to, and whether drift is corrected.

    The default policy replicates every ConfigMap outside ``ignored_namespaces``
    into every other non-ignored namespace and overwrites replicas whose data
    has drifted.  Narrowing ``source_namespace``, ``source_name`` and
    ``target_namespaces`` restricts the candidate set without changing the
    algorithm.
    """

    ignored_namespaces: frozenset[str] = frozenset()
    source_namespace: str | None = None
    source_name: str | None = None
    target_namespaces: frozenset[str] | None = None
    update_on_drift: bool = True

    @classmethod
    def all_namespaces(cls, ignored_namespaces: Iterable[str] = ()) -> ReplicationPolicy:
        return cls(ignored_namespaces=frozenset(ignored_namespaces))

    @classmethod
    def single_pair(
        cls,
        source_namespace: str,
        source_name: str,
        target_namespace: str,
        ignored_namespaces: Iterable[str] = (),
    ) -> ReplicationPolicy:
        """Create-only copy of one ConfigMap from one namespace into another."""
        return cls(
            ignored_namespaces=frozenset(ignored_namespaces),
            source_namespace=source_namespace,
            source_name=source_name,
            target_namespaces=frozenset({target_namespace}),
            update_on_drift=False,
        )

    def accepts_origin(self, namespace: str, name: str) -> bool:
        if namespace in self.ignored_namespaces:
            return False
        if self.source_namespace is not None and namespace != self.source_namespace:
            return False
        if self.source_name is not None and name != self.source_name:
            return False
        return True

    def accepts_target(self, namespace: str, origin_namespace: str) -> bool:
        if namespace == origin_namespace or namespace in self.ignored_namespaces:
            return False
        if self.target_namespaces is not None and namespace not in self.target_namespaces:
            return False
        return True
