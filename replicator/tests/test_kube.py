from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from replicator.src.kube import (
    build_core_api,
    create_replica,
    load_kube_configuration,
    replace_replica_data,
)


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("replicator.src.kube.config.load_incluster_config") as mock_incluster,
        patch("replicator.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "replicator.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("replicator.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_core_api() -> None:
    with patch("replicator.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        core = build_core_api()

    assert core.name == "core"


def test_create_replica_sends_namespaced_body() -> None:
    core_api = MagicMock()

    create_replica(
        core_api=core_api,
        namespace="team-b",
        name="shared-settings",
        data={"LOG_LEVEL": "debug"},
        annotations={"configmap-replicator.io/source": "team-a/shared-settings"},
    )

    call = core_api.create_namespaced_config_map.call_args
    assert call.kwargs["namespace"] == "team-b"
    body = call.kwargs["body"]
    assert body.metadata.name == "shared-settings"
    assert body.metadata.namespace == "team-b"
    assert body.metadata.annotations == {
        "configmap-replicator.io/source": "team-a/shared-settings"
    }
    assert body.data == {"LOG_LEVEL": "debug"}


def test_create_replica_without_annotations_leaves_them_unset() -> None:
    core_api = MagicMock()

    create_replica(core_api=core_api, namespace="team-b", name="x", data={})

    body = core_api.create_namespaced_config_map.call_args.kwargs["body"]
    assert body.metadata.annotations is None


def test_replace_replica_data_keeps_resource_version() -> None:
    core_api = MagicMock()
    existing = SimpleNamespace(
        metadata=SimpleNamespace(name="shared-settings", namespace="team-b", resource_version="7"),
        data={"LOG_LEVEL": "info"},
    )

    replace_replica_data(core_api=core_api, existing=existing, data={"LOG_LEVEL": "debug"})

    call = core_api.replace_namespaced_config_map.call_args
    assert call.kwargs["name"] == "shared-settings"
    assert call.kwargs["namespace"] == "team-b"
    assert call.kwargs["body"].metadata.resource_version == "7"
    assert call.kwargs["body"].data == {"LOG_LEVEL": "debug"}
