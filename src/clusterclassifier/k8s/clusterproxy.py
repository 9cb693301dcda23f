"""Helpers answering questions about managed clusters."""

from __future__ import annotations

from clusterclassifier.api.cluster import (
    CLUSTER_KINDS,
    AnyCluster,
    ClusterRef,
    ClusterType,
)
from clusterclassifier.api.report import Secret
from clusterclassifier.core.errors import ApiError, NotFoundError

CAPI_KUBECONFIG_SUFFIX = "-kubeconfig"
SVELTOS_KUBECONFIG_SUFFIX = "-sveltos-kubeconfig"


def get_cluster(client, cluster_namespace: str, cluster_name: str, cluster_type: ClusterType) -> AnyCluster:
    kind = CLUSTER_KINDS[ClusterType(cluster_type)]
    return client.get(kind, cluster_name, cluster_namespace)


def list_clusters(client) -> list[AnyCluster]:
    """Every cluster of every supported kind, deleting ones excluded."""
    clusters: list[AnyCluster] = []
    for kind in CLUSTER_KINDS.values():
        clusters.extend(item for item in client.list(kind) if not item.deleting)
    return clusters


def is_cluster_paused(client, cluster_namespace: str, cluster_name: str, cluster_type: ClusterType) -> bool:
    cluster = get_cluster(client, cluster_namespace, cluster_name, cluster_type)
    return cluster.is_paused()


def is_cluster_ready_to_be_configured(
    client,
    cluster_namespace: str,
    cluster_name: str,
    cluster_type: ClusterType,
) -> bool:
    try:
        cluster = get_cluster(client, cluster_namespace, cluster_name, cluster_type)
    except NotFoundError:
        return False
    return cluster.is_ready()


def kubeconfig_secret_name(cluster_name: str, cluster_type: ClusterType) -> str:
    if ClusterType(cluster_type) == ClusterType.SVELTOS:
        return cluster_name + SVELTOS_KUBECONFIG_SUFFIX
    return cluster_name + CAPI_KUBECONFIG_SUFFIX


def get_secret_data(client, cluster_namespace: str, cluster_name: str, cluster_type: ClusterType) -> bytes:
    name = kubeconfig_secret_name(cluster_name, cluster_type)
    secret = client.get(Secret, name, cluster_namespace)
    data = secret.first_value()
    if not data:
        raise ApiError(f"secret {cluster_namespace}/{name} contains no kubeconfig", reason="empty_secret")
    return data


def get_kubernetes_client(client, cluster_namespace: str, cluster_name: str, cluster_type: ClusterType):
    """Client for the managed cluster, built from its kubeconfig secret."""
    kubeconfig = get_secret_data(client, cluster_namespace, cluster_name, cluster_type)
    return client.for_kubeconfig(kubeconfig)


def cluster_for_secret(secret: Secret) -> ClusterRef | None:
    """Map a kubeconfig secret back to the cluster it belongs to."""
    name = secret.name
    if name.endswith(SVELTOS_KUBECONFIG_SUFFIX) and len(name) > len(SVELTOS_KUBECONFIG_SUFFIX):
        return ClusterRef.for_type(secret.namespace, name[: -len(SVELTOS_KUBECONFIG_SUFFIX)], ClusterType.SVELTOS)
    if name.endswith(CAPI_KUBECONFIG_SUFFIX) and len(name) > len(CAPI_KUBECONFIG_SUFFIX):
        return ClusterRef.for_type(secret.namespace, name[: -len(CAPI_KUBECONFIG_SUFFIX)], ClusterType.CAPI)
    return None
