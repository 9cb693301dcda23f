"""Managed cluster kinds: Cluster API clusters and Sveltos clusters."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from clusterclassifier.api.meta import Resource, as_dict, as_str

CAPI_API_VERSION = "cluster.x-k8s.io/v1beta1"
SVELTOS_API_VERSION = "lib.projectsveltos.io/v1alpha1"

CAPI_CLUSTER_KIND = "Cluster"
SVELTOS_CLUSTER_KIND = "SveltosCluster"

PAUSED_ANNOTATION = "cluster.x-k8s.io/paused"
CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"

MACHINE_PHASE_RUNNING = "Running"


class ClusterType(str, Enum):
    CAPI = "Capi"
    SVELTOS = "Sveltos"


@dataclass(frozen=True)
class ClusterRef:
    namespace: str
    name: str
    kind: str = CAPI_CLUSTER_KIND
    api_version: str = CAPI_API_VERSION

    @property
    def cluster_type(self) -> ClusterType:
        return cluster_type_for_kind(self.kind)

    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def to_dict(self) -> dict:
        return {
            "namespace": self.namespace,
            "name": self.name,
            "kind": self.kind,
            "apiVersion": self.api_version,
        }

    @classmethod
    def from_dict(cls, data: object) -> ClusterRef:
        raw = as_dict(data)
        kind = as_str(raw.get("kind")) or CAPI_CLUSTER_KIND
        api_version = as_str(raw.get("apiVersion"))
        if not api_version:
            api_version = SVELTOS_API_VERSION if kind == SVELTOS_CLUSTER_KIND else CAPI_API_VERSION
        return cls(
            namespace=as_str(raw.get("namespace")),
            name=as_str(raw.get("name")),
            kind=kind,
            api_version=api_version,
        )

    @classmethod
    def for_type(cls, namespace: str, name: str, cluster_type: ClusterType | str) -> ClusterRef:
        if ClusterType(cluster_type) == ClusterType.SVELTOS:
            return cls(namespace, name, SVELTOS_CLUSTER_KIND, SVELTOS_API_VERSION)
        return cls(namespace, name, CAPI_CLUSTER_KIND, CAPI_API_VERSION)


def cluster_type_for_kind(kind: str) -> ClusterType:
    if kind == SVELTOS_CLUSTER_KIND:
        return ClusterType.SVELTOS
    return ClusterType.CAPI


@dataclass
class Cluster(Resource):
    KIND = CAPI_CLUSTER_KIND
    API_VERSION = CAPI_API_VERSION
    RESOURCE = "clusters.cluster.x-k8s.io"

    paused: bool = False
    control_plane_ready: bool = False
    infrastructure_ready: bool = False

    @classmethod
    def _parse(cls, data: dict) -> Cluster:
        spec = as_dict(data.get("spec"))
        status = as_dict(data.get("status"))
        return cls(
            paused=spec.get("paused") is True,
            control_plane_ready=status.get("controlPlaneReady") is True,
            infrastructure_ready=status.get("infrastructureReady") is True,
        )

    def _fill(self, body: dict) -> None:
        spec = as_dict(body.get("spec"))
        spec["paused"] = self.paused
        body["spec"] = spec
        status = as_dict(body.get("status"))
        status["controlPlaneReady"] = self.control_plane_ready
        status["infrastructureReady"] = self.infrastructure_ready
        body["status"] = status

    def is_paused(self) -> bool:
        return self.paused or PAUSED_ANNOTATION in self.metadata.annotations

    def is_ready(self) -> bool:
        return self.control_plane_ready

    def ref(self) -> ClusterRef:
        return ClusterRef(self.namespace, self.name, self.KIND, self.API_VERSION)


@dataclass
class SveltosCluster(Resource):
    KIND = SVELTOS_CLUSTER_KIND
    API_VERSION = SVELTOS_API_VERSION
    RESOURCE = "sveltosclusters.lib.projectsveltos.io"

    paused: bool = False
    ready: bool = False

    @classmethod
    def _parse(cls, data: dict) -> SveltosCluster:
        return cls(
            paused=as_dict(data.get("spec")).get("paused") is True,
            ready=as_dict(data.get("status")).get("ready") is True,
        )

    def _fill(self, body: dict) -> None:
        spec = as_dict(body.get("spec"))
        spec["paused"] = self.paused
        body["spec"] = spec
        status = as_dict(body.get("status"))
        status["ready"] = self.ready
        body["status"] = status

    def is_paused(self) -> bool:
        return self.paused

    def is_ready(self) -> bool:
        return self.ready

    def ref(self) -> ClusterRef:
        return ClusterRef(self.namespace, self.name, self.KIND, self.API_VERSION)


AnyCluster = Cluster | SveltosCluster

CLUSTER_KINDS: dict[ClusterType, type[Cluster] | type[SveltosCluster]] = {
    ClusterType.CAPI: Cluster,
    ClusterType.SVELTOS: SveltosCluster,
}


@dataclass
class Machine(Resource):
    KIND = "Machine"
    API_VERSION = CAPI_API_VERSION
    RESOURCE = "machines.cluster.x-k8s.io"

    phase: str = ""

    @classmethod
    def _parse(cls, data: dict) -> Machine:
        return cls(phase=as_str(as_dict(data.get("status")).get("phase")))

    def _fill(self, body: dict) -> None:
        status = as_dict(body.get("status"))
        status["phase"] = self.phase
        body["status"] = status

    @property
    def cluster_name(self) -> str | None:
        return self.metadata.labels.get(CLUSTER_NAME_LABEL)

    def is_running(self) -> bool:
        return self.phase == MACHINE_PHASE_RUNNING
