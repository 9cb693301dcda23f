"""Classifier policy object, its spec and its per-cluster status."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum

from clusterclassifier.api.cluster import PAUSED_ANNOTATION, ClusterRef
from clusterclassifier.api.meta import Resource, as_dict, as_list, as_str

CLASSIFIER_API_VERSION = "lib.projectsveltos.io/v1alpha1"
CLASSIFIER_KIND = "Classifier"
CLASSIFIER_FINALIZER = "classifierfinalizer.projectsveltos.io"
# label carried by every ClassifierReport, value is the Classifier name
CLASSIFIER_LABEL_NAME = "projectsveltos.io/classifier-name"


class FeatureStatus(str, Enum):
    PROVISIONING = "Provisioning"
    PROVISIONED = "Provisioned"
    FAILED = "Failed"
    REMOVING = "Removing"
    REMOVED = "Removed"


@dataclass
class LabelFilter:
    key: str
    operation: str
    value: str

    def to_dict(self) -> dict:
        return {"key": self.key, "operation": self.operation, "value": self.value}

    @classmethod
    def from_dict(cls, data: object) -> LabelFilter:
        raw = as_dict(data)
        return cls(
            key=as_str(raw.get("key")),
            operation=as_str(raw.get("operation"), "Equal"),
            value=as_str(raw.get("value")),
        )


@dataclass
class DeployedResourceConstraint:
    group: str
    version: str
    kind: str
    namespace: str = ""
    label_filters: list[LabelFilter] = field(default_factory=list)
    min_count: int | None = None
    max_count: int | None = None
    script: str = ""

    def to_dict(self) -> dict:
        out: dict = {
            "group": self.group,
            "version": self.version,
            "kind": self.kind,
            "namespace": self.namespace,
            "labelFilters": [item.to_dict() for item in self.label_filters],
            "script": self.script,
        }
        if self.min_count is not None:
            out["minCount"] = self.min_count
        if self.max_count is not None:
            out["maxCount"] = self.max_count
        return out

    @classmethod
    def from_dict(cls, data: object) -> DeployedResourceConstraint:
        raw = as_dict(data)
        min_count = raw.get("minCount")
        max_count = raw.get("maxCount")
        return cls(
            group=as_str(raw.get("group")),
            version=as_str(raw.get("version")),
            kind=as_str(raw.get("kind")),
            namespace=as_str(raw.get("namespace")),
            label_filters=[LabelFilter.from_dict(item) for item in as_list(raw.get("labelFilters"))],
            min_count=min_count if isinstance(min_count, int) else None,
            max_count=max_count if isinstance(max_count, int) else None,
            script=as_str(raw.get("script")),
        )


@dataclass
class KubernetesVersionConstraint:
    version: str
    comparison: str

    def to_dict(self) -> dict:
        return {"version": self.version, "comparison": self.comparison}

    @classmethod
    def from_dict(cls, data: object) -> KubernetesVersionConstraint:
        raw = as_dict(data)
        return cls(version=as_str(raw.get("version")), comparison=as_str(raw.get("comparison")))


@dataclass
class ClassifierLabel:
    key: str
    value: str

    def to_dict(self) -> dict:
        return {"key": self.key, "value": self.value}

    @classmethod
    def from_dict(cls, data: object) -> ClassifierLabel:
        raw = as_dict(data)
        return cls(key=as_str(raw.get("key")), value=as_str(raw.get("value")))


@dataclass
class ClassifierSpec:
    deployed_resource_constraints: list[DeployedResourceConstraint] = field(default_factory=list)
    kubernetes_version_constraints: list[KubernetesVersionConstraint] = field(default_factory=list)
    classifier_labels: list[ClassifierLabel] = field(default_factory=list)

    def label_keys(self) -> list[str]:
        return [label.key for label in self.classifier_labels]

    def to_dict(self) -> dict:
        return {
            "deployedResourceConstraints": [
                item.to_dict() for item in self.deployed_resource_constraints
            ],
            "kubernetesVersionConstraints": [
                item.to_dict() for item in self.kubernetes_version_constraints
            ],
            "classifierLabels": [item.to_dict() for item in self.classifier_labels],
        }

    @classmethod
    def from_dict(cls, data: object) -> ClassifierSpec:
        raw = as_dict(data)
        constraints = raw.get("deployedResourceConstraints")
        if constraints is None:
            # single-constraint manifests use the singular key
            single = raw.get("deployedResourceConstraint")
            constraints = single if isinstance(single, list) else ([single] if single else [])
        return cls(
            deployed_resource_constraints=[
                DeployedResourceConstraint.from_dict(item) for item in as_list(constraints)
            ],
            kubernetes_version_constraints=[
                KubernetesVersionConstraint.from_dict(item)
                for item in as_list(raw.get("kubernetesVersionConstraints"))
            ],
            classifier_labels=[
                ClassifierLabel.from_dict(item) for item in as_list(raw.get("classifierLabels"))
            ],
        )


def _encode_hash(value: bytes | None) -> str | None:
    if value is None:
        return None
    return base64.b64encode(value).decode("ascii")


def _decode_hash(value: object) -> bytes | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None


def _parse_status(value: object) -> FeatureStatus | None:
    if not isinstance(value, str):
        return None
    try:
        return FeatureStatus(value)
    except ValueError:
        return None


@dataclass
class ClusterInfo:
    """Deployment record for one (classifier, cluster) pair."""

    cluster: ClusterRef
    hash: bytes | None = None
    status: FeatureStatus | None = None
    failure_message: str | None = None

    def to_dict(self) -> dict:
        out: dict = {"cluster": self.cluster.to_dict()}
        if self.hash is not None:
            out["hash"] = _encode_hash(self.hash)
        if self.status is not None:
            out["status"] = self.status.value
        if self.failure_message is not None:
            out["failureMessage"] = self.failure_message
        return out

    @classmethod
    def from_dict(cls, data: object) -> ClusterInfo:
        raw = as_dict(data)
        status = raw.get("status")
        failure_message = raw.get("failureMessage")
        return cls(
            cluster=ClusterRef.from_dict(raw.get("cluster")),
            hash=_decode_hash(raw.get("hash")),
            status=_parse_status(status),
            failure_message=failure_message if isinstance(failure_message, str) else None,
        )


@dataclass
class UnManagedLabel:
    key: str
    failure_message: str | None = None

    def to_dict(self) -> dict:
        out: dict = {"key": self.key}
        if self.failure_message is not None:
            out["failureMessage"] = self.failure_message
        return out

    @classmethod
    def from_dict(cls, data: object) -> UnManagedLabel:
        raw = as_dict(data)
        failure_message = raw.get("failureMessage")
        return cls(
            key=as_str(raw.get("key")),
            failure_message=failure_message if isinstance(failure_message, str) else None,
        )


@dataclass
class MatchingClusterStatus:
    cluster_ref: ClusterRef
    managed_labels: list[str] = field(default_factory=list)
    unmanaged_labels: list[UnManagedLabel] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "clusterRef": self.cluster_ref.to_dict(),
            "managedLabels": list(self.managed_labels),
            "unManagedLabels": [item.to_dict() for item in self.unmanaged_labels],
        }

    @classmethod
    def from_dict(cls, data: object) -> MatchingClusterStatus:
        raw = as_dict(data)
        return cls(
            cluster_ref=ClusterRef.from_dict(raw.get("clusterRef")),
            managed_labels=[item for item in as_list(raw.get("managedLabels")) if isinstance(item, str)],
            unmanaged_labels=[UnManagedLabel.from_dict(item) for item in as_list(raw.get("unManagedLabels"))],
        )


@dataclass
class ClassifierStatus:
    cluster_info: list[ClusterInfo] = field(default_factory=list)
    matching_cluster_statuses: list[MatchingClusterStatus] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "clusterInfo": [item.to_dict() for item in self.cluster_info],
            "machingClusterStatuses": [item.to_dict() for item in self.matching_cluster_statuses],
        }

    @classmethod
    def from_dict(cls, data: object) -> ClassifierStatus:
        raw = as_dict(data)
        return cls(
            cluster_info=[ClusterInfo.from_dict(item) for item in as_list(raw.get("clusterInfo"))],
            matching_cluster_statuses=[
                MatchingClusterStatus.from_dict(item)
                for item in as_list(raw.get("machingClusterStatuses"))
            ],
        )


@dataclass
class Classifier(Resource):
    KIND = CLASSIFIER_KIND
    API_VERSION = CLASSIFIER_API_VERSION
    RESOURCE = "classifiers.lib.projectsveltos.io"
    NAMESPACED = False

    spec: ClassifierSpec = field(default_factory=ClassifierSpec)
    status: ClassifierStatus = field(default_factory=ClassifierStatus)

    @classmethod
    def _parse(cls, data: dict) -> Classifier:
        return cls(
            spec=ClassifierSpec.from_dict(data.get("spec")),
            status=ClassifierStatus.from_dict(data.get("status")),
        )

    def _fill(self, body: dict) -> None:
        body["spec"] = self.spec.to_dict()
        body["status"] = self.status.to_dict()

    def is_paused(self) -> bool:
        return PAUSED_ANNOTATION in self.metadata.annotations

    def has_finalizer(self) -> bool:
        return CLASSIFIER_FINALIZER in self.metadata.finalizers
