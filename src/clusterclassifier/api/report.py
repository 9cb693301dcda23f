"""Match reports and the objects used to bootstrap agent credentials."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field

from clusterclassifier.api.cluster import ClusterType
from clusterclassifier.api.meta import Resource, as_dict, as_str

LIB_API_VERSION = "lib.projectsveltos.io/v1alpha1"

# management-side mirror label, value is "<cluster namespace>--<cluster name>"
REPORT_CLUSTER_LABEL = "projectsveltos.io/cluster"

ACCESS_REQUEST_CLASSIFIER_LABEL = "projectsveltos.io/access-request-classifier"
CLASSIFIER_AGENT_REQUEST = "ClassifierAgentRequest"

# where the agent running in a managed cluster finds its management kubeconfig
CLASSIFIER_SECRET_NAMESPACE = "projectsveltos"
CLASSIFIER_SECRET_NAME = "classifier-agent"
CLASSIFIER_SECRET_KEY = "kubeconfig"


@dataclass
class ClassifierReport(Resource):
    KIND = "ClassifierReport"
    API_VERSION = LIB_API_VERSION
    RESOURCE = "classifierreports.lib.projectsveltos.io"

    classifier_name: str = ""
    cluster_namespace: str = ""
    cluster_name: str = ""
    cluster_type: ClusterType = ClusterType.CAPI
    match: bool = False

    @classmethod
    def _parse(cls, data: dict) -> ClassifierReport:
        spec = as_dict(data.get("spec"))
        cluster_type = as_str(spec.get("clusterType"), ClusterType.CAPI.value)
        try:
            parsed_type = ClusterType(cluster_type)
        except ValueError:
            parsed_type = ClusterType.CAPI
        return cls(
            classifier_name=as_str(spec.get("classifierName")),
            cluster_namespace=as_str(spec.get("clusterNamespace")),
            cluster_name=as_str(spec.get("clusterName")),
            cluster_type=parsed_type,
            match=spec.get("match") is True,
        )

    def _fill(self, body: dict) -> None:
        spec = as_dict(body.get("spec"))
        spec["classifierName"] = self.classifier_name
        spec["clusterNamespace"] = self.cluster_namespace
        spec["clusterName"] = self.cluster_name
        spec["clusterType"] = self.cluster_type.value
        spec["match"] = self.match
        body["spec"] = spec


@dataclass
class SecretRef:
    namespace: str
    name: str


@dataclass
class AccessRequest(Resource):
    KIND = "AccessRequest"
    API_VERSION = LIB_API_VERSION
    RESOURCE = "accessrequests.lib.projectsveltos.io"

    cluster_namespace: str = ""
    cluster_name: str = ""
    request_type: str = CLASSIFIER_AGENT_REQUEST
    control_plane_host: str = ""
    control_plane_port: int = 0
    secret_ref: SecretRef | None = None

    @classmethod
    def _parse(cls, data: dict) -> AccessRequest:
        spec = as_dict(data.get("spec"))
        endpoint = as_dict(spec.get("controlPlaneEndpoint"))
        port = endpoint.get("port")
        raw_ref = as_dict(data.get("status")).get("secretRef")
        secret_ref = None
        if isinstance(raw_ref, dict) and as_str(raw_ref.get("name")):
            secret_ref = SecretRef(
                namespace=as_str(raw_ref.get("namespace")),
                name=as_str(raw_ref.get("name")),
            )
        return cls(
            cluster_namespace=as_str(spec.get("namespace")),
            cluster_name=as_str(spec.get("name")),
            request_type=as_str(spec.get("type"), CLASSIFIER_AGENT_REQUEST),
            control_plane_host=as_str(endpoint.get("host")),
            control_plane_port=port if isinstance(port, int) else 0,
            secret_ref=secret_ref,
        )

    def _fill(self, body: dict) -> None:
        body["spec"] = {
            "namespace": self.cluster_namespace,
            "name": self.cluster_name,
            "type": self.request_type,
            "controlPlaneEndpoint": {
                "host": self.control_plane_host,
                "port": self.control_plane_port,
            },
        }
        status = as_dict(body.get("status"))
        if self.secret_ref is not None:
            status["secretRef"] = {
                "namespace": self.secret_ref.namespace,
                "name": self.secret_ref.name,
            }
        else:
            status.pop("secretRef", None)
        body["status"] = status


@dataclass
class Secret(Resource):
    KIND = "Secret"
    API_VERSION = "v1"
    RESOURCE = "secrets"

    data: dict[str, bytes] = field(default_factory=dict)

    @classmethod
    def _parse(cls, data: dict) -> Secret:
        decoded: dict[str, bytes] = {}
        for key, value in as_dict(data.get("data")).items():
            if not isinstance(value, str):
                continue
            try:
                decoded[key] = base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError):
                continue
        return cls(data=decoded)

    def _fill(self, body: dict) -> None:
        body["data"] = {
            key: base64.b64encode(value).decode("ascii") for key, value in self.data.items()
        }

    def first_value(self) -> bytes | None:
        for value in self.data.values():
            return value
        return None


@dataclass
class Namespace(Resource):
    KIND = "Namespace"
    API_VERSION = "v1"
    RESOURCE = "namespaces"
    NAMESPACED = False
