import base64

from clusterclassifier.api.classifier import Classifier, ClusterInfo, FeatureStatus
from clusterclassifier.api.cluster import (
    SVELTOS_API_VERSION,
    Cluster,
    ClusterRef,
    ClusterType,
    SveltosCluster,
)
from clusterclassifier.api.report import AccessRequest, ClassifierReport, Secret


def test_unknown_fields_survive_a_write() -> None:
    body = {
        "apiVersion": "cluster.x-k8s.io/v1beta1",
        "kind": "Cluster",
        "metadata": {"name": "a", "namespace": "default", "uid": "123", "resourceVersion": "9"},
        "spec": {"paused": False, "topology": {"class": "gold"}},
        "status": {"controlPlaneReady": True, "phase": "Provisioned"},
    }
    cluster = Cluster.from_dict(body)
    cluster.metadata.labels["env"] = "prod"

    out = cluster.to_dict()

    assert out["spec"]["topology"] == {"class": "gold"}
    assert out["status"]["phase"] == "Provisioned"
    assert out["metadata"]["uid"] == "123"
    assert out["metadata"]["labels"] == {"env": "prod"}
    assert cluster.is_ready()


def test_cluster_readiness_and_pause() -> None:
    cluster = Cluster.from_dict({"metadata": {"name": "a", "annotations": {"cluster.x-k8s.io/paused": ""}}})
    assert cluster.is_paused()
    assert not cluster.is_ready()

    sveltos = SveltosCluster.from_dict({"metadata": {"name": "s"}, "spec": {"paused": True}, "status": {"ready": True}})
    assert sveltos.is_paused()
    assert sveltos.is_ready()
    assert sveltos.ref().cluster_type == ClusterType.SVELTOS


def test_cluster_ref_defaults_by_kind() -> None:
    assert ClusterRef.from_dict({"namespace": "d", "name": "a"}) == ClusterRef("d", "a")
    ref = ClusterRef.from_dict({"namespace": "d", "name": "s", "kind": "SveltosCluster"})
    assert ref.api_version == SVELTOS_API_VERSION
    assert ref == ClusterRef.for_type("d", "s", ClusterType.SVELTOS)
    assert ref.key() == "d/s"


def test_classifier_status_wire_format() -> None:
    classifier = Classifier.from_dict(
        {
            "metadata": {"name": "acme-x"},
            "spec": {"deployedResourceConstraint": {"group": "apps", "version": "v1", "kind": "Deployment"}},
            "status": {
                "clusterInfo": [
                    {
                        "cluster": {"namespace": "d", "name": "a", "kind": "Cluster"},
                        "hash": base64.b64encode(b"\x00\x01").decode(),
                        "status": "Provisioned",
                    },
                    {"cluster": {"namespace": "d", "name": "b"}, "status": "Bogus", "hash": "%%%"},
                ],
                "machingClusterStatuses": [
                    {
                        "clusterRef": {"namespace": "d", "name": "a"},
                        "managedLabels": ["env"],
                        "unManagedLabels": [{"key": "team", "failureMessage": "classifier x currently manage this"}],
                    }
                ],
            },
        }
    )

    assert classifier.spec.deployed_resource_constraints[0].kind == "Deployment"
    first, second = classifier.status.cluster_info
    assert first == ClusterInfo(cluster=ClusterRef("d", "a"), hash=b"\x00\x01", status=FeatureStatus.PROVISIONED)
    assert second.status is None
    assert second.hash is None
    status = classifier.status.matching_cluster_statuses[0]
    assert status.unmanaged_labels[0].key == "team"

    out = classifier.to_dict()
    assert out["status"]["machingClusterStatuses"][0]["managedLabels"] == ["env"]
    assert out["status"]["clusterInfo"][0]["hash"] == "AAE="
    assert "failureMessage" not in out["status"]["clusterInfo"][0]


def test_report_unknown_cluster_type_falls_back_to_capi() -> None:
    report = ClassifierReport.from_dict({"metadata": {"name": "r"}, "spec": {"clusterType": "Other", "match": "yes"}})
    assert report.cluster_type == ClusterType.CAPI
    # only a real boolean counts as a match
    assert report.match is False


def test_secret_data_is_base64_on_the_wire() -> None:
    secret = Secret.from_dict({"metadata": {"name": "a-kubeconfig"}, "data": {"value": "a3ViZQ==", "bad": "!!"}})
    assert secret.data == {"value": b"kube"}
    assert secret.first_value() == b"kube"
    assert secret.to_dict()["data"] == {"value": "a3ViZQ=="}
    assert Secret().first_value() is None


def test_access_request_secret_ref() -> None:
    pending = AccessRequest.from_dict({"metadata": {"name": "capi-a"}, "spec": {"name": "a", "namespace": "d"}})
    assert pending.secret_ref is None

    granted = AccessRequest.from_dict(
        {
            "metadata": {"name": "capi-a"},
            "spec": {"controlPlaneEndpoint": {"host": "https://mgmt", "port": 6443}},
            "status": {"secretRef": {"namespace": "d", "name": "capi-a-kubeconfig"}},
        }
    )
    assert granted.secret_ref.name == "capi-a-kubeconfig"
    assert granted.control_plane_port == 6443
    assert granted.to_dict()["status"]["secretRef"] == {"namespace": "d", "name": "capi-a-kubeconfig"}
