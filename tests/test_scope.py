import logging

import pytest
from fakes import make_classifier

from clusterclassifier.api.classifier import CLASSIFIER_FINALIZER, Classifier, ClusterInfo, FeatureStatus
from clusterclassifier.api.cluster import ClusterRef
from clusterclassifier.controllers.scope import ClassifierScope

LOG = logging.getLogger("test")


def test_scope_requires_classifier(client) -> None:
    with pytest.raises(ValueError, match="failed to generate new scope from nil Classifier"):
        ClassifierScope(client, None, LOG)
    with pytest.raises(ValueError):
        ClassifierScope(None, make_classifier("c"), LOG)
    with pytest.raises(ValueError):
        ClassifierScope(client, make_classifier("c"), None)


def test_close_writes_status(client) -> None:
    classifier = client.add(make_classifier("c"))
    scope = ClassifierScope(client, classifier, LOG)
    info = ClusterInfo(cluster=ClusterRef("default", "a"), hash=b"\x01\x02", status=FeatureStatus.PROVISIONED)

    scope.set_cluster_info([info])
    scope.close()

    stored = client.get(Classifier, "c")
    assert stored.status.cluster_info == [info]
    assert ("update", "Classifier", "c") not in client.calls


def test_finalizer_changes_are_persisted_on_close(client) -> None:
    classifier = client.add(make_classifier("c"))
    scope = ClassifierScope(client, classifier, LOG)

    assert scope.add_finalizer() is True
    assert scope.add_finalizer() is False
    scope.close()

    assert client.get(Classifier, "c").metadata.finalizers == [CLASSIFIER_FINALIZER]


def test_patch_object_then_close_does_not_rewrite(client) -> None:
    classifier = client.add(make_classifier("c"))
    scope = ClassifierScope(client, classifier, LOG)
    scope.add_finalizer()
    scope.patch_object()
    scope.close()

    updates = [call for call in client.calls if call[0] == "update"]
    assert updates == [("update", "Classifier", "c")]


def test_removing_last_finalizer_of_deleting_object(client) -> None:
    classifier = make_classifier("c")
    classifier.metadata.finalizers = [CLASSIFIER_FINALIZER]
    client.add(classifier)
    client.delete(Classifier, "c")

    scope = ClassifierScope(client, client.get(Classifier, "c"), LOG)
    scope.remove_finalizer()
    scope.close()

    assert not client.exists(Classifier, "c")


def test_close_tolerates_vanished_object(client) -> None:
    scope = ClassifierScope(client, make_classifier("gone"), LOG)
    scope.add_finalizer()
    scope.close()
    assert not client.exists(Classifier, "gone")
