"""Cluster label ownership.

Several classifiers may want to set the same label key on the same cluster.
For every (cluster, key) the key manager keeps the classifiers that asked for
it in registration order; the first one owns the key. Ownership moves only
when the owner relinquishes it.

Clusters are identified by their full ``ClusterRef``, so a Cluster and a
SveltosCluster sharing namespace and name never share label claims.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

from clusterclassifier.api.classifier import Classifier
from clusterclassifier.api.cluster import ClusterRef
from clusterclassifier.core.errors import ClassifierError


class NoManagerError(ClassifierError):
    pass


def _cluster_key(cluster: ClusterRef) -> ClusterRef:
    return ClusterRef.for_type(cluster.namespace, cluster.name, cluster.cluster_type)


class KeyManager:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        # cluster -> label key -> classifier names, first one is the owner
        self._registrations: dict[ClusterRef, dict[str, list[str]]] = {}

    @classmethod
    def from_classifiers(cls, classifiers: Iterable[Classifier]) -> KeyManager:
        """Rebuild ownership from persisted statuses.

        Labels a classifier already manages are registered before any label it
        is only waiting for, so current owners keep their keys across restarts.
        """
        manager = cls()
        items = [classifier for classifier in classifiers if not classifier.deleting]
        for classifier in items:
            for status in classifier.status.matching_cluster_statuses:
                for key in status.managed_labels:
                    manager._register(classifier.name, status.cluster_ref, key)
        for classifier in items:
            for status in classifier.status.matching_cluster_statuses:
                for label in status.unmanaged_labels:
                    manager._register(classifier.name, status.cluster_ref, label.key)
        return manager

    def _register(self, classifier_name: str, cluster: ClusterRef, key: str) -> None:
        with self._lock:
            keys = self._registrations.setdefault(_cluster_key(cluster), {})
            names = keys.setdefault(key, [])
            if classifier_name not in names:
                names.append(classifier_name)

    def register_classifier_for_labels(self, classifier: Classifier, cluster: ClusterRef) -> None:
        for key in classifier.spec.label_keys():
            self._register(classifier.name, cluster, key)

    def remove_stale_registrations(self, classifier: Classifier, cluster: ClusterRef) -> None:
        wanted = set(classifier.spec.label_keys())
        with self._lock:
            keys = self._registrations.get(_cluster_key(cluster))
            if keys is None:
                return
            for key in list(keys):
                if key in wanted:
                    continue
                self._release(keys, key, classifier.name)
            if not keys:
                del self._registrations[_cluster_key(cluster)]

    def remove_all_registrations(self, classifier: Classifier, cluster: ClusterRef) -> None:
        with self._lock:
            keys = self._registrations.get(_cluster_key(cluster))
            if keys is None:
                return
            for key in list(keys):
                self._release(keys, key, classifier.name)
            if not keys:
                del self._registrations[_cluster_key(cluster)]

    @staticmethod
    def _release(keys: dict[str, list[str]], key: str, classifier_name: str) -> None:
        names = keys[key]
        if classifier_name in names:
            names.remove(classifier_name)
        if not names:
            del keys[key]

    def can_manage_label(self, classifier: Classifier, cluster: ClusterRef, key: str) -> bool:
        with self._lock:
            names = self._registrations.get(_cluster_key(cluster), {}).get(key)
            return bool(names) and names[0] == classifier.name

    def get_manager_for_key(self, cluster: ClusterRef, key: str) -> str:
        with self._lock:
            names = self._registrations.get(_cluster_key(cluster), {}).get(key)
            if not names:
                raise NoManagerError(
                    f"no classifier is managing label {key} on {cluster.kind} {cluster.namespace}/{cluster.name}"
                )
            return names[0]
