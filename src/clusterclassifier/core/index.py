"""In-memory classifier <-> cluster membership used to map events to work.

Event handlers must never perform I/O, so when a cluster changes the set of
classifiers to reconcile has to already be in memory. The index is a cache:
it is rebuilt from each Classifier's persisted status as reconciliations run.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

from clusterclassifier.api.classifier import Classifier
from clusterclassifier.api.cluster import ClusterRef


class ConsistencyIndex:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        # classifier name -> clusters it is currently deployed to
        self._classifier_map: dict[str, set[ClusterRef]] = {}
        # cluster -> classifiers currently deployed to it
        self._cluster_map: dict[ClusterRef, set[str]] = {}
        # classifiers with at least one label they cannot manage
        self._conflicting: set[str] = set()
        self._all: set[str] = set()

    def update_for_classifier(self, classifier_name: str, clusters: Iterable[ClusterRef]) -> None:
        """Replace the cluster set of ``classifier_name`` and fix up the reverse map."""
        current = set(clusters)
        with self._lock:
            previous = self._classifier_map.get(classifier_name, set())
            for cluster in current - previous:
                self._cluster_map.setdefault(cluster, set()).add(classifier_name)
            for cluster in previous - current:
                consumers = self._cluster_map.get(cluster)
                if consumers is None:
                    continue
                consumers.discard(classifier_name)
                if not consumers:
                    del self._cluster_map[cluster]
            if current:
                self._classifier_map[classifier_name] = current
            else:
                self._classifier_map.pop(classifier_name, None)

    def set_conflict(self, classifier_name: str, has_unmanaged: bool) -> None:
        with self._lock:
            if has_unmanaged:
                self._conflicting.add(classifier_name)
            else:
                self._conflicting.discard(classifier_name)
            self._all.add(classifier_name)

    def forget_classifier(self, classifier_name: str) -> None:
        with self._lock:
            self._conflicting.discard(classifier_name)
            self._all.discard(classifier_name)

    def classifiers_for_cluster(self, cluster: ClusterRef) -> list[str]:
        with self._lock:
            return sorted(self._cluster_map.get(cluster, ()))

    def knows_cluster(self, cluster: ClusterRef) -> bool:
        with self._lock:
            return cluster in self._cluster_map

    def clusters_for_classifier(self, classifier_name: str) -> list[ClusterRef]:
        with self._lock:
            clusters = self._classifier_map.get(classifier_name, set())
            return sorted(clusters, key=lambda ref: (ref.namespace, ref.name, ref.kind))

    def conflicting_classifiers(self) -> list[str]:
        with self._lock:
            return sorted(self._conflicting)

    def all_classifiers(self) -> list[str]:
        with self._lock:
            return sorted(self._all)

    def is_consistent(self) -> bool:
        """True when the forward and reverse maps are mirror images."""
        with self._lock:
            for name, clusters in self._classifier_map.items():
                for cluster in clusters:
                    if name not in self._cluster_map.get(cluster, ()):
                        return False
            for cluster, names in self._cluster_map.items():
                for name in names:
                    if cluster not in self._classifier_map.get(name, ()):
                        return False
            return True

    def rebuild(self, classifiers: Iterable[Classifier]) -> None:
        for classifier in classifiers:
            if classifier.deleting:
                continue
            self.update_for_classifier(
                classifier.name,
                (info.cluster for info in classifier.status.cluster_info),
            )
            has_unmanaged = any(
                status.unmanaged_labels for status in classifier.status.matching_cluster_statuses
            )
            self.set_conflict(classifier.name, has_unmanaged)
