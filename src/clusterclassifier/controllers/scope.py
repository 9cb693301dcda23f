"""Per-reconciliation holder of a Classifier."""

from __future__ import annotations

import logging

from clusterclassifier.api.classifier import (
    CLASSIFIER_FINALIZER,
    Classifier,
    ClusterInfo,
    MatchingClusterStatus,
)
from clusterclassifier.core.errors import NotFoundError


class ClassifierScope:
    """Wraps the Classifier being reconciled.

    Status changes are accumulated on the object and written once by
    ``close``. Finalizer changes are written with a regular update.
    """

    def __init__(self, client, classifier: Classifier | None, logger: logging.Logger | logging.LoggerAdapter | None) -> None:
        if client is None:
            raise ValueError("client is required when creating a ClassifierScope")
        if classifier is None:
            raise ValueError("failed to generate new scope from nil Classifier")
        if logger is None:
            raise ValueError("logger is required when creating a ClassifierScope")
        self.client = client
        self.classifier = classifier
        self.logger = logger
        self._initial_finalizers = list(classifier.metadata.finalizers)

    @property
    def name(self) -> str:
        return self.classifier.name

    def set_cluster_info(self, cluster_info: list[ClusterInfo]) -> None:
        self.classifier.status.cluster_info = list(cluster_info)

    def set_matching_cluster_statuses(self, statuses: list[MatchingClusterStatus]) -> None:
        self.classifier.status.matching_cluster_statuses = list(statuses)

    def add_finalizer(self) -> bool:
        if CLASSIFIER_FINALIZER in self.classifier.metadata.finalizers:
            return False
        self.classifier.metadata.finalizers.append(CLASSIFIER_FINALIZER)
        return True

    def remove_finalizer(self) -> None:
        self.classifier.metadata.finalizers = [
            item for item in self.classifier.metadata.finalizers if item != CLASSIFIER_FINALIZER
        ]

    def patch_object(self) -> None:
        """Persist finalizers immediately."""
        self.client.update(self.classifier)
        self._initial_finalizers = list(self.classifier.metadata.finalizers)

    def close(self) -> None:
        try:
            self.client.update_status(self.classifier)
        except NotFoundError:
            self.logger.debug("classifier %s is gone, status not written", self.name)
            return
        if self.classifier.metadata.finalizers != self._initial_finalizers:
            try:
                self.client.update(self.classifier)
            except NotFoundError:
                return
            self._initial_finalizers = list(self.classifier.metadata.finalizers)
