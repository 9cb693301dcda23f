"""Event filters deciding which changes can affect a Classifier."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from clusterclassifier.api.classifier import Classifier
from clusterclassifier.api.report import ClassifierReport, Secret
from clusterclassifier.controllers.manager import Event, EventType
from clusterclassifier.k8s.clusterproxy import cluster_for_secret

logger = logging.getLogger(__name__)


def _always(event: Event) -> bool:
    return True


def _never(event: Event) -> bool:
    return False


@dataclass
class Predicate:
    create: Callable[[Event], bool] = _always
    update: Callable[[Event], bool] = _always
    delete: Callable[[Event], bool] = _always

    def __call__(self, event: Event) -> bool:
        if event.type == EventType.CREATE:
            return self.create(event)
        if event.type == EventType.UPDATE:
            if event.old is None:
                return True
            return self.update(event)
        return self.delete(event)


def _cluster_create(event: Event) -> bool:
    if not event.obj.is_paused():
        logger.debug("cluster %s/%s is not paused, reconcile classifiers", event.obj.namespace, event.obj.name)
        return True
    return False


def _cluster_update(event: Event) -> bool:
    new, old = event.obj, event.old
    if old.is_paused() and not new.is_paused():
        logger.debug("cluster %s/%s was unpaused", new.namespace, new.name)
        return True
    if old.is_ready() != new.is_ready():
        logger.debug("cluster %s/%s readiness changed", new.namespace, new.name)
        return True
    if getattr(old, "infrastructure_ready", None) != getattr(new, "infrastructure_ready", None):
        return True
    if old.metadata.labels != new.metadata.labels:
        logger.debug("cluster %s/%s labels changed", new.namespace, new.name)
        return True
    return False


def cluster_predicates() -> Predicate:
    """Used for both Cluster and SveltosCluster."""
    return Predicate(create=_cluster_create, update=_cluster_update, delete=_always)


def _machine_create(event: Event) -> bool:
    return event.obj.is_running()


def _machine_update(event: Event) -> bool:
    if not event.obj.is_running():
        return False
    return event.old.phase != event.obj.phase


def machine_predicates() -> Predicate:
    return Predicate(create=_machine_create, update=_machine_update, delete=_never)


def _report_update(event: Event) -> bool:
    new: ClassifierReport = event.obj
    old: ClassifierReport = event.old
    return old.match != new.match


def classifier_report_predicate() -> Predicate:
    return Predicate(create=_always, update=_report_update, delete=_always)


def _classifier_update(event: Event) -> bool:
    new: Classifier = event.obj
    old: Classifier = event.old
    if new.deleting and not old.deleting:
        return True
    return old.spec != new.spec


def classifier_predicate() -> Predicate:
    """Classifier create and delete always count, updates only on spec change."""
    return Predicate(create=_always, update=_classifier_update, delete=_always)


def _is_kubeconfig_secret(event: Event) -> bool:
    return isinstance(event.obj, Secret) and cluster_for_secret(event.obj) is not None


def _kubeconfig_secret_update(event: Event) -> bool:
    return _is_kubeconfig_secret(event) and event.obj.data != event.old.data


def secret_predicates() -> Predicate:
    return Predicate(create=_is_kubeconfig_secret, update=_kubeconfig_secret_update, delete=_is_kubeconfig_secret)
