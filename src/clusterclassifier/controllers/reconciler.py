"""Classifier reconciler.

One pass for a live Classifier:

1. add the finalizer,
2. read match reports, arbitrate label ownership and rebuild match statuses,
3. set owned labels on matching clusters,
4. keep one ClusterInfo entry per current target cluster,
5. refresh the in-memory index,
6. drive deployment on every cluster, requeueing until all are provisioned.

A deleting Classifier is undeployed everywhere before its finalizer goes.
"""

from __future__ import annotations

import logging

from clusterclassifier.api.classifier import (
    CLASSIFIER_LABEL_NAME,
    Classifier,
    ClusterInfo,
    MatchingClusterStatus,
    UnManagedLabel,
)
from clusterclassifier.api.cluster import Cluster, ClusterRef, ClusterType, Machine, SveltosCluster
from clusterclassifier.api.report import ClassifierReport, Secret
from clusterclassifier.config import DELETE_REQUEUE_AFTER, NORMAL_REQUEUE_AFTER
from clusterclassifier.controllers import predicates
from clusterclassifier.controllers.deployer import FEATURE_CLASSIFIER, DeployMixin, get_handlers_for_feature
from clusterclassifier.controllers.manager import Event, Manager, Result
from clusterclassifier.controllers.report_collection import remove_classifier_reports
from clusterclassifier.controllers.scope import ClassifierScope
from clusterclassifier.core.errors import ApiError, ClassifierError, NotFoundError
from clusterclassifier.core.index import ConsistencyIndex
from clusterclassifier.k8s import clusterproxy
from clusterclassifier.keymanager import KeyManager, NoManagerError
from clusterclassifier.logsettings import with_values

logger = logging.getLogger(__name__)


def _ref_sort_key(ref: ClusterRef) -> tuple[str, str, str]:
    return (ref.namespace, ref.name, ref.kind)


def _identity(ref: ClusterRef) -> tuple[str, str, ClusterType]:
    return (ref.namespace, ref.name, ref.cluster_type)


class ClassifierReconciler(DeployMixin):
    def __init__(
        self,
        client,
        deployer,
        reports,
        key_manager: KeyManager | None = None,
        index: ConsistencyIndex | None = None,
    ) -> None:
        self.client = client
        self.deployer = deployer
        self.reports = reports
        self.key_manager = key_manager or KeyManager()
        self.index = index or ConsistencyIndex()

    def initialize(self) -> None:
        """Rebuild in-memory state from persisted Classifier statuses."""
        classifiers = self.client.list(Classifier)
        self.key_manager = KeyManager.from_classifiers(classifiers)
        self.index.rebuild(classifiers)
        logger.info("rebuilt state from %d classifiers", len(classifiers))

    def reconcile(self, name: str) -> Result:
        log = with_values(logger, classifier=name)
        log.info("reconciling")
        try:
            classifier = self.client.get(Classifier, name)
        except NotFoundError:
            return Result()

        scope = ClassifierScope(self.client, classifier, log)
        try:
            if classifier.deleting:
                return self.reconcile_delete(scope)
            return self.reconcile_normal(scope)
        finally:
            scope.close()

    def reconcile_delete(self, scope: ClassifierScope) -> Result:
        log = scope.logger
        log.info("reconciling Classifier delete")

        self.remove_all_registrations(scope)
        self.index.forget_classifier(scope.name)

        feature = get_handlers_for_feature(FEATURE_CLASSIFIER, self.reports.deploy_handler)
        try:
            self.undeploy_classifier(scope, feature, log)
        except ClassifierError as exc:
            log.info("failed to undeploy: %s", exc)
            return Result(requeue_after=DELETE_REQUEUE_AFTER)

        try:
            remove_classifier_reports(self.client, scope.classifier)
        except ApiError as exc:
            log.info("failed to remove classifierReports: %s", exc)
            return Result(requeue_after=DELETE_REQUEUE_AFTER)

        try:
            self.reports.cleanup(self.client)
        except ApiError as exc:
            log.info("failed to remove accessRequests: %s", exc)
            return Result(requeue_after=DELETE_REQUEUE_AFTER)

        self.index.update_for_classifier(scope.name, set())
        scope.remove_finalizer()
        log.info("reconcile delete success")
        return Result()

    def reconcile_normal(self, scope: ClassifierScope) -> Result:
        log = scope.logger
        log.info("reconciling Classifier")

        if scope.add_finalizer():
            scope.patch_object()

        self.update_matching_clusters_and_registrations(scope, log)
        self.update_labels_on_matching_clusters(scope, log)
        self.update_cluster_info(scope, log)
        self.update_maps(scope)

        feature = get_handlers_for_feature(FEATURE_CLASSIFIER, self.reports.deploy_handler)
        try:
            self.deploy_classifier(scope, feature, log)
        except ClassifierError as exc:
            log.info("failed to deploy: %s", exc)
            return Result(requeue_after=NORMAL_REQUEUE_AFTER)

        log.info("reconcile success")
        return Result()

    def get_current_matching_clusters(self, classifier: Classifier, log) -> list[ClusterRef]:
        reports = self.client.list(ClassifierReport, labels={CLASSIFIER_LABEL_NAME: classifier.name})
        log.debug("found %d ClassifierReports for this Classifier instance", len(reports))
        matching: set[ClusterRef] = set()
        for report in reports:
            if report.match:
                matching.add(ClusterRef.for_type(report.cluster_namespace, report.cluster_name, report.cluster_type))
        return sorted(matching, key=_ref_sort_key)

    def update_matching_clusters_and_registrations(self, scope: ClassifierScope, log) -> None:
        classifier = scope.classifier
        current = self.get_current_matching_clusters(classifier, log)
        old = [status.cluster_ref for status in classifier.status.matching_cluster_statuses]

        self.handle_label_registrations(classifier, current, old)

        statuses: list[MatchingClusterStatus] = []
        unmanaged_count = 0
        for ref in current:
            managed, unmanaged = self.classify_labels(classifier, ref, log)
            unmanaged_count += len(unmanaged)
            statuses.append(MatchingClusterStatus(cluster_ref=ref, managed_labels=managed, unmanaged_labels=unmanaged))

        self.index.set_conflict(classifier.name, unmanaged_count != 0)
        scope.set_matching_cluster_statuses(statuses)

    def handle_label_registrations(
        self,
        classifier: Classifier,
        current: list[ClusterRef],
        old: list[ClusterRef],
    ) -> None:
        # stale keys are released before new claims so dropped labels are free
        for ref in current:
            self.key_manager.remove_stale_registrations(classifier, ref)
            self.key_manager.register_classifier_for_labels(classifier, ref)
        current_set = set(current)
        for ref in old:
            if ref not in current_set:
                self.key_manager.remove_all_registrations(classifier, ref)

    def classify_labels(self, classifier: Classifier, cluster: ClusterRef, log) -> tuple[list[str], list[UnManagedLabel]]:
        managed: list[str] = []
        unmanaged: list[UnManagedLabel] = []
        for label in classifier.spec.classifier_labels:
            if self.key_manager.can_manage_label(classifier, cluster, label.key):
                log.debug("classifier can manage label %s", label.key)
                managed.append(label.key)
                continue
            log.debug("classifier cannot manage label %s", label.key)
            item = UnManagedLabel(key=label.key)
            try:
                owner = self.key_manager.get_manager_for_key(cluster, label.key)
            except NoManagerError:
                owner = None
            if owner is not None:
                item.failure_message = f"classifier {owner} currently manage this"
            unmanaged.append(item)
        return managed, unmanaged

    def update_labels_on_matching_clusters(self, scope: ClassifierScope, log) -> None:
        for status in scope.classifier.status.matching_cluster_statuses:
            ref = status.cluster_ref
            cluster_log = with_values(log, cluster=f"{ref.namespace}/{ref.name}")
            try:
                cluster = clusterproxy.get_cluster(self.client, ref.namespace, ref.name, ref.cluster_type)
            except NotFoundError:
                cluster_log.info("cluster not found, labels not updated")
                continue
            cluster_log.debug("update labels on cluster")
            self.update_labels_on_cluster(scope.classifier, cluster, cluster_log)

    def update_labels_on_cluster(self, classifier: Classifier, cluster, log) -> None:
        changed = False
        for label in classifier.spec.classifier_labels:
            if not self.key_manager.can_manage_label(classifier, cluster.ref(), label.key):
                with_values(log, label=label.key).info("cannot manage label")
                continue
            if cluster.metadata.labels.get(label.key) != label.value:
                cluster.metadata.labels[label.key] = label.value
                changed = True
        if changed:
            self.client.update(cluster)

    def get_list_of_clusters(self) -> list[ClusterRef]:
        return [cluster.ref() for cluster in clusterproxy.list_clusters(self.client)]

    def update_cluster_info(self, scope: ClassifierScope, log) -> None:
        """Track exactly the current target clusters.

        Entries of clusters that are gone or being deleted are dropped, so a
        cluster recreated under the same name starts from an empty entry.
        Existing entries keep their hash and status and new clusters are
        appended.
        """
        targets = self.get_list_of_clusters()
        live = {_identity(ref) for ref in targets}
        cluster_info: list[ClusterInfo] = []
        known: set[tuple[str, str, ClusterType]] = set()
        for info in scope.classifier.status.cluster_info:
            identity = _identity(info.cluster)
            if identity not in live:
                log.info("cluster %s/%s is not a target anymore", info.cluster.namespace, info.cluster.name)
                continue
            if identity in known:
                continue
            known.add(identity)
            cluster_info.append(info)
        for ref in targets:
            if _identity(ref) not in known:
                cluster_info.append(ClusterInfo(cluster=ref))
                known.add(_identity(ref))
        scope.set_cluster_info(cluster_info)

    def update_maps(self, scope: ClassifierScope) -> None:
        self.index.update_for_classifier(
            scope.name,
            (info.cluster for info in scope.classifier.status.cluster_info),
        )

    def remove_all_registrations(self, scope: ClassifierScope) -> None:
        for status in scope.classifier.status.matching_cluster_statuses:
            ref = status.cluster_ref
            self.key_manager.remove_all_registrations(scope.classifier, ref)

    # map functions: memory lookups only

    def requeue_classifier(self, event: Event) -> list[str]:
        return [event.obj.name]

    def requeue_for_cluster(self, event: Event) -> list[str]:
        ref = event.obj.ref()
        if not self.index.knows_cluster(ref):
            # a new cluster is a target for every classifier
            return self.index.all_classifiers()
        return self.index.classifiers_for_cluster(ref)

    def requeue_for_machine(self, event: Event) -> list[str]:
        machine: Machine = event.obj
        cluster_name = machine.cluster_name
        if not cluster_name:
            return []
        ref = ClusterRef.for_type(machine.namespace, cluster_name, ClusterType.CAPI)
        return self.index.classifiers_for_cluster(ref)

    def requeue_for_report(self, event: Event) -> list[str]:
        name = event.obj.metadata.labels.get(CLASSIFIER_LABEL_NAME)
        return [name] if name else []

    def requeue_for_classifier(self, event: Event) -> list[str]:
        return self.index.conflicting_classifiers()

    def requeue_for_secret(self, event: Event) -> list[str]:
        ref = clusterproxy.cluster_for_secret(event.obj)
        if ref is None:
            return []
        return self.index.classifiers_for_cluster(ref)

    def setup_with_manager(self, manager: Manager) -> Manager:
        manager.reconcile = self.reconcile
        manager.watch(Classifier, predicates.classifier_predicate(), self.requeue_classifier, name="classifier")
        manager.watch(
            Classifier,
            predicates.classifier_predicate(),
            self.requeue_for_classifier,
            name="conflicting-classifiers",
        )
        manager.watch(ClassifierReport, predicates.classifier_report_predicate(), self.requeue_for_report)
        manager.watch(Cluster, predicates.cluster_predicates(), self.requeue_for_cluster)
        manager.watch(SveltosCluster, predicates.cluster_predicates(), self.requeue_for_cluster)
        manager.watch(Secret, predicates.secret_predicates(), self.requeue_for_secret)
        manager.watch(Machine, predicates.machine_predicates(), self.requeue_for_machine)
        return manager
