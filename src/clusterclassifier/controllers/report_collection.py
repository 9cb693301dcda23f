"""ClassifierReport mirroring and the two report collection modes."""

from __future__ import annotations

import logging
import threading

from clusterclassifier.api.classifier import CLASSIFIER_LABEL_NAME, Classifier
from clusterclassifier.api.cluster import AnyCluster, ClusterRef
from clusterclassifier.api.meta import ObjectMeta
from clusterclassifier.api.report import (
    ACCESS_REQUEST_CLASSIFIER_LABEL,
    REPORT_CLUSTER_LABEL,
    AccessRequest,
    ClassifierReport,
)
from clusterclassifier.config import (
    CONTROL_PLANE_ENDPOINT_OPTION,
    REPORT_COLLECTION_INTERVAL,
    ControllerConfig,
    ReportMode,
)
from clusterclassifier.controllers.deployer import (
    AGENT_MANIFEST_OPTION,
    deploy_classifier_in_cluster,
    deploy_classifier_with_kubeconfig_in_cluster,
    get_kubeconfig_from_access_request,
)
from clusterclassifier.core.errors import ApiError, ClassifierError, MalformedReportError, NotFoundError
from clusterclassifier.k8s import clusterproxy
from clusterclassifier.logsettings import with_values

logger = logging.getLogger(__name__)


def get_classifier_report_name(classifier_name: str, cluster_name: str) -> str:
    return f"{classifier_name}--{cluster_name}"


def get_cluster_info(cluster_namespace: str, cluster_name: str) -> str:
    return f"{cluster_namespace}--{cluster_name}"


def _delete_reports(client, reports: list[ClassifierReport]) -> None:
    for report in reports:
        try:
            client.delete(ClassifierReport, report.name, report.namespace)
        except NotFoundError:
            continue


def remove_classifier_reports(client, classifier: Classifier) -> None:
    """Delete every management-side report produced for ``classifier``."""
    reports = client.list(ClassifierReport, labels={CLASSIFIER_LABEL_NAME: classifier.name})
    _delete_reports(client, reports)


def remove_cluster_classifier_reports(client, cluster_namespace: str, cluster_name: str) -> None:
    reports = client.list(
        ClassifierReport,
        labels={REPORT_CLUSTER_LABEL: get_cluster_info(cluster_namespace, cluster_name)},
    )
    _delete_reports(client, reports)


def remove_access_requests(client) -> None:
    """Delete AccessRequests created on behalf of classifier agents."""
    requests = client.list(AccessRequest, labels={ACCESS_REQUEST_CLASSIFIER_LABEL: "ok"})
    for request in requests:
        try:
            client.delete(AccessRequest, request.name, request.namespace)
        except NotFoundError:
            continue


def update_classifier_report(client, cluster: AnyCluster, report: ClassifierReport, log=None) -> ClassifierReport:
    """Upsert the management-side copy of a report read from ``cluster``."""
    log = log or logger
    classifier_name = report.metadata.labels.get(CLASSIFIER_LABEL_NAME)
    if not report.metadata.labels:
        raise MalformedReportError("classifierReport is malformed. Labels is empty")
    if classifier_name is None:
        raise MalformedReportError("classifierReport is malformed. Label missing")

    name = get_classifier_report_name(classifier_name, cluster.name)
    labels = dict(report.metadata.labels)
    labels[REPORT_CLUSTER_LABEL] = get_cluster_info(cluster.namespace, cluster.name)

    try:
        current = client.get(ClassifierReport, name, cluster.namespace)
    except NotFoundError:
        log.debug("create ClassifierReport in management cluster")
        mirror = ClassifierReport(
            metadata=ObjectMeta(name=name, namespace=cluster.namespace, labels=labels),
            classifier_name=report.classifier_name,
            cluster_namespace=cluster.namespace,
            cluster_name=cluster.name,
            cluster_type=cluster.ref().cluster_type,
            match=report.match,
        )
        client.create(mirror)
        return mirror

    log.debug("update ClassifierReport in management cluster")
    current.classifier_name = report.classifier_name
    current.cluster_namespace = cluster.namespace
    current.cluster_name = cluster.name
    current.cluster_type = cluster.ref().cluster_type
    current.match = report.match
    current.metadata.labels = labels
    client.update(current)
    return current


def collect_classifier_reports_from_cluster(client, cluster: AnyCluster) -> int:
    """Mirror every report found in ``cluster``. Returns how many were mirrored."""
    log = with_values(logger, cluster=f"{cluster.namespace}/{cluster.name}")
    kind = cluster.ref().cluster_type
    if not clusterproxy.is_cluster_ready_to_be_configured(client, cluster.namespace, cluster.name, kind):
        log.debug("cluster is not ready yet")
        return 0

    remote = clusterproxy.get_kubernetes_client(client, cluster.namespace, cluster.name, kind)
    log.debug("collecting ClassifierReports from cluster")
    mirrored = 0
    for report in remote.list(ClassifierReport):
        report_log = with_values(log, classifierReport=report.name)
        try:
            update_classifier_report(client, cluster, report, report_log)
        except (MalformedReportError, ApiError) as exc:
            report_log.info("failed to process ClassifierReport: %s", exc)
            continue
        mirrored += 1
    return mirrored


def collect_classifier_reports(
    client,
    stop_event: threading.Event,
    interval: float = REPORT_COLLECTION_INTERVAL,
) -> None:
    """Pull reports from every cluster until ``stop_event`` is set.

    Mirrors of clusters that disappeared since the previous round are purged.
    """
    seen: set[tuple[str, str]] = set()
    while not stop_event.is_set():
        try:
            clusters = clusterproxy.list_clusters(client)
        except ApiError as exc:
            logger.info("failed to list clusters: %s", exc)
            stop_event.wait(interval)
            continue
        current = {(cluster.namespace, cluster.name) for cluster in clusters}
        for namespace, name in sorted(seen - current):
            try:
                remove_cluster_classifier_reports(client, namespace, name)
            except ApiError as exc:
                logger.info("failed to remove ClassifierReports of cluster %s/%s: %s", namespace, name, exc)
                current.add((namespace, name))
        seen = current
        logger.debug("collecting ClassifierReports")
        for cluster in clusters:
            try:
                collect_classifier_reports_from_cluster(client, cluster)
            except ClassifierError as exc:
                logger.info(
                    "failed to collect ClassifierReports from cluster %s/%s: %s",
                    cluster.namespace,
                    cluster.name,
                    exc,
                )
        stop_event.wait(interval)


class PullReports:
    """Reports are pulled from every managed cluster by the controller."""

    mode = ReportMode.COLLECT_FROM_MANAGEMENT_CLUSTER
    endpoint = ""

    def __init__(self, agent_manifest: str | None = None, interval: float = REPORT_COLLECTION_INTERVAL) -> None:
        self.agent_manifest = agent_manifest
        self.interval = interval
        self.deploy_handler = deploy_classifier_in_cluster

    def handler_options(self) -> dict:
        options: dict = {}
        if self.agent_manifest:
            options[AGENT_MANIFEST_OPTION] = self.agent_manifest
        return options

    def credential_for(self, client, cluster: ClusterRef) -> bytes | None:
        return None

    def start(self, client, stop_event: threading.Event) -> threading.Thread | None:
        thread = threading.Thread(
            target=collect_classifier_reports,
            args=(client, stop_event, self.interval),
            name="classifier-report-collection",
            daemon=True,
        )
        thread.start()
        return thread

    def cleanup(self, client) -> None:
        remove_access_requests(client)


class PushReports:
    """Agents push their reports using a kubeconfig granted by an AccessRequest."""

    mode = ReportMode.AGENT_SEND_REPORTS_NO_GATEWAY

    def __init__(self, endpoint: str, agent_manifest: str | None = None) -> None:
        self.endpoint = endpoint
        self.agent_manifest = agent_manifest
        self.deploy_handler = deploy_classifier_with_kubeconfig_in_cluster

    def handler_options(self) -> dict:
        options: dict = {CONTROL_PLANE_ENDPOINT_OPTION: self.endpoint}
        if self.agent_manifest:
            options[AGENT_MANIFEST_OPTION] = self.agent_manifest
        return options

    def credential_for(self, client, cluster: ClusterRef) -> bytes | None:
        try:
            return get_kubeconfig_from_access_request(client, cluster.namespace, cluster.name, cluster.cluster_type)
        except NotFoundError:
            return None

    def start(self, client, stop_event: threading.Event) -> threading.Thread | None:
        return None

    def cleanup(self, client) -> None:
        return None


def select_report_strategy(config: ControllerConfig, agent_manifest: str | None = None) -> PullReports | PushReports:
    if config.report_mode == ReportMode.AGENT_SEND_REPORTS_NO_GATEWAY:
        return PushReports(config.control_plane_endpoint, agent_manifest)
    return PullReports(agent_manifest)
