"""Per-cluster deploy/undeploy state machine and the handlers it dispatches.

The reconciler never runs a handler itself. It asks the deployer to queue one
and observes the outcome on a later pass through ``get_result``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from clusterclassifier.api.classifier import (
    Classifier,
    ClusterInfo,
    FeatureStatus,
    MatchingClusterStatus,
)
from clusterclassifier.api.cluster import ClusterRef, ClusterType
from clusterclassifier.api.meta import ObjectMeta
from clusterclassifier.api.report import (
    ACCESS_REQUEST_CLASSIFIER_LABEL,
    CLASSIFIER_AGENT_REQUEST,
    CLASSIFIER_SECRET_KEY,
    CLASSIFIER_SECRET_NAME,
    CLASSIFIER_SECRET_NAMESPACE,
    AccessRequest,
    Namespace,
    Secret,
)
from clusterclassifier.config import (
    CONTROL_PLANE_ENDPOINT_OPTION,
    PROGRAM_DURATION,
    split_control_plane_endpoint,
)
from clusterclassifier.core.errors import (
    ApiError,
    ClassifierError,
    InProgressError,
    NotConvergedError,
    NotFoundError,
)
from clusterclassifier.core.fingerprint import fingerprint
from clusterclassifier.deployer import RequestKey, Result, ResultStatus
from clusterclassifier.k8s import clusterproxy
from clusterclassifier.logsettings import with_values

logger = logging.getLogger(__name__)

FEATURE_CLASSIFIER = "Classifier"
AGENT_MANIFEST_OPTION = "agent-manifest"

# agent manifest placeholders
_DO_NOT_SEND_REPORTS = "do-not-send-reports"
_SEND_REPORTS = "send-reports"


@dataclass
class Feature:
    id: str
    deploy: Callable[[object, RequestKey, dict], None]
    undeploy: Callable[[object, RequestKey, dict], None]


def get_handlers_for_feature(feature_id: str, deploy_handler: Callable[[object, RequestKey, dict], None]) -> Feature:
    if feature_id != FEATURE_CLASSIFIER:
        raise ValueError(f"unknown feature: {feature_id}")
    return Feature(id=feature_id, deploy=deploy_handler, undeploy=undeploy_classifier_from_cluster)


def get_access_request_name(cluster_name: str, cluster_type: ClusterType) -> str:
    return f"{ClusterType(cluster_type).value.lower()}-{cluster_name}"


def render_agent_manifest(
    manifest: str,
    cluster_namespace: str,
    cluster_name: str,
    cluster_type: ClusterType,
    send_reports: bool,
) -> str:
    rendered = manifest
    if send_reports:
        rendered = rendered.replace(_DO_NOT_SEND_REPORTS, _SEND_REPORTS)
    rendered = rendered.replace("cluster-namespace=", f"cluster-namespace={cluster_namespace}")
    rendered = rendered.replace("cluster-name=", f"cluster-name={cluster_name}")
    rendered = rendered.replace("cluster-type=", f"cluster-type={ClusterType(cluster_type).value}")
    return rendered


def get_classifier_and_cluster_client(client, key: RequestKey) -> tuple[Classifier, object]:
    """Return the applicant Classifier and a client for the managed cluster.

    Refuses when either the classifier or the cluster is being deleted.
    """
    log = with_values(logger, classifier=key.applicant)
    classifier = client.get(Classifier, key.applicant)
    if classifier.deleting:
        log.info("classifier is marked for deletion, nothing to do")
        raise ClassifierError("classifier is marked for deletion")
    cluster = clusterproxy.get_cluster(client, key.cluster_namespace, key.cluster_name, key.cluster_type)
    if cluster.deleting:
        log.info("cluster is marked for deletion, nothing to do")
        raise ClassifierError("cluster is marked for deletion")
    remote = clusterproxy.get_kubernetes_client(client, key.cluster_namespace, key.cluster_name, key.cluster_type)
    return classifier, remote


def create_access_request(
    client,
    cluster_namespace: str,
    cluster_name: str,
    cluster_type: ClusterType,
    options: dict,
) -> None:
    # one AccessRequest per cluster, shared by every classifier agent there
    endpoint = (options or {}).get(CONTROL_PLANE_ENDPOINT_OPTION)
    if not endpoint:
        raise ClassifierError("controlplane endpoint is missing")
    host, port = split_control_plane_endpoint(endpoint)

    name = get_access_request_name(cluster_name, cluster_type)
    try:
        client.get(AccessRequest, name, cluster_namespace)
        return
    except NotFoundError:
        pass
    request = AccessRequest(
        metadata=ObjectMeta(
            name=name,
            namespace=cluster_namespace,
            labels={ACCESS_REQUEST_CLASSIFIER_LABEL: "ok"},
        ),
        cluster_namespace=cluster_namespace,
        cluster_name=cluster_name,
        request_type=CLASSIFIER_AGENT_REQUEST,
        control_plane_host=host,
        control_plane_port=port,
    )
    client.create(request)


def get_kubeconfig_from_access_request(
    client,
    cluster_namespace: str,
    cluster_name: str,
    cluster_type: ClusterType,
) -> bytes | None:
    """Kubeconfig granted through the cluster's AccessRequest, None while pending.

    Raises NotFoundError when the AccessRequest does not exist.
    """
    request = client.get(AccessRequest, get_access_request_name(cluster_name, cluster_type), cluster_namespace)
    if request.secret_ref is None:
        logger.debug("accessRequest secretRef still not set")
        return None
    secret = client.get(Secret, request.secret_ref.name, request.secret_ref.namespace)
    value = secret.first_value()
    if value is None:
        logger.debug("secret does not contain kubeconfig yet")
    return value


def create_secret_namespace(remote) -> None:
    try:
        remote.get(Namespace, CLASSIFIER_SECRET_NAMESPACE)
    except NotFoundError:
        remote.create(Namespace(metadata=ObjectMeta(name=CLASSIFIER_SECRET_NAMESPACE)))


def update_secret_with_access_management_kubeconfig(client, key: RequestKey, kubeconfig: bytes) -> None:
    """Make the management cluster kubeconfig available to the agent."""
    _, remote = get_classifier_and_cluster_client(client, key)
    create_secret_namespace(remote)
    try:
        secret = remote.get(Secret, CLASSIFIER_SECRET_NAME, CLASSIFIER_SECRET_NAMESPACE)
    except NotFoundError:
        remote.create(
            Secret(
                metadata=ObjectMeta(name=CLASSIFIER_SECRET_NAME, namespace=CLASSIFIER_SECRET_NAMESPACE),
                data={CLASSIFIER_SECRET_KEY: kubeconfig},
            )
        )
        return
    if secret.data.get(CLASSIFIER_SECRET_KEY) == kubeconfig:
        return
    secret.data[CLASSIFIER_SECRET_KEY] = kubeconfig
    remote.update(secret)


def deploy_classifier_instance(remote, classifier: Classifier) -> None:
    try:
        current = remote.get(Classifier, classifier.name)
    except NotFoundError:
        logger.debug("classifier instance not present, creating it")
        remote.create(Classifier(metadata=ObjectMeta(name=classifier.name), spec=classifier.spec))
        return
    current.spec = classifier.spec
    remote.update(current)


def deploy_classifier_agent(remote, key: RequestKey, options: dict, send_reports: bool) -> None:
    manifest = (options or {}).get(AGENT_MANIFEST_OPTION)
    if not manifest:
        return
    logger.debug("deploying classifier agent")
    remote.apply_manifest(
        render_agent_manifest(manifest, key.cluster_namespace, key.cluster_name, key.cluster_type, send_reports)
    )


def deploy_classifier_in_cluster(client, key: RequestKey, options: dict) -> None:
    """Deploy handler used when reports are collected by the management cluster."""
    log = with_values(logger, classifier=key.applicant, cluster=f"{key.cluster_namespace}/{key.cluster_name}")
    log.debug("deploy classifier: do not send reports mode")
    classifier, remote = get_classifier_and_cluster_client(client, key)
    deploy_classifier_agent(remote, key, options, send_reports=False)
    deploy_classifier_instance(remote, classifier)
    log.debug("successfully deployed classifier instance")


def deploy_classifier_with_kubeconfig_in_cluster(client, key: RequestKey, options: dict) -> None:
    """Deploy handler used when the agent pushes its reports.

    In order: ensure the AccessRequest, read the granted kubeconfig, copy it
    into the managed cluster, deploy the agent and the Classifier instance.
    """
    log = with_values(logger, classifier=key.applicant, cluster=f"{key.cluster_namespace}/{key.cluster_name}")
    log.debug("deploy classifier: send reports mode")

    create_access_request(client, key.cluster_namespace, key.cluster_name, key.cluster_type, options)
    kubeconfig = get_kubeconfig_from_access_request(
        client, key.cluster_namespace, key.cluster_name, key.cluster_type
    )
    if kubeconfig is None:
        raise ClassifierError("accessRequest kubeconfig not present yet")
    update_secret_with_access_management_kubeconfig(client, key, kubeconfig)

    classifier, remote = get_classifier_and_cluster_client(client, key)
    deploy_classifier_agent(remote, key, options, send_reports=True)
    deploy_classifier_instance(remote, classifier)
    log.debug("successfully deployed classifier instance")


def undeploy_classifier_from_cluster(client, key: RequestKey, options: dict) -> None:
    log = with_values(logger, classifier=key.applicant, cluster=f"{key.cluster_namespace}/{key.cluster_name}")
    log.debug("undeploy classifier")
    try:
        cluster = clusterproxy.get_cluster(client, key.cluster_namespace, key.cluster_name, key.cluster_type)
    except NotFoundError:
        log.debug("cluster not found, nothing to clean up")
        return
    if cluster.deleting:
        log.info("cluster is marked for deletion, nothing to do")
        return

    remote = clusterproxy.get_kubernetes_client(client, key.cluster_namespace, key.cluster_name, key.cluster_type)
    try:
        remote.get(Classifier, key.applicant)
    except NotFoundError:
        log.info("classifier not found")
        return
    log.debug("remove classifier instance")
    try:
        remote.delete(Classifier, key.applicant)
    except NotFoundError:
        return


class DeployMixin:
    """Deploy/undeploy decisions for ClassifierReconciler.

    Expects ``client``, ``deployer`` and ``reports`` on the instance.
    """

    def convert_result_status(self, result: Result) -> FeatureStatus | None:
        if result.status == ResultStatus.DEPLOYED:
            return FeatureStatus.PROVISIONED
        if result.status == ResultStatus.FAILED:
            return FeatureStatus.FAILED
        if result.status == ResultStatus.IN_PROGRESS:
            return FeatureStatus.PROVISIONING
        if result.status == ResultStatus.REMOVED:
            return FeatureStatus.REMOVED
        return None

    def is_paused(self, cluster: ClusterRef, classifier: Classifier) -> bool:
        try:
            if clusterproxy.is_cluster_paused(self.client, cluster.namespace, cluster.name, cluster.cluster_type):
                return True
        except NotFoundError:
            return False
        return classifier.is_paused()

    def can_proceed(self, classifier: Classifier, cluster: ClusterRef, log) -> bool:
        """True when the cluster is neither paused nor still coming up."""
        if self.is_paused(cluster, classifier):
            log.debug("cluster is paused")
            return False
        if not clusterproxy.is_cluster_ready_to_be_configured(
            self.client, cluster.namespace, cluster.name, cluster.cluster_type
        ):
            log.info("cluster is not ready yet")
            return False
        return True

    def get_current_hash(self, classifier: Classifier, cluster: ClusterRef) -> bytes:
        kubeconfig = self.reports.credential_for(self.client, cluster)
        return fingerprint(classifier.spec, kubeconfig, self.reports.endpoint)

    def _request(self, classifier: Classifier, cluster: ClusterRef, feature: Feature, cleanup: bool) -> tuple:
        return (cluster.namespace, cluster.name, classifier.name, feature.id, cluster.cluster_type, cleanup)

    def process_classifier(
        self,
        classifier: Classifier,
        cluster: ClusterRef,
        feature: Feature,
        previous: ClusterInfo | None,
        log,
    ) -> ClusterInfo | None:
        """Decide what to do for one (classifier, cluster) pair.

        Returns None when the cluster cannot be configured right now, in which
        case the previous record stands.
        """
        log = with_values(log, cluster=f"{cluster.namespace}/{cluster.name}")
        current_hash = self.get_current_hash(classifier, cluster)

        if not self.can_proceed(classifier, cluster, log):
            return None

        if self.deployer.is_in_progress(*self._request(classifier, cluster, feature, True)):
            log.debug("cleanup is in progress")
            raise InProgressError(f"cleanup of {feature.id} in cluster still in progress. Wait before redeploying")

        previous_hash = previous.hash if previous is not None else None
        previous_status = previous.status if previous is not None else None
        is_config_same = previous_hash == current_hash
        if not is_config_same:
            log.debug("classifier has changed")

        status = None
        result = None
        if is_config_same:
            result = self.deployer.get_result(*self._request(classifier, cluster, feature, False))
            status = self.convert_result_status(result)

        if status == FeatureStatus.PROVISIONED:
            return ClusterInfo(cluster=cluster, hash=current_hash, status=status)
        if status == FeatureStatus.PROVISIONING:
            log.debug("classifier is still being provisioned")
            return ClusterInfo(cluster=cluster, hash=current_hash, status=status)
        if status == FeatureStatus.FAILED and previous_status != FeatureStatus.FAILED:
            log.info("deploy failed: %s", result.error)
            return ClusterInfo(
                cluster=cluster,
                hash=current_hash,
                status=status,
                failure_message=result.error or "",
            )
        if status is None and is_config_same and previous_status == FeatureStatus.PROVISIONED:
            log.info("already deployed")
            return ClusterInfo(cluster=cluster, hash=current_hash, status=FeatureStatus.PROVISIONED)

        log.info("no result is available, queue job and mark status as provisioning")
        self.deployer.deploy(
            *self._request(classifier, cluster, feature, False),
            handler=feature.deploy,
            timeout=PROGRAM_DURATION,
            options=self.reports.handler_options(),
        )
        return ClusterInfo(cluster=cluster, hash=current_hash, status=FeatureStatus.PROVISIONING)

    def deploy_classifier(self, scope, feature: Feature, log) -> None:
        classifier = scope.classifier
        log = with_values(log, classifier=classifier.name)
        log.debug("request to deploy")

        error_seen: ClassifierError | None = None
        all_deployed = True
        cluster_info: list[ClusterInfo] = []
        for previous in classifier.status.cluster_info:
            try:
                info = self.process_classifier(classifier, previous.cluster, feature, previous, log)
            except ClassifierError as exc:
                error_seen = exc
                all_deployed = False
                kept = ClusterInfo(
                    cluster=previous.cluster,
                    hash=previous.hash,
                    status=previous.status,
                    failure_message=previous.failure_message,
                )
                if isinstance(exc, ApiError):
                    kept.failure_message = str(exc)
                cluster_info.append(kept)
                continue
            if info is None:
                # the previous record stands but only a provisioned one counts
                cluster_info.append(previous)
                if previous.status != FeatureStatus.PROVISIONED:
                    all_deployed = False
                continue
            cluster_info.append(info)
            if info.status != FeatureStatus.PROVISIONED:
                all_deployed = False

        scope.set_cluster_info(cluster_info)

        if error_seen is not None:
            raise error_seen
        if not all_deployed:
            raise NotConvergedError("request to deploy Classifier is still queued in one or more clusters")

    def remove_classifier(self, classifier: Classifier, cluster: ClusterRef, feature: Feature, log) -> None:
        """Drive teardown for one pair. Returns only once removal is confirmed."""
        log = with_values(log, cluster=f"{cluster.namespace}/{cluster.name}")
        if self.is_paused(cluster, classifier):
            log.info("cluster is paused, do nothing")
            raise InProgressError("cluster is paused")

        if self.deployer.is_in_progress(*self._request(classifier, cluster, feature, False)):
            log.debug("deploy is in progress")
            raise InProgressError(f"deploy of {feature.id} in cluster still in progress. Wait before redeploying")

        result = self.deployer.get_result(*self._request(classifier, cluster, feature, True))
        status = self.convert_result_status(result)
        if status == FeatureStatus.PROVISIONING:
            raise InProgressError("feature is still being removed")
        if status == FeatureStatus.REMOVED:
            return
        if status is None:
            log.debug("no result is available")

        log.debug("queueing request to un-deploy")
        self.deployer.deploy(
            *self._request(classifier, cluster, feature, True),
            handler=feature.undeploy,
            timeout=PROGRAM_DURATION,
            options={},
        )
        raise InProgressError("cleanup request is queued")

    def undeploy_classifier(self, scope, feature: Feature, log) -> None:
        classifier = scope.classifier
        log.debug("request to undeploy")

        existing: list[ClusterInfo] = []
        for info in classifier.status.cluster_info:
            ref = info.cluster
            try:
                clusterproxy.get_cluster(self.client, ref.namespace, ref.name, ref.cluster_type)
            except NotFoundError:
                log.info("cluster %s/%s does not exist", ref.namespace, ref.name)
                continue
            existing.append(info)

        remaining: list[ClusterInfo] = []
        for info in existing:
            try:
                self.remove_classifier(classifier, info.cluster, feature, log)
            except ClassifierError as exc:
                remaining.append(
                    ClusterInfo(
                        cluster=info.cluster,
                        hash=info.hash,
                        status=FeatureStatus.REMOVING,
                        failure_message=str(exc),
                    )
                )

        scope.set_cluster_info(remaining)
        if remaining:
            scope.set_matching_cluster_statuses(
                [MatchingClusterStatus(cluster_ref=info.cluster) for info in remaining]
            )
            raise NotConvergedError(
                f"still in the process of removing Classifier from {len(remaining)} clusters"
            )
