import copy

from fakes import make_classifier, make_cluster, make_report

from clusterclassifier.api.cluster import CLUSTER_NAME_LABEL, PAUSED_ANNOTATION, Machine, SveltosCluster
from clusterclassifier.api.meta import ObjectMeta
from clusterclassifier.api.report import Secret
from clusterclassifier.controllers.manager import Event, EventType
from clusterclassifier.controllers.predicates import (
    classifier_predicate,
    classifier_report_predicate,
    cluster_predicates,
    machine_predicates,
    secret_predicates,
)


def _update(old, new) -> Event:
    return Event(EventType.UPDATE, new, old)


def test_cluster_create_ignores_paused() -> None:
    predicate = cluster_predicates()
    assert predicate(Event(EventType.CREATE, make_cluster("default", "a")))
    assert not predicate(Event(EventType.CREATE, make_cluster("default", "a", paused=True)))
    paused = make_cluster("default", "a")
    paused.metadata.annotations[PAUSED_ANNOTATION] = "true"
    assert not predicate(Event(EventType.CREATE, paused))


def test_cluster_update_triggers() -> None:
    predicate = cluster_predicates()
    old = make_cluster("default", "a", paused=True)
    assert predicate(_update(old, make_cluster("default", "a")))

    old = make_cluster("default", "a", ready=False)
    assert predicate(_update(old, make_cluster("default", "a", ready=True)))

    old = make_cluster("default", "a")
    assert predicate(_update(old, make_cluster("default", "a", labels={"env": "prod"})))

    old = make_cluster("default", "a")
    new = make_cluster("default", "a")
    new.infrastructure_ready = False
    assert predicate(_update(old, new))

    # pausing or an unrelated change does not
    assert not predicate(_update(make_cluster("default", "a"), make_cluster("default", "a", paused=True)))
    assert not predicate(_update(make_cluster("default", "a"), make_cluster("default", "a")))


def test_sveltos_cluster_readiness_change() -> None:
    predicate = cluster_predicates()
    old = SveltosCluster(metadata=ObjectMeta(name="s", namespace="fleet"), ready=False)
    new = SveltosCluster(metadata=ObjectMeta(name="s", namespace="fleet"), ready=True)
    assert predicate(_update(old, new))
    assert predicate(Event(EventType.DELETE, new))


def _machine(phase: str) -> Machine:
    return Machine(metadata=ObjectMeta(name="m", namespace="default", labels={CLUSTER_NAME_LABEL: "a"}), phase=phase)


def test_machine_predicates() -> None:
    predicate = machine_predicates()
    assert predicate(Event(EventType.CREATE, _machine("Running")))
    assert not predicate(Event(EventType.CREATE, _machine("Provisioning")))
    assert predicate(_update(_machine("Provisioning"), _machine("Running")))
    assert not predicate(_update(_machine("Running"), _machine("Running")))
    assert not predicate(_update(_machine("Running"), _machine("Deleting")))
    assert not predicate(Event(EventType.DELETE, _machine("Running")))


def test_report_predicate_fires_on_match_change_only() -> None:
    predicate = classifier_report_predicate()
    old = make_report("acme-x", "default", "a", match=False)
    assert predicate(_update(old, make_report("acme-x", "default", "a", match=True)))
    assert not predicate(_update(old, make_report("acme-x", "default", "a", match=False)))
    assert predicate(Event(EventType.DELETE, old))


def test_classifier_predicate() -> None:
    predicate = classifier_predicate()
    old = make_classifier("acme-x", {"issuer": "acme-x"})

    same = copy.deepcopy(old)
    same.metadata.annotations["note"] = "status-only change"
    assert not predicate(_update(old, same))

    changed = make_classifier("acme-x", {"issuer": "acme-y"})
    assert predicate(_update(old, changed))

    deleting = copy.deepcopy(old)
    deleting.metadata.deletion_timestamp = "2024-01-01T00:00:00Z"
    assert predicate(_update(old, deleting))

    # a missing previous object is treated as a change
    assert predicate(Event(EventType.UPDATE, old))


def test_secret_predicates_only_watch_kubeconfigs() -> None:
    predicate = secret_predicates()
    kubeconfig = Secret(metadata=ObjectMeta(name="a-kubeconfig", namespace="default"), data={"value": b"v1"})
    rotated = Secret(metadata=ObjectMeta(name="a-kubeconfig", namespace="default"), data={"value": b"v2"})
    token = Secret(metadata=ObjectMeta(name="token", namespace="default"), data={"value": b"v1"})

    assert predicate(Event(EventType.CREATE, kubeconfig))
    assert not predicate(Event(EventType.CREATE, token))
    assert predicate(_update(kubeconfig, rotated))
    assert not predicate(_update(kubeconfig, kubeconfig))
    assert predicate(Event(EventType.DELETE, kubeconfig))
