import threading

from fakes import make_classifier, make_cluster

from clusterclassifier.api.classifier import Classifier
from clusterclassifier.api.cluster import Cluster
from clusterclassifier.controllers.manager import Event, EventType, Informer, Manager, Result, WorkQueue
from clusterclassifier.core.errors import ApiError


def test_work_queue_deduplicates() -> None:
    q = WorkQueue()
    q.add("a")
    q.add("a")
    q.add("b")
    assert len(q) == 2
    assert q.get(timeout=0) == "a"
    assert q.get(timeout=0) == "b"
    assert q.get(timeout=0) is None


def test_key_added_while_processing_runs_again_after_done() -> None:
    q = WorkQueue()
    q.add("a")
    assert q.get(timeout=0) == "a"

    q.add("a")
    # not handed out twice concurrently
    assert q.get(timeout=0) is None

    q.done("a")
    assert q.get(timeout=0) == "a"
    q.done("a")
    assert q.get(timeout=0) is None


def test_add_after_delays_key() -> None:
    q = WorkQueue()
    q.add_after("a", 0.05)
    assert q.get(timeout=0) is None
    assert q.get(timeout=2.0) == "a"


def test_shutdown_unblocks_get() -> None:
    q = WorkQueue()
    result = []
    t = threading.Thread(target=lambda: result.append(q.get()))
    t.start()
    q.shutdown()
    t.join(2.0)
    assert result == [None]


def test_informer_diffs_by_resource_version(client) -> None:
    informer = Informer(client, Cluster)
    client.add(make_cluster("default", "a"))
    client.add(make_cluster("default", "b"))

    assert [e.type for e in informer.poll()] == [EventType.CREATE, EventType.CREATE]
    assert informer.poll() == []

    cluster = client.get(Cluster, "a", "default")
    cluster.metadata.labels["env"] = "prod"
    client.update(cluster)
    client.delete(Cluster, "b", "default")

    events = informer.poll()
    assert [(e.type, e.obj.name) for e in events] == [(EventType.UPDATE, "a"), (EventType.DELETE, "b")]
    assert events[0].old.metadata.labels == {}


def test_dispatch_applies_kind_predicate_and_mapper(client) -> None:
    manager = Manager(client)
    manager.watch(Cluster, lambda e: e.type != EventType.DELETE, lambda e: ["p1", "p2"])
    manager.watch(Cluster, lambda e: True, lambda e: ["p2", "p3"])
    manager.watch(Classifier, lambda e: True, lambda e: [e.obj.name])

    keys = manager.dispatch(Event(EventType.CREATE, make_cluster("default", "a")))
    assert keys == ["p1", "p2", "p3"]
    assert manager.dispatch(Event(EventType.DELETE, make_cluster("default", "a"))) == ["p2", "p3"]
    assert manager.dispatch(Event(EventType.CREATE, make_classifier("c"))) == ["c"]
    assert len(manager.work_queue) == 4


def test_poll_once_and_drain(client) -> None:
    manager = Manager(client)
    manager.watch(Classifier, lambda e: True, lambda e: [e.obj.name])
    client.add(make_classifier("c1"))
    client.add(make_classifier("c2"))

    assert manager.poll_once() == 2
    assert manager.drain_events() == 2
    assert manager.work_queue.get(timeout=0) == "c1"


def test_poll_once_skips_failing_informer(client) -> None:
    class Broken:
        def list(self, kind, namespace=None, labels=None):
            raise ApiError("boom")

    manager = Manager(Broken())
    manager.watch(Classifier, lambda e: True, lambda e: [])
    assert manager.poll_once() == 0


def test_process_next_requeues_on_result_and_error(client) -> None:
    calls = []

    def reconcile(key: str) -> Result:
        calls.append(key)
        if key == "bad":
            raise RuntimeError("boom")
        return Result(requeue_after=0.05)

    manager = Manager(client, error_backoff=0.05, reconcile=reconcile)
    manager.work_queue.add("good")
    manager.work_queue.add("bad")

    assert manager.process_next(timeout=0)
    assert manager.process_next(timeout=0)
    assert calls == ["good", "bad"]
    assert manager.process_next(timeout=0) is False

    assert manager.process_next(timeout=2.0)
    assert manager.process_next(timeout=2.0)
    assert sorted(calls[2:]) == ["bad", "good"]


def test_start_runs_reconciles_until_stopped(client) -> None:
    seen = []
    done = threading.Event()

    def reconcile(key: str) -> Result:
        seen.append(key)
        done.set()
        return Result()

    client.add(make_classifier("c1"))
    manager = Manager(client, concurrent_reconciles=2, resync_interval=0.05, reconcile=reconcile)
    manager.watch(Classifier, lambda e: True, lambda e: [e.obj.name])
    stop = threading.Event()
    manager.start(stop)
    try:
        assert done.wait(5.0)
    finally:
        stop.set()
        manager.stop()
    assert seen[0] == "c1"
