import threading
import time

import pytest

from clusterclassifier.api.cluster import ClusterType
from clusterclassifier.deployer import Deployer, RequestKey, ResultStatus

ARGS = ("default", "a", "acme-x", "Classifier", ClusterType.CAPI)


def _wait_for(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met in time")


@pytest.fixture
def deployer():
    d = Deployer(client="mgmt", worker_number=2)
    d.start()
    yield d
    d.stop()


def test_unknown_request_is_unavailable(deployer) -> None:
    assert deployer.get_result(*ARGS, False).status == ResultStatus.UNAVAILABLE
    assert not deployer.is_in_progress(*ARGS, False)


def test_successful_deploy_and_cleanup(deployer) -> None:
    seen = []

    def handler(client, key, options):
        seen.append((client, key, options))

    deployer.deploy(*ARGS, False, handler=handler, timeout=5.0, options={"k": "v"})
    _wait_for(lambda: deployer.get_result(*ARGS, False).status == ResultStatus.DEPLOYED)

    assert seen == [("mgmt", RequestKey(*ARGS, False), {"k": "v"})]

    deployer.deploy(*ARGS, True, handler=handler, timeout=5.0)
    _wait_for(lambda: deployer.get_result(*ARGS, True).status == ResultStatus.REMOVED)
    # deploy and cleanup are distinct requests
    assert deployer.get_result(*ARGS, False).status == ResultStatus.DEPLOYED


def test_handler_error_is_recorded(deployer) -> None:
    def handler(client, key, options):
        raise RuntimeError("cluster unreachable")

    deployer.deploy(*ARGS, False, handler=handler, timeout=5.0)
    _wait_for(lambda: deployer.get_result(*ARGS, False).status == ResultStatus.FAILED)

    assert deployer.get_result(*ARGS, False).error == "cluster unreachable"


def test_timeout_marks_request_failed(deployer) -> None:
    release = threading.Event()

    def handler(client, key, options):
        release.wait(5.0)

    deployer.deploy(*ARGS, False, handler=handler, timeout=0.1)
    _wait_for(lambda: deployer.get_result(*ARGS, False).status == ResultStatus.FAILED)
    release.set()

    assert "timed out" in deployer.get_result(*ARGS, False).error


def test_timed_out_handler_keeps_key_in_progress_until_it_returns(deployer) -> None:
    release = threading.Event()
    exited = threading.Event()

    def stuck(client, key, options):
        release.wait(5.0)
        exited.set()

    deployer.deploy(*ARGS, False, handler=stuck, timeout=0.1)
    _wait_for(lambda: deployer.get_result(*ARGS, False).status == ResultStatus.FAILED)

    # still writing to the cluster, so neither a teardown nor a redeploy may start
    assert deployer.is_in_progress(*ARGS, False)
    assert "timed out" in deployer.get_result(*ARGS, False).error

    runs = []

    def quick(client, key, options):
        runs.append(exited.is_set())

    deployer.deploy(*ARGS, False, handler=quick, timeout=5.0)
    time.sleep(0.2)
    assert runs == []

    release.set()
    _wait_for(lambda: deployer.get_result(*ARGS, False).status == ResultStatus.DEPLOYED)
    assert runs == [True]
    assert not deployer.is_in_progress(*ARGS, False)


def test_timed_out_handler_releases_key_when_it_returns(deployer) -> None:
    release = threading.Event()

    def stuck(client, key, options):
        release.wait(5.0)

    deployer.deploy(*ARGS, False, handler=stuck, timeout=0.1)
    _wait_for(lambda: deployer.get_result(*ARGS, False).status == ResultStatus.FAILED)
    release.set()

    _wait_for(lambda: not deployer.is_in_progress(*ARGS, False))
    assert deployer.get_result(*ARGS, False).status == ResultStatus.FAILED


def test_request_while_running_runs_again(deployer) -> None:
    started = threading.Event()
    release = threading.Event()
    runs = []

    def handler(client, key, options):
        runs.append(options.get("n"))
        started.set()
        release.wait(5.0)

    deployer.deploy(*ARGS, False, handler=handler, timeout=5.0, options={"n": 1})
    assert started.wait(5.0)
    assert deployer.is_in_progress(*ARGS, False)
    assert deployer.get_result(*ARGS, False).status == ResultStatus.IN_PROGRESS

    deployer.deploy(*ARGS, False, handler=handler, timeout=5.0, options={"n": 2})
    deployer.deploy(*ARGS, False, handler=handler, timeout=5.0, options={"n": 3})
    release.set()

    _wait_for(lambda: deployer.get_result(*ARGS, False).status == ResultStatus.DEPLOYED)
    # at most one execution per key at a time, newest options win
    assert runs == [1, 3]


def test_new_request_clears_stale_result(deployer) -> None:
    def fail(client, key, options):
        raise RuntimeError("boom")

    deployer.deploy(*ARGS, False, handler=fail, timeout=5.0)
    _wait_for(lambda: deployer.get_result(*ARGS, False).status == ResultStatus.FAILED)

    release = threading.Event()

    def slow(client, key, options):
        release.wait(5.0)

    deployer.deploy(*ARGS, False, handler=slow, timeout=5.0)
    assert deployer.get_result(*ARGS, False).status == ResultStatus.IN_PROGRESS
    release.set()
    _wait_for(lambda: deployer.get_result(*ARGS, False).status == ResultStatus.DEPLOYED)


def test_worker_number_floor() -> None:
    assert Deployer(client=None, worker_number=0).worker_number == 1
