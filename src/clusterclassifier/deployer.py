"""Asynchronous deploy/undeploy request queue.

Reconcilers hand requests to the deployer and return immediately. A fixed
pool of worker threads runs the handlers; outcomes are kept in a result store
that reconcilers poll on their next pass.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from clusterclassifier.api.cluster import ClusterType
from clusterclassifier.logsettings import with_values

logger = logging.getLogger(__name__)


class ResultStatus(str, Enum):
    DEPLOYED = "Deployed"
    FAILED = "Failed"
    IN_PROGRESS = "InProgress"
    REMOVED = "Removed"
    UNAVAILABLE = "Unavailable"


@dataclass(frozen=True)
class RequestKey:
    cluster_namespace: str
    cluster_name: str
    applicant: str
    feature_id: str
    cluster_type: ClusterType
    cleanup: bool


@dataclass
class Result:
    status: ResultStatus
    error: str | None = None


# handler(management_client, key, options); raising marks the request failed
RequestHandler = Callable[[object, RequestKey, dict], None]


@dataclass
class _Request:
    handler: RequestHandler
    timeout: float
    options: dict = field(default_factory=dict)


class Deployer:
    def __init__(self, client: object, worker_number: int = 20) -> None:
        self.client = client
        self.worker_number = max(1, int(worker_number))
        self._cond = threading.Condition()
        self._jobs: deque[RequestKey] = deque()
        self._requests: dict[RequestKey, _Request] = {}
        self._in_progress: set[RequestKey] = set()
        self._dirty: set[RequestKey] = set()
        # keys whose handler outlived its timeout and is still running
        self._overrun: set[RequestKey] = set()
        self._results: dict[RequestKey, Result] = {}
        self._threads: list[threading.Thread] = []
        self._stopped = False

    def start(self) -> None:
        with self._cond:
            if self._threads:
                return
            self._stopped = False
            for index in range(self.worker_number):
                thread = threading.Thread(
                    target=self._worker,
                    name=f"deployer-worker-{index}",
                    daemon=True,
                )
                self._threads.append(thread)
        for thread in self._threads:
            thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        with self._cond:
            self._stopped = True
            self._cond.notify_all()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def deploy(
        self,
        cluster_namespace: str,
        cluster_name: str,
        applicant: str,
        feature_id: str,
        cluster_type: ClusterType,
        cleanup: bool,
        handler: RequestHandler,
        timeout: float,
        options: dict | None = None,
    ) -> None:
        """Queue a request. Returns immediately.

        A request for a key that is currently running, including a handler
        that outlived its timeout, is remembered and run again once the
        current run ends; the newest handler and options win.
        """
        key = RequestKey(cluster_namespace, cluster_name, applicant, feature_id, ClusterType(cluster_type), cleanup)
        request = _Request(handler=handler, timeout=timeout, options=dict(options or {}))
        with self._cond:
            self._requests[key] = request
            if key in self._in_progress or key in self._overrun:
                self._dirty.add(key)
                return
            self._results.pop(key, None)
            if key in self._jobs:
                return
            self._jobs.append(key)
            self._cond.notify()

    def is_in_progress(
        self,
        cluster_namespace: str,
        cluster_name: str,
        applicant: str,
        feature_id: str,
        cluster_type: ClusterType,
        cleanup: bool,
    ) -> bool:
        """True while the request is queued or its handler is still running."""
        key = RequestKey(cluster_namespace, cluster_name, applicant, feature_id, ClusterType(cluster_type), cleanup)
        with self._cond:
            return key in self._in_progress or key in self._jobs or key in self._overrun

    def get_result(
        self,
        cluster_namespace: str,
        cluster_name: str,
        applicant: str,
        feature_id: str,
        cluster_type: ClusterType,
        cleanup: bool,
    ) -> Result:
        key = RequestKey(cluster_namespace, cluster_name, applicant, feature_id, ClusterType(cluster_type), cleanup)
        with self._cond:
            if key in self._in_progress or key in self._jobs:
                return Result(ResultStatus.IN_PROGRESS)
            result = self._results.get(key)
            if result is None:
                return Result(ResultStatus.UNAVAILABLE)
            return Result(result.status, result.error)

    def _next_job(self) -> tuple[RequestKey, _Request] | None:
        with self._cond:
            while not self._jobs and not self._stopped:
                self._cond.wait()
            if self._stopped:
                return None
            key = self._jobs.popleft()
            self._in_progress.add(key)
            return key, self._requests[key]

    def _requeue_if_dirty(self, key: RequestKey) -> bool:
        # caller holds self._cond
        if key not in self._dirty:
            return False
        self._dirty.discard(key)
        self._results.pop(key, None)
        self._jobs.append(key)
        self._cond.notify()
        return True

    def _worker(self) -> None:
        while True:
            job = self._next_job()
            if job is None:
                return
            key, request = job
            result = self._run(key, request)
            with self._cond:
                self._in_progress.discard(key)
                if key in self._overrun:
                    # the handler outlived its timeout and still owns the key
                    self._results[key] = result
                    continue
                if not self._requeue_if_dirty(key):
                    self._results[key] = result
                    self._requests.pop(key, None)

    def _handler_exited(self, key: RequestKey) -> None:
        with self._cond:
            if key not in self._overrun:
                return
            self._overrun.discard(key)
            if key in self._in_progress:
                return
            if not self._requeue_if_dirty(key):
                self._requests.pop(key, None)

    def _run(self, key: RequestKey, request: _Request) -> Result:
        log = with_values(
            logger,
            cluster=f"{key.cluster_namespace}/{key.cluster_name}",
            applicant=key.applicant,
            feature=key.feature_id,
            cleanup=key.cleanup,
        )
        outcome: dict[str, BaseException | None] = {"error": None}
        done = threading.Event()

        def target() -> None:
            try:
                request.handler(self.client, key, request.options)
            except Exception as exc:
                outcome["error"] = exc
            finally:
                done.set()
                self._handler_exited(key)

        started = time.monotonic()
        runner = threading.Thread(target=target, name="deployer-handler", daemon=True)
        runner.start()
        runner.join(request.timeout)
        with self._cond:
            timed_out = not done.is_set()
            if timed_out:
                self._overrun.add(key)
        if timed_out:
            log.info("request timed out after %.0fs", request.timeout)
            return Result(ResultStatus.FAILED, f"request timed out after {request.timeout:.0f}s")

        error = outcome["error"]
        if error is not None:
            log.info("request failed: %s", error)
            return Result(ResultStatus.FAILED, str(error) or error.__class__.__name__)
        log.debug("request completed in %.2fs", time.monotonic() - started)
        if key.cleanup:
            return Result(ResultStatus.REMOVED)
        return Result(ResultStatus.DEPLOYED)
