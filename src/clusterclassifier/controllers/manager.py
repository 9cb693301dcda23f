"""Event plumbing that drives the reconciler.

Informers poll the API and turn differences into typed events. Events go
through a bounded queue to a single dispatcher that applies predicates and map
functions, which only look at memory. The resulting reconcile requests land
in a de-duplicating work queue served by a fixed pool of workers.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from clusterclassifier.api.meta import Resource
from clusterclassifier.core.errors import ApiError
from clusterclassifier.logsettings import with_values

logger = logging.getLogger(__name__)

DEFAULT_EVENT_QUEUE_SIZE = 1024
DEFAULT_ERROR_BACKOFF = 5.0


class EventType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class Event:
    type: EventType
    obj: Resource
    old: Resource | None = None


@dataclass
class Result:
    requeue_after: float | None = None


class WorkQueue:
    """FIFO of reconcile keys.

    A key is queued at most once. A key being processed is not handed to a
    second worker; adding it meanwhile schedules one more run after ``done``.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queue: list[str] = []
        self._queued: set[str] = set()
        self._processing: set[str] = set()
        self._dirty: set[str] = set()
        self._waiting: list[tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, key: str) -> None:
        with self._cond:
            if self._shutdown:
                return
            if key in self._processing:
                self._dirty.add(key)
                return
            if key in self._queued:
                return
            self._queued.add(key)
            self._queue.append(key)
            self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            heapq.heappush(self._waiting, (time.monotonic() + delay, next(self._seq), key))
            self._cond.notify()

    def _promote_ready(self) -> float | None:
        # caller holds the lock; returns seconds until the next delayed key
        now = time.monotonic()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            if key in self._processing:
                self._dirty.add(key)
            elif key not in self._queued:
                self._queued.add(key)
                self._queue.append(key)
        if self._waiting:
            return max(0.0, self._waiting[0][0] - now)
        return None

    def get(self, timeout: float | None = None) -> str | None:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._shutdown:
                    return None
                next_ready = self._promote_ready()
                if self._queue:
                    key = self._queue.pop(0)
                    self._queued.discard(key)
                    self._processing.add(key)
                    return key
                wait = next_ready
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                if key not in self._queued:
                    self._queued.add(key)
                    self._queue.append(key)
                    self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()


class Informer:
    """Poll-based replacement for a watch on one kind."""

    def __init__(self, client, kind: type[Resource], labels: dict[str, str] | None = None) -> None:
        self.client = client
        self.kind = kind
        self.labels = labels
        self._cache: dict[tuple[str, str], Resource] = {}

    def poll(self) -> list[Event]:
        items = self.client.list(self.kind, labels=self.labels)
        current = {(item.namespace, item.name): item for item in items}
        events: list[Event] = []
        for key, item in current.items():
            old = self._cache.get(key)
            if old is None:
                events.append(Event(EventType.CREATE, item))
            elif old.metadata.resource_version != item.metadata.resource_version:
                events.append(Event(EventType.UPDATE, item, old))
        for key, old in self._cache.items():
            if key not in current:
                events.append(Event(EventType.DELETE, old))
        self._cache = current
        return events


Predicate = Callable[[Event], bool]
MapFunc = Callable[[Event], list[str]]


@dataclass
class Watch:
    kind: type[Resource]
    predicate: Predicate
    mapper: MapFunc
    name: str = ""


@dataclass
class Manager:
    client: object
    concurrent_reconciles: int = 10
    resync_interval: float = 10.0
    event_queue_size: int = DEFAULT_EVENT_QUEUE_SIZE
    error_backoff: float = DEFAULT_ERROR_BACKOFF
    work_queue: WorkQueue = field(default_factory=WorkQueue)
    watches: list[Watch] = field(default_factory=list)
    informers: dict[type, Informer] = field(default_factory=dict)
    reconcile: Callable[[str], Result] | None = None
    _events: queue.Queue = field(init=False, repr=False)
    _threads: list[threading.Thread] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        self._events = queue.Queue(maxsize=self.event_queue_size)

    def watch(
        self,
        kind: type[Resource],
        predicate: Predicate,
        mapper: MapFunc,
        labels: dict[str, str] | None = None,
        name: str = "",
    ) -> None:
        if kind not in self.informers:
            self.informers[kind] = Informer(self.client, kind, labels)
        self.watches.append(Watch(kind=kind, predicate=predicate, mapper=mapper, name=name or kind.KIND))

    def poll_once(self, stop_event: threading.Event | None = None) -> int:
        """List every watched kind once and queue the resulting events."""
        queued = 0
        for kind, informer in self.informers.items():
            try:
                events = informer.poll()
            except ApiError as exc:
                logger.info("failed to list %s: %s", kind.KIND, exc)
                continue
            for event in events:
                while True:
                    if stop_event is not None and stop_event.is_set():
                        return queued
                    try:
                        self._events.put(event, timeout=1.0)
                        break
                    except queue.Full:
                        logger.debug("event queue full, waiting")
                queued += 1
        return queued

    def dispatch(self, event: Event) -> list[str]:
        """Apply predicates and map functions to one event and enqueue the requests."""
        keys: list[str] = []
        for watch in self.watches:
            if not isinstance(event.obj, watch.kind):
                continue
            if not watch.predicate(event):
                continue
            for key in watch.mapper(event):
                if key not in keys:
                    keys.append(key)
        for key in keys:
            self.work_queue.add(key)
        return keys

    def drain_events(self) -> int:
        count = 0
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return count
            self.dispatch(event)
            count += 1

    def process_next(self, timeout: float | None = None) -> bool:
        """Run one reconcile request. Returns False when nothing was processed."""
        key = self.work_queue.get(timeout=timeout)
        if key is None:
            return False
        log = with_values(logger, classifier=key)
        try:
            result = self.reconcile(key) if self.reconcile is not None else Result()
        except Exception as exc:
            log.exception("reconcile failed: %s", exc)
            self.work_queue.done(key)
            self.work_queue.add_after(key, self.error_backoff)
            return True
        self.work_queue.done(key)
        if result is not None and result.requeue_after:
            self.work_queue.add_after(key, result.requeue_after)
        return True

    def _poller(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self.poll_once(stop_event)
            stop_event.wait(self.resync_interval)

    def _dispatcher(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                event = self._events.get(timeout=0.5)
            except queue.Empty:
                continue
            self.dispatch(event)

    def _worker(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self.process_next(timeout=0.5)

    def start(self, stop_event: threading.Event) -> None:
        if self.reconcile is None:
            raise ValueError("manager has no reconciler")
        targets = [("informers", self._poller), ("dispatcher", self._dispatcher)]
        targets += [(f"reconcile-worker-{index}", self._worker) for index in range(max(1, self.concurrent_reconciles))]
        for name, target in targets:
            thread = threading.Thread(target=target, args=(stop_event,), name=name, daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: float = 5.0) -> None:
        self.work_queue.shutdown()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
