"""
deployer/control_plane/manager.py
─────────────────────────────────
The reconcile substrate: work queues, controllers and the manager that
connects them to the store's watch feed.

What this is
────────────
Each Controller pairs a reconciler with the record kind it watches and a
pure predicate deciding which watch events are worth a reconcile. The
Manager subscribes to the store once and fans every committed change out to
the controllers watching that kind:

    store.watch ──► predicate(old, new) ──► mapper(obj) ──► WorkQueue
                                                              │
                               worker thread(s) ◄─────────────┘
                                      │
                          reconciler.reconcile(request) → Result

Queue guarantees
────────────────
  • The same request is never processed by two workers at once.
  • Adding a request that is already waiting is a no-op.
  • Adding a request that is being processed marks it dirty; it is re-queued
    when the current pass finishes.

Retry policy
────────────
  • Result(requeue_after=s) → the request comes back after s seconds. Used for
    expected waits (no decision yet, optimistic-concurrency conflict).
  • An exception → logged, then retried with per-request exponential backoff
    (BACKOFF_BASE_SECONDS doubling up to BACKOFF_MAX_SECONDS). The next
    successful pass resets it.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Protocol, Set, Tuple, Type

from deployer.shared.models import KubeObject
from deployer.shared.store import ObjectStore, WatchEvent

logger = logging.getLogger(__name__)

# ── Retry parameters ───────────────────────────────────────────────────────────

BACKOFF_BASE_SECONDS: float = 0.005
"""First retry delay after a failed reconcile."""

BACKOFF_MAX_SECONDS: float = 1000.0
"""Upper bound on the retry delay. Reached after ~18 consecutive failures."""

WORKER_POLL_SECONDS: float = 0.1
"""How often an idle worker wakes to check for shutdown."""


@dataclass(frozen=True, order=True)
class Request:
    """Identity of the record to reconcile."""
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def for_object(cls, obj: KubeObject) -> "Request":
        return cls(obj.metadata.namespace, obj.metadata.name)


@dataclass(frozen=True)
class Result:
    """Outcome of a successful reconcile. requeue_after=None means done."""
    requeue_after: Optional[float] = None


class Reconciler(Protocol):
    def reconcile(self, request: Request) -> Result: ...


Predicate = Callable[[Optional[KubeObject], KubeObject], bool]
Mapper = Callable[[KubeObject], Optional[Request]]


def _always(old: Optional[KubeObject], new: KubeObject) -> bool:
    return True


@dataclass
class Controller:
    """
    One reconciler plus the events that feed it.

    kind       → record class whose watch events this controller receives
    predicate  → should_enqueue(old, new); old is None for ADDED events
    mapper     → record → request; defaults to the record's own key. Lets a
                 controller watch one kind and reconcile another.
    """
    name: str
    kind: Type[KubeObject]
    reconciler: Reconciler
    predicate: Predicate = _always
    mapper: Optional[Mapper] = None

    def request_for(self, obj: KubeObject) -> Optional[Request]:
        if self.mapper is not None:
            return self.mapper(obj)
        return Request.for_object(obj)


class WorkQueue:
    """
    De-duplicating FIFO with delayed adds.

    ``clock`` is injectable so tests can move time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[Request] = deque()
        self._dirty: Set[Request] = set()
        self._processing: Set[Request] = set()
        self._delayed: List[Tuple[float, int, Request]] = []
        self._seq = itertools.count()
        self._shutdown = False

    def add(self, request: Request) -> None:
        with self._cond:
            self._add_locked(request)

    def add_after(self, request: Request, delay: float) -> None:
        if delay <= 0:
            self.add(request)
            return
        with self._cond:
            heapq.heappush(self._delayed, (self._clock() + delay, next(self._seq), request))
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Request]:
        """Block until a request is ready. Returns None on timeout or shutdown."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                self._promote_due_locked()
                if self._shutdown:
                    return None
                if self._queue:
                    return self._take_locked()
                wait = self._next_due_locked()
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def pop_ready(self) -> Optional[Request]:
        """Non-blocking get. Used by synchronous processing."""
        with self._cond:
            self._promote_due_locked()
            if self._queue:
                return self._take_locked()
            return None

    def done(self, request: Request) -> None:
        """Mark ``request`` processed. Re-queues it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(request)
            if request in self._dirty:
                self._queue.append(request)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._delayed)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    # ── Internal (caller holds the lock) ─────────────────────────────────────

    def _add_locked(self, request: Request) -> None:
        if self._shutdown or request in self._dirty:
            return
        self._dirty.add(request)
        if request not in self._processing:
            self._queue.append(request)
            self._cond.notify()

    def _take_locked(self) -> Request:
        request = self._queue.popleft()
        self._processing.add(request)
        self._dirty.discard(request)
        return request

    def _promote_due_locked(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, request = heapq.heappop(self._delayed)
            self._add_locked(request)

    def _next_due_locked(self) -> Optional[float]:
        if not self._delayed:
            return None
        return max(0.0, self._delayed[0][0] - self._clock())


@dataclass
class _Registration:
    controller: Controller
    queue: WorkQueue
    failures: Dict[Request, int] = field(default_factory=dict)


class Manager:
    """
    Runs a set of controllers against one store.

    Two ways to drive it:
      start()/stop()     → background worker threads, for real deployments
      run_until_idle()   → synchronous, deterministic, for tests
    """

    def __init__(
        self,
        store: ObjectStore,
        workers: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._workers = workers
        self._clock = clock
        self._registrations: List[_Registration] = []
        self._threads: List[threading.Thread] = []
        self._stopping = threading.Event()
        self._cancel_watch = store.watch(self._on_event)

    def add_controller(self, controller: Controller) -> None:
        self._registrations.append(_Registration(controller, WorkQueue(self._clock)))
        logger.info("Registered controller %s (kind=%s)", controller.name, controller.kind.KIND)

    def queue_for(self, name: str) -> WorkQueue:
        for reg in self._registrations:
            if reg.controller.name == name:
                return reg.queue
        raise KeyError(name)

    # ── Event intake ──────────────────────────────────────────────────────────

    def _on_event(self, event: WatchEvent) -> None:
        for reg in self._registrations:
            controller = reg.controller
            if event.obj.KIND != controller.kind.KIND:
                continue
            if not controller.predicate(event.old, event.obj):
                continue
            request = controller.request_for(event.obj)
            if request is not None:
                reg.queue.add(request)

    def enqueue_existing(self) -> None:
        """Queue every existing record that passes each controller's predicate."""
        for reg in self._registrations:
            for obj in self._store.list(reg.controller.kind):
                if not reg.controller.predicate(None, obj):
                    continue
                request = reg.controller.request_for(obj)
                if request is not None:
                    reg.queue.add(request)

    # ── Processing ────────────────────────────────────────────────────────────

    def _process(self, reg: _Registration, request: Request) -> None:
        controller = reg.controller
        try:
            result = controller.reconciler.reconcile(request)
        except Exception:
            attempts = reg.failures.get(request, 0)
            reg.failures[request] = attempts + 1
            delay = min(BACKOFF_BASE_SECONDS * (2 ** attempts), BACKOFF_MAX_SECONDS)
            logger.exception("[%s] reconcile %s failed (attempt %d); retrying in %.3fs",
                             controller.name, request, attempts + 1, delay)
            reg.queue.add_after(request, delay)
        else:
            reg.failures.pop(request, None)
            if result is not None and result.requeue_after:
                logger.debug("[%s] %s requeued after %.1fs",
                             controller.name, request, result.requeue_after)
                reg.queue.add_after(request, result.requeue_after)
        finally:
            reg.queue.done(request)

    def run_until_idle(self, max_iterations: int = 1000) -> int:
        """
        Process ready requests on every controller until none are left.

        Delayed requests stay queued until the clock reaches them. Returns
        the number of reconciles run.
        """
        processed = 0
        while processed < max_iterations:
            progressed = False
            for reg in self._registrations:
                request = reg.queue.pop_ready()
                if request is None:
                    continue
                self._process(reg, request)
                processed += 1
                progressed = True
            if not progressed:
                break
        return processed

    def start(self) -> None:
        self._stopping.clear()
        self.enqueue_existing()
        for reg in self._registrations:
            for i in range(self._workers):
                thread = threading.Thread(
                    target=self._worker,
                    args=(reg,),
                    name=f"{reg.controller.name}-worker-{i}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        logger.info("Manager started: %d controller(s), %d worker(s) each",
                    len(self._registrations), self._workers)

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        for reg in self._registrations:
            reg.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()
        self._cancel_watch()
        logger.info("Manager stopped")

    def _worker(self, reg: _Registration) -> None:
        while not self._stopping.is_set():
            request = reg.queue.get(timeout=WORKER_POLL_SECONDS)
            if request is None:
                continue
            self._process(reg, request)
