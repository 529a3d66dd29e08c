"""
tests/test_manager.py
─────────────────────
Test suite for deployer/control_plane/manager.py

What we are testing
───────────────────
  • WorkQueue de-duplicates waiting requests
  • a request added while it is processed comes back exactly once
  • delayed adds surface only when the clock reaches them
  • failed reconciles back off exponentially and reset on success
  • predicates and mappers decide what reaches a controller's queue

Test groups
───────────
Group 1: WorkQueue
Group 2: event fan-out
Group 3: retry policy
Group 4: background workers
"""

from __future__ import annotations

import threading
from typing import List, Optional

import pytest

from deployer.control_plane.manager import (
    BACKOFF_BASE_SECONDS,
    Controller,
    Manager,
    Request,
    Result,
    WorkQueue,
)
from deployer.shared.models import ConfigMap, KubeObject, ObjectMeta, Workload
from deployer.shared.store import InMemoryStore

A = Request("ns1", "a")
B = Request("ns1", "b")


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class _ScriptedReconciler:
    """Records every request; raises or requeues according to a script."""

    def __init__(self, script: Optional[List[object]] = None) -> None:
        self.seen: List[Request] = []
        self._script = list(script or [])

    def reconcile(self, request: Request) -> Result:
        self.seen.append(request)
        step = self._script.pop(0) if self._script else None
        if isinstance(step, Exception):
            raise step
        if isinstance(step, Result):
            return step
        return Result()


def _make_manager(store: InMemoryStore, clock, reconciler, **kwargs) -> Manager:
    manager = Manager(store, clock=clock)
    manager.add_controller(Controller(name="test", kind=Workload, reconciler=reconciler, **kwargs))
    return manager


def _workload(name: str, **labels: str) -> Workload:
    return Workload(metadata=ObjectMeta(name=name, namespace="ns1", labels=labels))


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: WorkQueue
# ─────────────────────────────────────────────────────────────────────────────

class TestWorkQueue:

    def test_waiting_request_is_deduplicated(self, clock) -> None:
        queue = WorkQueue(clock)
        queue.add(A)
        queue.add(A)
        queue.add(B)
        assert len(queue) == 2
        assert queue.pop_ready() == A
        assert queue.pop_ready() == B
        assert queue.pop_ready() is None

    def test_add_while_processing_requeues_once_after_done(self, clock) -> None:
        queue = WorkQueue(clock)
        queue.add(A)
        taken = queue.pop_ready()

        queue.add(A)
        queue.add(A)
        assert queue.pop_ready() is None

        queue.done(taken)
        assert queue.pop_ready() == A
        queue.done(A)
        assert queue.pop_ready() is None

    def test_delayed_add_waits_for_clock(self, clock) -> None:
        queue = WorkQueue(clock)
        queue.add_after(A, 10.0)
        assert queue.pop_ready() is None
        assert queue.pending_delayed() == 1

        clock.advance(9.9)
        assert queue.pop_ready() is None
        clock.advance(0.2)
        assert queue.pop_ready() == A
        assert queue.pending_delayed() == 0

    def test_zero_delay_is_immediate(self, clock) -> None:
        queue = WorkQueue(clock)
        queue.add_after(A, 0)
        assert queue.pop_ready() == A

    def test_get_times_out_when_empty(self, clock) -> None:
        assert WorkQueue(clock).get(timeout=0.01) is None

    def test_shutdown_releases_waiters_and_drops_adds(self, clock) -> None:
        queue = WorkQueue(clock)
        results: List[Optional[Request]] = []
        waiter = threading.Thread(target=lambda: results.append(queue.get()))
        waiter.start()
        queue.shutdown()
        waiter.join(2.0)
        assert results == [None]

        queue.add(A)
        assert len(queue) == 0


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: event fan-out
# ─────────────────────────────────────────────────────────────────────────────

class TestEventFanOut:

    def test_watched_kind_is_enqueued(self, store, clock) -> None:
        reconciler = _ScriptedReconciler()
        manager = _make_manager(store, clock, reconciler)
        store.create(_workload("a"))
        manager.run_until_idle()
        assert reconciler.seen == [A]

    def test_other_kinds_are_ignored(self, store, clock) -> None:
        reconciler = _ScriptedReconciler()
        manager = _make_manager(store, clock, reconciler)
        store.create(ConfigMap(metadata=ObjectMeta(name="a", namespace="ns1")))
        assert manager.run_until_idle() == 0

    def test_predicate_sees_old_and_new(self, store, clock) -> None:
        calls: List[tuple] = []

        def _only_labelled(old: Optional[KubeObject], new: KubeObject) -> bool:
            calls.append((old is None, new.metadata.labels.get("go")))
            return new.metadata.labels.get("go") == "yes"

        reconciler = _ScriptedReconciler()
        manager = _make_manager(store, clock, reconciler, predicate=_only_labelled)

        created = store.create(_workload("a"))
        created.metadata.labels["go"] = "yes"
        store.update(created)
        manager.run_until_idle()

        assert calls == [(True, None), (False, "yes")]
        assert reconciler.seen == [A]

    def test_mapper_redirects_request(self, store, clock) -> None:
        reconciler = _ScriptedReconciler()
        manager = _make_manager(store, clock, reconciler, mapper=lambda obj: Request("elsewhere", "target"))
        store.create(_workload("a"))
        manager.run_until_idle()
        assert reconciler.seen == [Request("elsewhere", "target")]

    def test_mapper_returning_none_drops_event(self, store, clock) -> None:
        reconciler = _ScriptedReconciler()
        manager = _make_manager(store, clock, reconciler, mapper=lambda obj: None)
        store.create(_workload("a"))
        assert manager.run_until_idle() == 0

    def test_enqueue_existing_covers_records_created_before_start(self, store, clock) -> None:
        store.create(_workload("a"))
        store.create(_workload("b"))
        reconciler = _ScriptedReconciler()
        manager = Manager(store, clock=clock)
        manager.add_controller(Controller(name="late", kind=Workload, reconciler=reconciler))

        manager.enqueue_existing()
        manager.run_until_idle()
        assert sorted(reconciler.seen) == [A, B]

    def test_unknown_queue_name_raises(self, store, clock) -> None:
        manager = _make_manager(store, clock, _ScriptedReconciler())
        with pytest.raises(KeyError):
            manager.queue_for("missing")


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: retry policy
# ─────────────────────────────────────────────────────────────────────────────

class TestRetryPolicy:

    def test_requeue_after_returns_request_later(self, store, clock) -> None:
        reconciler = _ScriptedReconciler([Result(requeue_after=10.0)])
        manager = _make_manager(store, clock, reconciler)
        store.create(_workload("a"))

        assert manager.run_until_idle() == 1
        assert manager.queue_for("test").pending_delayed() == 1
        clock.advance(10.0)
        assert manager.run_until_idle() == 1
        assert reconciler.seen == [A, A]

    def test_failures_back_off_exponentially(self, store, clock) -> None:
        boom = RuntimeError("boom")
        reconciler = _ScriptedReconciler([boom, boom, boom])
        manager = _make_manager(store, clock, reconciler)
        store.create(_workload("a"))

        manager.run_until_idle()
        assert len(reconciler.seen) == 1

        clock.advance(BACKOFF_BASE_SECONDS * 1.5)
        manager.run_until_idle()
        assert len(reconciler.seen) == 2

        # Second retry waits twice as long.
        clock.advance(BACKOFF_BASE_SECONDS * 1.5)
        assert manager.run_until_idle() == 0
        clock.advance(BACKOFF_BASE_SECONDS)
        manager.run_until_idle()
        assert len(reconciler.seen) == 3

    def test_success_resets_backoff(self, store, clock) -> None:
        boom = RuntimeError("boom")
        reconciler = _ScriptedReconciler([boom, None, boom])
        manager = _make_manager(store, clock, reconciler)
        created = store.create(_workload("a"))

        manager.run_until_idle()
        clock.advance(BACKOFF_BASE_SECONDS * 1.5)
        manager.run_until_idle()
        assert len(reconciler.seen) == 2

        created.metadata.labels["again"] = "1"
        store.update(created)
        manager.run_until_idle()
        assert len(reconciler.seen) == 3

        clock.advance(BACKOFF_BASE_SECONDS * 1.5)
        manager.run_until_idle()
        assert len(reconciler.seen) == 4

    def test_failures_are_logged(self, store, clock, caplog) -> None:
        manager = _make_manager(store, clock, _ScriptedReconciler([RuntimeError("kaput")]))
        store.create(_workload("a"))
        with caplog.at_level("ERROR", logger="deployer.control_plane.manager"):
            manager.run_until_idle()
        assert "kaput" in caplog.text


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: background workers
# ─────────────────────────────────────────────────────────────────────────────

class TestWorkers:

    def test_start_processes_existing_and_new_records(self, store) -> None:
        done = threading.Event()
        seen: List[Request] = []

        class _Signal:
            def reconcile(self, request: Request) -> Result:
                seen.append(request)
                if len(seen) >= 2:
                    done.set()
                return Result()

        store.create(_workload("a"))
        manager = Manager(store, workers=2)
        manager.add_controller(Controller(name="bg", kind=Workload, reconciler=_Signal()))
        manager.start()
        try:
            store.create(_workload("b"))
            assert done.wait(5.0)
        finally:
            manager.stop()
        assert set(seen) == {A, B}
