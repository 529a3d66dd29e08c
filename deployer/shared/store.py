"""
deployer/shared/store.py
────────────────────────
The declarative record store every component reads and writes through.

What this is
------------
A small keyed document store with the semantics the reconcilers rely on:

  • Records are keyed by (kind, namespace, name).
  • Every write bumps a monotonically increasing resourceVersion. A write that
    carries a stale version fails with ConflictError (optimistic concurrency).
  • update() replaces metadata and body but never status; update_status()
    replaces status only. Two writers can therefore own the two halves of a
    record without clobbering each other.
  • delete() on a record with finalizers only sets deletionTimestamp. The
    record disappears when an update removes the last finalizer.
  • Subscribers registered with watch() are told about every ADDED, MODIFIED
    and DELETED record, after the write has committed.

Integration contract
--------------------
InMemoryStore is the backend for tests and single-process runs.
deployer.kube.store.KubernetesStore implements the same ObjectStore protocol
against a real API server. CachedReader wraps either one and serves reads
from a push-refreshed local cache.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Set, Tuple, Type, TypeVar

from deployer.shared.errors import AlreadyExistsError, ConflictError, NotFoundError
from deployer.shared.models import KubeObject

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=KubeObject)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    """One committed change. ``old`` is None for ADDED."""
    type: str
    obj: KubeObject
    old: Optional[KubeObject] = None


WatchCallback = Callable[[WatchEvent], None]


class ObjectStore(Protocol):
    """Operations the control plane needs from a record store."""

    def get(self, cls: Type[T], namespace: str, name: str) -> T: ...

    def list(
        self,
        cls: Type[T],
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[T]: ...

    def create(self, obj: T) -> T: ...

    def update(self, obj: T) -> T: ...

    def update_status(self, obj: T) -> T: ...

    def delete(self, cls: Type[KubeObject], namespace: str, name: str) -> None: ...

    def watch(self, callback: WatchCallback) -> Callable[[], None]: ...


def _matches(obj: KubeObject, labels: Optional[Dict[str, str]]) -> bool:
    if not labels:
        return True
    have = obj.metadata.labels
    return all(have.get(k) == v for k, v in labels.items())


class InMemoryStore:
    """
    Thread-safe in-process ObjectStore.

    Every value handed in or out is a deep copy, so callers can mutate what
    they get back without touching stored state.
    """

    def __init__(self) -> None:
        self._objects: Dict[Tuple[str, str, str], KubeObject] = {}
        self._lock = threading.RLock()
        self._versions = itertools.count(1)
        self._watchers: List[WatchCallback] = []

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, cls: Type[T], namespace: str, name: str) -> T:
        with self._lock:
            obj = self._objects.get((cls.KIND, namespace, name))
            if obj is None:
                raise NotFoundError(cls.KIND, namespace, name)
            return obj.model_copy(deep=True)

    def list(
        self,
        cls: Type[T],
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[T]:
        """Records of ``cls``, ordered by (namespace, name)."""
        with self._lock:
            found = [
                obj.model_copy(deep=True)
                for (kind, ns, _), obj in self._objects.items()
                if kind == cls.KIND
                and (namespace is None or ns == namespace)
                and _matches(obj, labels)
            ]
        return sorted(found, key=lambda o: o.key)

    # ── Writes ────────────────────────────────────────────────────────────────

    def create(self, obj: T) -> T:
        key = (obj.KIND, obj.metadata.namespace, obj.metadata.name)
        with self._lock:
            if key in self._objects:
                raise AlreadyExistsError(*key)
            stored = obj.model_copy(deep=True)
            stored.metadata.resource_version = self._next_version()
            stored.metadata.generation = 1
            stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
            stored.metadata.deletion_timestamp = None
            self._objects[key] = stored
            out = stored.model_copy(deep=True)
        logger.debug("created %s %s/%s", *key)
        self._notify(WatchEvent(ADDED, out))
        return out.model_copy(deep=True)

    def update(self, obj: T) -> T:
        """
        Replace metadata and body. Status is carried over from the stored copy.

        Removing the last finalizer from a record that is already marked for
        deletion completes the deletion; the returned object is the final
        state the record had.
        """
        key = (obj.KIND, obj.metadata.namespace, obj.metadata.name)
        with self._lock:
            current = self._check_version(key, obj)
            stored = obj.model_copy(deep=True)
            if hasattr(current, "status"):
                stored.status = copy.deepcopy(current.status)
            stored.metadata.uid = current.metadata.uid
            stored.metadata.deletion_timestamp = current.metadata.deletion_timestamp
            stored.metadata.generation = current.metadata.generation
            if getattr(stored, "spec", None) != getattr(current, "spec", None):
                stored.metadata.generation += 1
            stored.metadata.resource_version = self._next_version()

            if stored.is_deleting and not stored.metadata.finalizers:
                del self._objects[key]
                event = WatchEvent(DELETED, stored.model_copy(deep=True), current)
            else:
                self._objects[key] = stored
                event = WatchEvent(MODIFIED, stored.model_copy(deep=True), current)
        self._notify(event)
        return event.obj.model_copy(deep=True)

    def update_status(self, obj: T) -> T:
        """Replace status only. Metadata and body come from the stored copy."""
        key = (obj.KIND, obj.metadata.namespace, obj.metadata.name)
        with self._lock:
            current = self._check_version(key, obj)
            stored = current.model_copy(deep=True)
            stored.status = copy.deepcopy(obj.status)
            stored.metadata.resource_version = self._next_version()
            self._objects[key] = stored
            event = WatchEvent(MODIFIED, stored.model_copy(deep=True), current)
        self._notify(event)
        return event.obj.model_copy(deep=True)

    def delete(self, cls: Type[KubeObject], namespace: str, name: str) -> None:
        key = (cls.KIND, namespace, name)
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(*key)
            if current.metadata.finalizers:
                if current.is_deleting:
                    return
                stored = current.model_copy(deep=True)
                stored.metadata.deletion_timestamp = datetime.now(timezone.utc)
                stored.metadata.resource_version = self._next_version()
                self._objects[key] = stored
                event = WatchEvent(MODIFIED, stored.model_copy(deep=True), current)
            else:
                del self._objects[key]
                event = WatchEvent(DELETED, current.model_copy(deep=True), current)
        logger.debug("delete %s %s/%s → %s", cls.KIND, namespace, name, event.type)
        self._notify(event)

    # ── Subscriptions ─────────────────────────────────────────────────────────

    def watch(self, callback: WatchCallback) -> Callable[[], None]:
        """Register ``callback`` for every committed change. Returns an unsubscribe."""
        with self._lock:
            self._watchers.append(callback)

        def _cancel() -> None:
            with self._lock:
                if callback in self._watchers:
                    self._watchers.remove(callback)

        return _cancel

    # ── Internal ──────────────────────────────────────────────────────────────

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _check_version(self, key: Tuple[str, str, str], obj: KubeObject) -> KubeObject:
        current = self._objects.get(key)
        if current is None:
            raise NotFoundError(*key)
        sent = obj.metadata.resource_version
        if sent and sent != current.metadata.resource_version:
            raise ConflictError(
                *key,
                message=f"resourceVersion {sent} is stale (current {current.metadata.resource_version})",
            )
        return current

    def _notify(self, event: WatchEvent) -> None:
        with self._lock:
            watchers = list(self._watchers)
        for callback in watchers:
            callback(event)


class CachedReader:
    """
    Read-through cache in front of an ObjectStore.

    get() is served from a local copy once a record has been read; the copy
    is refreshed by the store's watch feed. list() and every write go
    straight to the backing store, and a write drops the cached entry so the
    next get() sees the write.

    A miss fetches from the store outside the lock. If a watch event for the
    same key lands while that fetch is in flight, the fetched copy may
    already be stale, so it is returned but not cached.
    """

    def __init__(self, store: ObjectStore) -> None:
        self._store = store
        self._cache: Dict[Tuple[str, str, str], KubeObject] = {}
        self._inflight: Dict[Tuple[str, str, str], int] = {}
        self._dirty: Set[Tuple[str, str, str]] = set()
        self._lock = threading.Lock()
        self._cancel = store.watch(self._on_event)

    def close(self) -> None:
        self._cancel()

    def _on_event(self, event: WatchEvent) -> None:
        key = (event.obj.KIND, event.obj.metadata.namespace, event.obj.metadata.name)
        with self._lock:
            if key in self._inflight:
                self._dirty.add(key)
            if event.type == DELETED:
                self._cache.pop(key, None)
            elif key in self._cache:
                self._cache[key] = event.obj.model_copy(deep=True)

    def _forget(self, obj: KubeObject) -> None:
        with self._lock:
            self._cache.pop((obj.KIND, obj.metadata.namespace, obj.metadata.name), None)

    def get(self, cls: Type[T], namespace: str, name: str) -> T:
        key = (cls.KIND, namespace, name)
        with self._lock:
            hit = self._cache.get(key)
            if hit is not None:
                return hit.model_copy(deep=True)
            self._inflight[key] = self._inflight.get(key, 0) + 1

        stale = True
        try:
            obj = self._store.get(cls, namespace, name)
            stale = False
        finally:
            with self._lock:
                stale = stale or key in self._dirty
                self._inflight[key] -= 1
                if not self._inflight[key]:
                    del self._inflight[key]
                    self._dirty.discard(key)
                if not stale:
                    self._cache[key] = obj.model_copy(deep=True)
        return obj

    def list(
        self,
        cls: Type[T],
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[T]:
        return self._store.list(cls, namespace=namespace, labels=labels)

    def create(self, obj: T) -> T:
        self._forget(obj)
        return self._store.create(obj)

    def update(self, obj: T) -> T:
        self._forget(obj)
        return self._store.update(obj)

    def update_status(self, obj: T) -> T:
        self._forget(obj)
        return self._store.update_status(obj)

    def delete(self, cls: Type[KubeObject], namespace: str, name: str) -> None:
        with self._lock:
            self._cache.pop((cls.KIND, namespace, name), None)
        self._store.delete(cls, namespace, name)

    def watch(self, callback: WatchCallback) -> Callable[[], None]:
        return self._store.watch(callback)
