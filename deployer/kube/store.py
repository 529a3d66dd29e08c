"""
deployer/kube/store.py
──────────────────────
KubernetesStore: the ObjectStore protocol against a real API server.

What this is
────────────
The reconcilers only ever talk to an ObjectStore. In tests that is an
InMemoryStore; in a cluster it is this adapter, built on the official
``kubernetes`` client:

  • custom kinds (workloads, RCSConfig, placements, decisions, bundles,
    scores) go through CustomObjectsApi as plain dicts
  • built-in kinds the control plane reads (ConfigMap, Secret, Node, Pod,
    RoleBinding) go through CoreV1Api / RbacAuthorizationV1Api and are
    converted to dicts with ApiClient.sanitize_for_serialization

Built-in kinds are read-only here: the control plane copies them into
bundles, it never writes them.

Error mapping
─────────────
    ApiException 404               → NotFoundError
    ApiException 409 on create     → AlreadyExistsError
    ApiException 409 on write      → ConflictError
    anything else                  → StoreError (original chained)

Watches
───────
watch(callback) registers a subscriber; start_watch(cls) spawns one
background stream per kind (kubernetes.watch.Watch), reopened whenever it
ends or fails. The last seen copy of each record is kept so subscribers get
the old value on MODIFIED.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException

from deployer.shared.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    StoreError,
)
from deployer.shared.models import (
    ConfigMap,
    DecisionRecord,
    KubeObject,
    ManifestBundle,
    Node,
    PlacementPolicy,
    Pod,
    RCSConfig,
    RoleBinding,
    ScoreRecord,
    Secret,
    Workload,
)
from deployer.shared.store import ADDED, DELETED, MODIFIED, WatchCallback, WatchEvent

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=KubeObject)


@dataclass(frozen=True)
class CustomResource:
    group: str
    version: str
    plural: str


CUSTOM_RESOURCES: Dict[str, CustomResource] = {
    Workload.KIND: CustomResource("rcs.dana.io", "v1alpha1", "capps"),
    RCSConfig.KIND: CustomResource("rcs.dana.io", "v1alpha1", "rcsconfigs"),
    PlacementPolicy.KIND: CustomResource("cluster.open-cluster-management.io", "v1beta1", "placements"),
    DecisionRecord.KIND: CustomResource("cluster.open-cluster-management.io", "v1beta1", "placementdecisions"),
    ManifestBundle.KIND: CustomResource("work.open-cluster-management.io", "v1", "manifestworks"),
    ScoreRecord.KIND: CustomResource("cluster.open-cluster-management.io", "v1alpha1", "addonplacementscores"),
}
"""KIND → (group, version, plural) for every custom kind the control plane uses."""

WATCH_RESTART_SECONDS: float = 1.0


def load_api_client() -> client.ApiClient:
    """In-cluster configuration when running in a pod, else the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes configuration")
    return client.ApiClient()


def _selector(labels: Optional[Dict[str, str]]) -> str:
    if not labels:
        return ""
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


class _WatchLoop:
    """
    Keeps one kind's watch stream alive until stop().

    A stream that ends or raises (410 Gone after the resourceVersion
    expires, a dropped connection) is logged and reopened after
    WATCH_RESTART_SECONDS. Each reopen starts with a fresh list, so the
    subscribers see every live record again as ADDED.
    """

    def __init__(self, store: KubernetesStore, cls: Type[KubeObject], func: Callable, args: Tuple) -> None:
        self._store = store
        self._cls = cls
        self._func = func
        self._args = args
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._stream: Optional[watch.Watch] = None
        self.thread = threading.Thread(target=self.run, name=f"watch-{cls.KIND}", daemon=True)

    def run(self) -> None:
        kind = self._cls.KIND
        while not self._stopped.is_set():
            stream = watch.Watch()
            with self._lock:
                if self._stopped.is_set():
                    break
                self._stream = stream
            try:
                for raw_event in stream.stream(self._func, *self._args):
                    self._handle(raw_event)
            except ApiException as exc:
                logger.exception("%s watch failed with status %s; restarting", kind, exc.status)
            except Exception:
                logger.exception("%s watch failed; restarting", kind)
            else:
                logger.debug("%s watch stream ended; restarting", kind)
            self._stopped.wait(WATCH_RESTART_SECONDS)

    def _handle(self, raw_event: Dict[str, Any]) -> None:
        event_type = raw_event.get("type")
        if event_type not in (ADDED, MODIFIED, DELETED):
            return
        try:
            self._store.dispatch(self._cls, event_type, raw_event["object"])
        except Exception:
            logger.exception("Failed to dispatch %s watch event", self._cls.KIND)

    def stop(self) -> None:
        self._stopped.set()
        with self._lock:
            stream = self._stream
        if stream is not None:
            stream.stop()


class KubernetesStore:
    """ObjectStore backed by a Kubernetes API server."""

    def __init__(
        self,
        api_client: Optional[client.ApiClient] = None,
        custom_api: Optional[client.CustomObjectsApi] = None,
        core_api: Optional[client.CoreV1Api] = None,
        rbac_api: Optional[client.RbacAuthorizationV1Api] = None,
    ) -> None:
        self._api_client = api_client or client.ApiClient()
        self._custom_objects = custom_api or client.CustomObjectsApi(self._api_client)
        self._core = core_api or client.CoreV1Api(self._api_client)
        self._rbac = rbac_api or client.RbacAuthorizationV1Api(self._api_client)
        self._watchers: List[WatchCallback] = []
        self._seen: Dict[Tuple[str, str, str], KubeObject] = {}
        self._lock = threading.Lock()
        self._streams: List[_WatchLoop] = []

    # ── Error mapping ─────────────────────────────────────────────────────────

    @staticmethod
    def _translate(exc: ApiException, kind: str, namespace: str, name: str,
                   creating: bool = False) -> StoreError:
        if exc.status == 404:
            return NotFoundError(kind, namespace, name)
        if exc.status == 409:
            if creating:
                return AlreadyExistsError(kind, namespace, name, exc.reason or "")
            return ConflictError(kind, namespace, name, exc.reason or "")
        return StoreError(kind, namespace, name, f"API error {exc.status}: {exc.reason}")

    def _to_model(self, cls: Type[T], raw: Any) -> T:
        if not isinstance(raw, dict):
            raw = self._api_client.sanitize_for_serialization(raw)
        return cls.model_validate(raw)

    @staticmethod
    def _resource(cls: Type[KubeObject]) -> CustomResource:
        resource = CUSTOM_RESOURCES.get(cls.KIND)
        if resource is None:
            raise TypeError(f"{cls.KIND} is read-only through KubernetesStore")
        return resource

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get(self, cls: Type[T], namespace: str, name: str) -> T:
        try:
            if cls is ConfigMap:
                raw = self._core.read_namespaced_config_map(name, namespace)
            elif cls is Secret:
                raw = self._core.read_namespaced_secret(name, namespace)
            elif cls is Node:
                raw = self._core.read_node(name)
            elif cls is Pod:
                raw = self._core.read_namespaced_pod(name, namespace)
            elif cls is RoleBinding:
                raw = self._rbac.read_namespaced_role_binding(name, namespace)
            else:
                r = self._resource(cls)
                raw = self._custom_objects.get_namespaced_custom_object(
                    r.group, r.version, namespace, r.plural, name,
                )
        except ApiException as exc:
            raise self._translate(exc, cls.KIND, namespace, name) from exc
        return self._to_model(cls, raw)

    def list(
        self,
        cls: Type[T],
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[T]:
        selector = _selector(labels)
        try:
            if cls is Node:
                items = self._core.list_node(label_selector=selector).items
            elif cls is Pod:
                if namespace is None:
                    items = self._core.list_pod_for_all_namespaces(label_selector=selector).items
                else:
                    items = self._core.list_namespaced_pod(namespace, label_selector=selector).items
            elif cls is RoleBinding:
                items = self._rbac.list_namespaced_role_binding(
                    namespace or "", label_selector=selector,
                ).items
            elif cls is ConfigMap:
                items = self._core.list_namespaced_config_map(
                    namespace or "", label_selector=selector,
                ).items
            elif cls is Secret:
                items = self._core.list_namespaced_secret(
                    namespace or "", label_selector=selector,
                ).items
            else:
                r = self._resource(cls)
                if namespace is None:
                    body = self._custom_objects.list_cluster_custom_object(
                        r.group, r.version, r.plural, label_selector=selector,
                    )
                else:
                    body = self._custom_objects.list_namespaced_custom_object(
                        r.group, r.version, namespace, r.plural, label_selector=selector,
                    )
                items = body.get("items", [])
        except ApiException as exc:
            raise self._translate(exc, cls.KIND, namespace or "", "") from exc
        found = [self._to_model(cls, item) for item in items]
        return sorted(found, key=lambda o: o.key)

    # ── Writes (custom kinds only) ────────────────────────────────────────────

    def create(self, obj: T) -> T:
        r = self._resource(type(obj))
        ns, name = obj.key
        try:
            raw = self._custom_objects.create_namespaced_custom_object(
                r.group, r.version, ns, r.plural, obj.to_dict(),
            )
        except ApiException as exc:
            raise self._translate(exc, obj.KIND, ns, name, creating=True) from exc
        return self._to_model(type(obj), raw)

    def update(self, obj: T) -> T:
        r = self._resource(type(obj))
        ns, name = obj.key
        try:
            raw = self._custom_objects.replace_namespaced_custom_object(
                r.group, r.version, ns, r.plural, name, obj.to_dict(),
            )
        except ApiException as exc:
            raise self._translate(exc, obj.KIND, ns, name) from exc
        return self._to_model(type(obj), raw)

    def update_status(self, obj: T) -> T:
        r = self._resource(type(obj))
        ns, name = obj.key
        try:
            raw = self._custom_objects.replace_namespaced_custom_object_status(
                r.group, r.version, ns, r.plural, name, obj.to_dict(),
            )
        except ApiException as exc:
            raise self._translate(exc, obj.KIND, ns, name) from exc
        return self._to_model(type(obj), raw)

    def delete(self, cls: Type[KubeObject], namespace: str, name: str) -> None:
        r = self._resource(cls)
        try:
            self._custom_objects.delete_namespaced_custom_object(
                r.group, r.version, namespace, r.plural, name,
            )
        except ApiException as exc:
            raise self._translate(exc, cls.KIND, namespace, name) from exc

    # ── Watches ───────────────────────────────────────────────────────────────

    def watch(self, callback: WatchCallback) -> Callable[[], None]:
        with self._lock:
            self._watchers.append(callback)

        def _cancel() -> None:
            with self._lock:
                if callback in self._watchers:
                    self._watchers.remove(callback)

        return _cancel

    def dispatch(self, cls: Type[KubeObject], event_type: str, raw: Any) -> WatchEvent:
        """Turn one raw stream event into a WatchEvent and fan it out."""
        obj = self._to_model(cls, raw)
        key = (cls.KIND, obj.metadata.namespace, obj.metadata.name)
        with self._lock:
            old = self._seen.get(key)
            if event_type == DELETED:
                self._seen.pop(key, None)
            else:
                self._seen[key] = obj
            watchers = list(self._watchers)
        event = WatchEvent(event_type, obj, old)
        for callback in watchers:
            callback(event)
        return event

    def start_watch(self, cls: Type[KubeObject]) -> None:
        """Stream every change of ``cls`` across all namespaces in the background."""
        if cls is Node:
            func, args = self._core.list_node, ()
        elif cls is Pod:
            func, args = self._core.list_pod_for_all_namespaces, ()
        else:
            r = self._resource(cls)
            func, args = self._custom_objects.list_cluster_custom_object, (r.group, r.version, r.plural)

        loop = _WatchLoop(self, cls, func, args)
        loop.thread.start()
        self._streams.append(loop)
        logger.info("Watching %s", cls.KIND)

    def stop_watches(self) -> None:
        for loop in self._streams:
            loop.stop()
        self._streams.clear()
