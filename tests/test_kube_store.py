"""
tests/test_kube_store.py
────────────────────────
Test suite for deployer/kube/store.py

The kubernetes API classes are replaced by MagicMocks; no cluster is needed.

Test groups
───────────
Group 1: error mapping
Group 2: reads
Group 3: writes
Group 4: watch dispatch
Group 5: client configuration
"""

from __future__ import annotations

import time
from typing import List
from unittest.mock import MagicMock

import pytest
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from deployer.kube.store import CUSTOM_RESOURCES, KubernetesStore, _selector, load_api_client
from deployer.shared.errors import AlreadyExistsError, ConflictError, NotFoundError, StoreError
from deployer.shared.models import (
    ConfigMap,
    DecisionRecord,
    ManifestBundle,
    ObjectMeta,
    RoleBinding,
    Workload,
)
from deployer.shared.store import ADDED, DELETED, MODIFIED, WatchEvent


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_store():
    custom, core, rbac = MagicMock(), MagicMock(), MagicMock()
    store = KubernetesStore(
        api_client=client.ApiClient(), custom_api=custom, core_api=core, rbac_api=rbac,
    )
    return store, custom, core, rbac


def _workload_dict(name: str = "app-x", version: str = "1", labels: dict = None) -> dict:
    return {
        "apiVersion": "rcs.dana.io/v1alpha1",
        "kind": "Capp",
        "metadata": {"name": name, "namespace": "ns1", "resourceVersion": version, "labels": labels or {}},
        "spec": {"site": "pool-a"},
    }


def _wait_for(condition, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not condition() and time.monotonic() < deadline:
        time.sleep(0.01)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: error mapping
# ─────────────────────────────────────────────────────────────────────────────

class TestErrorMapping:

    def test_404_is_not_found(self) -> None:
        store, custom, _, _ = _make_store()
        custom.get_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")
        with pytest.raises(NotFoundError) as info:
            store.get(Workload, "ns1", "app-x")
        assert isinstance(info.value.__cause__, ApiException)

    def test_409_on_create_is_already_exists(self) -> None:
        store, custom, _, _ = _make_store()
        custom.create_namespaced_custom_object.side_effect = ApiException(status=409, reason="Conflict")
        with pytest.raises(AlreadyExistsError):
            store.create(Workload(metadata=ObjectMeta(name="app-x", namespace="ns1")))

    def test_409_on_update_is_conflict(self) -> None:
        store, custom, _, _ = _make_store()
        custom.replace_namespaced_custom_object.side_effect = ApiException(status=409, reason="Conflict")
        with pytest.raises(ConflictError):
            store.update(Workload(metadata=ObjectMeta(name="app-x", namespace="ns1")))

    def test_other_status_is_store_error(self) -> None:
        store, custom, _, _ = _make_store()
        custom.delete_namespaced_custom_object.side_effect = ApiException(status=500, reason="Boom")
        with pytest.raises(StoreError) as info:
            store.delete(ManifestBundle, "site-7", "mw-create-ns1-app-x")
        assert not isinstance(info.value, (NotFoundError, ConflictError))
        assert "500" in str(info.value)


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: reads
# ─────────────────────────────────────────────────────────────────────────────

class TestReads:

    def test_get_custom_kind_uses_its_resource(self) -> None:
        store, custom, _, _ = _make_store()
        custom.get_namespaced_custom_object.return_value = _workload_dict()

        workload = store.get(Workload, "ns1", "app-x")
        assert workload.spec.site == "pool-a"
        assert workload.metadata.resource_version == "1"
        custom.get_namespaced_custom_object.assert_called_once_with(
            "rcs.dana.io", "v1alpha1", "ns1", "capps", "app-x",
        )

    def test_get_built_in_kind_converts_client_model(self) -> None:
        store, _, core, _ = _make_store()
        core.read_namespaced_config_map.return_value = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name="cfg", namespace="ns1"),
            data={"a": "1"},
        )
        cm = store.get(ConfigMap, "ns1", "cfg")
        assert cm.data == {"a": "1"}
        assert cm.metadata.name == "cfg"

    def test_list_passes_label_selector_and_sorts(self) -> None:
        store, custom, _, _ = _make_store()
        custom.list_namespaced_custom_object.return_value = {
            "items": [
                {"metadata": {"name": n, "namespace": "placements"},
                 "status": {"decisions": [{"clusterName": "site-1"}]}}
                for n in ("b", "a")
            ],
        }
        found = store.list(DecisionRecord, namespace="placements", labels={"z": "1", "a": "2"})
        assert [d.name for d in found] == ["a", "b"]
        resource = CUSTOM_RESOURCES[DecisionRecord.KIND]
        custom.list_namespaced_custom_object.assert_called_once_with(
            resource.group, resource.version, "placements", resource.plural, label_selector="a=2,z=1",
        )

    def test_list_without_namespace_is_cluster_wide(self) -> None:
        store, custom, _, _ = _make_store()
        custom.list_cluster_custom_object.return_value = {"items": []}
        assert store.list(Workload) == []
        custom.list_cluster_custom_object.assert_called_once()

    def test_role_bindings_go_through_rbac_api(self) -> None:
        store, _, _, rbac = _make_store()
        rbac.list_namespaced_role_binding.return_value = client.V1RoleBindingList(items=[
            client.V1RoleBinding(
                metadata=client.V1ObjectMeta(name="admins", namespace="ns1"),
                role_ref=client.V1RoleRef(api_group="rbac.authorization.k8s.io", kind="ClusterRole", name="admin"),
                subjects=[client.RbacV1Subject(kind="User", name="alice")],
            )
        ])
        (binding,) = store.list(RoleBinding, namespace="ns1")
        assert binding.role_ref.name == "admin"
        assert [s.name for s in binding.subjects] == ["alice"]

    def test_selector_string(self) -> None:
        assert _selector(None) == ""
        assert _selector({"b": "2", "a": "1"}) == "a=1,b=2"


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: writes
# ─────────────────────────────────────────────────────────────────────────────

class TestWrites:

    def test_create_sends_full_manifest(self) -> None:
        store, custom, _, _ = _make_store()
        custom.create_namespaced_custom_object.return_value = _workload_dict()
        store.create(Workload(metadata=ObjectMeta(name="app-x", namespace="ns1")))

        args = custom.create_namespaced_custom_object.call_args.args
        assert args[:4] == ("rcs.dana.io", "v1alpha1", "ns1", "capps")
        body = args[4]
        assert body["apiVersion"] == "rcs.dana.io/v1alpha1"
        assert body["kind"] == "Capp"

    def test_update_status_uses_status_subresource(self) -> None:
        store, custom, _, _ = _make_store()
        custom.replace_namespaced_custom_object_status.return_value = _workload_dict(version="2")
        updated = store.update_status(Workload(metadata=ObjectMeta(name="app-x", namespace="ns1")))
        assert updated.metadata.resource_version == "2"
        custom.replace_namespaced_custom_object.assert_not_called()

    def test_built_in_kinds_are_read_only(self) -> None:
        store, _, _, _ = _make_store()
        with pytest.raises(TypeError):
            store.create(ConfigMap(metadata=ObjectMeta(name="cfg", namespace="ns1")))


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: watch dispatch
# ─────────────────────────────────────────────────────────────────────────────

class TestDispatch:

    def test_modified_carries_previous_copy(self) -> None:
        store, _, _, _ = _make_store()
        seen: List[WatchEvent] = []
        store.watch(seen.append)

        store.dispatch(Workload, ADDED, _workload_dict(version="1"))
        store.dispatch(Workload, MODIFIED, _workload_dict(version="2", labels={"x": "y"}))

        assert seen[0].old is None
        assert seen[1].old.metadata.resource_version == "1"
        assert seen[1].obj.metadata.labels == {"x": "y"}

    def test_deleted_forgets_record(self) -> None:
        store, _, _, _ = _make_store()
        store.dispatch(Workload, ADDED, _workload_dict())
        store.dispatch(Workload, DELETED, _workload_dict())
        event = store.dispatch(Workload, ADDED, _workload_dict())
        assert event.old is None

    def test_cancelled_watcher_receives_nothing(self) -> None:
        store, _, _, _ = _make_store()
        seen: List[WatchEvent] = []
        cancel = store.watch(seen.append)
        cancel()
        store.dispatch(Workload, ADDED, _workload_dict())
        assert seen == []

    def test_start_watch_streams_into_dispatch(self, monkeypatch) -> None:
        store, custom, _, _ = _make_store()
        fake = MagicMock()
        fake.stream.side_effect = [
            iter([
                {"type": "ADDED", "object": _workload_dict()},
                {"type": "BOOKMARK", "object": {}},
            ]),
        ]
        monkeypatch.setattr("deployer.kube.store.watch.Watch", lambda: fake)
        monkeypatch.setattr("deployer.kube.store.WATCH_RESTART_SECONDS", 30.0)
        seen: List[WatchEvent] = []
        store.watch(seen.append)

        store.start_watch(Workload)
        (loop,) = store._streams
        _wait_for(lambda: seen)
        store.stop_watches()
        loop.thread.join(2.0)

        assert [e.type for e in seen] == [ADDED]
        fake.stream.assert_called_once_with(
            custom.list_cluster_custom_object, "rcs.dana.io", "v1alpha1", "capps",
        )
        fake.stop.assert_called_once()
        assert not loop.thread.is_alive()

    def test_failed_stream_is_logged_and_reopened(self, monkeypatch, caplog) -> None:
        store, _, _, _ = _make_store()
        attempts: List[int] = []

        def _stream(*args, **kwargs):
            attempts.append(1)
            if len(attempts) == 1:
                raise ApiException(status=410, reason="Gone")
            if len(attempts) == 2:
                return iter([{"type": "ADDED", "object": _workload_dict()}])
            return iter([])

        fake = MagicMock()
        fake.stream.side_effect = _stream
        monkeypatch.setattr("deployer.kube.store.watch.Watch", lambda: fake)
        monkeypatch.setattr("deployer.kube.store.WATCH_RESTART_SECONDS", 0.01)
        seen: List[WatchEvent] = []
        store.watch(seen.append)

        with caplog.at_level("ERROR", logger="deployer.kube.store"):
            store.start_watch(Workload)
            (loop,) = store._streams
            _wait_for(lambda: seen)
            assert loop.thread.is_alive()
            store.stop_watches()
            loop.thread.join(2.0)

        assert len(attempts) >= 2
        assert [e.type for e in seen] == [ADDED]
        assert "410" in caplog.text
        assert not loop.thread.is_alive()


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: client configuration
# ─────────────────────────────────────────────────────────────────────────────

class TestLoadApiClient:

    def test_falls_back_to_kubeconfig_outside_a_pod(self, monkeypatch) -> None:
        calls: List[str] = []

        def _not_in_cluster() -> None:
            raise config.ConfigException("not in a pod")

        monkeypatch.setattr(config, "load_incluster_config", _not_in_cluster)
        monkeypatch.setattr(config, "load_kube_config", lambda: calls.append("kubeconfig"))
        assert isinstance(load_api_client(), client.ApiClient)
        assert calls == ["kubeconfig"]
