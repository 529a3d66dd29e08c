"""
manifest_core/builders.py
─────────────────────────
Pure functions that turn records into the manifests shipped inside a bundle.

Nothing here touches the store. Each builder takes already-fetched records
and returns a plain manifest dict (apiVersion, kind, metadata, body), ready to
be embedded in ManifestBundle.spec.workload.manifests.

Copies are trimmed to what the remote site needs: identity, labels,
annotations and the body. Store bookkeeping (resourceVersion, uid,
finalizers, deletionTimestamp, status) never leaves the control plane.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from deployer.shared.config import MANAGED_BY_LABEL, MANAGED_BY_VALUE
from deployer.shared.models import (
    ConfigMap,
    KubeObject,
    Manifest,
    Secret,
    Subject,
    Workload,
)

RBAC_API_GROUP: str = "rbac.authorization.k8s.io"
RBAC_API_VERSION: str = f"{RBAC_API_GROUP}/v1"

LOGS_READER_SUFFIX: str = "-logs-reader"
"""Role and RoleBinding name = <workload name> + LOGS_READER_SUFFIX."""

LOG_READER_ROLES: tuple = ("admin", "logs-reader")
"""Role bindings referencing one of these roles contribute subjects to the grant."""


def _metadata(
    obj: KubeObject,
    extra_labels: Optional[Dict[str, str]] = None,
) -> Dict[str, object]:
    labels = dict(obj.metadata.labels)
    if extra_labels:
        labels.update(extra_labels)
    meta: Dict[str, object] = {"name": obj.metadata.name, "namespace": obj.metadata.namespace}
    if labels:
        meta["labels"] = labels
    if obj.metadata.annotations:
        meta["annotations"] = dict(obj.metadata.annotations)
    return meta


def build_workload(workload: Workload) -> Manifest:
    """
    Copy of the workload as the remote site should see it.

    Status is dropped, the managed-by label is added. The has-placement
    annotation travels with it; the remote engine ignores it.
    """
    return {
        "apiVersion": Workload.API_VERSION,
        "kind": Workload.KIND,
        "metadata": _metadata(workload, {MANAGED_BY_LABEL: MANAGED_BY_VALUE}),
        "spec": workload.spec.to_dict(),
    }


def build_namespace(name: str) -> Manifest:
    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {
            "name": name,
            "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
        },
    }


def build_config_map(cm: ConfigMap) -> Manifest:
    manifest: Manifest = {
        "apiVersion": ConfigMap.API_VERSION,
        "kind": ConfigMap.KIND,
        "metadata": _metadata(cm),
        "data": dict(cm.data),
    }
    if cm.binary_data:
        manifest["binaryData"] = dict(cm.binary_data)
    return manifest


def build_secret(secret: Secret) -> Manifest:
    return {
        "apiVersion": Secret.API_VERSION,
        "kind": Secret.KIND,
        "metadata": _metadata(secret),
        "type": secret.type,
        "data": dict(secret.data),
    }


def build_logs_reader_role(workload: Workload) -> Manifest:
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "Role",
        "metadata": {
            "name": workload.metadata.name + LOGS_READER_SUFFIX,
            "namespace": workload.metadata.namespace,
        },
        "rules": [
            {
                "apiGroups": [""],
                "resources": ["pod/logs"],
                "verbs": ["get", "watch", "list"],
            }
        ],
    }


def build_logs_reader_binding(workload: Workload, users: List[str]) -> Manifest:
    role_name = workload.metadata.name + LOGS_READER_SUFFIX
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": "RoleBinding",
        "metadata": {
            "name": role_name,
            "namespace": workload.metadata.namespace,
        },
        "roleRef": {
            "apiGroup": RBAC_API_GROUP,
            "kind": "Role",
            "name": role_name,
        },
        "subjects": [
            Subject(kind="User", name=user, api_group=RBAC_API_GROUP).to_dict()
            for user in users
        ],
    }
