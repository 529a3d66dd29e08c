"""
deployer/kube: Kubernetes API server backend for the ObjectStore protocol.

Public API:
    KubernetesStore  → get/list/create/update/update_status/delete/watch
    load_api_client  → in-cluster config, falling back to the local kubeconfig
"""

from deployer.kube.store import KubernetesStore, load_api_client

__all__ = ["KubernetesStore", "load_api_client"]
