"""
deployer/control_plane/predicates.py
────────────────────────────────────
Pure event gates. No I/O, no side effects, safe to call from the watch thread.

The has-placement annotation splits a workload's life in two:

    annotation absent  → placement_predicate passes, sync_predicate does not
    annotation present → sync_predicate passes, placement_predicate does not

so the scheduler and the bundle sync never reconcile the same workload for
the same reason.
"""

from __future__ import annotations

from typing import Optional

from deployer.control_plane.manager import Request
from deployer.shared.config import (
    HAS_PLACEMENT_ANNOTATION,
    WORKLOAD_NAME_ANNOTATION,
    WORKLOAD_NAMESPACE_ANNOTATION,
)
from deployer.shared.models import KubeObject


def bound_site(obj: KubeObject) -> str:
    """The has-placement annotation's value, or "" if unbound."""
    return obj.metadata.annotations.get(HAS_PLACEMENT_ANNOTATION, "")


def has_placement(obj: KubeObject) -> bool:
    return bool(bound_site(obj))


def placement_predicate(old: Optional[KubeObject], new: KubeObject) -> bool:
    """Enqueue for scheduling while the workload is still unbound."""
    return not has_placement(new)


def sync_predicate(old: Optional[KubeObject], new: KubeObject) -> bool:
    """Enqueue for bundle sync once the workload is bound."""
    return has_placement(new)


def bundle_owner(bundle: KubeObject) -> Optional[Request]:
    """The workload a bundle was generated for, via its linkage annotations."""
    annotations = bundle.metadata.annotations
    name = annotations.get(WORKLOAD_NAME_ANNOTATION)
    namespace = annotations.get(WORKLOAD_NAMESPACE_ANNOTATION)
    if not name or not namespace:
        return None
    return Request(namespace, name)
