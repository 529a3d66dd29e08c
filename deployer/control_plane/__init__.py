"""
deployer/control_plane: the reconcilers and the substrate that drives them.

Public API:

    Substrate:
        Manager, Controller, WorkQueue  → feed watch events through predicates into reconcile queues
        Request, Result                 → reconcile input / outcome
        build_manager()                 → the three controllers below, wired

    Reconcilers:
        PlacementScheduler       → binds an unbound workload to one site
        BundleSyncReconciler     → keeps the site's ManifestBundle current,
                                   drives the cleanup finalizer
        StatusFeedbackProjector  → copies site feedback onto workload status

    Predicates:
        placement_predicate(), sync_predicate(), bundle_owner()
"""

from deployer.control_plane.manager import (
    Controller,
    Manager,
    Request,
    Result,
    WorkQueue,
)
from deployer.control_plane.placement import PlacementScheduler
from deployer.control_plane.predicates import (
    bundle_owner,
    placement_predicate,
    sync_predicate,
)
from deployer.control_plane.status_feedback import StatusFeedbackProjector
from deployer.control_plane.sync import BundleSyncReconciler
from deployer.control_plane.controllers import build_manager

__all__ = [
    "Controller",
    "Manager",
    "Request",
    "Result",
    "WorkQueue",
    "PlacementScheduler",
    "BundleSyncReconciler",
    "StatusFeedbackProjector",
    "placement_predicate",
    "sync_predicate",
    "bundle_owner",
    "build_manager",
]
