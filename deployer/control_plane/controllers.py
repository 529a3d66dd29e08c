"""
deployer/control_plane/controllers.py
─────────────────────────────────────
Wires the three reconcilers into a Manager.

    controller        watches          predicate / mapper
    ───────────────   ──────────────   ─────────────────────────────────────
    placement         Workload         has-placement annotation absent
    bundle-sync       Workload         has-placement annotation present
    status-feedback   ManifestBundle   any change, mapped to the owning
                                       workload via linkage annotations
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from deployer.control_plane.manager import Controller, Manager
from deployer.control_plane.placement import PlacementScheduler
from deployer.control_plane.predicates import (
    bundle_owner,
    placement_predicate,
    sync_predicate,
)
from deployer.control_plane.status_feedback import StatusFeedbackProjector
from deployer.control_plane.sync import BundleSyncReconciler
from deployer.shared.events import EventRecorder
from deployer.shared.models import ManifestBundle, Workload
from deployer.shared.store import ObjectStore

PLACEMENT = "placement"
BUNDLE_SYNC = "bundle-sync"
STATUS_FEEDBACK = "status-feedback"


def build_manager(
    store: ObjectStore,
    recorder: EventRecorder,
    workers: int = 1,
    deadline_seconds: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Manager:
    manager = Manager(store, workers=workers, clock=clock)
    manager.add_controller(Controller(
        name=PLACEMENT,
        kind=Workload,
        reconciler=PlacementScheduler(store, recorder),
        predicate=placement_predicate,
    ))
    manager.add_controller(Controller(
        name=BUNDLE_SYNC,
        kind=Workload,
        reconciler=BundleSyncReconciler(
            store, recorder, deadline_seconds=deadline_seconds, clock=clock,
        ),
        predicate=sync_predicate,
    ))
    manager.add_controller(Controller(
        name=STATUS_FEEDBACK,
        kind=ManifestBundle,
        reconciler=StatusFeedbackProjector(store),
        mapper=bundle_owner,
    ))
    return manager
