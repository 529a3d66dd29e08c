"""
deployer/control_plane/sync.py
──────────────────────────────
Bundle sync: keeps one ManifestBundle per bound workload at its site.

Every pass recomputes the full manifest list from scratch and replaces the
bundle's list wholesale. There is no diff against the previous bundle. The
desired list is deterministic for unchanged inputs.

Reconcile outline
─────────────────
  workload gone                → done
  workload deleting            → finalizer.handle_deletion, requeue after 2s
  workload unbound             → done (the scheduler owns it)
  otherwise:
      1. ensure the cleanup finalizer
      2. assemble manifests (core → volumes → auth); on a missing volume set
         VolumesAvailable=False and surface the error
      3. create the bundle, or replace its manifests; a version conflict
         requeues after 2s instead of surfacing
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

from deployer.control_plane import finalizer
from deployer.control_plane.manager import Request, Result
from deployer.control_plane.predicates import bound_site
from deployer.shared import conditions
from deployer.shared.config import (
    CONFLICT_REQUEUE_SECONDS,
    DELETION_REQUEUE_SECONDS,
    bundle_name,
)
from deployer.shared.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    StoreError,
    VolumeNotFoundError,
)
from deployer.shared.events import (
    MANIFEST_BUNDLE_CREATED,
    MANIFEST_BUNDLE_CREATION_FAILED,
    MANIFEST_BUNDLE_UPDATE_FAILED,
    MANIFEST_BUNDLE_UPDATED,
    NORMAL,
    VOLUME_NOT_FOUND,
    WARNING,
    EventRecorder,
)
from deployer.shared.models import Manifest, ManifestBundle, Workload
from deployer.shared.store import ObjectStore
from manifest_core import AssemblyContext, WorkloadDirector, generate_bundle

logger = logging.getLogger(__name__)

VOLUMES_READY_REASON: str = "VolumesFound"


class BundleSyncReconciler:
    """
    Reconciler for bound workloads.

    deadline_seconds bounds manifest assembly per pass; None disables it.
    """

    def __init__(
        self,
        store: ObjectStore,
        recorder: EventRecorder,
        director: Optional[WorkloadDirector] = None,
        deadline_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._recorder = recorder
        self._director = director or WorkloadDirector()
        self._deadline_seconds = deadline_seconds
        self._clock = clock

    def reconcile(self, request: Request) -> Result:
        try:
            workload = self._store.get(Workload, request.namespace, request.name)
        except NotFoundError:
            return Result()

        if workload.is_deleting:
            logger.info("Workload %s is being deleted; cleaning up", request)
            finalizer.handle_deletion(self._store, workload)
            return Result(requeue_after=DELETION_REQUEUE_SECONDS)

        site = bound_site(workload)
        if not site:
            return Result()

        workload = finalizer.ensure_finalizer(self._store, workload)
        manifests = self.assemble(workload)
        return self.sync_bundle(workload, site, manifests)

    def assemble(self, workload: Workload) -> List[Manifest]:
        key = f"{workload.metadata.namespace}/{workload.metadata.name}"
        deadline = None
        if self._deadline_seconds is not None:
            deadline = self._clock() + self._deadline_seconds
        ctx = AssemblyContext(
            store=self._store,
            recorder=self._recorder,
            correlation_id=key,
            deadline=deadline,
            clock=self._clock,
        )
        try:
            manifests = self._director.assemble(ctx, workload)
        except VolumeNotFoundError as exc:
            self._set_volumes_condition(workload, conditions.FALSE, VOLUME_NOT_FOUND, str(exc))
            raise
        self._set_volumes_condition(workload, conditions.TRUE, VOLUMES_READY_REASON, "")
        return manifests

    def sync_bundle(self, workload: Workload, site: str, manifests: List[Manifest]) -> Result:
        """Create or replace the bundle at ``site``."""
        key = f"{workload.metadata.namespace}/{workload.metadata.name}"
        name = bundle_name(workload.metadata.namespace, workload.metadata.name)
        desired = generate_bundle(workload, site, manifests)

        try:
            existing = self._store.get(ManifestBundle, site, name)
        except NotFoundError:
            return self._create(workload, desired)

        if existing.spec == desired.spec:
            logger.debug("Bundle %s/%s for %s already current", site, name, key)
            return Result()

        existing.spec = desired.spec
        for ann_key, value in desired.metadata.annotations.items():
            existing.metadata.annotations[ann_key] = value
        try:
            self._store.update(existing)
        except ConflictError:
            logger.warning("Conflict updating bundle %s/%s for %s; requeueing", site, name, key)
            return Result(requeue_after=CONFLICT_REQUEUE_SECONDS)
        except StoreError as exc:
            self._recorder.event(workload, WARNING, MANIFEST_BUNDLE_UPDATE_FAILED, str(exc))
            raise
        logger.info("Updated bundle %s/%s for %s", site, name, key)
        self._recorder.event(workload, NORMAL, MANIFEST_BUNDLE_UPDATED,
                             f"Updated bundle {name} at site {site}")
        return Result()

    def _create(self, workload: Workload, bundle: ManifestBundle) -> Result:
        site, name = bundle.metadata.namespace, bundle.metadata.name
        try:
            self._store.create(bundle)
        except AlreadyExistsError:
            logger.warning("Bundle %s/%s appeared concurrently; requeueing", site, name)
            return Result(requeue_after=CONFLICT_REQUEUE_SECONDS)
        except StoreError as exc:
            self._recorder.event(workload, WARNING, MANIFEST_BUNDLE_CREATION_FAILED, str(exc))
            raise
        logger.info("Created bundle %s/%s for workload %s/%s",
                    site, name, workload.metadata.namespace, workload.metadata.name)
        self._recorder.event(workload, NORMAL, MANIFEST_BUNDLE_CREATED,
                             f"Created bundle {name} at site {site}")
        return Result()

    def _set_volumes_condition(self, workload: Workload, status: str, reason: str, message: str) -> None:
        changed = conditions.set_condition(
            workload.status.conditions, conditions.VOLUMES_AVAILABLE, status, reason, message,
        )
        if changed:
            updated = self._store.update_status(workload)
            workload.metadata.resource_version = updated.metadata.resource_version
