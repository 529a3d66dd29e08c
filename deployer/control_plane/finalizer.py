"""
deployer/control_plane/finalizer.py
───────────────────────────────────
Cleanup finalizer for workloads.

State machine per workload:

    no finalizer ──ensure_finalizer──► finalizer present
                                          │  (workload deleted)
                                          ▼
                         deletion requested, finalizer present
                                          │  handle_deletion
                                          ▼
                       bundle gone ──► finalizer removed ──► hard-deleted

The finalizer only comes off after the bundle delete call has succeeded, or
when the bundle is already absent. Any other failure leaves the finalizer in
place and propagates, so the workload cannot vanish while remote state might
still exist.
"""

from __future__ import annotations

import logging

from deployer.control_plane.predicates import bound_site
from deployer.shared.config import FINALIZER, bundle_name
from deployer.shared.errors import NotFoundError
from deployer.shared.models import ManifestBundle, Workload
from deployer.shared.store import ObjectStore

logger = logging.getLogger(__name__)


def ensure_finalizer(store: ObjectStore, workload: Workload) -> Workload:
    """Add the cleanup finalizer if missing. Returns the (possibly updated) workload."""
    if FINALIZER in workload.metadata.finalizers:
        return workload
    workload.metadata.finalizers.append(FINALIZER)
    updated = store.update(workload)
    logger.info("Added finalizer to workload %s/%s",
                workload.metadata.namespace, workload.metadata.name)
    return updated


def remove_finalizer(store: ObjectStore, workload: Workload) -> None:
    if FINALIZER not in workload.metadata.finalizers:
        return
    workload.metadata.finalizers = [f for f in workload.metadata.finalizers if f != FINALIZER]
    store.update(workload)
    logger.info("Removed finalizer from workload %s/%s",
                workload.metadata.namespace, workload.metadata.name)


def handle_deletion(store: ObjectStore, workload: Workload) -> None:
    """
    One deletion pass: delete the bundle if present, then drop the finalizer.

    The bundle is looked up at the site in status.applicationLinks.site,
    falling back to the has-placement annotation.
    """
    if FINALIZER not in workload.metadata.finalizers:
        return

    site = workload.status.application_links.site or bound_site(workload)
    name = bundle_name(workload.metadata.namespace, workload.metadata.name)
    if site:
        try:
            store.get(ManifestBundle, site, name)
        except NotFoundError:
            logger.info("Bundle %s/%s already absent", site, name)
        else:
            try:
                store.delete(ManifestBundle, site, name)
            except NotFoundError:
                logger.info("Bundle %s/%s vanished before delete", site, name)
            else:
                logger.info("Deleted bundle %s/%s", site, name)

    remove_finalizer(store, workload)
