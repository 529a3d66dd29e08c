"""
deployer/control_plane/status_feedback.py
─────────────────────────────────────────
Status feedback projector: copies what a site observed back onto the workload.

Integration contract
────────────────────
Triggered by bundle watch events, mapped to the owning workload through the
bundle's linkage annotations. Each pass:

  1. finds the bundle at the workload's bound site
  2. takes the feedback values reported for the workload's own manifest
  3. re-reads the workload, projects the values onto a copy of its status
  4. writes the status only if the projection changed it

Step 4 is what stops the loop "status write → sync → bundle update →
feedback → status write" from spinning: identical feedback never produces a
second write.

Only fields present in the feedback are touched. A reported site that
disagrees with the has-placement annotation is ignored; the annotation and
status.applicationLinks.site must not drift apart.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Dict, List, Optional

from deployer.control_plane.manager import Request, Result
from deployer.control_plane.predicates import bound_site
from deployer.shared.config import bundle_name
from deployer.shared.errors import NotFoundError
from deployer.shared.models import (
    Addressable,
    ManifestBundle,
    TrafficTarget,
    Workload,
    WorkloadStatus,
)
from deployer.shared.store import ObjectStore
from manifest_core import feedback

logger = logging.getLogger(__name__)


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _traffic(fields: Dict[str, Any]) -> Optional[List[TrafficTarget]]:
    keys = (feedback.TRAFFIC_REVISION_NAME, feedback.TRAFFIC_PERCENT, feedback.TRAFFIC_LATEST_REVISION)
    if not any(k in fields for k in keys):
        return None
    names = _as_list(fields.get(feedback.TRAFFIC_REVISION_NAME))
    percents = _as_list(fields.get(feedback.TRAFFIC_PERCENT))
    latest = _as_list(fields.get(feedback.TRAFFIC_LATEST_REVISION))
    return [
        TrafficTarget(
            revision_name=_as_str(name),
            percent=int(percent) if percent is not None else None,
            latest_revision=bool(is_latest) if is_latest is not None else None,
        )
        for name, percent, is_latest in itertools.zip_longest(names, percents, latest)
    ]


def project(status: WorkloadStatus, fields: Dict[str, Any], site: str) -> WorkloadStatus:
    """
    A copy of ``status`` with the decoded feedback ``fields`` applied.

    ``site`` is the workload's bound site; a reported site must match it.
    """
    out = status.model_copy(deep=True)
    links = out.application_links
    knative = out.knative_object_status

    if feedback.SITE in fields:
        reported = _as_str(fields[feedback.SITE])
        if reported and reported != site:
            logger.warning("Ignoring reported site %r; workload is bound to %r", reported, site)
        elif reported:
            links.site = reported
    if feedback.CONSOLE_LINK in fields:
        links.console_link = _as_str(fields[feedback.CONSOLE_LINK])
    if feedback.CLUSTER_SEGMENT in fields:
        links.cluster_segment = _as_str(fields[feedback.CLUSTER_SEGMENT])

    if feedback.URL in fields:
        knative.address = Addressable(url=_as_str(fields[feedback.URL]))
    if feedback.LATEST_CREATED_REVISION in fields:
        knative.latest_created_revision_name = _as_str(fields[feedback.LATEST_CREATED_REVISION])
    if feedback.LATEST_READY_REVISION in fields:
        knative.latest_ready_revision_name = _as_str(fields[feedback.LATEST_READY_REVISION])
    if feedback.OBSERVED_GENERATION in fields and fields[feedback.OBSERVED_GENERATION] is not None:
        knative.observed_generation = int(fields[feedback.OBSERVED_GENERATION])

    traffic = _traffic(fields)
    if traffic is not None:
        knative.traffic = traffic
    return out


class StatusFeedbackProjector:
    """Reconciler that projects bundle feedback onto workload status."""

    def __init__(self, store: ObjectStore) -> None:
        self._store = store

    def reconcile(self, request: Request) -> Result:
        try:
            workload = self._store.get(Workload, request.namespace, request.name)
        except NotFoundError:
            return Result()
        site = bound_site(workload)
        if not site or workload.is_deleting:
            return Result()

        name = bundle_name(workload.metadata.namespace, workload.metadata.name)
        try:
            bundle = self._store.get(ManifestBundle, site, name)
        except NotFoundError:
            logger.debug("No bundle %s/%s yet for %s", site, name, request)
            return Result()

        values = feedback.values_for(bundle, Workload.KIND, workload.metadata.name)
        if values is None:
            return Result()
        fields = feedback.as_mapping(values)

        # Re-read so the comparison and write use the latest version.
        workload = self._store.get(Workload, request.namespace, request.name)
        desired = project(workload.status, fields, site)
        if desired == workload.status:
            return Result()

        workload.status = desired
        self._store.update_status(workload)
        logger.info("Projected %d feedback field(s) onto workload %s", len(fields), request)
        return Result()
