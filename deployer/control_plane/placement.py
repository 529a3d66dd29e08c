"""
deployer/control_plane/placement.py
───────────────────────────────────
The placement scheduler: decides WHICH site a workload runs at, once.

How a site is chosen
────────────────────
1. spec.site names a literal site (non-empty, not a configured policy)
     → bind it verbatim. The decision source is not consulted.

2. Otherwise resolve a policy name:
     spec.site if it names a configured policy, else placements[0].
   The PlacementPolicy record must exist in the placements namespace;
   a missing one is a configuration error and is surfaced.

3. List DecisionRecords labelled with the policy, ordered by name.
     none                       → NoDecisionError (requeue after 10s)
     first candidate is local   → take the second candidate
     nothing usable             → NoDecisionError (requeue after 10s)

Binding
───────
The site goes into status.applicationLinks.site (together with the Scheduled
condition) first, then into the has-placement annotation. If the second
write fails the annotation is still absent, so the placement predicate keeps
firing and the next pass finishes the binding with the site already in
status.

Once the annotation is set the scheduler never touches the workload again.
Rebinding needs both the annotation and the status site cleared by hand.
"""

from __future__ import annotations

import logging
from typing import List

from deployer.control_plane.manager import Request, Result
from deployer.control_plane.predicates import has_placement
from deployer.shared import conditions
from deployer.shared.config import (
    DECISION_REQUEUE_SECONDS,
    HAS_PLACEMENT_ANNOTATION,
    LOCAL_CLUSTER,
    load_rcs_config,
)
from deployer.shared.errors import ConfigNotFoundError, NoDecisionError, NotFoundError
from deployer.shared.events import (
    NORMAL,
    PLACEMENT_DECISION_NOT_SATISFIED,
    RCS_CONFIG_NOT_FOUND,
    WARNING,
    WORKLOAD_SCHEDULED,
    EventRecorder,
)
from deployer.shared.models import DecisionRecord, PlacementPolicy, RCSConfig, Workload
from deployer.shared.store import ObjectStore

logger = logging.getLogger(__name__)


def choose_candidate(candidates: List[str]) -> str:
    """
    First candidate, or the second if the first is the local sentinel.

    Only the leading sentinel is skipped; later entries are taken as given.
    Raises NoDecisionError if nothing usable remains.
    """
    if candidates and candidates[0] == LOCAL_CLUSTER:
        candidates = candidates[1:]
    if not candidates or not candidates[0]:
        raise NoDecisionError("", "no valid candidate after skipping the local site")
    return candidates[0]


def resolve_policy(site: str, config: RCSConfig) -> str:
    """The policy to consult for ``site``, or "" if ``site`` is a literal site name."""
    placements = config.spec.placements
    if site and site not in placements:
        return ""
    if site:
        return site
    if not placements:
        raise ConfigNotFoundError("RCSConfig lists no placement policies")
    return placements[0]


class PlacementScheduler:
    """
    Reconciler for unbound workloads.

    Usage:
        scheduler = PlacementScheduler(store, recorder)
        result = scheduler.reconcile(Request("ns1", "app-x"))
    """

    def __init__(self, store: ObjectStore, recorder: EventRecorder) -> None:
        self._store = store
        self._recorder = recorder

    def reconcile(self, request: Request) -> Result:
        try:
            workload = self._store.get(Workload, request.namespace, request.name)
        except NotFoundError:
            logger.debug("Workload %s gone; nothing to schedule", request)
            return Result()

        if has_placement(workload) or workload.is_deleting:
            return Result()

        try:
            site = workload.status.application_links.site or self.pick_site(workload)
        except NoDecisionError as exc:
            logger.warning("Workload %s not scheduled yet: %s", request, exc)
            self._recorder.event(workload, WARNING, PLACEMENT_DECISION_NOT_SATISFIED, str(exc))
            return Result(requeue_after=DECISION_REQUEUE_SECONDS)
        except ConfigNotFoundError as exc:
            logger.error("Workload %s cannot be scheduled: %s", request, exc)
            self._recorder.event(workload, WARNING, RCS_CONFIG_NOT_FOUND, str(exc))
            raise

        self.bind(workload, site)
        return Result()

    def pick_site(self, workload: Workload) -> str:
        """Resolve ``workload`` to a site name. Raises NoDecisionError or ConfigNotFoundError."""
        config = load_rcs_config(self._store)

        site = workload.spec.site
        policy = resolve_policy(site, config)
        if not policy:
            logger.info("Workload %s/%s pinned to site %s",
                        workload.metadata.namespace, workload.metadata.name, site)
            return site
        return self.pick_decision(policy, config.spec.placements_namespace)

    def pick_decision(self, policy: str, namespace: str) -> str:
        try:
            self._store.get(PlacementPolicy, namespace, policy)
        except NotFoundError as exc:
            raise ConfigNotFoundError(
                f"placement policy {namespace}/{policy} not found"
            ) from exc

        records = self._store.list(
            DecisionRecord,
            namespace=namespace,
            labels={DecisionRecord.PLACEMENT_LABEL: policy},
        )
        if not records:
            raise NoDecisionError(policy)
        records.sort(key=lambda r: r.metadata.name)
        try:
            return choose_candidate(records[0].candidates)
        except NoDecisionError as exc:
            raise NoDecisionError(policy, exc.reason) from exc

    def bind(self, workload: Workload, site: str) -> Workload:
        """Persist the binding: status first, then the annotation."""
        key = f"{workload.metadata.namespace}/{workload.metadata.name}"

        status_changed = workload.status.application_links.site != site
        workload.status.application_links.site = site
        status_changed |= conditions.set_condition(
            workload.status.conditions,
            conditions.SCHEDULED,
            conditions.TRUE,
            WORKLOAD_SCHEDULED,
            f"bound to site {site}",
        )
        if status_changed:
            workload = self._store.update_status(workload)

        workload.metadata.annotations[HAS_PLACEMENT_ANNOTATION] = site
        workload = self._store.update(workload)

        logger.info("Workload %s scheduled → site %s", key, site)
        self._recorder.event(workload, NORMAL, WORKLOAD_SCHEDULED,
                             f"Workload {key} scheduled to site {site}")
        return workload
