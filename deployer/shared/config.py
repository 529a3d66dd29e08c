"""
deployer/shared/config.py
─────────────────────────
Well-known names and the control-plane configuration lookup.

Every string here is part of the wire contract with other components (the
decision source, the remote sites, admission). Changing one is a migration,
not a refactor.
"""

from __future__ import annotations

import logging

from deployer.shared.errors import ConfigNotFoundError, NotFoundError
from deployer.shared.models import API_GROUP, RCSConfig
from deployer.shared.store import ObjectStore

logger = logging.getLogger(__name__)

# ── Configuration record ──────────────────────────────────────────────────────

CONFIG_NAMESPACE: str = "rcs-deployer-system"
CONFIG_NAME: str = "rcs-config"
"""The singleton RCSConfig lives at rcs-deployer-system/rcs-config."""

DEFAULT_PLACEMENTS_NAMESPACE: str = "default"
"""Used when RCSConfig.spec.placementsNamespace is empty."""

# ── Annotations and labels ────────────────────────────────────────────────────

HAS_PLACEMENT_ANNOTATION: str = f"{API_GROUP}/has-placement"
"""
Binding marker on a workload. Its value is the bound site.

Absent → the scheduler owns the workload. Present → the bundle sync owns it.
Once set it never changes; site binding is sticky.
"""

WORKLOAD_NAME_ANNOTATION: str = f"{API_GROUP}/capp-name"
WORKLOAD_NAMESPACE_ANNOTATION: str = f"{API_GROUP}/capp-namespace"
"""Linkage annotations on a bundle pointing back at its workload."""

MANAGED_BY_LABEL: str = f"{API_GROUP}/managed-by"
MANAGED_BY_VALUE: str = "rcs"
"""Stamped on every synthesised workload and Namespace manifest."""

FINALIZER: str = "dana.io/capp-cleanup"
"""Blocks hard deletion of a workload until its remote bundle is gone."""

# ── Placement ─────────────────────────────────────────────────────────────────

LOCAL_CLUSTER: str = "local-cluster"
"""Reserved decision entry naming the control plane's own site. Never a target."""

BUNDLE_PREFIX: str = "mw-create-"
"""Bundle name = BUNDLE_PREFIX + <workload namespace> + "-" + <workload name>."""

# ── Requeue delays (seconds) ──────────────────────────────────────────────────

DECISION_REQUEUE_SECONDS: float = 10.0
"""No usable placement decision yet. The decision source needs time to catch up."""

CONFLICT_REQUEUE_SECONDS: float = 2.0
"""Lost an optimistic-concurrency race on a bundle write."""

DELETION_REQUEUE_SECONDS: float = 2.0
"""After a deletion pass, come back to observe the finalizer removal."""


def bundle_name(namespace: str, name: str) -> str:
    return f"{BUNDLE_PREFIX}{namespace}-{name}"


def load_rcs_config(store: ObjectStore) -> RCSConfig:
    """
    Fetch the configuration record. Never cached across reconciles.

    Raises ConfigNotFoundError if it is missing. An empty placementsNamespace
    is filled with DEFAULT_PLACEMENTS_NAMESPACE on the returned copy.
    """
    try:
        cfg = store.get(RCSConfig, CONFIG_NAMESPACE, CONFIG_NAME)
    except NotFoundError as exc:
        raise ConfigNotFoundError(
            f"RCSConfig {CONFIG_NAMESPACE}/{CONFIG_NAME} not found"
        ) from exc
    if not cfg.spec.placements_namespace:
        cfg.spec.placements_namespace = DEFAULT_PLACEMENTS_NAMESPACE
    return cfg
