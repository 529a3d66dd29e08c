"""
manifest_core/feedback.py
─────────────────────────
The status feedback channel between a site and the control plane.

Outbound: every bundle carries one ManifestConfigOption for the workload copy,
listing named JSON paths the remote agent should evaluate against the live
workload and report back.

Inbound: the remote agent writes the evaluated values into the bundle's
status, under the manifest they were evaluated against. values_for() finds
that list; decode() turns one typed value into a Python value.

Traffic fields use wildcard paths over the traffic list and come back as raw
JSON arrays, one element per traffic target, all three in the same order.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from deployer.shared.models import (
    API_GROUP,
    FeedbackRule,
    FeedbackValue,
    FieldValue,
    JsonPath,
    ManifestBundle,
    ManifestConfigOption,
    ResourceIdentifier,
    Workload,
)

logger = logging.getLogger(__name__)

WORKLOAD_RESOURCE: str = "capps"
"""Plural resource name of the workload kind, as the remote agent addresses it."""

# ── Feedback field names ──────────────────────────────────────────────────────

SITE = "site"
CONSOLE_LINK = "consoleLink"
CLUSTER_SEGMENT = "clusterSegment"
URL = "url"
LATEST_CREATED_REVISION = "latestCreatedRevisionName"
LATEST_READY_REVISION = "latestReadyRevisionName"
OBSERVED_GENERATION = "observedGeneration"
TRAFFIC_PERCENT = "trafficPercent"
TRAFFIC_REVISION_NAME = "trafficRevisionName"
TRAFFIC_LATEST_REVISION = "trafficLatestRevision"

FEEDBACK_PATHS: Tuple[Tuple[str, str], ...] = (
    (SITE,                    ".status.applicationLinks.site"),
    (CONSOLE_LINK,            ".status.applicationLinks.consoleLink"),
    (CLUSTER_SEGMENT,         ".status.applicationLinks.clusterSegment"),
    (URL,                     ".status.knativeObjectStatus.address.url"),
    (LATEST_CREATED_REVISION, ".status.knativeObjectStatus.latestCreatedRevisionName"),
    (LATEST_READY_REVISION,   ".status.knativeObjectStatus.latestReadyRevisionName"),
    (OBSERVED_GENERATION,     ".status.knativeObjectStatus.observedGeneration"),
    (TRAFFIC_PERCENT,         ".status.knativeObjectStatus.traffic[*].percent"),
    (TRAFFIC_REVISION_NAME,   ".status.knativeObjectStatus.traffic[*].revisionName"),
    (TRAFFIC_LATEST_REVISION, ".status.knativeObjectStatus.traffic[*].latestRevision"),
)
"""(name, JSON path) pairs requested for every workload copy. Order is stable."""


def feedback_config_for(workload: Workload) -> ManifestConfigOption:
    """The ManifestConfigOption asking the site to report on ``workload``."""
    return ManifestConfigOption(
        resource_identifier=ResourceIdentifier(
            group=API_GROUP,
            resource=WORKLOAD_RESOURCE,
            name=workload.metadata.name,
            namespace=workload.metadata.namespace,
        ),
        feedback_rules=[
            FeedbackRule(
                type="JSONPaths",
                json_paths=[JsonPath(name=name, path=path) for name, path in FEEDBACK_PATHS],
            )
        ],
    )


def values_for(bundle: ManifestBundle, kind: str, name: str) -> Optional[List[FeedbackValue]]:
    """
    Feedback values reported for the manifest (kind, name), or None if the
    site has not reported on it yet.
    """
    for manifest in bundle.status.resource_status.manifests:
        meta = manifest.resource_meta
        if meta.kind == kind and meta.name == name:
            return manifest.status_feedbacks.values
    return None


def decode(value: FieldValue) -> Any:
    """
    Python value of one typed feedback value.

    Raises ValueError on an unknown type or a JsonRaw payload that is not
    valid JSON.
    """
    if value.type == "String":
        return value.string or ""
    if value.type == "Integer":
        return value.integer
    if value.type == "Boolean":
        return value.boolean
    if value.type == "JsonRaw":
        return json.loads(value.json_raw) if value.json_raw else None
    raise ValueError(f"unknown feedback value type {value.type!r}")


def as_mapping(values: List[FeedbackValue]) -> Dict[str, Any]:
    """name → decoded value. Undecodable entries are dropped with a warning."""
    out: Dict[str, Any] = {}
    for item in values:
        try:
            out[item.name] = decode(item.value)
        except ValueError as exc:
            logger.warning("Ignoring feedback value %r: %s", item.name, exc)
    return out
