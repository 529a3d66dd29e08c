"""
tests/test_status_feedback.py
─────────────────────────────
Test suite for deployer/control_plane/status_feedback.py and manifest_core/feedback.py

What we are testing
───────────────────
  • typed feedback values decode to Python values
  • only the workload's own manifest entry is read
  • named fields land on the right status fields
  • identical feedback produces exactly one status write
  • a reported site that disagrees with the binding is ignored

Test groups
───────────
Group 1: decoding
Group 2: projection
Group 3: reconcile
"""

from __future__ import annotations

import json
from typing import Dict, List

import pytest

from deployer.control_plane.manager import Request
from deployer.control_plane.status_feedback import StatusFeedbackProjector, project
from deployer.shared.config import HAS_PLACEMENT_ANNOTATION
from deployer.shared.models import (
    FeedbackValue,
    FieldValue,
    ManifestBundle,
    ManifestCondition,
    ManifestResourceMeta,
    ObjectMeta,
    StatusFeedbackResult,
    Workload,
    WorkloadStatus,
)
from deployer.shared.store import MODIFIED, InMemoryStore, WatchEvent
from manifest_core.feedback import as_mapping, decode, values_for

REQ = Request("ns1", "app-x")


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _string(name: str, value: str) -> FeedbackValue:
    return FeedbackValue(name=name, value=FieldValue(type="String", string=value))


def _integer(name: str, value: int) -> FeedbackValue:
    return FeedbackValue(name=name, value=FieldValue(type="Integer", integer=value))


def _raw(name: str, value: object) -> FeedbackValue:
    return FeedbackValue(name=name, value=FieldValue(type="JsonRaw", json_raw=json.dumps(value)))


def _manifest(kind: str, name: str, values: List[FeedbackValue]) -> ManifestCondition:
    return ManifestCondition(
        resource_meta=ManifestResourceMeta(kind=kind, name=name, namespace="ns1"),
        status_feedbacks=StatusFeedbackResult(values=values),
    )


def _seed(store: InMemoryStore, values: List[FeedbackValue], site: str = "site-7") -> None:
    workload = Workload(metadata=ObjectMeta(
        name="app-x", namespace="ns1", annotations={HAS_PLACEMENT_ANNOTATION: site},
    ))
    created = store.create(workload)
    created.status.application_links.site = site
    store.update_status(created)

    bundle = store.create(ManifestBundle(metadata=ObjectMeta(name="mw-create-ns1-app-x", namespace=site)))
    bundle.status.resource_status.manifests = [
        _manifest("Namespace", "ns1", [_string("site", "wrong-entry")]),
        _manifest("Capp", "app-x", values),
    ]
    store.update_status(bundle)


def _count_workload_status_writes(store: InMemoryStore) -> List[WatchEvent]:
    writes: List[WatchEvent] = []

    def _on(event: WatchEvent) -> None:
        if isinstance(event.obj, Workload) and event.type == MODIFIED:
            writes.append(event)

    store.watch(_on)
    return writes


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: decoding
# ─────────────────────────────────────────────────────────────────────────────

class TestDecode:

    def test_each_type(self) -> None:
        assert decode(FieldValue(type="String", string="x")) == "x"
        assert decode(FieldValue(type="Integer", integer=3)) == 3
        assert decode(FieldValue(type="Boolean", boolean=True)) is True
        assert decode(FieldValue(type="JsonRaw", json_raw="[1, 2]")) == [1, 2]

    def test_unknown_type_raises(self) -> None:
        with pytest.raises(ValueError):
            decode(FieldValue(type="Float"))

    def test_bad_values_are_dropped_from_mapping(self) -> None:
        values = [
            _string("consoleLink", "https://console"),
            FeedbackValue(name="broken", value=FieldValue(type="JsonRaw", json_raw="{not json")),
        ]
        assert as_mapping(values) == {"consoleLink": "https://console"}

    def test_values_for_picks_matching_manifest(self) -> None:
        bundle = ManifestBundle(metadata=ObjectMeta(name="b", namespace="s"))
        bundle.status.resource_status.manifests = [
            _manifest("Namespace", "ns1", [_string("site", "a")]),
            _manifest("Capp", "app-x", [_string("site", "b")]),
        ]
        (value,) = values_for(bundle, "Capp", "app-x")
        assert value.value.string == "b"
        assert values_for(bundle, "Capp", "other") is None


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: projection
# ─────────────────────────────────────────────────────────────────────────────

class TestProject:

    def test_named_fields_map_onto_status(self) -> None:
        fields: Dict[str, object] = {
            "site": "site-7",
            "consoleLink": "https://console.site-7",
            "clusterSegment": "prod",
            "url": "https://app-x.site-7.example.com",
            "latestCreatedRevisionName": "app-x-00002",
            "latestReadyRevisionName": "app-x-00001",
            "observedGeneration": 2,
            "trafficRevisionName": ["app-x-00001", "app-x-00002"],
            "trafficPercent": [90, 10],
            "trafficLatestRevision": [False, True],
        }
        status = project(WorkloadStatus(), fields, "site-7")

        assert status.application_links.site == "site-7"
        assert status.application_links.console_link == "https://console.site-7"
        assert status.application_links.cluster_segment == "prod"
        knative = status.knative_object_status
        assert knative.address.url == "https://app-x.site-7.example.com"
        assert knative.latest_created_revision_name == "app-x-00002"
        assert knative.latest_ready_revision_name == "app-x-00001"
        assert knative.observed_generation == 2
        assert [(t.revision_name, t.percent, t.latest_revision) for t in knative.traffic] == [
            ("app-x-00001", 90, False),
            ("app-x-00002", 10, True),
        ]

    def test_absent_fields_are_left_alone(self) -> None:
        before = WorkloadStatus()
        before.application_links.console_link = "keep-me"
        after = project(before, {"clusterSegment": "dev"}, "site-7")
        assert after.application_links.console_link == "keep-me"
        assert before.application_links.cluster_segment == ""

    def test_disagreeing_site_is_ignored(self) -> None:
        before = WorkloadStatus()
        before.application_links.site = "site-7"
        after = project(before, {"site": "site-9"}, "site-7")
        assert after.application_links.site == "site-7"


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: reconcile
# ─────────────────────────────────────────────────────────────────────────────

class TestProjectorReconcile:

    def test_projects_workload_entry_only(self, store) -> None:
        _seed(store, [_string("consoleLink", "https://console"), _string("site", "site-7")])
        StatusFeedbackProjector(store).reconcile(REQ)

        status = store.get(Workload, "ns1", "app-x").status
        assert status.application_links.console_link == "https://console"
        assert status.application_links.site == "site-7"

    def test_identical_feedback_writes_once(self, store) -> None:
        _seed(store, [_string("url", "https://app-x"), _integer("observedGeneration", 1)])
        writes = _count_workload_status_writes(store)
        projector = StatusFeedbackProjector(store)

        projector.reconcile(REQ)
        projector.reconcile(REQ)
        assert len(writes) == 1

    def test_traffic_arrays_zip_into_targets(self, store) -> None:
        _seed(store, [
            _raw("trafficRevisionName", ["app-x-00001", "app-x-00002"]),
            _raw("trafficPercent", [50, 50]),
            _raw("trafficLatestRevision", [False, True]),
        ])
        StatusFeedbackProjector(store).reconcile(REQ)

        traffic = store.get(Workload, "ns1", "app-x").status.knative_object_status.traffic
        assert [t.percent for t in traffic] == [50, 50]
        assert traffic[1].latest_revision is True

    def test_missing_bundle_is_a_no_op(self, store) -> None:
        store.create(Workload(metadata=ObjectMeta(
            name="app-x", namespace="ns1", annotations={HAS_PLACEMENT_ANNOTATION: "site-7"},
        )))
        writes = _count_workload_status_writes(store)
        assert StatusFeedbackProjector(store).reconcile(REQ).requeue_after is None
        assert writes == []

    def test_unreported_manifest_is_a_no_op(self, store) -> None:
        _seed(store, [])
        bundle = store.get(ManifestBundle, "site-7", "mw-create-ns1-app-x")
        bundle.status.resource_status.manifests = []
        store.update_status(bundle)

        writes = _count_workload_status_writes(store)
        StatusFeedbackProjector(store).reconcile(REQ)
        assert writes == []
