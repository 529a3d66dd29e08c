"""
deployer/shared/events.py
─────────────────────────
Human-facing events attached to workloads.

Events are advisory: they show up next to the workload for operators, they
never drive control flow. Every reconciler emits through an EventRecorder so
tests can assert on what an operator would have seen.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from deployer.shared.models import KubeObject

logger = logging.getLogger(__name__)

NORMAL = "Normal"
WARNING = "Warning"

# ── Reason codes ──────────────────────────────────────────────────────────────

WORKLOAD_SCHEDULED = "WorkloadScheduled"
PLACEMENT_DECISION_NOT_SATISFIED = "PlacementDecisionNotSatisfied"
VOLUME_NOT_FOUND = "VolumeNotFound"
AUTH_MANIFESTS_CREATION_FAILED = "AuthManifestsCreationFailed"
MANIFEST_BUNDLE_CREATED = "ManifestBundleCreated"
MANIFEST_BUNDLE_CREATION_FAILED = "ManifestBundleCreationFailed"
MANIFEST_BUNDLE_UPDATED = "ManifestBundleUpdated"
MANIFEST_BUNDLE_UPDATE_FAILED = "ManifestBundleUpdateFailed"
RCS_CONFIG_NOT_FOUND = "RCSConfigNotFound"


@dataclass(frozen=True)
class Event:
    kind: str
    namespace: str
    name: str
    type: str
    reason: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class EventRecorder(Protocol):
    def event(self, obj: KubeObject, event_type: str, reason: str, message: str) -> None: ...


class RecordingEventRecorder:
    """Keeps every event in order. Also logs each one at INFO/WARNING."""

    def __init__(self) -> None:
        self._events: List[Event] = []
        self._lock = threading.Lock()

    def event(self, obj: KubeObject, event_type: str, reason: str, message: str) -> None:
        event = Event(
            kind=obj.KIND,
            namespace=obj.metadata.namespace,
            name=obj.metadata.name,
            type=event_type,
            reason=reason,
            message=message,
        )
        with self._lock:
            self._events.append(event)
        level = logging.WARNING if event_type == WARNING else logging.INFO
        logger.log(level, "[%s %s/%s] %s: %s",
                   event.kind, event.namespace, event.name, reason, message)

    @property
    def events(self) -> List[Event]:
        with self._lock:
            return list(self._events)

    def reasons(self, name: Optional[str] = None) -> List[str]:
        """Reason codes in emission order, optionally for one record name."""
        return [e.reason for e in self.events if name is None or e.name == name]
