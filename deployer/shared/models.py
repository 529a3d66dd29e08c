"""
deployer/shared/models.py
─────────────────────────
The single source of truth for every record the control plane reads or writes.

Design philosophy
-----------------
Every model answers one question: "What does the control plane *need to know*
about this record in order to place, synthesise, clean up or project it?"

The records live in a declarative store (in-memory for tests, a Kubernetes
API server in production). They all share the same envelope: a kind, an
apiVersion and an ObjectMeta, plus a spec and/or status body.

Wire names are camelCase (the store's JSON format); Python attributes are
snake_case. Every model accepts both on input and dumps camelCase with
``to_dict()``.

Reading guide
-------------
Read top-to-bottom. Each section builds on the ones above it.

  SECTION 1: envelope           (ObjectMeta, Condition, KubeObject)
  SECTION 2: workload           (Workload and its container template)
  SECTION 3: configuration      (RCSConfig, PlacementPolicy, DecisionRecord)
  SECTION 4: site inventory     (ConfigMap, Secret, RoleBinding, Node, Pod)
  SECTION 5: manifest bundle    (ManifestBundle, feedback rules and values)
  SECTION 6: resource score     (ScoreRecord)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


API_GROUP: str = "rcs.dana.io"
"""API group of the workload and configuration kinds. Prefixes every annotation
and label key the control plane owns."""

Quantity = Union[str, int, float]
"""A resource quantity as written in a manifest: "500m", "1Gi", 2, 0.5."""


class _WireModel(BaseModel):
    """Base for nested bodies: camelCase on the wire, unknown fields preserved."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENVELOPE
# Identity, versioning and lifecycle markers shared by every record.
# ─────────────────────────────────────────────────────────────────────────────

class ObjectMeta(_WireModel):
    """
    Identity and bookkeeping for one stored record.

    Fields:
        name / namespace   → The unique key. Cluster-scoped kinds use "".
        labels             → Indexed key/value pairs (used by list selectors).
        annotations        → Free-form side channel. The has-placement
                             annotation lives here.
        finalizers         → Markers that block hard deletion until removed.
        resource_version   → Optimistic-concurrency token. Set by the store on
                             every write; a write carrying a stale token fails
                             with ConflictError.
        generation         → Bumped by the store whenever the spec changes.
        deletion_timestamp → Soft-delete marker. Set by the store when a record
                             with finalizers is deleted.
    """
    name: str
    namespace: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    resource_version: str = ""
    generation: int = 0
    uid: str = ""
    deletion_timestamp: Optional[datetime] = None


class Condition(_WireModel):
    """A single observed condition on a workload's status."""
    type: str
    status: str = Field(..., description="'True', 'False' or 'Unknown'")
    reason: str = ""
    message: str = ""
    last_transition_time: Optional[datetime] = None


class KubeObject(BaseModel):
    """
    Common envelope for every stored kind.

    Subclasses set KIND and API_VERSION. The store keys records by
    (KIND, namespace, name), so two kinds never collide on a name.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    KIND: ClassVar[str] = ""
    API_VERSION: ClassVar[str] = "v1"

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> Tuple[str, str]:
        """(namespace, name): the record's identity within its kind."""
        return self.metadata.namespace, self.metadata.name

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def to_dict(self) -> Dict[str, Any]:
        """Serialise as a full manifest, apiVersion and kind first."""
        body = self.model_dump(by_alias=True, exclude_none=True, mode="json")
        return {"apiVersion": self.API_VERSION, "kind": self.KIND, **body}


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: WORKLOAD
# The user-facing declarative record and the container template it carries.
# ─────────────────────────────────────────────────────────────────────────────

class LocalObjectReference(_WireModel):
    name: str


class KeySelector(_WireModel):
    """Reference to one key of a ConfigMap or Secret in the same namespace."""
    name: str
    key: str = ""


class EnvVarSource(_WireModel):
    config_map_key_ref: Optional[KeySelector] = None
    secret_key_ref: Optional[KeySelector] = None


class EnvVar(_WireModel):
    name: str
    value: Optional[str] = None
    value_from: Optional[EnvVarSource] = None


class EnvFromSource(_WireModel):
    prefix: Optional[str] = None
    config_map_ref: Optional[LocalObjectReference] = None
    secret_ref: Optional[LocalObjectReference] = None


class ResourceRequirements(_WireModel):
    """Requests and limits keyed by resource name ("cpu", "memory", ...)."""
    requests: Dict[str, Quantity] = Field(default_factory=dict)
    limits: Dict[str, Quantity] = Field(default_factory=dict)


class Container(_WireModel):
    name: str = ""
    image: str = ""
    env: List[EnvVar] = Field(default_factory=list)
    env_from: List[EnvFromSource] = Field(default_factory=list)
    resources: ResourceRequirements = Field(default_factory=ResourceRequirements)


class ConfigMapVolumeSource(_WireModel):
    name: str


class SecretVolumeSource(_WireModel):
    secret_name: str


class Volume(_WireModel):
    name: str
    config_map: Optional[ConfigMapVolumeSource] = None
    secret: Optional[SecretVolumeSource] = None


class PodTemplateBody(_WireModel):
    containers: List[Container] = Field(default_factory=list)
    volumes: List[Volume] = Field(default_factory=list)
    image_pull_secrets: List[LocalObjectReference] = Field(default_factory=list)


class RevisionTemplate(_WireModel):
    spec: PodTemplateBody = Field(default_factory=PodTemplateBody)


class ConfigurationSpec(_WireModel):
    template: RevisionTemplate = Field(default_factory=RevisionTemplate)


class RouteSpec(_WireModel):
    """
    External routing for the workload.

    tls_secret is only meaningful when tls_enabled is True. Admission has
    already checked that the two agree.
    """
    hostname: str = ""
    tls_enabled: bool = False
    tls_secret: str = ""


class WorkloadSpec(_WireModel):
    """
    What the user asked for. Read-only to the control plane.

    site:
        One of three things:
          • ""                    → use the default placement policy
          • a configured policy   → ask the decision source for that policy
          • anything else         → a literal site name, bound verbatim
    """
    site: str = ""
    scale_metric: str = ""
    configuration_spec: ConfigurationSpec = Field(default_factory=ConfigurationSpec)
    route_spec: RouteSpec = Field(default_factory=RouteSpec)


class ApplicationLinks(_WireModel):
    site: str = ""
    console_link: str = ""
    cluster_segment: str = ""


class Addressable(_WireModel):
    url: str = ""


class TrafficTarget(_WireModel):
    revision_name: str = ""
    latest_revision: Optional[bool] = None
    percent: Optional[int] = None


class KnativeObjectStatus(_WireModel):
    """Sub-status observed by the workload engine at the remote site."""
    observed_generation: Optional[int] = None
    latest_created_revision_name: str = ""
    latest_ready_revision_name: str = ""
    address: Optional[Addressable] = None
    traffic: List[TrafficTarget] = Field(default_factory=list)


class WorkloadStatus(_WireModel):
    """
    Owned by the control plane. Only the scheduler and the status-feedback
    projector write here (plus condition bookkeeping during synthesis).
    """
    application_links: ApplicationLinks = Field(default_factory=ApplicationLinks)
    knative_object_status: KnativeObjectStatus = Field(default_factory=KnativeObjectStatus)
    conditions: List[Condition] = Field(default_factory=list)


class Workload(KubeObject):
    """
    The user-declared deployable unit ("container app").

    Lifecycle:
        created externally → scheduler binds a site once → sync keeps the
        bundle current → deleted externally (soft-delete) → finalizer drains
        the remote bundle → hard-deleted.
    """
    KIND: ClassVar[str] = "Capp"
    API_VERSION: ClassVar[str] = f"{API_GROUP}/v1alpha1"

    spec: WorkloadSpec = Field(default_factory=WorkloadSpec)
    status: WorkloadStatus = Field(default_factory=WorkloadStatus)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: CONFIGURATION & DECISIONS
# Read-only inputs to the scheduler.
# ─────────────────────────────────────────────────────────────────────────────

class RCSConfigSpec(_WireModel):
    """
    Control-plane configuration.

    Fields:
        placements_namespace      → Namespace holding the placement policies
                                    and their decision records. "" means the
                                    scheduler's default namespace.
        placements                → Recognised policy names. The first entry is
                                    the default policy.
        default_resources         → Applied at admission to containers without
                                    explicit requests/limits.
        invalid_hostname_patterns → Regexes of hostnames admission rejects.
    """
    placements_namespace: str = ""
    placements: List[str] = Field(default_factory=list)
    default_resources: ResourceRequirements = Field(default_factory=ResourceRequirements)
    invalid_hostname_patterns: List[str] = Field(default_factory=list)


class RCSConfig(KubeObject):
    """Singleton configuration record. Fetched fresh on every reconcile."""
    KIND: ClassVar[str] = "RCSConfig"
    API_VERSION: ClassVar[str] = f"{API_GROUP}/v1alpha1"

    spec: RCSConfigSpec = Field(default_factory=RCSConfigSpec)


class PlacementPolicy(KubeObject):
    """
    Named decision-making scope. Its body belongs to the external decision
    source; the scheduler only checks that it exists.
    """
    KIND: ClassVar[str] = "Placement"
    API_VERSION: ClassVar[str] = "cluster.open-cluster-management.io/v1beta1"

    spec: Dict[str, Any] = Field(default_factory=dict)


class ClusterDecision(_WireModel):
    cluster_name: str
    reason: str = ""


class DecisionStatus(_WireModel):
    decisions: List[ClusterDecision] = Field(default_factory=list)


class DecisionRecord(KubeObject):
    """
    Candidate sites for a placement policy, produced by the decision source.

    Tagged with PLACEMENT_LABEL = <policy name>. May contain the reserved
    "local-cluster" entry, which is never a valid workload target.
    """
    KIND: ClassVar[str] = "PlacementDecision"
    API_VERSION: ClassVar[str] = "cluster.open-cluster-management.io/v1beta1"

    PLACEMENT_LABEL: ClassVar[str] = "cluster.open-cluster-management.io/placement"

    status: DecisionStatus = Field(default_factory=DecisionStatus)

    @property
    def candidates(self) -> List[str]:
        """Candidate site names in decision order."""
        return [d.cluster_name for d in self.status.decisions]


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: SITE INVENTORY
# Dependency objects discovered during synthesis, and the node/pod inventory
# the scorer reads.
# ─────────────────────────────────────────────────────────────────────────────

class ConfigMap(KubeObject):
    KIND: ClassVar[str] = "ConfigMap"
    API_VERSION: ClassVar[str] = "v1"

    data: Dict[str, str] = Field(default_factory=dict)
    binary_data: Dict[str, str] = Field(default_factory=dict)


class Secret(KubeObject):
    KIND: ClassVar[str] = "Secret"
    API_VERSION: ClassVar[str] = "v1"

    type: str = "Opaque"
    data: Dict[str, str] = Field(default_factory=dict)


class RoleRef(_WireModel):
    api_group: str = "rbac.authorization.k8s.io"
    kind: str = "Role"
    name: str


class Subject(_WireModel):
    kind: str = "User"
    name: str
    api_group: Optional[str] = None
    namespace: Optional[str] = None


class RoleBinding(KubeObject):
    KIND: ClassVar[str] = "RoleBinding"
    API_VERSION: ClassVar[str] = "rbac.authorization.k8s.io/v1"

    role_ref: RoleRef
    subjects: List[Subject] = Field(default_factory=list)


class NodeSpec(_WireModel):
    unschedulable: bool = False


class NodeStatus(_WireModel):
    allocatable: Dict[str, Quantity] = Field(default_factory=dict)


class Node(KubeObject):
    """A machine at a site. Cordoned nodes have spec.unschedulable=True."""
    KIND: ClassVar[str] = "Node"
    API_VERSION: ClassVar[str] = "v1"

    spec: NodeSpec = Field(default_factory=NodeSpec)
    status: NodeStatus = Field(default_factory=NodeStatus)


class PodSpec(_WireModel):
    containers: List[Container] = Field(default_factory=list)
    init_containers: List[Container] = Field(default_factory=list)
    overhead: Optional[Dict[str, Quantity]] = None


class Pod(KubeObject):
    KIND: ClassVar[str] = "Pod"
    API_VERSION: ClassVar[str] = "v1"

    spec: PodSpec = Field(default_factory=PodSpec)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: MANIFEST BUNDLE
# The unit shipped to a site, plus the feedback channel back from it.
# ─────────────────────────────────────────────────────────────────────────────

Manifest = Dict[str, Any]
"""One complete object manifest inside a bundle (apiVersion, kind, metadata, ...)."""


class JsonPath(_WireModel):
    name: str
    path: str


class FeedbackRule(_WireModel):
    type: str = "JSONPaths"
    json_paths: List[JsonPath] = Field(default_factory=list)


class ResourceIdentifier(_WireModel):
    group: str = ""
    resource: str = ""
    name: str = ""
    namespace: str = ""


class ManifestConfigOption(_WireModel):
    """Which manifest in the bundle to watch, and what to report back about it."""
    resource_identifier: ResourceIdentifier
    feedback_rules: List[FeedbackRule] = Field(default_factory=list)


class ManifestsTemplate(_WireModel):
    manifests: List[Manifest] = Field(default_factory=list)


class BundleSpec(_WireModel):
    workload: ManifestsTemplate = Field(default_factory=ManifestsTemplate)
    manifest_configs: List[ManifestConfigOption] = Field(default_factory=list)


class FieldValue(_WireModel):
    """
    A typed feedback value. Exactly one of the value fields is set, matching
    ``type``: String, Integer, Boolean or JsonRaw.
    """
    type: str
    string: Optional[str] = None
    integer: Optional[int] = None
    boolean: Optional[bool] = None
    json_raw: Optional[str] = None


class FeedbackValue(_WireModel):
    name: str
    value: FieldValue


class StatusFeedbackResult(_WireModel):
    values: List[FeedbackValue] = Field(default_factory=list)


class ManifestResourceMeta(_WireModel):
    ordinal: int = 0
    group: str = ""
    version: str = ""
    kind: str = ""
    resource: str = ""
    name: str = ""
    namespace: str = ""


class ManifestCondition(_WireModel):
    resource_meta: ManifestResourceMeta = Field(default_factory=ManifestResourceMeta)
    status_feedbacks: StatusFeedbackResult = Field(default_factory=StatusFeedbackResult)


class ManifestResourceStatus(_WireModel):
    manifests: List[ManifestCondition] = Field(default_factory=list)


class BundleStatus(_WireModel):
    resource_status: ManifestResourceStatus = Field(default_factory=ManifestResourceStatus)


class ManifestBundle(KubeObject):
    """
    Everything needed to run one workload at one site.

    Identity: name = "mw-create-<ns>-<name>", namespace = the bound site.
    Owned exclusively by the sync reconciler; the remote site writes status.
    """
    KIND: ClassVar[str] = "ManifestWork"
    API_VERSION: ClassVar[str] = "work.open-cluster-management.io/v1"

    spec: BundleSpec = Field(default_factory=BundleSpec)
    status: BundleStatus = Field(default_factory=BundleStatus)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: RESOURCE SCORE
# Published by the per-site score agent, consumed by the decision source.
# ─────────────────────────────────────────────────────────────────────────────

class ScoreItem(_WireModel):
    name: str
    value: int = Field(..., ge=-100, le=100)


class ScoreStatus(_WireModel):
    scores: List[ScoreItem] = Field(default_factory=list)


class ScoreRecord(KubeObject):
    """One per site: cpuAvailable and memAvailable, each in [-100, 100]."""
    KIND: ClassVar[str] = "AddOnPlacementScore"
    API_VERSION: ClassVar[str] = "cluster.open-cluster-management.io/v1alpha1"

    status: ScoreStatus = Field(default_factory=ScoreStatus)

    def score(self, name: str) -> Optional[int]:
        for item in self.status.scores:
            if item.name == name:
                return item.value
        return None
