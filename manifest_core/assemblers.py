"""
manifest_core/assemblers.py
───────────────────────────
The three sub-assemblers that together produce a workload's manifest list.

How assembly works
──────────────────
Each assembler answers one question about a workload and returns the
manifests that answer it:

  CoreAssembler     "What runs?"        → the workload copy + its Namespace
  VolumesAssembler  "What does it read?" → copies of every referenced
                                           ConfigMap and Secret
  AuthAssembler     "Who may watch it?"  → a logs-reader Role + RoleBinding

They share nothing but an AssemblyContext: the store to read from, the event
sink, a correlation id for log lines and an optional deadline. The
WorkloadDirector (director.py) runs them in that fixed order and stops at
the first error, so a bundle is either complete or not written at all.

Assemblers never write to the store.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Tuple

from deployer.shared.errors import (
    AuthAssemblyError,
    DeadlineExceededError,
    NotFoundError,
    StoreError,
    VolumeNotFoundError,
)
from deployer.shared.events import EventRecorder
from deployer.shared.models import ConfigMap, Manifest, RoleBinding, Secret, Workload
from deployer.shared.store import ObjectStore
from manifest_core.builders import (
    LOG_READER_ROLES,
    build_config_map,
    build_logs_reader_binding,
    build_logs_reader_role,
    build_namespace,
    build_secret,
    build_workload,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssemblyContext:
    """
    Everything an assembler may use besides the workload itself.

    deadline is a time.monotonic() value, or None for no deadline.
    """
    store: ObjectStore
    recorder: EventRecorder
    correlation_id: str = ""
    deadline: Optional[float] = None
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def check_deadline(self) -> None:
        if self.deadline is not None and self.clock() >= self.deadline:
            raise DeadlineExceededError(f"[{self.correlation_id}] assembly deadline exceeded")


class Assembler(Protocol):
    def assemble(self, ctx: AssemblyContext, workload: Workload) -> List[Manifest]: ...


class CoreAssembler:
    """The workload copy followed by its origin Namespace."""

    def assemble(self, ctx: AssemblyContext, workload: Workload) -> List[Manifest]:
        return [build_workload(workload), build_namespace(workload.metadata.namespace)]


# ── Volumes ───────────────────────────────────────────────────────────────────

CONFIG_MAP = "ConfigMap"
SECRET = "Secret"

VolumeRef = Tuple[str, str]
"""(kind, name) of a referenced ConfigMap or Secret."""


def collect_volume_refs(workload: Workload) -> List[VolumeRef]:
    """
    Every ConfigMap/Secret the workload references, first occurrence first.

    Scan order: envFrom, env valueFrom, volumes, imagePullSecrets, then the
    route's TLS secret when TLS is enabled.
    """
    template = workload.spec.configuration_spec.template.spec
    refs: List[VolumeRef] = []

    for container in template.containers:
        for source in container.env_from:
            if source.config_map_ref is not None:
                refs.append((CONFIG_MAP, source.config_map_ref.name))
            if source.secret_ref is not None:
                refs.append((SECRET, source.secret_ref.name))

    for container in template.containers:
        for env in container.env:
            if env.value_from is None:
                continue
            if env.value_from.config_map_key_ref is not None:
                refs.append((CONFIG_MAP, env.value_from.config_map_key_ref.name))
            if env.value_from.secret_key_ref is not None:
                refs.append((SECRET, env.value_from.secret_key_ref.name))

    for volume in template.volumes:
        if volume.config_map is not None:
            refs.append((CONFIG_MAP, volume.config_map.name))
        if volume.secret is not None:
            refs.append((SECRET, volume.secret.secret_name))

    for pull_secret in template.image_pull_secrets:
        refs.append((SECRET, pull_secret.name))

    route = workload.spec.route_spec
    if route.tls_enabled and route.tls_secret:
        refs.append((SECRET, route.tls_secret))

    seen = set()
    unique: List[VolumeRef] = []
    for ref in refs:
        if ref[1] and ref not in seen:
            seen.add(ref)
            unique.append(ref)
    return unique


class VolumesAssembler:
    """Copies of every referenced ConfigMap and Secret, read from the origin namespace."""

    def assemble(self, ctx: AssemblyContext, workload: Workload) -> List[Manifest]:
        namespace = workload.metadata.namespace
        manifests: List[Manifest] = []
        for kind, name in collect_volume_refs(workload):
            ctx.check_deadline()
            cls = ConfigMap if kind == CONFIG_MAP else Secret
            try:
                obj = ctx.store.get(cls, namespace, name)
            except NotFoundError as exc:
                raise VolumeNotFoundError(kind, name, exc) from exc
            if isinstance(obj, ConfigMap):
                manifests.append(build_config_map(obj))
            else:
                manifests.append(build_secret(obj))
        logger.debug("[%s] %d volume manifest(s) for %s/%s",
                     ctx.correlation_id, len(manifests), namespace, workload.metadata.name)
        return manifests


# ── Auth ──────────────────────────────────────────────────────────────────────

def log_reader_users(bindings: List[RoleBinding]) -> List[str]:
    """Subject names of every binding whose role is in LOG_READER_ROLES."""
    users: List[str] = []
    for binding in bindings:
        if binding.role_ref.name not in LOG_READER_ROLES:
            continue
        users.extend(subject.name for subject in binding.subjects)
    return users


class AuthAssembler:
    """A logs-reader Role and RoleBinding granting origin-namespace admins access at the site."""

    def assemble(self, ctx: AssemblyContext, workload: Workload) -> List[Manifest]:
        namespace = workload.metadata.namespace
        try:
            bindings = ctx.store.list(RoleBinding, namespace=namespace)
        except StoreError as exc:
            raise AuthAssemblyError(
                f"failed to list role bindings in {namespace!r}: {exc}"
            ) from exc
        users = log_reader_users(bindings)
        return [
            build_logs_reader_role(workload),
            build_logs_reader_binding(workload, users),
        ]
