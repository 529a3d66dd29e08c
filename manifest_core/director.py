"""
manifest_core/director.py
─────────────────────────
The WorkloadDirector: runs the assembler chain and wraps the result in a bundle.

How the director works
──────────────────────
  1. Check the deadline.
  2. Run each assembler in order (core → volumes → auth), appending its
     manifests to one list.
  3. On the first failure: emit the matching warning event on the workload and
     re-raise. Nothing is returned, so no partial bundle can be written.

generate_bundle() then gives that list its deterministic identity
(mw-create-<ns>-<name> in the site's namespace), the linkage annotations
pointing back at the workload and the feedback request for the workload
copy.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from deployer.shared.config import (
    WORKLOAD_NAME_ANNOTATION,
    WORKLOAD_NAMESPACE_ANNOTATION,
    bundle_name,
)
from deployer.shared.errors import AuthAssemblyError, VolumeNotFoundError
from deployer.shared.events import (
    AUTH_MANIFESTS_CREATION_FAILED,
    VOLUME_NOT_FOUND,
    WARNING,
)
from deployer.shared.models import (
    BundleSpec,
    Manifest,
    ManifestBundle,
    ManifestsTemplate,
    ObjectMeta,
    Workload,
)
from manifest_core.assemblers import (
    Assembler,
    AssemblyContext,
    AuthAssembler,
    CoreAssembler,
    VolumesAssembler,
)
from manifest_core.feedback import feedback_config_for

logger = logging.getLogger(__name__)


def default_assemblers() -> List[Assembler]:
    return [CoreAssembler(), VolumesAssembler(), AuthAssembler()]


class WorkloadDirector:
    """
    Ordered assembler chain. Stateless; one instance can serve every reconcile.

    Usage:
        director = WorkloadDirector()
        manifests = director.assemble(ctx, workload)   # raises AssemblyError
    """

    def __init__(self, assemblers: Optional[Sequence[Assembler]] = None) -> None:
        self._assemblers = list(assemblers) if assemblers is not None else default_assemblers()

    def assemble(self, ctx: AssemblyContext, workload: Workload) -> List[Manifest]:
        manifests: List[Manifest] = []
        for assembler in self._assemblers:
            ctx.check_deadline()
            try:
                manifests.extend(assembler.assemble(ctx, workload))
            except VolumeNotFoundError as exc:
                ctx.recorder.event(workload, WARNING, VOLUME_NOT_FOUND, str(exc))
                raise
            except AuthAssemblyError as exc:
                ctx.recorder.event(workload, WARNING, AUTH_MANIFESTS_CREATION_FAILED, str(exc))
                raise
        logger.debug("[%s] assembled %d manifest(s) for %s/%s",
                     ctx.correlation_id, len(manifests),
                     workload.metadata.namespace, workload.metadata.name)
        return manifests


def generate_bundle(workload: Workload, site: str, manifests: List[Manifest]) -> ManifestBundle:
    """A fresh bundle for ``workload`` at ``site`` carrying ``manifests``."""
    return ManifestBundle(
        metadata=ObjectMeta(
            name=bundle_name(workload.metadata.namespace, workload.metadata.name),
            namespace=site,
            annotations={
                WORKLOAD_NAME_ANNOTATION: workload.metadata.name,
                WORKLOAD_NAMESPACE_ANNOTATION: workload.metadata.namespace,
            },
        ),
        spec=BundleSpec(
            workload=ManifestsTemplate(manifests=manifests),
            manifest_configs=[feedback_config_for(workload)],
        ),
    )
