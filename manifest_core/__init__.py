"""
manifest_core: turns a bound workload into the manifest bundle shipped to its site.

Public API:
    WorkloadDirector  → runs core → volumes → auth assemblers, aborts on first error
    AssemblyContext   → store, event sink, correlation id and deadline for one run
    generate_bundle   → wraps an assembled manifest list in a ManifestBundle

Usage:
    from manifest_core import AssemblyContext, WorkloadDirector, generate_bundle

    ctx = AssemblyContext(store=store, recorder=recorder, correlation_id="ns1/app-x")
    manifests = WorkloadDirector().assemble(ctx, workload)   # raises AssemblyError
    bundle = generate_bundle(workload, site, manifests)
"""

from manifest_core.assemblers import AssemblyContext
from manifest_core.director import WorkloadDirector, generate_bundle

__all__ = ["AssemblyContext", "WorkloadDirector", "generate_bundle"]
