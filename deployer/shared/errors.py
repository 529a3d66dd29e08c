"""
deployer/shared/errors.py
─────────────────────────
Exception hierarchy shared by the store, the manifest assemblers and the
reconcilers.

Store errors carry the (kind, namespace, name) they were raised for, so a
reconciler can log a useful line without re-deriving the key. Reconcilers
catch the specific subclass they can handle (NotFoundError on an optional
read, ConflictError on a racing write) and let everything else propagate to
the controller manager, which requeues the request with backoff.
"""

from __future__ import annotations


class StoreError(Exception):
    """Base class for every failure reported by an ObjectStore."""

    def __init__(self, kind: str, namespace: str, name: str, message: str = "") -> None:
        self.kind = kind
        self.namespace = namespace
        self.name = name
        detail = f": {message}" if message else ""
        super().__init__(f"{kind} {namespace}/{name}{detail}")


class NotFoundError(StoreError):
    """The addressed record does not exist."""


class AlreadyExistsError(StoreError):
    """A create targeted a key that is already taken."""


class ConflictError(StoreError):
    """
    A write carried a stale resourceVersion.

    The caller must re-read and retry. Reconcilers translate this into a short
    requeue rather than an error-level log line.
    """


class ConfigNotFoundError(Exception):
    """The RCSConfig record, or a placement policy it names, is missing. Scheduling cannot proceed."""


class NoDecisionError(Exception):
    """
    Raised when a placement policy has no usable candidate.

    Covers both "no decision records yet" and "only the reserved local
    sentinel was offered". The decision source may simply not have caught
    up, so the scheduler retries with backoff.
    """

    def __init__(self, policy: str, reason: str = "no decision records") -> None:
        self.policy = policy
        self.reason = reason
        super().__init__(f"placement policy {policy!r}: {reason}")


class AssemblyError(Exception):
    """Base class for failures while synthesising a workload's manifests."""


class VolumeNotFoundError(AssemblyError):
    """A ConfigMap or Secret referenced by the workload could not be read."""

    def __init__(self, kind: str, name: str, cause: Exception) -> None:
        self.kind = kind
        self.name = name
        self.cause = cause
        super().__init__(f"unable to fetch {kind} {name!r} from workload spec: {cause}")


class AuthAssemblyError(AssemblyError):
    """Listing role bindings for the log-reader grant failed."""


class DeadlineExceededError(AssemblyError):
    """The per-reconcile deadline elapsed before synthesis completed."""
