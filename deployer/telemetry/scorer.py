"""
deployer/telemetry/scorer.py
────────────────────────────
ResourceScorer: a bounded fitness signal for one site's spare CPU and memory.

What this is
────────────
The decision source ranks sites partly by how much room they have left.
This module turns a site's node and pod inventory into two integers in
[-100, 100] and publishes them as the site's ScoreRecord:

    cpuAvailable  = normalise(allocatable CPU − requested CPU)
    memAvailable  = normalise(allocatable memory − requested memory)

The score is standalone: the placement scheduler does not read it.

How usage is counted
────────────────────
Allocatable is summed over schedulable nodes only (cordoned nodes are
skipped). For each pod the effective request is

    max(Σ container requests, max(init container requests)) + overhead

Init containers run one after another, so their peak matters, not their
sum. Requests are used, never limits.

Normalisation
─────────────
Piecewise-linear against configured bounds (ScoreBounds), then truncated:

    available >= max  →  100
    available <= min  → -100
    otherwise         →  200·(available − min)/(max − min) − 100
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
from kubernetes.utils import parse_quantity

from deployer.shared.errors import NotFoundError
from deployer.shared.models import (
    Container,
    Node,
    ObjectMeta,
    Pod,
    Quantity,
    ScoreItem,
    ScoreRecord,
    ScoreStatus,
)
from deployer.shared.store import ObjectStore

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

SCORE_RECORD_NAME: str = "resource-usage-score"
"""Name of the ScoreRecord. It lives in the namespace named after the site."""

CPU_SCORE: str = "cpuAvailable"
MEMORY_SCORE: str = "memAvailable"

CPU: str = "cpu"
MEMORY: str = "memory"

SCORE_MAX: int = 100
SCORE_MIN: int = -100

DEFAULT_MAX_CPU_COUNT: str = "100"
DEFAULT_MIN_CPU_COUNT: str = "0"
DEFAULT_MAX_MEMORY_BYTES: str = "1099511627776"
DEFAULT_MIN_MEMORY_BYTES: str = "0"
"""Fallbacks when the bound environment variables are unset or empty. 1099511627776 = 1 TiB."""


def _env(environ: Mapping[str, str], name: str, default: str) -> float:
    raw = environ.get(name) or default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name}={raw!r} is not a number") from exc


@dataclass(frozen=True)
class ScoreBounds:
    """
    Normalisation bounds. CPU in cores, memory in bytes.

    max must be strictly greater than min for both resources.
    """
    max_cpu: float = float(DEFAULT_MAX_CPU_COUNT)
    min_cpu: float = float(DEFAULT_MIN_CPU_COUNT)
    max_memory: float = float(DEFAULT_MAX_MEMORY_BYTES)
    min_memory: float = float(DEFAULT_MIN_MEMORY_BYTES)

    def __post_init__(self) -> None:
        if self.max_cpu <= self.min_cpu:
            raise ValueError(f"MAX_CPU_COUNT ({self.max_cpu}) must exceed MIN_CPU_COUNT ({self.min_cpu})")
        if self.max_memory <= self.min_memory:
            raise ValueError(
                f"MAX_MEMORY_BYTES ({self.max_memory}) must exceed MIN_MEMORY_BYTES ({self.min_memory})"
            )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ScoreBounds":
        """Read MAX_CPU_COUNT, MIN_CPU_COUNT, MAX_MEMORY_BYTES and MIN_MEMORY_BYTES."""
        env = os.environ if environ is None else environ
        return cls(
            max_cpu=_env(env, "MAX_CPU_COUNT", DEFAULT_MAX_CPU_COUNT),
            min_cpu=_env(env, "MIN_CPU_COUNT", DEFAULT_MIN_CPU_COUNT),
            max_memory=_env(env, "MAX_MEMORY_BYTES", DEFAULT_MAX_MEMORY_BYTES),
            min_memory=_env(env, "MIN_MEMORY_BYTES", DEFAULT_MIN_MEMORY_BYTES),
        )


# ── Quantities ────────────────────────────────────────────────────────────────

def quantity(value: Optional[Quantity]) -> Decimal:
    """Parse "500m", "1Gi", 2 ... into a Decimal. None → 0."""
    if value is None:
        return Decimal(0)
    return parse_quantity(value)


def _request(container: Container, resource: str) -> Decimal:
    return quantity(container.resources.requests.get(resource))


def pod_request(pod: Pod, resource: str) -> Decimal:
    """Effective request of one pod for ``resource``."""
    total = sum((_request(c, resource) for c in pod.spec.containers), Decimal(0))
    for init in pod.spec.init_containers:
        value = _request(init, resource)
        if total < value:
            total = value
    if pod.spec.overhead:
        total += quantity(pod.spec.overhead.get(resource))
    return total


def allocatable(nodes: List[Node], resource: str) -> Decimal:
    """Σ allocatable over schedulable nodes."""
    return sum(
        (quantity(n.status.allocatable.get(resource)) for n in nodes if not n.spec.unschedulable),
        Decimal(0),
    )


def normalize(available: np.ndarray, mins: np.ndarray, maxs: np.ndarray) -> np.ndarray:
    """Element-wise piecewise-linear map onto [-100, 100], truncated to int."""
    raw = (200.0 * (available - mins)) / (maxs - mins) - 100.0
    scores = np.where(available >= maxs, SCORE_MAX, np.where(available <= mins, SCORE_MIN, raw))
    return np.trunc(scores).astype(int)


def normalize_score(available: float, min_value: float, max_value: float) -> int:
    """Scalar form of normalize()."""
    return int(normalize(np.array([available]), np.array([min_value]), np.array([max_value]))[0])


class ResourceScorer:
    """
    Computes and publishes one site's ScoreRecord.

    site_store   → where the site's Node and Pod inventory is read
    score_store  → where the ScoreRecord is written (namespace = site)

    Both may be the same store.
    """

    def __init__(
        self,
        site: str,
        site_store: ObjectStore,
        score_store: Optional[ObjectStore] = None,
        bounds: Optional[ScoreBounds] = None,
    ) -> None:
        self.site = site
        self._site_store = site_store
        self._score_store = score_store or site_store
        self._bounds = bounds

    def usage(self, pods: List[Pod]) -> Tuple[Decimal, Decimal]:
        cpu = sum((pod_request(p, CPU) for p in pods), Decimal(0))
        mem = sum((pod_request(p, MEMORY) for p in pods), Decimal(0))
        return cpu, mem

    def compute(self) -> Dict[str, int]:
        """Score the site's current inventory. Bounds are re-read from the env if not fixed."""
        bounds = self._bounds or ScoreBounds.from_env()
        nodes = self._site_store.list(Node)
        pods = self._site_store.list(Pod)

        allocation = np.array([float(allocatable(nodes, CPU)), float(allocatable(nodes, MEMORY))])
        usage = np.array([float(u) for u in self.usage(pods)])
        available = allocation - usage

        scores = normalize(
            available,
            np.array([bounds.min_cpu, bounds.min_memory]),
            np.array([bounds.max_cpu, bounds.max_memory]),
        )
        logger.debug("site %s: allocation=%s usage=%s available=%s → %s",
                     self.site, allocation, usage, available, scores)
        return {CPU_SCORE: int(scores[0]), MEMORY_SCORE: int(scores[1])}

    def publish(self, scores: Dict[str, int]) -> ScoreRecord:
        """Create the ScoreRecord if absent, then overwrite its status wholesale."""
        status = ScoreStatus(scores=[
            ScoreItem(name=CPU_SCORE, value=scores[CPU_SCORE]),
            ScoreItem(name=MEMORY_SCORE, value=scores[MEMORY_SCORE]),
        ])
        try:
            record = self._score_store.get(ScoreRecord, self.site, SCORE_RECORD_NAME)
        except NotFoundError:
            record = self._score_store.create(ScoreRecord(
                metadata=ObjectMeta(name=SCORE_RECORD_NAME, namespace=self.site),
            ))
            logger.info("Created score record %s/%s", self.site, SCORE_RECORD_NAME)
        record.status = status
        return self._score_store.update_status(record)

    def run_once(self) -> Dict[str, int]:
        scores = self.compute()
        self.publish(scores)
        logger.info("site %s scored: cpu=%d mem=%d",
                    self.site, scores[CPU_SCORE], scores[MEMORY_SCORE])
        return scores
