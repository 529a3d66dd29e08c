"""
tests/conftest.py
─────────────────
Shared fixtures: a fresh store, an event recorder and a seeded control-plane
configuration with one default placement policy ("pool-a").
"""

from __future__ import annotations

import pytest

from deployer.shared.config import CONFIG_NAME, CONFIG_NAMESPACE
from deployer.shared.events import RecordingEventRecorder
from deployer.shared.models import ObjectMeta, PlacementPolicy, RCSConfig, RCSConfigSpec
from deployer.shared.store import InMemoryStore

POLICY_NAMESPACE = "placements"
DEFAULT_POLICY = "pool-a"


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def recorder() -> RecordingEventRecorder:
    return RecordingEventRecorder()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rcs_config(store: InMemoryStore) -> RCSConfig:
    """RCSConfig listing pool-a (default) and pool-b, both present as policies."""
    cfg = store.create(RCSConfig(
        metadata=ObjectMeta(name=CONFIG_NAME, namespace=CONFIG_NAMESPACE),
        spec=RCSConfigSpec(
            placements_namespace=POLICY_NAMESPACE,
            placements=[DEFAULT_POLICY, "pool-b"],
        ),
    ))
    for policy in (DEFAULT_POLICY, "pool-b"):
        store.create(PlacementPolicy(metadata=ObjectMeta(name=policy, namespace=POLICY_NAMESPACE)))
    return cfg
