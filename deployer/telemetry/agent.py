"""
deployer/telemetry/agent.py
───────────────────────────
ScoreAgent: drives ResourceScorer on a schedule and on inventory changes.

Design
──────
- tick() runs one scoring cycle synchronously. Tests call it directly.
- start() runs tick() on a background thread every resync_seconds, and
  early whenever a Node or Pod watch event arrives. Bursts of events
  collapse into one cycle; an event that arrives while a cycle runs
  schedules one more.
- A failed cycle is logged and retried at the next trigger. A bad bound in
  the environment therefore shows up in the log once per cycle until fixed.

Integration contract
────────────────────
    agent = ScoreAgent(ResourceScorer("site-7", site_store, hub_store))
    agent.start()
    ...
    agent.stop()
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Optional

from deployer.shared.models import Node, Pod
from deployer.shared.store import WatchEvent
from deployer.telemetry.scorer import ResourceScorer

logger = logging.getLogger(__name__)

DEFAULT_RESYNC_SECONDS: float = 60.0
"""Upper bound between scoring cycles when no inventory event arrives."""

_INVENTORY_KINDS = frozenset({Node.KIND, Pod.KIND})


class ScoreAgent:

    def __init__(self, scorer: ResourceScorer, resync_seconds: float = DEFAULT_RESYNC_SECONDS) -> None:
        self._scorer = scorer
        self._resync_seconds = resync_seconds
        self._trigger = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._cancel_watch: Optional[Callable[[], None]] = None
        self._ticks = 0
        self.last_scores: Optional[Dict[str, int]] = None

    def tick(self) -> Optional[Dict[str, int]]:
        """One scoring cycle. Returns the published scores, or None on failure."""
        self._ticks += 1
        try:
            self.last_scores = self._scorer.run_once()
        except Exception:
            logger.exception("Scoring cycle %d for site %s failed", self._ticks, self._scorer.site)
            return None
        return self.last_scores

    def on_event(self, event: WatchEvent) -> None:
        if event.obj.KIND in _INVENTORY_KINDS:
            self._trigger.set()

    def start(self, site_store_watch: Optional[Callable[..., Callable[[], None]]] = None) -> None:
        """
        Begin scoring in the background.

        site_store_watch is the site store's watch(); when given, inventory
        changes trigger an early cycle.
        """
        if site_store_watch is not None:
            self._cancel_watch = site_store_watch(self.on_event)
        self._stopping.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"score-agent-{self._scorer.site}", daemon=True,
        )
        self._thread.start()
        logger.info("Score agent for site %s started (resync %.0fs)",
                    self._scorer.site, self._resync_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        self._trigger.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if self._cancel_watch is not None:
            self._cancel_watch()
            self._cancel_watch = None

    def _run(self) -> None:
        while True:
            self._trigger.clear()
            if self._stopping.is_set():
                break
            self.tick()
            self._trigger.wait(self._resync_seconds)

    @property
    def tick_count(self) -> int:
        return self._ticks

    def __repr__(self) -> str:
        return f"ScoreAgent(site={self._scorer.site!r}, ticks={self._ticks})"
