"""
deployer/telemetry: per-site resource scoring.

Public API:
    ResourceScorer  → node/pod inventory → cpuAvailable / memAvailable in [-100, 100]
    ScoreBounds     → normalisation bounds, read from the environment
    ScoreAgent      → runs the scorer on a resync timer and on inventory events
"""

from deployer.telemetry.scorer import ResourceScorer, ScoreBounds, normalize_score
from deployer.telemetry.agent import ScoreAgent

__all__ = ["ResourceScorer", "ScoreBounds", "ScoreAgent", "normalize_score"]
