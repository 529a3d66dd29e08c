"""
deployer/shared/conditions.py
─────────────────────────────
Condition bookkeeping on a workload's status.

set_condition() is idempotent: re-setting a condition with the same status
leaves last_transition_time alone, so repeated reconciles do not produce a
spurious status write.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from deployer.shared.models import Condition

SCHEDULED = "Scheduled"
VOLUMES_AVAILABLE = "VolumesAvailable"

TRUE = "True"
FALSE = "False"


def find_condition(conditions: List[Condition], cond_type: str) -> Optional[Condition]:
    for cond in conditions:
        if cond.type == cond_type:
            return cond
    return None


def set_condition(
    conditions: List[Condition],
    cond_type: str,
    status: str,
    reason: str,
    message: str = "",
) -> bool:
    """
    Insert or update ``cond_type`` in place. Returns True if anything changed.

    The transition time only moves when ``status`` flips.
    """
    existing = find_condition(conditions, cond_type)
    if existing is None:
        conditions.append(Condition(
            type=cond_type,
            status=status,
            reason=reason,
            message=message,
            last_transition_time=datetime.now(timezone.utc),
        ))
        return True

    changed = False
    if existing.status != status:
        existing.status = status
        existing.last_transition_time = datetime.now(timezone.utc)
        changed = True
    if existing.reason != reason or existing.message != message:
        existing.reason = reason
        existing.message = message
        changed = True
    return changed
