"""Detect generation runs that died without settling their status."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from stepflow.core.config import settings
from stepflow.db.models.goal import Goal
from stepflow.observability.metrics import log_metric
from stepflow.services.generation_state import FailedState, as_aware, merge_state, read_state, utcnow

logger = logging.getLogger(__name__)

PENDING_REASON = "stalled from pending state"
QUEUED_REASON = "stalled from queued state"


@dataclass(frozen=True)
class RecoveryAction:
    goal_id: object
    reason: str
    since: datetime
    stalled_for: timedelta

    @property
    def message(self) -> str:
        minutes = int(self.stalled_for.total_seconds() // 60)
        return f"Generation {self.reason} after {minutes} minute(s); retrying"


def check(
    goal: Goal,
    step_count: int,
    now: Optional[datetime] = None,
    *,
    threshold: Optional[timedelta] = None,
) -> Optional[RecoveryAction]:
    """Return a recovery action when the goal sat in queued/pending with no steps for too long."""
    if step_count > 0:
        return None
    now = as_aware(now or utcnow())
    threshold = threshold or timedelta(seconds=settings.stale_generation_threshold_seconds)

    state = read_state(goal.metadata_json)
    if state.status == "pending":
        since, reason = state.started_at, PENDING_REASON
    elif state.status == "queued":
        since, reason = state.queued_at, QUEUED_REASON
    else:
        return None
    if since is None:
        return None

    elapsed = now - as_aware(since)
    if elapsed <= threshold:
        return None
    return RecoveryAction(goal_id=goal.id, reason=reason, since=as_aware(since), stalled_for=elapsed)


def apply(db: Session, goal: Goal, action: RecoveryAction, now: Optional[datetime] = None) -> Goal:
    """Move the goal to failed so an explicit retry becomes legal."""
    db.refresh(goal)
    goal.metadata_json = merge_state(
        goal.metadata_json,
        FailedState(error=action.message, failed_at=now or utcnow()),
    )
    db.add(goal)
    db.commit()
    db.refresh(goal)
    logger.warning("Goal %s %s; marked failed for retry", goal.id, action.reason)
    log_metric("generation.stale_recovered", 1, {"reason": action.reason})
    return goal
