"""Produce later habit occurrences once the user has caught up."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from stepflow.core.config import Settings, settings as default_settings
from stepflow.core.context import bind_goal_id
from stepflow.core.errors import StepflowError
from stepflow.db.models.goal import Goal
from stepflow.db.models.step import Step
from stepflow.db.models.substep import Substep
from stepflow.services.generation_orchestrator import GenerationOrchestrator
from stepflow.services.generation_state import (
    as_aware,
    merge_progress,
    parse_occurrences,
    read_progress,
    read_state,
    utcnow,
)
from stepflow.services.step_gating import is_step_complete

logger = logging.getLogger(__name__)


@dataclass
class DailyCheckResult:
    goal_id: object
    generated: bool = False
    occurrence_index: Optional[int] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None


def run_daily_generation_for_goal(
    db: Session,
    goal: Goal,
    orchestrator: GenerationOrchestrator,
    *,
    now: Optional[datetime] = None,
    settings: Settings = default_settings,
) -> DailyCheckResult:
    """At most one check per window; generates the next occurrence when it is close and unlocked."""
    now = as_aware(now or utcnow())
    result = DailyCheckResult(goal_id=goal.id)

    if not goal.is_habit:
        result.skipped_reason = "not a habit goal"
        return result

    metadata = goal.metadata_json or {}
    progress = read_progress(metadata)
    occurrences = parse_occurrences(progress)
    if not occurrences or not metadata.get("wizardContext"):
        result.skipped_reason = "no planned occurrences"
        return result

    if read_state(metadata).status != "completed":
        result.skipped_reason = "initial generation not completed"
        return result

    window = timedelta(hours=settings.daily_check_interval_hours)
    if progress.last_generation_check and now - as_aware(progress.last_generation_check) < window:
        result.skipped_reason = "checked recently"
        return result

    _record_check(db, goal, now)

    next_index = progress.last_generated_index + 1
    result.occurrence_index = next_index
    if next_index >= len(occurrences):
        result.skipped_reason = "all occurrences generated"
        return result
    if next_index > 0 and not previous_occurrence_complete(db, goal, next_index - 1):
        result.skipped_reason = "previous occurrence incomplete"
        return result
    if as_aware(occurrences[next_index]) > now + timedelta(days=settings.daily_lookahead_days):
        result.skipped_reason = "next occurrence outside look-ahead"
        return result

    with bind_goal_id(goal.id):
        try:
            run = orchestrator.continue_habit(goal)
        except StepflowError as exc:
            logger.warning("Daily generation failed for occurrence %s: %s", next_index, exc)
            result.error = str(exc)
            return result

        if run.failed_days:
            result.error = run.failed_days[0].error
        result.generated = next_index in run.generated_indices or next_index in run.skipped_indices
        logger.info("Daily check for occurrence %s: generated=%s", next_index, result.generated)
    return result


def previous_occurrence_complete(db: Session, goal: Goal, index: int) -> bool:
    steps = (
        db.query(Step)
        .filter(
            Step.goal_id == goal.id,
            Step.occurrence_index == index,
            Step.is_supporter_step.is_(False),
        )
        .all()
    )
    if not steps:
        return True
    substeps = db.query(Substep).filter(Substep.step_id.in_([step.id for step in steps])).all()
    by_step: dict = {}
    for substep in substeps:
        by_step.setdefault(substep.step_id, []).append(substep)
    return all(is_step_complete(step, by_step.get(step.id)) for step in steps)


def _record_check(db: Session, goal: Goal, now: datetime) -> None:
    db.refresh(goal)
    progress = read_progress(goal.metadata_json)
    progress.last_generation_check = now
    goal.metadata_json = merge_progress(goal.metadata_json, progress)
    db.add(goal)
    db.commit()
