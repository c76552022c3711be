"""Batch job runner for daily habit generation."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from stepflow.core.config import Settings, settings as default_settings
from stepflow.db.models.goal import Goal
from stepflow.services.daily_trigger import DailyCheckResult, run_daily_generation_for_goal
from stepflow.services.generation_orchestrator import GenerationOrchestrator, build_orchestrator
from stepflow.services.step_generator import StepGenerator, get_step_generator

logger = logging.getLogger(__name__)

ACTIVE_GOAL_STATUSES = ("active", "planned")

OrchestratorFactory = Callable[[Session], GenerationOrchestrator]


@dataclass
class JobRunResult:
    goals_checked: int
    occurrences_generated: int
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


def _active_habit_goal_ids(db: Session) -> List[UUID]:
    rows = (
        db.query(Goal.id)
        .filter(Goal.status.in_(ACTIVE_GOAL_STATUSES), Goal.frequency_per_week > 0)
        .order_by(Goal.created_at)
        .all()
    )
    return [row[0] for row in rows]


def run_daily_generation_for_all_goals(
    db: Session,
    *,
    goal_ids: Optional[Iterable[UUID]] = None,
    now: Optional[datetime] = None,
    generator: Optional[StepGenerator] = None,
    orchestrator_factory: Optional[OrchestratorFactory] = None,
    settings: Settings = default_settings,
) -> JobRunResult:
    ids = _active_habit_goal_ids(db) if goal_ids is None else list(dict.fromkeys(goal_ids))
    if orchestrator_factory is None:
        # One client for the whole batch so the throttle spans every goal.
        shared = generator or get_step_generator(settings)
        orchestrator_factory = lambda session: build_orchestrator(session, generator=shared, settings=settings)  # noqa: E731

    orchestrator = orchestrator_factory(db)
    result = JobRunResult(goals_checked=0, occurrences_generated=0)
    for goal_id in ids:
        goal = db.get(Goal, goal_id)
        if goal is None:
            logger.debug("Skipping missing goal %s", goal_id)
            continue
        try:
            check = run_daily_generation_for_goal(db, goal, orchestrator, now=now, settings=settings)
        except Exception:  # pragma: no cover - one bad goal must not stop the batch
            db.rollback()
            logger.exception("Daily generation job failed for goal %s", goal_id)
            result.errors.append(f"{goal.title}: unexpected error")
            continue
        result.goals_checked += 1
        _tally(result, goal, check)
    return result


def _tally(result: JobRunResult, goal: Goal, check: DailyCheckResult) -> None:
    if check.generated:
        result.occurrences_generated += 1
    elif check.skipped_reason:
        result.skipped += 1
        logger.debug("Daily check skipped goal %s: %s", goal.id, check.skipped_reason)
    if check.error:
        result.errors.append(f"{goal.title}: {check.error}")
