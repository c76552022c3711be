"""Read model for a goal: generation status, steps and their gating verdicts."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from stepflow.api.schemas.goal import GenerationStatusView
from stepflow.api.schemas.step import StepSummary, SubstepSummary
from stepflow.db.models.goal import Goal
from stepflow.db.models.step import Step
from stepflow.db.models.substep import Substep
from stepflow.services import stale_monitor
from stepflow.services.generation_state import read_progress, read_state
from stepflow.services.notifications.base import StepChangeEvent, StepChangeNotifier, Unsubscribe
from stepflow.services.notifications.factory import get_notifier
from stepflow.services.stale_monitor import RecoveryAction
from stepflow.services.step_gating import blocked_map, partition_upcoming

logger = logging.getLogger(__name__)


@dataclass
class StepsSnapshot:
    steps: List[StepSummary] = field(default_factory=list)
    visible_ids: List[UUID] = field(default_factory=list)
    queued_ids: List[UUID] = field(default_factory=list)
    version: Tuple[Any, ...] = ()


@dataclass
class GoalView:
    goal: Goal
    generation: GenerationStatusView
    recovery: Optional[RecoveryAction] = None
    steps: Optional[StepsSnapshot] = None


class GoalViewCache:
    """Per-goal step snapshots.

    Published step changes drop a snapshot early; every read still compares the snapshot's
    version against the store, so writers in other processes are picked up too.
    """

    def __init__(self, notifier: Optional[StepChangeNotifier] = None) -> None:
        self._notifier = notifier
        self._entries: Dict[str, StepsSnapshot] = {}
        self._subscriptions: Dict[str, Unsubscribe] = {}
        self._lock = Lock()

    @property
    def notifier(self) -> StepChangeNotifier:
        return self._notifier or get_notifier()

    def get(self, goal_id: UUID) -> Optional[StepsSnapshot]:
        with self._lock:
            return self._entries.get(str(goal_id))

    def put(self, goal_id: UUID, snapshot: StepsSnapshot) -> None:
        key = str(goal_id)
        with self._lock:
            self._entries[key] = snapshot
            subscribed = key in self._subscriptions
        if not subscribed:
            unsubscribe = self.notifier.subscribe(goal_id, self._on_change)
            with self._lock:
                self._subscriptions[key] = unsubscribe

    def invalidate(self, goal_id: UUID) -> None:
        key = str(goal_id)
        with self._lock:
            self._entries.pop(key, None)
            unsubscribe = self._subscriptions.pop(key, None)
        if unsubscribe is not None:
            unsubscribe()

    def clear(self) -> None:
        with self._lock:
            keys = list(self._subscriptions)
        for key in keys:
            self.invalidate(key)
        with self._lock:
            self._entries.clear()

    def _on_change(self, event: StepChangeEvent) -> None:
        logger.debug("Invalidating cached steps for goal %s (%s)", event.goal_id, event.kind)
        self.invalidate(event.goal_id)


_cache = GoalViewCache()


def get_goal_view_cache() -> GoalViewCache:
    return _cache


def build_goal_view(
    db: Session,
    goal: Goal,
    *,
    now: Optional[datetime] = None,
    include_steps: bool = False,
    cache: Optional[GoalViewCache] = None,
) -> GoalView:
    """Run the stale monitor, then assemble the view. A recovered goal comes back as failed."""
    step_count = db.query(func.count(Step.id)).filter(Step.goal_id == goal.id).scalar() or 0
    action = stale_monitor.check(goal, step_count, now)
    if action is not None:
        goal = stale_monitor.apply(db, goal, action)

    view = GoalView(goal=goal, generation=generation_status(goal), recovery=action)
    if include_steps:
        view.steps = load_steps(db, goal.id, cache=cache)
    return view


def generation_status(goal: Goal) -> GenerationStatusView:
    metadata = goal.metadata_json or {}
    state = read_state(metadata)
    progress = read_progress(metadata)
    return GenerationStatusView(
        status=state.status,
        queued_at=getattr(state, "queued_at", None),
        started_at=getattr(state, "started_at", None),
        completed_at=getattr(state, "completed_at", None),
        failed_at=getattr(state, "failed_at", None),
        error=getattr(state, "error", None),
        planned_occurrences=progress.total_planned_occurrences or len(progress.planned_occurrences),
        last_generated_occurrence_index=progress.last_generated_index,
        failed_days=[day.model_dump() for day in progress.failed_days],
    )


def load_steps(db: Session, goal_id: UUID, *, cache: Optional[GoalViewCache] = None) -> StepsSnapshot:
    cache = cache or get_goal_view_cache()
    version = steps_version(db, goal_id)
    cached = cache.get(goal_id)
    if cached is not None and cached.version == version:
        return cached

    steps = (
        db.query(Step)
        .filter(Step.goal_id == goal_id)
        .order_by(Step.order_index.asc(), Step.created_at.asc())
        .all()
    )
    substeps_by_step: Dict[UUID, List[Substep]] = {}
    if steps:
        substeps = (
            db.query(Substep)
            .filter(Substep.step_id.in_([step.id for step in steps]))
            .order_by(Substep.created_at.asc())
            .all()
        )
        for substep in substeps:
            substeps_by_step.setdefault(substep.step_id, []).append(substep)

    blocked = blocked_map(steps, substeps_by_step)
    upcoming = partition_upcoming(steps)
    snapshot = StepsSnapshot(
        steps=[
            StepSummary.model_validate(step).model_copy(
                update={
                    "blocked": blocked[str(step.id)],
                    "substeps": [SubstepSummary.model_validate(sub) for sub in substeps_by_step.get(step.id, [])],
                }
            )
            for step in steps
        ],
        visible_ids=[step.id for step in upcoming.visible],
        queued_ids=[step.id for step in upcoming.queued],
        version=version,
    )
    cache.put(goal_id, snapshot)
    return snapshot


def steps_version(db: Session, goal_id: UUID) -> Tuple[Any, ...]:
    """Cheap fingerprint of a goal's steps and substeps; changes whenever either is written."""
    step_count, step_updated = (
        db.query(func.count(Step.id), func.max(Step.updated_at)).filter(Step.goal_id == goal_id).one()
    )
    substep_count, completed_count, last_completed, last_initiated = (
        db.query(
            func.count(Substep.id),
            func.count(Substep.completed_at),
            func.max(Substep.completed_at),
            func.max(Substep.initiated_at),
        )
        .select_from(Substep)
        .join(Step, Step.id == Substep.step_id)
        .filter(Step.goal_id == goal_id)
        .one()
    )
    return (step_count, step_updated, substep_count, completed_count, last_completed, last_initiated)
