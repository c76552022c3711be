"""Goal creation, generation status and step listing routes."""
from __future__ import annotations

from typing import Any, Callable, Dict
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from stepflow.api.schemas.goal import GoalCreateRequest, GoalResponse
from stepflow.api.schemas.step import GoalStepsResponse
from stepflow.core.config import settings
from stepflow.core.errors import ValidationError
from stepflow.db.deps import get_db, get_session_factory
from stepflow.db.models.goal import Goal
from stepflow.observability.metrics import log_metric
from stepflow.observability.tracing import trace
from stepflow.services.generation_orchestrator import run_generation_task
from stepflow.services.generation_state import QueuedState, merge_state, read_state, utcnow
from stepflow.services.goal_view import GoalView, build_goal_view
from stepflow.services.occurrence_scheduler import schedule_for_goal
from stepflow.services.step_generator import StepGenerator, get_default_step_generator

router = APIRouter()


@router.post("/goals", response_model=GoalResponse, status_code=status.HTTP_201_CREATED, tags=["goals"])
def create_goal(
    payload: GoalCreateRequest,
    http_request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    generator: StepGenerator = Depends(get_default_step_generator),
) -> GoalResponse:
    """Validate the schedule, persist the goal as queued and start generation in the background."""
    request_id = getattr(http_request.state, "request_id", None)
    context = payload.wizard_context
    if not context.goal_title.strip():
        context = context.model_copy(update={"goal_title": payload.title})

    goal = Goal(
        owner_id=payload.owner_id,
        title=payload.title,
        domain=payload.domain or context.category,
        start_date=payload.start_date,
        due_date=payload.due_date,
        frequency_per_week=payload.frequency_per_week,
        selected_days=payload.selected_days,
        duration_weeks=payload.duration_weeks,
        status="active",
    )
    metadata: Dict[str, Any] = {"route": "/goals", "habit": goal.is_habit, "request_id": request_id}
    with trace("goals.create", metadata=metadata, request_id=request_id):
        try:
            schedule = schedule_for_goal(
                goal,
                start_time=context.start_time or settings.default_start_time,
                timezone_name=settings.scheduler_timezone,
            )
        except ValidationError as exc:
            log_metric("goals.create.rejected", 1, metadata={"reason": type(exc).__name__})
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

        goal.metadata_json = merge_state(
            {"wizardContext": context.model_dump(mode="json")},
            QueuedState(queued_at=utcnow()),
        )
        db.add(goal)
        db.commit()
        db.refresh(goal)

    background_tasks.add_task(
        run_generation_task,
        session_factory,
        goal.id,
        generator,
        occurrences=schedule.isoformat(),
    )
    log_metric("goals.create.success", 1, metadata={"occurrences": len(schedule.occurrences)})
    return _serialize_goal(build_goal_view(db, goal), request_id)


@router.get("/goals/{goal_id}", response_model=GoalResponse, tags=["goals"])
def get_goal(
    goal_id: UUID,
    http_request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    generator: StepGenerator = Depends(get_default_step_generator),
) -> GoalResponse:
    request_id = getattr(http_request.state, "request_id", None)
    goal = _get_goal_or_404(db, goal_id)
    with trace("goals.view", metadata={"goal_id": str(goal_id)}, request_id=request_id):
        view = build_goal_view(db, goal)
    if view.recovery is not None:
        background_tasks.add_task(run_generation_task, session_factory, goal.id, generator, retry=True)
    return _serialize_goal(view, request_id)


@router.post(
    "/goals/{goal_id}/generation/retry",
    response_model=GoalResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["goals"],
)
def retry_generation(
    goal_id: UUID,
    http_request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    generator: StepGenerator = Depends(get_default_step_generator),
) -> GoalResponse:
    request_id = getattr(http_request.state, "request_id", None)
    goal = _get_goal_or_404(db, goal_id)
    view = build_goal_view(db, goal)
    current = read_state(goal.metadata_json).status
    if current != "failed":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only failed generations can be retried (status={current})",
        )
    background_tasks.add_task(run_generation_task, session_factory, goal.id, generator, retry=True)
    log_metric("goals.retry.accepted", 1, metadata={"recovered": view.recovery is not None})
    return _serialize_goal(view, request_id)


@router.get("/goals/{goal_id}/steps", response_model=GoalStepsResponse, tags=["goals"])
def list_goal_steps(
    goal_id: UUID,
    http_request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    generator: StepGenerator = Depends(get_default_step_generator),
) -> GoalStepsResponse:
    """Steps with their blocked flags; the first few actionable steps are marked visible."""
    request_id = getattr(http_request.state, "request_id", None)
    goal = _get_goal_or_404(db, goal_id)
    with trace("goals.steps", metadata={"goal_id": str(goal_id)}, request_id=request_id):
        view = build_goal_view(db, goal, include_steps=True)
    if view.recovery is not None:
        background_tasks.add_task(run_generation_task, session_factory, goal.id, generator, retry=True)

    snapshot = view.steps
    log_metric("goals.steps.count", len(snapshot.steps), metadata={"goal_id": str(goal_id)})
    return GoalStepsResponse(
        goal_id=goal.id,
        steps=snapshot.steps,
        visible_step_ids=snapshot.visible_ids,
        queued_step_ids=snapshot.queued_ids,
        request_id=request_id or "",
    )


def _get_goal_or_404(db: Session, goal_id: UUID) -> Goal:
    goal = db.get(Goal, goal_id)
    if not goal:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Goal not found")
    return goal


def _serialize_goal(view: GoalView, request_id: str | None) -> GoalResponse:
    goal = view.goal
    return GoalResponse(
        id=goal.id,
        owner_id=goal.owner_id,
        title=goal.title,
        domain=goal.domain,
        start_date=goal.start_date,
        due_date=goal.due_date,
        frequency_per_week=goal.frequency_per_week,
        selected_days=list(goal.selected_days or []),
        duration_weeks=goal.duration_weeks,
        status=goal.status,
        is_habit=goal.is_habit,
        generation=view.generation,
        recovered=view.recovery is not None,
        request_id=request_id or "",
    )
