"""Step and substep progress routes."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from stepflow.api.schemas.step import (
    StepUpdateRequest,
    StepUpdateResponse,
    SubstepUpdateRequest,
    SubstepUpdateResponse,
)
from stepflow.db.deps import get_db
from stepflow.db.models.step import Step
from stepflow.db.models.substep import Substep
from stepflow.observability.metrics import log_metric
from stepflow.observability.tracing import trace
from stepflow.services.notifications.hooks import notify_step_updated
from stepflow.services.step_gating import is_blocked

router = APIRouter()

PROGRESS_STATUSES = {"in_progress", "done"}


@router.patch("/steps/{step_id}", response_model=StepUpdateResponse, tags=["steps"])
def update_step(
    step_id: UUID,
    payload: StepUpdateRequest,
    http_request: Request,
    db: Session = Depends(get_db),
) -> StepUpdateResponse:
    """Change a step's status or visibility. Blocked steps cannot be started or finished."""
    step = db.get(Step, step_id)
    if not step:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Step not found")

    request_id = getattr(http_request.state, "request_id", None)
    metadata: Dict[str, Any] = {
        "route": f"/steps/{step_id}",
        "step_id": str(step_id),
        "status": payload.status,
        "request_id": request_id,
    }
    with trace("steps.update", metadata=metadata, goal_id=str(step.goal_id), request_id=request_id):
        if payload.status in PROGRESS_STATUSES and step.status != payload.status:
            siblings = db.query(Step).filter(Step.goal_id == step.goal_id).all()
            if is_blocked(step, siblings, _substeps_by_step(db, siblings)):
                log_metric("steps.update.blocked", 1, metadata={"step_id": str(step_id)})
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Step is blocked by earlier steps")

        if payload.status is not None:
            step.status = payload.status
        if payload.hidden is not None:
            step.hidden = payload.hidden
        step.updated_at = datetime.now(timezone.utc)
        db.add(step)
        db.commit()
        db.refresh(step)

    notify_step_updated(step.goal_id, step.id)
    log_metric("steps.update.success", 1, metadata={"status": step.status})
    return StepUpdateResponse(id=step.id, status=step.status, hidden=step.hidden, request_id=request_id or "")


@router.patch("/substeps/{substep_id}", response_model=SubstepUpdateResponse, tags=["steps"])
def update_substep(
    substep_id: UUID,
    payload: SubstepUpdateRequest,
    http_request: Request,
    db: Session = Depends(get_db),
) -> SubstepUpdateResponse:
    substep = db.get(Substep, substep_id)
    if not substep:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Substep not found")
    step = db.get(Step, substep.step_id)

    request_id = getattr(http_request.state, "request_id", None)
    now = datetime.now(timezone.utc)
    with trace("substeps.update", metadata={"substep_id": str(substep_id)}, goal_id=str(step.goal_id), request_id=request_id):
        if payload.initiated is not None:
            substep.initiated_at = (substep.initiated_at or now) if payload.initiated else None
        if payload.completed is not None:
            substep.completed_at = (substep.completed_at or now) if payload.completed else None
        db.add(substep)
        db.flush()

        # A step with substeps follows them: all complete means done.
        siblings = db.query(Substep).filter(Substep.step_id == step.id).all()
        next_status = step.status
        if all(item.completed_at is not None for item in siblings):
            next_status = "done"
        elif step.status == "done":
            next_status = "in_progress"
        elif any(item.initiated_at or item.completed_at for item in siblings) and step.status == "not_started":
            next_status = "in_progress"

        starting = next_status == "in_progress" and step.status == "not_started"
        if starting or (next_status == "done" and step.status != "done"):
            goal_steps = db.query(Step).filter(Step.goal_id == step.goal_id).all()
            if is_blocked(step, goal_steps, _substeps_by_step(db, goal_steps)):
                db.rollback()
                log_metric("substeps.update.blocked", 1, metadata={"step_id": str(step.id)})
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Step is blocked by earlier steps")

        step.status = next_status
        step.updated_at = now
        db.add(step)
        db.commit()
        db.refresh(substep)
        db.refresh(step)

    notify_step_updated(step.goal_id, step.id)
    return SubstepUpdateResponse(
        id=substep.id,
        step_id=step.id,
        completed_at=substep.completed_at,
        initiated_at=substep.initiated_at,
        step_status=step.status,
        request_id=request_id or "",
    )


def _substeps_by_step(db: Session, steps: List[Step]) -> Dict[UUID, List[Substep]]:
    if not steps:
        return {}
    grouped: Dict[UUID, List[Substep]] = {}
    for substep in db.query(Substep).filter(Substep.step_id.in_([s.id for s in steps])).all():
        grouped.setdefault(substep.step_id, []).append(substep)
    return grouped
