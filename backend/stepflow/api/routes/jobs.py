"""Operational endpoints for scheduler jobs."""
from __future__ import annotations

from time import perf_counter

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from stepflow.api.schemas.jobs import JobRunRequest, JobRunResponse
from stepflow.core.config import settings
from stepflow.db.deps import get_db
from stepflow.db.models.goal import Goal
from stepflow.observability.metrics import log_metric
from stepflow.observability.tracing import trace
from stepflow.services.job_runner import run_daily_generation_for_all_goals
from stepflow.services.step_generator import StepGenerator, get_default_step_generator

router = APIRouter()


@router.get("/jobs", tags=["jobs"])
def get_jobs_config(request: Request) -> dict:
    request_id = getattr(request.state, "request_id", None)
    with trace("jobs.config", metadata={"request_id": request_id}, request_id=request_id):
        data = {
            "scheduler_enabled": settings.scheduler_enabled,
            "schedule": {
                "timezone": settings.scheduler_timezone,
                "daily_time": f"{settings.daily_job_hour:02d}:{settings.daily_job_minute:02d}",
                "check_interval_hours": settings.daily_check_interval_hours,
                "lookahead_days": settings.daily_lookahead_days,
            },
        }
    return {**data, "request_id": request_id or ""}


@router.post("/jobs/run-now", response_model=JobRunResponse, tags=["jobs"])
def run_job_now(
    request: Request,
    payload: JobRunRequest,
    db: Session = Depends(get_db),
    generator: StepGenerator = Depends(get_default_step_generator),
) -> JobRunResponse:
    if not settings.debug:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Run-now only allowed in debug mode")

    request_id = getattr(request.state, "request_id", None)
    metadata = {"job": payload.job, "request_id": request_id}
    start = perf_counter()
    with trace("jobs.run_now", metadata=metadata, request_id=request_id):
        goal_ids = None
        if payload.goal_id:
            if not db.get(Goal, payload.goal_id):
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Goal not found")
            goal_ids = [payload.goal_id]
        result = run_daily_generation_for_all_goals(db, goal_ids=goal_ids, generator=generator)

    latency_ms = (perf_counter() - start) * 1000
    log_metric("jobs.run_now.success", 1, metadata={"job": payload.job})
    log_metric("jobs.run_now.latency_ms", latency_ms, metadata={"job": payload.job})

    return JobRunResponse(
        job=payload.job,
        goals_checked=result.goals_checked,
        occurrences_generated=result.occurrences_generated,
        errors=result.errors,
        request_id=request_id or "",
    )
