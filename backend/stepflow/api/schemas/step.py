"""Schemas for steps and substeps."""
from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

StepStatus = Literal["not_started", "in_progress", "done", "skipped"]


class SubstepSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    step_id: UUID
    title: str
    completed_at: Optional[datetime]
    initiated_at: Optional[datetime]


class StepSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    goal_id: UUID
    title: str
    notes: Optional[str]
    order_index: Optional[int]
    status: str
    due_date: Optional[datetime]
    is_required: bool
    is_supporter_step: bool
    hidden: bool
    step_type: Optional[str]
    week_number: Optional[int]
    session_number: Optional[int]
    occurrence_index: Optional[int]
    dependency_step_ids: List[str] = Field(default_factory=list)
    estimated_effort_min: Optional[int]
    blocked: bool = False
    substeps: List[SubstepSummary] = Field(default_factory=list)


class GoalStepsResponse(BaseModel):
    goal_id: UUID
    steps: List[StepSummary]
    visible_step_ids: List[UUID]
    queued_step_ids: List[UUID]
    request_id: str


class StepUpdateRequest(BaseModel):
    status: Optional[StepStatus] = None
    hidden: Optional[bool] = None


class StepUpdateResponse(BaseModel):
    id: UUID
    status: str
    hidden: bool
    request_id: str


class SubstepUpdateRequest(BaseModel):
    completed: Optional[bool] = None
    initiated: Optional[bool] = None


class SubstepUpdateResponse(BaseModel):
    id: UUID
    step_id: UUID
    completed_at: Optional[datetime]
    initiated_at: Optional[datetime]
    step_status: str
    request_id: str
