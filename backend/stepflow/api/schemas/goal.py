"""Schemas for goal creation and generation status."""
from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from stepflow.services.occurrence_scheduler import normalize_weekdays
from stepflow.services.step_generator import WizardContext


class GoalCreateRequest(BaseModel):
    owner_id: Optional[UUID] = None
    title: str = Field(..., min_length=1, max_length=200)
    domain: Optional[str] = Field(default=None, max_length=50)
    start_date: date
    due_date: Optional[date] = None
    frequency_per_week: Optional[int] = Field(default=None, ge=0, le=7)
    selected_days: List[str] = Field(default_factory=list)
    duration_weeks: int = Field(default=4, ge=1, le=52)
    wizard_context: WizardContext = Field(default_factory=WizardContext)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be blank")
        return value

    @field_validator("selected_days")
    @classmethod
    def _validate_days(cls, value: List[str]) -> List[str]:
        return normalize_weekdays(value)


class GenerationStatusView(BaseModel):
    status: str
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error: Optional[str] = None
    planned_occurrences: int = 0
    last_generated_occurrence_index: int = -1
    failed_days: List[dict] = Field(default_factory=list)


class GoalResponse(BaseModel):
    id: UUID
    owner_id: Optional[UUID]
    title: str
    domain: Optional[str]
    start_date: date
    due_date: Optional[date]
    frequency_per_week: Optional[int]
    selected_days: List[str]
    duration_weeks: int
    status: str
    is_habit: bool
    generation: GenerationStatusView
    recovered: bool = False
    request_id: str
