"""Schemas for job operations endpoints."""
from __future__ import annotations

from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class JobRunRequest(BaseModel):
    job: Literal["daily_generation"] = "daily_generation"
    goal_id: Optional[UUID] = None


class JobRunResponse(BaseModel):
    job: str
    goals_checked: int
    occurrences_generated: int
    errors: List[str] = Field(default_factory=list)
    request_id: str
