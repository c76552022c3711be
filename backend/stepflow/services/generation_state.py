"""Typed view over the generation keys stored in a goal's metadata bag.

The bag is an open JSON object shared with other writers, so every update here reads the
current bag, replaces only the keys owned by the engine, and leaves everything else alone.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

SCHEMA_VERSION = 1


class _StateBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NoneState(_StateBase):
    status: Literal["none"] = Field(default="none", alias="generationStatus")


class QueuedState(_StateBase):
    status: Literal["queued"] = Field(default="queued", alias="generationStatus")
    queued_at: Optional[datetime] = Field(default=None, alias="queuedAt")


class PendingState(_StateBase):
    status: Literal["pending"] = Field(default="pending", alias="generationStatus")
    started_at: Optional[datetime] = Field(default=None, alias="startedAt")


class CompletedState(_StateBase):
    status: Literal["completed"] = Field(default="completed", alias="generationStatus")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")


class FailedState(_StateBase):
    status: Literal["failed"] = Field(default="failed", alias="generationStatus")
    error: str = Field(default="Generation failed", alias="generationError")
    failed_at: Optional[datetime] = Field(default=None, alias="failedAt")


GenerationState = Annotated[
    Union[NoneState, QueuedState, PendingState, CompletedState, FailedState],
    Field(discriminator="status"),
]

_state_adapter: TypeAdapter[GenerationState] = TypeAdapter(GenerationState)

# Keys written by any state variant; cleared before a new variant is merged in.
STATE_KEYS = ("generationStatus", "queuedAt", "startedAt", "completedAt", "generationError", "failedAt")


class FailedDay(BaseModel):
    index: int
    date: str
    error: str


class HabitProgress(_StateBase):
    """Occurrence bookkeeping shared by the orchestrator and the daily trigger."""

    planned_occurrences: List[str] = Field(default_factory=list, alias="plannedOccurrences")
    total_planned_occurrences: Optional[int] = Field(default=None, alias="totalPlannedOccurrences")
    last_generated_index: int = Field(default=-1, alias="lastGeneratedOccurrenceIndex")
    last_generation_check: Optional[datetime] = Field(default=None, alias="lastGenerationCheck")
    failed_days: List[FailedDay] = Field(default_factory=list)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def read_state(metadata: Optional[Dict[str, Any]]) -> GenerationState:
    """Parse the generation state; unknown or missing status reads as "none"."""
    metadata = metadata or {}
    raw = {key: metadata[key] for key in STATE_KEYS if key in metadata}
    if raw.get("generationStatus") not in {"none", "queued", "pending", "completed", "failed"}:
        return NoneState()
    return _state_adapter.validate_python(raw)


def merge_state(metadata: Optional[Dict[str, Any]], state: GenerationState) -> Dict[str, Any]:
    merged = {key: value for key, value in (metadata or {}).items() if key not in STATE_KEYS}
    merged.update(state.model_dump(mode="json", by_alias=True, exclude_none=True))
    merged["schemaVersion"] = SCHEMA_VERSION
    return merged


def read_progress(metadata: Optional[Dict[str, Any]]) -> HabitProgress:
    return HabitProgress.model_validate(metadata or {})


def merge_progress(metadata: Optional[Dict[str, Any]], progress: HabitProgress) -> Dict[str, Any]:
    merged = dict(metadata or {})
    merged.update(progress.model_dump(mode="json", by_alias=True, exclude_none=True))
    merged["schemaVersion"] = SCHEMA_VERSION
    return merged


def parse_occurrences(progress: HabitProgress) -> List[datetime]:
    return [datetime.fromisoformat(value) for value in progress.planned_occurrences]


def as_aware(value: datetime) -> datetime:
    """SQLite hands datetimes back naive; treat those as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
