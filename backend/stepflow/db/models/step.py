"""Step ORM model."""
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, func, text as sa_text
from sqlalchemy.dialects.postgresql import UUID

from stepflow.db.base import Base
from stepflow.db.types import JSONListCompat


class Step(Base):
    __tablename__ = "steps"
    __table_args__ = (
        Index("ix_steps_goal_id", "goal_id"),
        Index("ix_steps_generation_key", "generation_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    goal_id = Column(UUID(as_uuid=True), ForeignKey("goals.id", ondelete="CASCADE"), nullable=False)
    title = Column(Text, nullable=False)
    notes = Column(Text, nullable=True)
    order_index = Column(Integer, nullable=True)
    status = Column(String(length=20), nullable=False, server_default=sa_text("'not_started'"), default="not_started")
    due_date = Column(DateTime(timezone=True), nullable=True)
    is_required = Column(Boolean, nullable=False, server_default=sa_text("true"), default=True)
    is_planned = Column(Boolean, nullable=False, server_default=sa_text("false"), default=False)
    is_supporter_step = Column(Boolean, nullable=False, server_default=sa_text("false"), default=False)
    hidden = Column(Boolean, nullable=False, server_default=sa_text("false"), default=False)
    dependency_step_ids = Column(JSONListCompat, nullable=False, default=list)
    step_type = Column(String(length=20), nullable=True, default="action")
    week_number = Column(Integer, nullable=True)
    session_number = Column(Integer, nullable=True)
    occurrence_index = Column(Integer, nullable=True)
    # "<goal_id>:<occurrence_index>"; lets a retry skip occurrences that already have steps.
    generation_key = Column(String(length=80), nullable=True)
    estimated_effort_min = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
