"""Substep (scaffolding) ORM model."""
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, func
from sqlalchemy.dialects.postgresql import UUID

from stepflow.db.base import Base


class Substep(Base):
    __tablename__ = "substeps"
    __table_args__ = (Index("ix_substeps_step_id", "step_id"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    step_id = Column(UUID(as_uuid=True), ForeignKey("steps.id", ondelete="CASCADE"), nullable=False)
    title = Column(Text, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    initiated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
