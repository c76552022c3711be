"""Goal ORM model."""
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Column, Date, DateTime, Index, Integer, String, Text, func, text as sa_text
from sqlalchemy.dialects.postgresql import UUID

from stepflow.db.base import Base
from stepflow.db.types import JSONBCompat, JSONListCompat


class Goal(Base):
    __tablename__ = "goals"
    __table_args__ = (
        Index("ix_goals_owner_id", "owner_id"),
        Index("ix_goals_status", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_id = Column(UUID(as_uuid=True), nullable=True)
    title = Column(Text, nullable=False)
    domain = Column(String(length=50), nullable=True)
    start_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=True)
    frequency_per_week = Column(Integer, nullable=True)
    selected_days = Column(JSONListCompat, nullable=False, default=list)
    duration_weeks = Column(Integer, nullable=False, server_default=sa_text("4"))
    status = Column(String(length=50), nullable=False, server_default=sa_text("'planned'"))
    # Column named "metadata" but attribute renamed to avoid Base.metadata collisions.
    metadata_json = Column("metadata", JSONBCompat, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    @property
    def is_habit(self) -> bool:
        return bool(self.frequency_per_week and self.frequency_per_week > 0)
