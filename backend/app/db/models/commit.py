"""Commit model: an immutable, named group of staged changes pushed as a unit."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Text
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.db.models.staged_change import StagedChange


class Commit(Base):
    __tablename__ = "commits"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    message = Column(Text, nullable=False)
    target = Column(String(16), nullable=False)  # union of member targets
    status = Column(String(32), nullable=False, default="pending", index=True)  # CommitStatus enum value

    # Last push failure
    error_message = Column(Text, nullable=True)
    error_target = Column(String(16), nullable=True)  # portfolio | enrichment | both

    # Per-side markers so a partially applied commit only re-pushes the missing side
    portfolio_applied_at = Column(DateTime(timezone=True), nullable=True)
    enrichment_applied_at = Column(DateTime(timezone=True), nullable=True)

    # Audit
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    applied_at = Column(DateTime(timezone=True), nullable=True)
    applied_by = Column(String(255), nullable=True)

    changes = relationship(
        StagedChange,
        order_by=[StagedChange.created_at, StagedChange.id],
        lazy="selectin",
        viewonly=True,
    )
