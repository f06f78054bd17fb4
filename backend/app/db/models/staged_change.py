"""StagedChange model: a proposed mutation waiting to be absorbed into a commit."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String

from app.db.base import Base


class StagedChange(Base):
    __tablename__ = "staged_changes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    entity_type = Column(String(32), nullable=False)  # EntityType enum value
    entity_id = Column(String(64), nullable=True)  # portfolio row id
    stable_id = Column(String(128), nullable=True)  # enrichment stable key

    action = Column(String(16), nullable=False)  # CREATE | UPDATE | DELETE
    target = Column(String(16), nullable=False)  # portfolio | enrichment | both
    payload = Column(JSON, nullable=False, default=dict)

    # NULL while uncommitted; frozen once set
    commit_id = Column(String(36), ForeignKey("commits.id"), nullable=True, index=True)

    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
