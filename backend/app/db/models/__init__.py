"""Re-export all models so Base.metadata sees them."""

from app.db.models.commit import Commit
from app.db.models.staged_change import StagedChange

__all__ = [
    "Commit",
    "StagedChange",
]
