from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field

from creditledger.domain.workspace import utcnow


class Workspace(Document):
    """Ledger row; `version` is bumped on every write for compare-and-swap."""
    workspace_id: Indexed(str, unique=True)
    name: str = ""
    credit_count: int = 0
    allocated_credits: int = 0  # reserved, not yet consumed
    version: int = 0
    credits_adjusted_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "workspaces"
