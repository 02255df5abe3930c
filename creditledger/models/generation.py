from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field

from creditledger.domain.workspace import utcnow


class Generation(Document):
    generation_id: Indexed(str, unique=True)
    workspace_id: str
    user_id: str | None = None
    type: str  # TEXT, IMAGE, SPEECH, TRANSCRIPTION
    model: str
    provider: str
    prompt: str = ""
    status: str = "PENDING"  # PENDING -> COMPLETED | FAILED
    credits: int = 0
    result: str | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    class Settings:
        name = "generations"
        indexes = [[("workspace_id", 1), ("created_at", -1)]]
