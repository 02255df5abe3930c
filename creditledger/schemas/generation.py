from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class GenerationType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    SPEECH = "SPEECH"
    TRANSCRIPTION = "TRANSCRIPTION"


class GenerationStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class GenerationRecord(BaseModel):
    """Audit row for one provider call; PENDING until the call resolves."""

    id: str
    workspace_id: str
    user_id: str | None = None
    type: GenerationType
    model: str
    provider: str
    prompt: str = ""
    status: GenerationStatus = GenerationStatus.PENDING
    credits: int = 0
    result: str | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class TextOptions(BaseModel):
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stop_sequences: list[str] | None = None


class GenerateChatCompletionCommand(TextOptions):
    workspace_id: str
    user_id: str | None = None
    provider: str
    model: str
    messages: list[ChatMessage]


class GenerateCompletionCommand(TextOptions):
    workspace_id: str
    user_id: str | None = None
    provider: str
    model: str
    prompt: str


class GenerateImageCommand(BaseModel):
    workspace_id: str
    user_id: str | None = None
    provider: str
    model: str
    prompt: str
    size: str = "1024x1024"
    style: str | None = None
    quality: str | None = None
    n: int = Field(default=1, ge=1)


class GenerateSpeechCommand(BaseModel):
    workspace_id: str
    user_id: str | None = None
    provider: str
    model: str
    text: str
    voice: str | None = None
    format: str | None = None
    speed: float | None = None


class AudioFile(BaseModel):
    filename: str
    content: bytes
    content_type: str | None = None


class GenerateTranscriptionCommand(BaseModel):
    workspace_id: str
    user_id: str | None = None
    provider: str
    model: str = "whisper-1"
    audio_file: AudioFile
    language: str | None = None
    format: str | None = None
    timestamps: bool = False
    temperature: float | None = None
    prompt: str | None = None


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0
    total: int = 0


class TextResult(BaseModel):
    id: str
    content: str
    model: str
    provider: str
    tokens: TokenUsage
    credits: int


class ImageResult(BaseModel):
    id: str
    url: str
    width: int
    height: int
    model: str
    provider: str
    credits: int


class SpeechResult(BaseModel):
    id: str
    audio_url: str
    format: str | None = None
    duration: float | None = None
    model: str
    provider: str
    credits: int


class TranscriptionSegment(BaseModel):
    start: float
    end: float
    text: str


class TranscriptionResult(BaseModel):
    id: str
    text: str
    language: str | None = None
    duration: float
    segments: list[TranscriptionSegment] | None = None
    model: str
    provider: str
    credits: int
