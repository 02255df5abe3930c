from abc import ABC, abstractmethod
from typing import AsyncIterator

from pydantic import BaseModel

from creditledger.core.exceptions import BadRequestError
from creditledger.schemas.generation import AudioFile, ChatMessage, TextOptions, TokenUsage, TranscriptionSegment


class TextGenerationResponse(BaseModel):
    content: str
    model: str
    provider: str
    tokens: TokenUsage | None = None


class TextStreamChunk(BaseModel):
    content: str = ""
    is_complete: bool = False
    # Set on the final chunk when the provider reports usage
    tokens: TokenUsage | None = None
    model: str | None = None
    provider: str | None = None


class ImageGenerationResponse(BaseModel):
    url: str
    width: int
    height: int
    model: str
    provider: str
    size: str | None = None


class SpeechSynthesisResponse(BaseModel):
    audio_url: str
    format: str | None = None
    duration: float | None = None
    model: str
    provider: str


class TranscriptionResponse(BaseModel):
    text: str
    language: str | None = None
    duration: float
    segments: list[TranscriptionSegment] | None = None
    model: str
    provider: str


class TextGenerationProvider(ABC):
    @abstractmethod
    async def generate_completion(self, prompt: str, options: TextOptions) -> TextGenerationResponse:
        ...

    @abstractmethod
    async def generate_chat_completion(self, messages: list[ChatMessage], options: TextOptions) -> TextGenerationResponse:
        ...

    @abstractmethod
    def stream_chat_completion(self, messages: list[ChatMessage], options: TextOptions) -> AsyncIterator[TextStreamChunk]:
        ...


class ImageGenerationProvider(ABC):
    @abstractmethod
    async def generate_image(
        self,
        prompt: str,
        size: str,
        style: str | None = None,
        quality: str | None = None,
    ) -> ImageGenerationResponse:
        """Generate one image."""
        ...


class SpeechProvider(ABC):
    @abstractmethod
    async def synthesize_speech(
        self,
        text: str,
        voice: str | None = None,
        format: str | None = None,
        speed: float | None = None,
    ) -> SpeechSynthesisResponse:
        ...


class TranscriptionProvider(ABC):
    @abstractmethod
    async def transcribe_audio(
        self,
        audio: AudioFile,
        language: str | None = None,
        format: str | None = None,
        timestamps: bool = False,
        temperature: float | None = None,
        prompt: str | None = None,
    ) -> TranscriptionResponse:
        ...


class ProviderRegistry:
    """Provider adapters keyed by provider name; built at startup and passed down."""

    def __init__(
        self,
        text: dict[str, TextGenerationProvider] | None = None,
        image: dict[str, ImageGenerationProvider] | None = None,
        speech: dict[str, SpeechProvider] | None = None,
        transcription: dict[str, TranscriptionProvider] | None = None,
    ):
        self._text = text or {}
        self._image = image or {}
        self._speech = speech or {}
        self._transcription = transcription or {}

    def register(self, kind: str, name: str, provider) -> None:
        """Add an adapter at startup; kind is text, image, speech or transcription."""
        registries = {
            "text": self._text,
            "image": self._image,
            "speech": self._speech,
            "transcription": self._transcription,
        }
        if kind not in registries:
            raise ValueError(f"Unknown provider kind: {kind}")
        registries[kind][name] = provider

    @staticmethod
    def _pick(providers: dict, name: str, kind: str):
        provider = providers.get(name)
        if provider is None:
            raise BadRequestError(f"Unsupported {kind} provider: {name}")
        return provider

    def text(self, name: str) -> TextGenerationProvider:
        return self._pick(self._text, name, "text")

    def image(self, name: str) -> ImageGenerationProvider:
        return self._pick(self._image, name, "image")

    def speech(self, name: str) -> SpeechProvider:
        return self._pick(self._speech, name, "speech")

    def transcription(self, name: str) -> TranscriptionProvider:
        return self._pick(self._transcription, name, "transcription")
