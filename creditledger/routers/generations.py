from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from creditledger.core.logging import bind_workspace_id
from creditledger.deps import (
    get_chat_completion_use_case,
    get_completion_use_case,
    get_image_use_case,
    get_speech_use_case,
)
from creditledger.schemas.generation import (
    ChatMessage,
    GenerateChatCompletionCommand,
    GenerateCompletionCommand,
    GenerateImageCommand,
    GenerateSpeechCommand,
    ImageResult,
    SpeechResult,
    TextOptions,
    TextResult,
)
from creditledger.services.generation import (
    GenerateChatCompletionUseCase,
    GenerateCompletionUseCase,
    GenerateImageUseCase,
    GenerateSpeechUseCase,
)

router = APIRouter()


class ChatCompletionRequest(TextOptions):
    user_id: str | None = None
    provider: str
    model: str
    messages: list[ChatMessage] = Field(min_length=1)


class CompletionRequest(TextOptions):
    user_id: str | None = None
    provider: str
    model: str
    prompt: str = Field(min_length=1)


class ImageRequest(BaseModel):
    user_id: str | None = None
    provider: str
    model: str
    prompt: str = Field(min_length=1)
    size: str = "1024x1024"
    style: str | None = None
    quality: str | None = None
    n: int = Field(default=1, ge=1, le=10)


class SpeechRequest(BaseModel):
    user_id: str | None = None
    provider: str
    model: str
    text: str = Field(min_length=1)
    voice: str | None = None
    format: str | None = None
    speed: float | None = None


@router.post("/{workspace_id}/generations/chat", response_model=TextResult)
async def chat_completion(
    workspace_id: str,
    body: ChatCompletionRequest,
    use_case: GenerateChatCompletionUseCase = Depends(get_chat_completion_use_case),
):
    bind_workspace_id(workspace_id)
    return await use_case.execute(GenerateChatCompletionCommand(workspace_id=workspace_id, **body.model_dump()))


@router.post("/{workspace_id}/generations/completion", response_model=TextResult)
async def completion(
    workspace_id: str,
    body: CompletionRequest,
    use_case: GenerateCompletionUseCase = Depends(get_completion_use_case),
):
    bind_workspace_id(workspace_id)
    return await use_case.execute(GenerateCompletionCommand(workspace_id=workspace_id, **body.model_dump()))


@router.post("/{workspace_id}/generations/image", response_model=list[ImageResult])
async def image(
    workspace_id: str,
    body: ImageRequest,
    use_case: GenerateImageUseCase = Depends(get_image_use_case),
):
    """One reservation per requested image."""
    bind_workspace_id(workspace_id)
    return await use_case.execute_multiple(GenerateImageCommand(workspace_id=workspace_id, **body.model_dump()))


@router.post("/{workspace_id}/generations/speech", response_model=SpeechResult)
async def speech(
    workspace_id: str,
    body: SpeechRequest,
    use_case: GenerateSpeechUseCase = Depends(get_speech_use_case),
):
    bind_workspace_id(workspace_id)
    return await use_case.execute(GenerateSpeechCommand(workspace_id=workspace_id, **body.model_dump()))
