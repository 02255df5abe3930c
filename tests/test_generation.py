import pytest

from creditledger.core.exceptions import BadRequestError, InsufficientCreditsError
from creditledger.providers.base import (
    ImageGenerationProvider,
    ImageGenerationResponse,
    ProviderRegistry,
    SpeechProvider,
    SpeechSynthesisResponse,
    TextGenerationProvider,
    TextGenerationResponse,
    TextStreamChunk,
    TranscriptionProvider,
    TranscriptionResponse,
)
from creditledger.schemas.generation import (
    AudioFile,
    ChatMessage,
    GenerateChatCompletionCommand,
    GenerateCompletionCommand,
    GenerateImageCommand,
    GenerateSpeechCommand,
    GenerateTranscriptionCommand,
    GenerationStatus,
    TokenUsage,
)
from creditledger.services.generation import (
    GenerateChatCompletionUseCase,
    GenerateCompletionUseCase,
    GenerateImageUseCase,
    GenerateSpeechUseCase,
    GenerateTranscriptionUseCase,
)

pytestmark = pytest.mark.asyncio


class FakeText(TextGenerationProvider):
    def __init__(self, fail: bool = False):
        self.fail = fail

    async def generate_completion(self, prompt, options):
        return await self.generate_chat_completion([ChatMessage(role="user", content=prompt)], options)

    async def generate_chat_completion(self, messages, options):
        if self.fail:
            raise RuntimeError("provider timeout")
        return TextGenerationResponse(
            content="hi there",
            model="gpt-4",
            provider="fake",
            tokens=TokenUsage(input=200, output=300, total=500),
        )

    async def stream_chat_completion(self, messages, options):
        yield TextStreamChunk(content="Hel")
        yield TextStreamChunk(content="lo")
        yield TextStreamChunk(is_complete=True, tokens=TokenUsage(input=40, output=60, total=100))


class FakeImage(ImageGenerationProvider):
    async def generate_image(self, prompt, size, style=None, quality=None):
        width, height = (int(x) for x in size.split("x"))
        return ImageGenerationResponse(
            url="https://img.example/1.png", width=width, height=height, model="dall-e-3", provider="fake", size=size
        )


class FakeSpeech(SpeechProvider):
    async def synthesize_speech(self, text, voice=None, format=None, speed=None):
        return SpeechSynthesisResponse(audio_url="https://audio.example/1.mp3", format="mp3", model="tts-1", provider="fake")


class FakeTranscription(TranscriptionProvider):
    async def transcribe_audio(self, audio, language=None, format=None, timestamps=False, temperature=None, prompt=None):
        return TranscriptionResponse(text="hello world", language="en", duration=120, model="whisper-1", provider="fake")


@pytest.fixture
def providers():
    return ProviderRegistry(
        text={"fake": FakeText(), "broken": FakeText(fail=True)},
        image={"fake": FakeImage()},
        speech={"fake": FakeSpeech()},
        transcription={"fake": FakeTranscription()},
    )


def _chat(provider="fake", model="gpt-4"):
    return GenerateChatCompletionCommand(
        workspace_id="ws-1",
        user_id="u-1",
        provider=provider,
        model=model,
        messages=[ChatMessage(role="user", content="hello")],
    )


async def _row(ledger):
    ws = await ledger.get("ws-1")
    return ws.credit_count, ws.allocated_credits


async def test_chat_completion_charges_measured_usage(credits, ledger, generations, providers, calculator, make_workspace):
    await make_workspace("ws-1", credit_count=1000)
    use_case = GenerateChatCompletionUseCase(credits, generations, providers, calculator)

    result = await use_case.execute(_chat())

    assert result.content == "hi there"
    assert result.credits == 15
    assert await _row(ledger) == (985, 0)
    record = await generations.get(result.id)
    assert record.status == GenerationStatus.COMPLETED
    assert record.credits == 15
    assert record.result == "hi there"
    [entry] = await credits.get_transactions("ws-1")
    assert entry.amount == -15
    assert entry.reference_id == result.id


async def test_provider_failure_releases_reservation(credits, ledger, generations, providers, calculator, make_workspace):
    await make_workspace("ws-1", credit_count=1000)
    use_case = GenerateChatCompletionUseCase(credits, generations, providers, calculator)

    with pytest.raises(RuntimeError):
        await use_case.execute(_chat(provider="broken"))

    assert await _row(ledger) == (1000, 0)
    [record] = await generations.list_for_workspace("ws-1")
    assert record.status == GenerationStatus.FAILED
    assert record.error == "provider timeout"
    assert record.credits == 0
    assert await credits.get_transactions("ws-1") == []


async def test_unsupported_provider_releases_reservation(credits, ledger, generations, providers, calculator, make_workspace):
    await make_workspace("ws-1", credit_count=1000)
    use_case = GenerateChatCompletionUseCase(credits, generations, providers, calculator)

    with pytest.raises(BadRequestError):
        await use_case.execute(_chat(provider="nope"))

    assert await _row(ledger) == (1000, 0)


async def test_insufficient_credits_stops_before_provider(credits, ledger, generations, providers, calculator, make_workspace):
    await make_workspace("ws-1", credit_count=10)
    use_case = GenerateChatCompletionUseCase(credits, generations, providers, calculator)

    with pytest.raises(InsufficientCreditsError):
        await use_case.execute(_chat())

    assert await _row(ledger) == (10, 0)
    assert await generations.list_for_workspace("ws-1") == []


async def test_completion(credits, ledger, generations, providers, calculator, make_workspace):
    await make_workspace("ws-1", credit_count=1000)
    use_case = GenerateCompletionUseCase(credits, generations, providers, calculator)

    result = await use_case.execute(
        GenerateCompletionCommand(workspace_id="ws-1", provider="fake", model="gpt-4", prompt="Once upon", max_tokens=50)
    )

    assert result.credits == 15
    assert await _row(ledger) == (985, 0)


async def test_empty_prompt_rejected(credits, generations, providers, calculator, make_workspace):
    await make_workspace("ws-1", credit_count=1000)
    use_case = GenerateCompletionUseCase(credits, generations, providers, calculator)
    with pytest.raises(BadRequestError):
        await use_case.execute(GenerateCompletionCommand(workspace_id="ws-1", provider="fake", model="gpt-4", prompt=""))


async def test_stream_settles_after_final_chunk(credits, ledger, generations, providers, calculator, make_workspace):
    await make_workspace("ws-1", credit_count=1000)
    use_case = GenerateChatCompletionUseCase(credits, generations, providers, calculator)

    chunks = [chunk async for chunk in use_case.execute_stream(_chat(model="gpt-3.5-turbo"))]

    assert "".join(c.content for c in chunks) == "Hello"
    assert await _row(ledger) == (999, 0)
    [record] = await generations.list_for_workspace("ws-1")
    assert record.status == GenerationStatus.COMPLETED
    assert record.result == "Hello"


async def test_abandoned_stream_releases_reservation(credits, ledger, generations, providers, calculator, make_workspace):
    await make_workspace("ws-1", credit_count=1000)
    use_case = GenerateChatCompletionUseCase(credits, generations, providers, calculator)

    stream = use_case.execute_stream(_chat())
    first = await stream.__anext__()
    assert first.content == "Hel"
    await stream.aclose()

    assert await _row(ledger) == (1000, 0)
    [record] = await generations.list_for_workspace("ws-1")
    assert record.status == GenerationStatus.FAILED


async def test_image_generation(credits, ledger, generations, providers, calculator, make_workspace):
    await make_workspace("ws-1", credit_count=1000)
    use_case = GenerateImageUseCase(credits, generations, providers, calculator)

    results = await use_case.execute_multiple(
        GenerateImageCommand(workspace_id="ws-1", provider="fake", model="dall-e-3", prompt="a cat", n=3)
    )

    assert [r.credits for r in results] == [40, 40, 40]
    assert results[0].width == 1024
    assert await _row(ledger) == (880, 0)
    assert len(await generations.list_for_workspace("ws-1")) == 3


async def test_speech_generation(credits, ledger, generations, providers, calculator, make_workspace):
    await make_workspace("ws-1", credit_count=1000)
    use_case = GenerateSpeechUseCase(credits, generations, providers, calculator)

    result = await use_case.execute(
        GenerateSpeechCommand(workspace_id="ws-1", provider="fake", model="tts-1", text="a" * 1000)
    )

    assert result.credits == 5
    assert result.audio_url.endswith(".mp3")
    assert await _row(ledger) == (995, 0)


async def test_transcription_tops_up_for_longer_audio(credits, ledger, generations, providers, calculator, make_workspace):
    await make_workspace("ws-1", credit_count=1000)
    use_case = GenerateTranscriptionUseCase(credits, generations, providers, calculator)

    result = await use_case.execute(
        GenerateTranscriptionCommand(
            workspace_id="ws-1",
            provider="fake",
            audio_file=AudioFile(filename="call.mp3", content=b"\x00\x01", content_type="audio/mpeg"),
        )
    )

    assert result.credits == 6
    assert result.text == "hello world"
    assert await _row(ledger) == (994, 0)
    record = await generations.get(result.id)
    assert record.prompt == "call.mp3"


class OddSizeImage(ImageGenerationProvider):
    async def generate_image(self, prompt, size, style=None, quality=None):
        return ImageGenerationResponse(
            url="https://img.example/odd.png", width=999, height=999, model="dall-e-3", provider="odd", size="999x999"
        )


async def test_image_with_unpriced_size_bills_requested_size(credits, ledger, generations, calculator, make_workspace):
    await make_workspace("ws-1", credit_count=1000)
    registry = ProviderRegistry(image={"odd": OddSizeImage()})
    use_case = GenerateImageUseCase(credits, generations, registry, calculator)

    result = await use_case.execute(
        GenerateImageCommand(workspace_id="ws-1", provider="odd", model="dall-e-3", prompt="a cat")
    )

    assert result.credits == 40
    assert await _row(ledger) == (960, 0)
    [record] = await generations.list_for_workspace("ws-1")
    assert record.status == GenerationStatus.COMPLETED


async def test_registry_register_adds_adapter_by_kind():
    registry = ProviderRegistry()
    image = FakeImage()
    registry.register("image", "fake", image)
    assert registry.image("fake") is image
    with pytest.raises(BadRequestError):
        registry.text("fake")
    with pytest.raises(ValueError):
        registry.register("video", "fake", image)
