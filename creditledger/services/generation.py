"""Metered AI generation: reserve the estimate, call the provider, settle the actual cost.

Every path after a successful reservation resolves it exactly once: settled on
success, released on failure. The generation record mirrors the outcome.
"""

import uuid
from typing import AsyncIterator

from creditledger.core.exceptions import BadRequestError
from creditledger.core.logging import get_logger
from creditledger.domain.reservation import CreditReservation, ReservationState
from creditledger.domain.workspace import utcnow
from creditledger.providers.base import ProviderRegistry, TextGenerationResponse, TextStreamChunk
from creditledger.schemas.generation import (
    GenerateChatCompletionCommand,
    GenerateCompletionCommand,
    GenerateImageCommand,
    GenerateSpeechCommand,
    GenerateTranscriptionCommand,
    GenerationRecord,
    GenerationStatus,
    GenerationType,
    ImageResult,
    SpeechResult,
    TextOptions,
    TextResult,
    TokenUsage,
    TranscriptionResult,
)
from creditledger.services.calculator import CreditCalculator, get_credit_calculator
from creditledger.services.credits import CreditDeductionService
from creditledger.stores.base import GenerationStore

log = get_logger(__name__)

DEFAULT_MAX_TOKENS = 1000
# Audio length is unknown until the provider answers
ESTIMATED_TRANSCRIPTION_SECONDS = 60


class _GenerationUseCase:
    def __init__(
        self,
        credits: CreditDeductionService,
        generations: GenerationStore,
        providers: ProviderRegistry,
        calculator: CreditCalculator | None = None,
    ):
        self.credits = credits
        self.generations = generations
        self.providers = providers
        self.calculator = calculator or get_credit_calculator()

    async def _begin(self, record: GenerationRecord, estimated: int) -> CreditReservation:
        reservation = CreditReservation(self.credits, record.workspace_id, estimated)
        await reservation.reserve()
        try:
            await self.generations.create(record)
        except Exception:
            await reservation.release()
            raise
        log.info(
            "generation_started",
            generation_id=record.id,
            workspace_id=record.workspace_id,
            type=record.type.value,
            estimated_credits=estimated,
        )
        return reservation

    async def _complete(
        self,
        reservation: CreditReservation,
        record: GenerationRecord,
        actual: int,
        result: str,
    ) -> int:
        await reservation.reconcile(actual)
        charged = await reservation.settle(
            description=f"{record.type.value.lower()} generation ({record.model})",
            reference_id=record.id,
        )
        record.status = GenerationStatus.COMPLETED
        record.credits = charged
        record.result = result
        record.completed_at = utcnow()
        await self.generations.update(record)
        log.info(
            "generation_completed",
            generation_id=record.id,
            workspace_id=record.workspace_id,
            estimated_credits=reservation.estimated,
            credits=charged,
        )
        return charged

    async def _fail(self, reservation: CreditReservation, record: GenerationRecord, error: BaseException) -> None:
        if reservation.state is ReservationState.SETTLED:
            # Charged, but the record never reached COMPLETED
            if reservation.held > 0:
                await self.credits.refund_credits(
                    record.workspace_id,
                    reservation.held,
                    description=f"Refund for failed generation {record.id}",
                    reference_type="generation",
                    reference_id=record.id,
                )
        else:
            await reservation.release()
        record.status = GenerationStatus.FAILED
        record.credits = 0
        record.error = str(error) or type(error).__name__
        record.completed_at = utcnow()
        try:
            await self.generations.update(record)
        except Exception:
            log.exception("generation_record_update_failed", generation_id=record.id)
        log.warning(
            "generation_failed",
            generation_id=record.id,
            workspace_id=record.workspace_id,
            error=record.error,
        )

    def _new_record(self, type_: GenerationType, workspace_id: str, user_id: str | None,
                    model: str, provider: str, prompt: str, estimated: int) -> GenerationRecord:
        return GenerationRecord(
            id=str(uuid.uuid4()),
            workspace_id=workspace_id,
            user_id=user_id,
            type=type_,
            model=model,
            provider=provider,
            prompt=prompt,
            credits=estimated,
        )

    def _estimate_text(self, text: str, options: TextOptions, model: str) -> int:
        tokens = self.calculator.estimate_tokens(text) + (options.max_tokens or DEFAULT_MAX_TOKENS)
        return self.calculator.calculate_text_credits(tokens, model)

    def _actual_text(self, tokens: TokenUsage | None, model: str, estimated: int) -> int:
        if not tokens or (tokens.input + tokens.output) == 0:
            return estimated
        return self.calculator.calculate_text_credits_detailed(tokens.input, tokens.output, model)


def _text_options(command: TextOptions) -> TextOptions:
    return TextOptions(**command.model_dump(include=set(TextOptions.model_fields)))


class GenerateChatCompletionUseCase(_GenerationUseCase):
    def _prepare(self, command: GenerateChatCompletionCommand) -> tuple[int, GenerationRecord]:
        if not command.messages:
            raise BadRequestError("At least one message is required")
        joined = "".join(m.content for m in command.messages)
        estimated = self._estimate_text(joined, command, command.model)
        record = self._new_record(
            GenerationType.TEXT,
            command.workspace_id,
            command.user_id,
            command.model,
            command.provider,
            command.messages[-1].content,
            estimated,
        )
        return estimated, record

    async def execute(self, command: GenerateChatCompletionCommand) -> TextResult:
        estimated, record = self._prepare(command)
        reservation = await self._begin(record, estimated)
        try:
            provider = self.providers.text(command.provider)
            response: TextGenerationResponse = await provider.generate_chat_completion(
                command.messages, _text_options(command)
            )
            actual = self._actual_text(response.tokens, command.model, estimated)
            charged = await self._complete(reservation, record, actual, response.content)
        except Exception as e:
            await self._fail(reservation, record, e)
            raise
        return TextResult(
            id=record.id,
            content=response.content,
            model=response.model,
            provider=response.provider,
            tokens=response.tokens or TokenUsage(),
            credits=charged,
        )

    async def execute_stream(self, command: GenerateChatCompletionCommand) -> AsyncIterator[TextStreamChunk]:
        estimated, record = self._prepare(command)
        reservation = await self._begin(record, estimated)
        parts: list[str] = []
        usage: TokenUsage | None = None
        try:
            provider = self.providers.text(command.provider)
            async for chunk in provider.stream_chat_completion(command.messages, _text_options(command)):
                parts.append(chunk.content)
                if chunk.is_complete:
                    usage = chunk.tokens
                yield chunk
            actual = self._actual_text(usage, command.model, estimated)
            await self._complete(reservation, record, actual, "".join(parts))
        except Exception as e:
            await self._fail(reservation, record, e)
            raise
        finally:
            if reservation.state in (ReservationState.RESERVED, ReservationState.RECONCILED):
                # Consumer stopped iterating before the stream finished
                await self._fail(reservation, record, RuntimeError("Stream cancelled"))


class GenerateCompletionUseCase(_GenerationUseCase):
    async def execute(self, command: GenerateCompletionCommand) -> TextResult:
        if not command.prompt:
            raise BadRequestError("Prompt is required")
        estimated = self._estimate_text(command.prompt, command, command.model)
        record = self._new_record(
            GenerationType.TEXT,
            command.workspace_id,
            command.user_id,
            command.model,
            command.provider,
            command.prompt,
            estimated,
        )
        reservation = await self._begin(record, estimated)
        try:
            provider = self.providers.text(command.provider)
            response = await provider.generate_completion(command.prompt, _text_options(command))
            actual = self._actual_text(response.tokens, command.model, estimated)
            charged = await self._complete(reservation, record, actual, response.content)
        except Exception as e:
            await self._fail(reservation, record, e)
            raise
        return TextResult(
            id=record.id,
            content=response.content,
            model=response.model,
            provider=response.provider,
            tokens=response.tokens or TokenUsage(),
            credits=charged,
        )


class GenerateImageUseCase(_GenerationUseCase):
    async def execute(self, command: GenerateImageCommand) -> ImageResult:
        """Generate a single image; `command.n` is ignored here, see execute_multiple."""
        if not command.prompt:
            raise BadRequestError("Prompt is required")
        estimated = self.calculator.calculate_image_credits(command.size, 1)
        record = self._new_record(
            GenerationType.IMAGE,
            command.workspace_id,
            command.user_id,
            command.model,
            command.provider,
            command.prompt,
            estimated,
        )
        reservation = await self._begin(record, estimated)
        try:
            provider = self.providers.image(command.provider)
            response = await provider.generate_image(
                command.prompt, command.size, style=command.style, quality=command.quality
            )
            actual = self._actual_image(response.size, estimated, record)
            charged = await self._complete(reservation, record, actual, response.url)
        except Exception as e:
            await self._fail(reservation, record, e)
            raise
        return ImageResult(
            id=record.id,
            url=response.url,
            width=response.width,
            height=response.height,
            model=response.model,
            provider=response.provider,
            credits=charged,
        )

    def _actual_image(self, size: str | None, estimated: int, record: GenerationRecord) -> int:
        if not size:
            return estimated
        if size not in self.calculator.get_image_pricing():
            # Image already delivered; bill the requested size
            log.warning("image_size_unpriced", generation_id=record.id, size=size, credits=estimated)
            return estimated
        return self.calculator.calculate_image_credits(size, 1)

    async def execute_multiple(self, command: GenerateImageCommand) -> list[ImageResult]:
        # One reservation per image, sequentially
        results = []
        for _ in range(command.n):
            results.append(await self.execute(command.model_copy(update={"n": 1})))
        return results


class GenerateSpeechUseCase(_GenerationUseCase):
    async def execute(self, command: GenerateSpeechCommand) -> SpeechResult:
        if not command.text:
            raise BadRequestError("Text is required")
        estimated = self.calculator.calculate_speech_credits(command.text)
        record = self._new_record(
            GenerationType.SPEECH,
            command.workspace_id,
            command.user_id,
            command.model,
            command.provider,
            command.text,
            estimated,
        )
        reservation = await self._begin(record, estimated)
        try:
            provider = self.providers.speech(command.provider)
            response = await provider.synthesize_speech(
                command.text, voice=command.voice, format=command.format, speed=command.speed
            )
            actual = self.calculator.calculate_speech_credits(command.text)
            charged = await self._complete(reservation, record, actual, response.audio_url)
        except Exception as e:
            await self._fail(reservation, record, e)
            raise
        return SpeechResult(
            id=record.id,
            audio_url=response.audio_url,
            format=response.format,
            duration=response.duration,
            model=response.model,
            provider=response.provider,
            credits=charged,
        )


class GenerateTranscriptionUseCase(_GenerationUseCase):
    async def execute(self, command: GenerateTranscriptionCommand) -> TranscriptionResult:
        estimated = self.calculator.calculate_transcription_credits(ESTIMATED_TRANSCRIPTION_SECONDS)
        record = self._new_record(
            GenerationType.TRANSCRIPTION,
            command.workspace_id,
            command.user_id,
            command.model,
            command.provider,
            command.audio_file.filename,
            estimated,
        )
        reservation = await self._begin(record, estimated)
        try:
            provider = self.providers.transcription(command.provider)
            response = await provider.transcribe_audio(
                command.audio_file,
                language=command.language,
                format=command.format,
                timestamps=command.timestamps,
                temperature=command.temperature,
                prompt=command.prompt,
            )
            actual = self.calculator.calculate_transcription_credits(response.duration)
            charged = await self._complete(reservation, record, actual, response.text)
        except Exception as e:
            await self._fail(reservation, record, e)
            raise
        return TranscriptionResult(
            id=record.id,
            text=response.text,
            language=response.language,
            duration=response.duration,
            segments=response.segments,
            model=response.model,
            provider=response.provider,
            credits=charged,
        )
