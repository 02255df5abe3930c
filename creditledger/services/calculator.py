"""Usage -> credit cost.

Pure functions over a rate table. Every positive usage costs at least one credit
(ceiling rounding); arithmetic is decimal and multiplies before dividing so exact
multiples never round up. Text length is measured in UTF-16 code units, so a
character outside the Basic Multilingual Plane counts twice.
"""

import math
from decimal import ROUND_CEILING, Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

import orjson
from pydantic import BaseModel, Field, ValidationError, field_validator

from creditledger.core.config import Settings, get_settings
from creditledger.core.exceptions import CreditValidationError
from creditledger.core.logging import get_logger

log = get_logger(__name__)

DEFAULT_TEXT_CREDITS_PER_K_TOKEN: dict[str, float] = {
    "gpt-4": 30,
    "gpt-4-turbo": 20,
    "gpt-4o": 15,
    "gpt-3.5-turbo": 2,
    "claude-3-opus": 30,
    "claude-3-sonnet": 15,
    "claude-3-haiku": 5,
    "claude-3-5-sonnet": 15,
    "gemini-pro": 10,
    "gemini-1.5-pro": 15,
    "gemini-1.5-flash": 5,
    "mistral-large": 20,
    "mistral-medium": 10,
    "mistral-small": 5,
    "default": 10,
}

DEFAULT_IMAGE_CREDITS: dict[str, int] = {
    "256x256": 10,
    "512x512": 20,
    "1024x1024": 40,
    "1792x1024": 60,
    "1024x1792": 60,
}


class CreditConfig(BaseModel):
    text_credits_per_k_token: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_TEXT_CREDITS_PER_K_TOKEN)
    )
    image_credits: dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_IMAGE_CREDITS))
    speech_credits_per_k_char: float = Field(default=5, ge=0)
    transcription_credits_per_minute: float = Field(default=3, ge=0)

    @field_validator("text_credits_per_k_token")
    @classmethod
    def _keep_default_rate(cls, v: dict[str, float]) -> dict[str, float]:
        if "default" not in v:
            v = {**v, "default": DEFAULT_TEXT_CREDITS_PER_K_TOKEN["default"]}
        return v


def utf16_length(text: str) -> int:
    return len(text.encode("utf-16-le")) // 2


def _ceil_div(numerator: Decimal, denominator: int) -> int:
    return int((numerator / denominator).to_integral_value(rounding=ROUND_CEILING))


def _check_metric(value: Any, label: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise CreditValidationError(f"{label} must be a number", code="INVALID_TYPE")
    if isinstance(value, float) and not math.isfinite(value):
        raise CreditValidationError(f"{label} must be a finite number", code="INFINITE_VALUE")
    if value < 0:
        raise CreditValidationError(f"{label} cannot be negative", code="NEGATIVE_VALUE")
    return Decimal(str(value))


class CreditCalculator:
    def __init__(self, config: CreditConfig | None = None):
        self.config = config or CreditConfig()

    def get_model_rate(self, model: str) -> float:
        rates = self.config.text_credits_per_k_token
        return rates.get(model, rates["default"])

    def calculate_text_credits(self, tokens: int | float, model: str) -> int:
        amount = _check_metric(tokens, "Token count")
        if amount == 0:
            return 0
        return _ceil_div(amount * Decimal(str(self.get_model_rate(model))), 1000)

    def calculate_text_credits_detailed(self, input_tokens: int, output_tokens: int, model: str) -> int:
        # Input and output share one combined rate
        _check_metric(input_tokens, "Input token count")
        _check_metric(output_tokens, "Output token count")
        return self.calculate_text_credits(input_tokens + output_tokens, model)

    def calculate_image_credits(self, size: str, count: int = 1) -> int:
        if isinstance(count, bool) or not isinstance(count, int):
            raise CreditValidationError("Image count must be an integer", code="NOT_INTEGER")
        if count < 0:
            raise CreditValidationError("Image count cannot be negative", code="NEGATIVE_VALUE")
        credits_per_image = self.config.image_credits.get(size)
        if credits_per_image is None:
            raise CreditValidationError(f"Unknown image size: {size}", code="UNKNOWN_SIZE")
        return credits_per_image * count

    def calculate_speech_credits(self, text: str) -> int:
        if not isinstance(text, str):
            raise CreditValidationError("Text must be a string", code="INVALID_TYPE")
        chars = utf16_length(text)
        if chars == 0:
            return 0
        return _ceil_div(Decimal(chars) * Decimal(str(self.config.speech_credits_per_k_char)), 1000)

    def calculate_transcription_credits(self, duration_seconds: int | float) -> int:
        seconds = _check_metric(duration_seconds, "Duration")
        if seconds == 0:
            return 0
        return _ceil_div(seconds * Decimal(str(self.config.transcription_credits_per_minute)), 60)

    def estimate_tokens(self, text: str) -> int:
        """Rough fallback: about four characters per token."""
        if not isinstance(text, str):
            raise CreditValidationError("Text must be a string", code="INVALID_TYPE")
        return -(-utf16_length(text) // 4)

    def estimate_text_credits(self, text: str, model: str) -> int:
        return self.calculate_text_credits(self.estimate_tokens(text), model)

    def get_image_pricing(self) -> dict[str, int]:
        return dict(self.config.image_credits)

    def get_speech_rate(self) -> float:
        return self.config.speech_credits_per_k_char

    def get_transcription_rate(self) -> float:
        return self.config.transcription_credits_per_minute

    def update_config(self, partial: dict[str, Any]) -> None:
        """Merge rate maps key by key; scalar rates are replaced. Not safe during live calculations."""
        current = self.config.model_dump()
        merged = {**current, **partial}
        merged["text_credits_per_k_token"] = {
            **current["text_credits_per_k_token"],
            **(partial.get("text_credits_per_k_token") or {}),
        }
        merged["image_credits"] = {
            **current["image_credits"],
            **(partial.get("image_credits") or {}),
        }
        self.config = CreditConfig.model_validate(merged)


def load_credit_config(settings: Settings | None = None) -> CreditConfig:
    """Rates from CREDIT_RATES_FILE, or the built-in table when that is unavailable."""
    settings = settings or get_settings()
    path = settings.credit_rates_file
    if not path:
        return CreditConfig()
    try:
        data = orjson.loads(Path(path).read_bytes())
        return CreditConfig.model_validate(data)
    except (OSError, orjson.JSONDecodeError, ValidationError) as e:
        log.warning("credit_config_fallback", path=path, reason=str(e))
        return CreditConfig()


@lru_cache
def get_credit_calculator() -> CreditCalculator:
    return CreditCalculator(load_credit_config())


def calculate_text_credits(tokens: int | float, model: str) -> int:
    return get_credit_calculator().calculate_text_credits(tokens, model)


def calculate_image_credits(size: str, count: int = 1) -> int:
    return get_credit_calculator().calculate_image_credits(size, count)


def calculate_speech_credits(text: str) -> int:
    return get_credit_calculator().calculate_speech_credits(text)


def calculate_transcription_credits(duration_seconds: int | float) -> int:
    return get_credit_calculator().calculate_transcription_credits(duration_seconds)
