"""Shared FastAPI dependencies; tests swap the stores via app.dependency_overrides."""

from functools import lru_cache

from fastapi import Depends

from creditledger.providers.base import ProviderRegistry
from creditledger.services.calculator import CreditCalculator, get_credit_calculator
from creditledger.services.credits import CreditDeductionService
from creditledger.services.generation import (
    GenerateChatCompletionUseCase,
    GenerateCompletionUseCase,
    GenerateImageUseCase,
    GenerateSpeechUseCase,
    GenerateTranscriptionUseCase,
)
from creditledger.services.proration import ProrationService
from creditledger.stores.base import (
    BillingStore,
    GenerationStore,
    LedgerStore,
    get_billing_store,
    get_generation_store,
    get_ledger_store,
)


def ledger_store() -> LedgerStore:
    return get_ledger_store()


def billing_store() -> BillingStore:
    return get_billing_store()


def generation_store() -> GenerationStore:
    return get_generation_store()


@lru_cache
def get_provider_registry() -> ProviderRegistry:
    """Process-wide registry; the embedding application registers its adapters at startup."""
    return ProviderRegistry()


def provider_registry() -> ProviderRegistry:
    return get_provider_registry()


def credit_calculator() -> CreditCalculator:
    return get_credit_calculator()


def get_credit_service(store: LedgerStore = Depends(ledger_store)) -> CreditDeductionService:
    return CreditDeductionService(store)


def get_proration_service(billing: BillingStore = Depends(billing_store)) -> ProrationService:
    return ProrationService(billing)


def _use_case(cls):
    def build(
        credits: CreditDeductionService = Depends(get_credit_service),
        generations: GenerationStore = Depends(generation_store),
        providers: ProviderRegistry = Depends(provider_registry),
        calculator: CreditCalculator = Depends(credit_calculator),
    ):
        return cls(credits, generations, providers, calculator)
    build.__name__ = f"get_{cls.__name__}"
    return build


get_chat_completion_use_case = _use_case(GenerateChatCompletionUseCase)
get_completion_use_case = _use_case(GenerateCompletionUseCase)
get_image_use_case = _use_case(GenerateImageUseCase)
get_speech_use_case = _use_case(GenerateSpeechUseCase)
get_transcription_use_case = _use_case(GenerateTranscriptionUseCase)
