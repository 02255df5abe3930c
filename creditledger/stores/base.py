from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Callable, TypeVar

from creditledger.core.config import get_settings
from creditledger.domain.workspace import WorkspaceCredits
from creditledger.schemas.billing import PlanInfo, SubscriptionInfo
from creditledger.schemas.credits import CreditTransaction
from creditledger.schemas.generation import GenerationRecord

T = TypeVar("T")


class LedgerStore(ABC):
    """Persisted workspace ledger rows plus their settled transaction history."""

    @abstractmethod
    async def create(self, workspace: WorkspaceCredits) -> WorkspaceCredits:
        """Insert a new ledger row; ConflictError if the id is taken."""
        ...

    @abstractmethod
    async def get(self, workspace_id: str) -> WorkspaceCredits | None:
        """Unlocked point read."""
        ...

    @abstractmethod
    async def run_in_transaction(
        self,
        workspace_id: str,
        mutation: Callable[[WorkspaceCredits], T],
    ) -> tuple[WorkspaceCredits, T]:
        """
        Apply `mutation` to the row with exclusive access and persist the result.
        Nothing is written if `mutation` raises. Concurrent calls for the same
        workspace serialize; WorkspaceNotFoundError if the row does not exist.
        """
        ...

    @abstractmethod
    async def record_transaction(self, entry: CreditTransaction) -> CreditTransaction:
        ...

    @abstractmethod
    async def find_transaction(self, workspace_id: str, idempotency_key: str) -> CreditTransaction | None:
        ...

    @abstractmethod
    async def list_transactions(self, workspace_id: str, limit: int = 50, offset: int = 0) -> list[CreditTransaction]:
        """Newest first."""
        ...


class BillingStore(ABC):
    @abstractmethod
    async def get_plan(self, plan_id: str) -> PlanInfo | None:
        ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> SubscriptionInfo | None:
        ...

    @abstractmethod
    async def save_plan(self, plan: PlanInfo) -> PlanInfo:
        ...

    @abstractmethod
    async def save_subscription(self, subscription: SubscriptionInfo) -> SubscriptionInfo:
        ...


class GenerationStore(ABC):
    @abstractmethod
    async def create(self, record: GenerationRecord) -> GenerationRecord:
        ...

    @abstractmethod
    async def update(self, record: GenerationRecord) -> GenerationRecord:
        ...

    @abstractmethod
    async def get(self, generation_id: str) -> GenerationRecord | None:
        ...

    @abstractmethod
    async def list_for_workspace(self, workspace_id: str, limit: int = 50, offset: int = 0) -> list[GenerationRecord]:
        """Newest first."""
        ...


@lru_cache
def get_ledger_store() -> LedgerStore:
    settings = get_settings()
    if settings.store_backend == "memory":
        from creditledger.stores.memory import MemoryLedgerStore
        return MemoryLedgerStore()
    from creditledger.stores.mongo import MongoLedgerStore
    return MongoLedgerStore(max_retries=settings.ledger_max_retries)


@lru_cache
def get_billing_store() -> BillingStore:
    if get_settings().store_backend == "memory":
        from creditledger.stores.memory import MemoryBillingStore
        return MemoryBillingStore()
    from creditledger.stores.mongo import MongoBillingStore
    return MongoBillingStore()


@lru_cache
def get_generation_store() -> GenerationStore:
    if get_settings().store_backend == "memory":
        from creditledger.stores.memory import MemoryGenerationStore
        return MemoryGenerationStore()
    from creditledger.stores.mongo import MongoGenerationStore
    return MongoGenerationStore()
