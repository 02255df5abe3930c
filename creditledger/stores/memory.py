"""In-process stores. One asyncio.Lock per workspace stands in for a row lock."""

import asyncio
from collections import defaultdict
from typing import Callable, TypeVar

from creditledger.core.exceptions import ConflictError, NotFoundError, WorkspaceNotFoundError
from creditledger.domain.workspace import WorkspaceCredits
from creditledger.schemas.billing import PlanInfo, SubscriptionInfo
from creditledger.schemas.credits import CreditTransaction
from creditledger.schemas.generation import GenerationRecord
from creditledger.stores.base import BillingStore, GenerationStore, LedgerStore

T = TypeVar("T")


class MemoryLedgerStore(LedgerStore):
    def __init__(self) -> None:
        self._rows: dict[str, WorkspaceCredits] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._transactions: list[CreditTransaction] = []

    async def create(self, workspace: WorkspaceCredits) -> WorkspaceCredits:
        async with self._locks[workspace.workspace_id]:
            if workspace.workspace_id in self._rows:
                raise ConflictError(f"Workspace already exists: {workspace.workspace_id}")
            self._rows[workspace.workspace_id] = workspace.model_copy(deep=True)
        return workspace.model_copy(deep=True)

    async def get(self, workspace_id: str) -> WorkspaceCredits | None:
        row = self._rows.get(workspace_id)
        return row.model_copy(deep=True) if row else None

    async def run_in_transaction(
        self,
        workspace_id: str,
        mutation: Callable[[WorkspaceCredits], T],
    ) -> tuple[WorkspaceCredits, T]:
        async with self._locks[workspace_id]:
            row = self._rows.get(workspace_id)
            if row is None:
                raise WorkspaceNotFoundError(workspace_id)
            draft = row.model_copy(deep=True)
            result = mutation(draft)
            self._rows[workspace_id] = draft
            return draft.model_copy(deep=True), result

    async def record_transaction(self, entry: CreditTransaction) -> CreditTransaction:
        if entry.idempotency_key and self._keyed(entry.workspace_id, entry.idempotency_key):
            raise ConflictError(f"Idempotency key already used: {entry.idempotency_key}")
        self._transactions.append(entry.model_copy(deep=True))
        return entry

    def _keyed(self, workspace_id: str, idempotency_key: str) -> CreditTransaction | None:
        for entry in self._transactions:
            if entry.workspace_id == workspace_id and entry.idempotency_key == idempotency_key:
                return entry
        return None

    async def find_transaction(self, workspace_id: str, idempotency_key: str) -> CreditTransaction | None:
        entry = self._keyed(workspace_id, idempotency_key)
        return entry.model_copy(deep=True) if entry else None

    async def list_transactions(self, workspace_id: str, limit: int = 50, offset: int = 0) -> list[CreditTransaction]:
        entries = [e for e in reversed(self._transactions) if e.workspace_id == workspace_id]
        return [e.model_copy(deep=True) for e in entries[offset:offset + limit]]


class MemoryBillingStore(BillingStore):
    def __init__(self) -> None:
        self._plans: dict[str, PlanInfo] = {}
        self._subscriptions: dict[str, SubscriptionInfo] = {}

    async def get_plan(self, plan_id: str) -> PlanInfo | None:
        return self._plans.get(plan_id)

    async def get_subscription(self, subscription_id: str) -> SubscriptionInfo | None:
        return self._subscriptions.get(subscription_id)

    async def save_plan(self, plan: PlanInfo) -> PlanInfo:
        self._plans[plan.id] = plan
        return plan

    async def save_subscription(self, subscription: SubscriptionInfo) -> SubscriptionInfo:
        self._subscriptions[subscription.id] = subscription
        return subscription


class MemoryGenerationStore(GenerationStore):
    def __init__(self) -> None:
        self._records: dict[str, GenerationRecord] = {}

    async def create(self, record: GenerationRecord) -> GenerationRecord:
        if record.id in self._records:
            raise ConflictError(f"Generation already exists: {record.id}")
        self._records[record.id] = record.model_copy(deep=True)
        return record

    async def update(self, record: GenerationRecord) -> GenerationRecord:
        if record.id not in self._records:
            raise NotFoundError(f"Generation not found: {record.id}")
        self._records[record.id] = record.model_copy(deep=True)
        return record

    async def get(self, generation_id: str) -> GenerationRecord | None:
        record = self._records.get(generation_id)
        return record.model_copy(deep=True) if record else None

    async def list_for_workspace(self, workspace_id: str, limit: int = 50, offset: int = 0) -> list[GenerationRecord]:
        records = sorted(
            (r for r in self._records.values() if r.workspace_id == workspace_id),
            key=lambda r: r.created_at,
            reverse=True,
        )
        return [r.model_copy(deep=True) for r in records[offset:offset + limit]]
