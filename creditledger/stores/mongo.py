"""MongoDB stores on beanie.

Ledger writes are compare-and-swap on `Workspace.version`: the mutation runs
against a fresh read, and the write only lands if nobody else wrote in between.
A lost race re-runs the mutation, so concurrent operations on one workspace
serialize just as they would under a row lock.
"""

from typing import Callable, TypeVar

from beanie.operators import Inc, Set
from pymongo.errors import DuplicateKeyError

from creditledger.core.exceptions import ConflictError, NotFoundError, WorkspaceNotFoundError
from creditledger.core.logging import get_logger
from creditledger.domain.workspace import WorkspaceCredits
from creditledger.models import CreditTransactionDocument, Generation, Plan, Subscription, Workspace
from creditledger.schemas.billing import PlanInfo, SubscriptionInfo
from creditledger.schemas.credits import CreditTransaction, TransactionType
from creditledger.schemas.generation import GenerationRecord, GenerationStatus, GenerationType
from creditledger.stores.base import BillingStore, GenerationStore, LedgerStore

log = get_logger(__name__)

T = TypeVar("T")


def _workspace_to_entity(doc: Workspace) -> WorkspaceCredits:
    return WorkspaceCredits(
        workspace_id=doc.workspace_id,
        name=doc.name,
        credit_count=doc.credit_count,
        allocated_credits=doc.allocated_credits,
        credits_adjusted_at=doc.credits_adjusted_at,
        created_at=doc.created_at,
        updated_at=doc.updated_at,
    )


def _transaction_to_schema(doc: CreditTransactionDocument) -> CreditTransaction:
    return CreditTransaction(
        id=doc.transaction_id,
        workspace_id=doc.workspace_id,
        type=TransactionType(doc.type),
        amount=doc.amount,
        balance_before=doc.balance_before,
        balance_after=doc.balance_after,
        description=doc.description,
        reference_type=doc.reference_type,
        reference_id=doc.reference_id,
        idempotency_key=doc.idempotency_key,
        created_at=doc.created_at,
    )


class MongoLedgerStore(LedgerStore):
    def __init__(self, max_retries: int = 5) -> None:
        self.max_retries = max_retries

    async def create(self, workspace: WorkspaceCredits) -> WorkspaceCredits:
        doc = Workspace(
            workspace_id=workspace.workspace_id,
            name=workspace.name,
            credit_count=workspace.credit_count,
            allocated_credits=workspace.allocated_credits,
            credits_adjusted_at=workspace.credits_adjusted_at,
            created_at=workspace.created_at,
            updated_at=workspace.updated_at,
        )
        try:
            await doc.insert()
        except DuplicateKeyError as e:
            raise ConflictError(f"Workspace already exists: {workspace.workspace_id}") from e
        return _workspace_to_entity(doc)

    async def get(self, workspace_id: str) -> WorkspaceCredits | None:
        doc = await Workspace.find_one(Workspace.workspace_id == workspace_id)
        return _workspace_to_entity(doc) if doc else None

    async def run_in_transaction(
        self,
        workspace_id: str,
        mutation: Callable[[WorkspaceCredits], T],
    ) -> tuple[WorkspaceCredits, T]:
        for attempt in range(1, self.max_retries + 1):
            doc = await Workspace.find_one(Workspace.workspace_id == workspace_id)
            if doc is None:
                raise WorkspaceNotFoundError(workspace_id)
            entity = _workspace_to_entity(doc)
            result = mutation(entity)
            update = await Workspace.find_one(
                Workspace.workspace_id == workspace_id,
                Workspace.version == doc.version,
            ).update(
                Set({
                    Workspace.credit_count: entity.credit_count,
                    Workspace.allocated_credits: entity.allocated_credits,
                    Workspace.credits_adjusted_at: entity.credits_adjusted_at,
                    Workspace.updated_at: entity.updated_at,
                }),
                Inc({Workspace.version: 1}),
            )
            if update.modified_count == 1:
                return entity, result
            log.info("ledger_write_conflict", workspace_id=workspace_id, attempt=attempt)
        raise ConflictError(
            "Ledger is busy, retry the operation",
            details={"workspace_id": workspace_id, "attempts": self.max_retries},
        )

    async def record_transaction(self, entry: CreditTransaction) -> CreditTransaction:
        doc = CreditTransactionDocument(
            transaction_id=entry.id,
            workspace_id=entry.workspace_id,
            type=entry.type.value,
            amount=entry.amount,
            balance_before=entry.balance_before,
            balance_after=entry.balance_after,
            description=entry.description,
            reference_type=entry.reference_type,
            reference_id=entry.reference_id,
            idempotency_key=entry.idempotency_key,
            created_at=entry.created_at,
        )
        try:
            await doc.insert()
        except DuplicateKeyError as e:
            raise ConflictError(
                f"Idempotency key already used: {entry.idempotency_key}",
                details={"workspace_id": entry.workspace_id},
            ) from e
        return entry

    async def find_transaction(self, workspace_id: str, idempotency_key: str) -> CreditTransaction | None:
        doc = await CreditTransactionDocument.find_one(
            CreditTransactionDocument.workspace_id == workspace_id,
            CreditTransactionDocument.idempotency_key == idempotency_key,
        )
        return _transaction_to_schema(doc) if doc else None

    async def list_transactions(self, workspace_id: str, limit: int = 50, offset: int = 0) -> list[CreditTransaction]:
        docs = (
            await CreditTransactionDocument.find(CreditTransactionDocument.workspace_id == workspace_id)
            .sort(-CreditTransactionDocument.created_at)
            .skip(offset)
            .limit(limit)
            .to_list()
        )
        return [_transaction_to_schema(d) for d in docs]


class MongoBillingStore(BillingStore):
    async def get_plan(self, plan_id: str) -> PlanInfo | None:
        doc = await Plan.find_one(Plan.plan_id == plan_id)
        if not doc:
            return None
        return PlanInfo(
            id=doc.plan_id,
            name=doc.name,
            price=doc.price,
            interval=doc.interval,
            is_active=doc.is_active,
            stripe_price_id=doc.stripe_price_id,
        )

    async def get_subscription(self, subscription_id: str) -> SubscriptionInfo | None:
        doc = await Subscription.find_one(Subscription.subscription_id == subscription_id)
        if not doc:
            return None
        return SubscriptionInfo(
            id=doc.subscription_id,
            workspace_id=doc.workspace_id,
            plan_id=doc.plan_id,
            status=doc.status,
            current_period_start=doc.current_period_start,
            current_period_end=doc.current_period_end,
            stripe_subscription_id=doc.stripe_subscription_id,
        )

    async def save_plan(self, plan: PlanInfo) -> PlanInfo:
        doc = await Plan.find_one(Plan.plan_id == plan.id)
        if not doc:
            doc = Plan(plan_id=plan.id, name=plan.name, price=plan.price, interval=plan.interval)
        doc.name = plan.name
        doc.price = plan.price
        doc.interval = plan.interval
        doc.is_active = plan.is_active
        doc.stripe_price_id = plan.stripe_price_id
        await doc.save()
        return plan

    async def save_subscription(self, subscription: SubscriptionInfo) -> SubscriptionInfo:
        doc = await Subscription.find_one(Subscription.subscription_id == subscription.id)
        if not doc:
            doc = Subscription(
                subscription_id=subscription.id,
                workspace_id=subscription.workspace_id,
                plan_id=subscription.plan_id,
                current_period_start=subscription.current_period_start,
                current_period_end=subscription.current_period_end,
            )
        doc.workspace_id = subscription.workspace_id
        doc.plan_id = subscription.plan_id
        doc.status = subscription.status
        doc.current_period_start = subscription.current_period_start
        doc.current_period_end = subscription.current_period_end
        doc.stripe_subscription_id = subscription.stripe_subscription_id
        await doc.save()
        return subscription


def _generation_to_schema(doc: Generation) -> GenerationRecord:
    return GenerationRecord(
        id=doc.generation_id,
        workspace_id=doc.workspace_id,
        user_id=doc.user_id,
        type=GenerationType(doc.type),
        model=doc.model,
        provider=doc.provider,
        prompt=doc.prompt,
        status=GenerationStatus(doc.status),
        credits=doc.credits,
        result=doc.result,
        error=doc.error,
        created_at=doc.created_at,
        completed_at=doc.completed_at,
    )


class MongoGenerationStore(GenerationStore):
    async def create(self, record: GenerationRecord) -> GenerationRecord:
        await Generation(
            generation_id=record.id,
            workspace_id=record.workspace_id,
            user_id=record.user_id,
            type=record.type.value,
            model=record.model,
            provider=record.provider,
            prompt=record.prompt,
            status=record.status.value,
            credits=record.credits,
            result=record.result,
            error=record.error,
            created_at=record.created_at,
            completed_at=record.completed_at,
        ).insert()
        return record

    async def update(self, record: GenerationRecord) -> GenerationRecord:
        doc = await Generation.find_one(Generation.generation_id == record.id)
        if not doc:
            raise NotFoundError(f"Generation not found: {record.id}")
        doc.status = record.status.value
        doc.credits = record.credits
        doc.result = record.result
        doc.error = record.error
        doc.completed_at = record.completed_at
        await doc.save()
        return record

    async def get(self, generation_id: str) -> GenerationRecord | None:
        doc = await Generation.find_one(Generation.generation_id == generation_id)
        return _generation_to_schema(doc) if doc else None

    async def list_for_workspace(self, workspace_id: str, limit: int = 50, offset: int = 0) -> list[GenerationRecord]:
        docs = (
            await Generation.find(Generation.workspace_id == workspace_id)
            .sort(-Generation.created_at)
            .skip(offset)
            .limit(limit)
            .to_list()
        )
        return [_generation_to_schema(d) for d in docs]
