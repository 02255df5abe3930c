from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from creditledger.core.exceptions import WorkspaceNotFoundError
from creditledger.core.logging import bind_workspace_id
from creditledger.core.pagination import Page, paginate, to_page
from creditledger.deps import generation_store, get_credit_service, ledger_store
from creditledger.schemas.credits import AdjustmentResult, CreditBalance, CreditTransaction
from creditledger.schemas.generation import GenerationRecord
from creditledger.services.credits import CreditDeductionService
from creditledger.stores.base import GenerationStore, LedgerStore

router = APIRouter()


class AdjustCreditsRequest(BaseModel):
    # Loosely typed so validate_credit_amount reports the precise failure code
    amount: int | float | str
    type: Literal["add", "subtract"]
    reason: str = Field(min_length=1, max_length=500)
    idempotency_key: str | None = Field(default=None, max_length=200)


@router.get("/{workspace_id}/credits", response_model=CreditBalance)
async def credit_balance(
    workspace_id: str,
    credits: CreditDeductionService = Depends(get_credit_service),
):
    """Total, allocated and spendable credits."""
    bind_workspace_id(workspace_id)
    return await credits.get_credit_balance(workspace_id)


@router.get("/{workspace_id}/credits/transactions", response_model=Page[CreditTransaction])
async def credit_transactions(
    workspace_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    credits: CreditDeductionService = Depends(get_credit_service),
):
    """Settled transactions, newest first."""
    bind_workspace_id(workspace_id)
    limit, offset = paginate(limit, offset)
    entries = await credits.get_transactions(workspace_id, limit=limit, offset=offset)
    return to_page(entries, limit, offset)


@router.post("/{workspace_id}/credits/adjust", response_model=AdjustmentResult)
async def adjust_credits(
    workspace_id: str,
    body: AdjustCreditsRequest,
    credits: CreditDeductionService = Depends(get_credit_service),
):
    bind_workspace_id(workspace_id)
    return await credits.adjust_credits(
        workspace_id,
        body.amount,
        direction=body.type,
        reason=body.reason,
        idempotency_key=body.idempotency_key,
    )


@router.get("/{workspace_id}/generations", response_model=Page[GenerationRecord])
async def list_generations(
    workspace_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    ledger: LedgerStore = Depends(ledger_store),
    generations: GenerationStore = Depends(generation_store),
):
    """Generation records, newest first."""
    bind_workspace_id(workspace_id)
    if not await ledger.get(workspace_id):
        raise WorkspaceNotFoundError(workspace_id)
    limit, offset = paginate(limit, offset)
    records = await generations.list_for_workspace(workspace_id, limit=limit, offset=offset)
    return to_page(records, limit, offset)
