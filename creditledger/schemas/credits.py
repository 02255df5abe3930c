from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class TransactionType(str, Enum):
    USAGE = "usage"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class CreditTransaction(BaseModel):
    """Settled movement of `credit_count`; amount is signed (negative = debit)."""

    id: str
    workspace_id: str
    type: TransactionType
    amount: int
    balance_before: int
    balance_after: int
    description: str = ""
    reference_type: str | None = None
    reference_id: str | None = None
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CreditBalance(BaseModel):
    total: int
    allocated: int
    available: int


class AllocationResult(BaseModel):
    allocation_id: str
    workspace_id: str
    amount: int
    remaining_credits: int


class LedgerResult(BaseModel):
    workspace_id: str
    amount: int
    remaining_credits: int


class AdjustmentResult(BaseModel):
    workspace_id: str
    amount: int  # signed
    previous_balance: int
    new_balance: int
    transaction_id: str
    duplicate: bool = False
