from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel

from creditledger.domain.workspace import utcnow


class CreditTransactionDocument(Document):
    transaction_id: Indexed(str, unique=True)
    workspace_id: str
    type: str  # usage, refund, adjustment
    amount: int  # positive = credit, negative = debit
    balance_before: int
    balance_after: int
    description: str = ""
    reference_type: str | None = None  # generation, admin_adjustment, etc.
    reference_id: str | None = None
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "credit_transactions"
        indexes = [
            [("workspace_id", ASCENDING), ("created_at", DESCENDING)],
            # One entry per key; unkeyed entries are not indexed
            IndexModel(
                [("workspace_id", ASCENDING), ("idempotency_key", ASCENDING)],
                name="workspace_idempotency_key_unique",
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
            ),
        ]
