"""Workspace credit ledger entity.

`credit_count` is everything the workspace owns, including credits reserved by
in-flight operations; `allocated_credits` is the reserved part. Mutations are pure
and in-memory; persistence and locking belong to the ledger store.
"""

import math
from datetime import datetime, timezone

from pydantic import BaseModel, Field, model_validator

from creditledger.core.exceptions import CreditLedgerError, CreditValidationError, InsufficientCreditsError

MAX_CREDITS = 1_000_000_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_credit_amount(amount, context: str = "Credit amount") -> int:
    """Return `amount` as an int or raise CreditValidationError with a specific code."""
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise CreditValidationError(f"{context} must be a number", code="INVALID_TYPE")
    if isinstance(amount, float):
        if math.isnan(amount):
            raise CreditValidationError(f"{context} cannot be NaN", code="INVALID_NUMBER")
        if math.isinf(amount):
            raise CreditValidationError(f"{context} must be finite", code="INFINITE_VALUE")
        if not amount.is_integer():
            raise CreditValidationError(f"{context} must be an integer", code="NOT_INTEGER")
        amount = int(amount)
    if amount <= 0:
        raise CreditValidationError(f"{context} must be positive", code="NOT_POSITIVE")
    if amount > MAX_CREDITS:
        raise CreditValidationError(
            f"{context} exceeds maximum allowed ({MAX_CREDITS})", code="EXCEEDS_MAXIMUM"
        )
    return amount


class WorkspaceCredits(BaseModel):
    workspace_id: str
    name: str = ""
    credit_count: int = Field(default=0, ge=0)
    allocated_credits: int = Field(default=0, ge=0)
    credits_adjusted_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _allocation_within_balance(self) -> "WorkspaceCredits":
        if self.allocated_credits > self.credit_count:
            raise CreditValidationError(
                f"Allocated credits ({self.allocated_credits}) exceed credit count ({self.credit_count})",
                code="ALLOCATION_EXCEEDS_BALANCE",
            )
        return self

    @property
    def available_credits(self) -> int:
        return self.credit_count - self.allocated_credits

    def has_available_credits(self, amount: int) -> bool:
        return self.available_credits >= amount

    def _touch(self, adjusted: bool = False) -> None:
        now = utcnow()
        self.updated_at = now
        if adjusted:
            self.credits_adjusted_at = now

    def allocate_credits(self, amount: int) -> None:
        amount = validate_credit_amount(amount, "Allocation amount")
        if not self.has_available_credits(amount):
            raise InsufficientCreditsError(self.workspace_id, amount, self.available_credits)
        self.allocated_credits += amount
        self._touch()

    def consume_credits(self, amount: int) -> None:
        """Finalize part of a reservation: removes `amount` from allocated and total."""
        amount = validate_credit_amount(amount, "Consumption amount")
        if self.allocated_credits < amount:
            raise CreditLedgerError(
                "Cannot consume more credits than allocated",
                details={"requested": amount, "allocated": self.allocated_credits},
            )
        if self.credit_count < amount:
            raise CreditLedgerError(
                "Insufficient total credits",
                details={"requested": amount, "credit_count": self.credit_count},
            )
        self.allocated_credits -= amount
        self.credit_count -= amount
        self._touch(adjusted=True)

    def revert_consumption(self, amount: int) -> None:
        """Undo consume_credits: the amount is owned and reserved again."""
        amount = validate_credit_amount(amount, "Reverted amount")
        self.credit_count += amount
        self.allocated_credits += amount
        self._touch(adjusted=True)

    def release_credits(self, amount: int) -> None:
        amount = validate_credit_amount(amount, "Release amount")
        if self.allocated_credits < amount:
            raise CreditLedgerError(
                "Cannot release more credits than allocated",
                details={"requested": amount, "allocated": self.allocated_credits},
            )
        self.allocated_credits -= amount
        self._touch()

    def add_credits(self, amount: int) -> None:
        amount = validate_credit_amount(amount)
        if self.credit_count + amount > MAX_CREDITS:
            raise CreditValidationError(
                "Operation would exceed maximum credit balance", code="EXCEEDS_MAXIMUM"
            )
        self.credit_count += amount
        self._touch(adjusted=True)

    def remove_credits(self, amount: int) -> None:
        """Take owned credits away; reserved credits stay covered."""
        amount = validate_credit_amount(amount)
        if self.credit_count - amount < self.allocated_credits:
            raise CreditLedgerError(
                "Cannot reduce credits below the allocated amount",
                details={
                    "requested": amount,
                    "credit_count": self.credit_count,
                    "allocated": self.allocated_credits,
                },
            )
        self.credit_count -= amount
        self._touch(adjusted=True)
