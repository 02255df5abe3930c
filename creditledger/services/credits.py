"""Workspace credit ledger: two-phase allocate -> consume | release, plus refunds and adjustments."""

import secrets
import time
import uuid
from typing import Callable, Literal

from creditledger.core.exceptions import ConflictError, InsufficientCreditsError, WorkspaceNotFoundError
from creditledger.core.logging import get_logger
from creditledger.domain.workspace import WorkspaceCredits, validate_credit_amount
from creditledger.schemas.credits import (
    AdjustmentResult,
    AllocationResult,
    CreditBalance,
    CreditTransaction,
    LedgerResult,
    TransactionType,
)
from creditledger.stores.base import LedgerStore

log = get_logger(__name__)


def _replayed(entry: CreditTransaction) -> AdjustmentResult:
    return AdjustmentResult(
        workspace_id=entry.workspace_id,
        amount=entry.amount,
        previous_balance=entry.balance_before,
        new_balance=entry.balance_after,
        transaction_id=entry.id,
        duplicate=True,
    )


def _allocation_id() -> str:
    # Caller bookkeeping only; not persisted
    return f"alloc_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class CreditDeductionService:
    """
    Every mutating call is one store transaction against the workspace row.

    Callers allocate before the expensive operation, then resolve the allocation
    exactly once: consume on success, release on failure (including exceptions).
    A crash between the two leaves `allocated_credits` elevated until reconciled.
    """

    def __init__(self, store: LedgerStore):
        self.store = store

    async def validate_credits(self, workspace_id: str, amount: int) -> bool:
        """Advisory check; the authoritative one happens inside allocate_credits."""
        amount = validate_credit_amount(amount)
        workspace = await self.store.get(workspace_id)
        if not workspace:
            raise WorkspaceNotFoundError(workspace_id)
        return workspace.has_available_credits(amount)

    async def allocate_credits(self, workspace_id: str, amount: int) -> AllocationResult:
        amount = validate_credit_amount(amount)
        try:
            workspace, _ = await self.store.run_in_transaction(
                workspace_id, lambda ws: ws.allocate_credits(amount)
            )
        except InsufficientCreditsError as e:
            log.info(
                "credits_insufficient",
                workspace_id=workspace_id,
                required=e.required,
                available=e.available,
            )
            raise
        allocation_id = _allocation_id()
        log.info(
            "credits_allocated",
            workspace_id=workspace_id,
            amount=amount,
            allocation_id=allocation_id,
            available=workspace.available_credits,
        )
        return AllocationResult(
            allocation_id=allocation_id,
            workspace_id=workspace_id,
            amount=amount,
            remaining_credits=workspace.available_credits,
        )

    async def consume_credits(
        self,
        workspace_id: str,
        amount: int,
        description: str = "Credit usage",
        reference_type: str | None = None,
        reference_id: str | None = None,
    ) -> LedgerResult:
        """Finalize `amount` of an existing allocation; it leaves both allocated and total."""
        amount = validate_credit_amount(amount)

        def consume(ws: WorkspaceCredits) -> int:
            before = ws.credit_count
            ws.consume_credits(amount)
            return before

        workspace, balance_before = await self.store.run_in_transaction(workspace_id, consume)
        await self._record(
            workspace,
            TransactionType.USAGE,
            -amount,
            balance_before,
            description,
            reference_type=reference_type,
            reference_id=reference_id,
            revert=lambda ws: ws.revert_consumption(amount),
        )
        log.info("credits_consumed", workspace_id=workspace_id, amount=amount, credit_count=workspace.credit_count)
        return LedgerResult(workspace_id=workspace_id, amount=amount, remaining_credits=workspace.credit_count)

    async def release_credits(self, workspace_id: str, amount: int) -> LedgerResult:
        """Cancel `amount` of an allocation; the total is untouched."""
        amount = validate_credit_amount(amount)
        workspace, _ = await self.store.run_in_transaction(
            workspace_id, lambda ws: ws.release_credits(amount)
        )
        log.info("credits_released", workspace_id=workspace_id, amount=amount, available=workspace.available_credits)
        return LedgerResult(workspace_id=workspace_id, amount=amount, remaining_credits=workspace.available_credits)

    async def deduct_credits(
        self,
        workspace_id: str,
        amount: int,
        description: str = "Credit usage",
        reference_type: str | None = None,
        reference_id: str | None = None,
    ) -> AllocationResult:
        """One-shot deduction: allocate then consume, as two separate transactions."""
        allocation = await self.allocate_credits(workspace_id, amount)
        try:
            result = await self.consume_credits(
                workspace_id,
                allocation.amount,
                description=description,
                reference_type=reference_type,
                reference_id=reference_id,
            )
        except Exception:
            await self.release_credits(workspace_id, allocation.amount)
            raise
        return AllocationResult(
            allocation_id=allocation.allocation_id,
            workspace_id=workspace_id,
            amount=allocation.amount,
            remaining_credits=result.remaining_credits,
        )

    async def refund_credits(
        self,
        workspace_id: str,
        amount: int,
        description: str = "Credit refund",
        reference_type: str | None = None,
        reference_id: str | None = None,
    ) -> LedgerResult:
        """Give back credits that were already consumed; bypasses allocations."""
        amount = validate_credit_amount(amount)

        def refund(ws: WorkspaceCredits) -> int:
            before = ws.credit_count
            ws.add_credits(amount)
            return before

        workspace, balance_before = await self.store.run_in_transaction(workspace_id, refund)
        await self._record(
            workspace,
            TransactionType.REFUND,
            amount,
            balance_before,
            description,
            reference_type=reference_type,
            reference_id=reference_id,
            revert=lambda ws: ws.remove_credits(amount),
        )
        log.info("credits_refunded", workspace_id=workspace_id, amount=amount, credit_count=workspace.credit_count)
        return LedgerResult(workspace_id=workspace_id, amount=amount, remaining_credits=workspace.credit_count)

    async def adjust_credits(
        self,
        workspace_id: str,
        amount: int,
        direction: Literal["add", "subtract"],
        reason: str,
        idempotency_key: str | None = None,
    ) -> AdjustmentResult:
        """
        Manual adjustment of owned credits. A repeated idempotency key returns the
        first adjustment without applying it again.
        """
        amount = validate_credit_amount(amount)
        if idempotency_key:
            existing = await self.store.find_transaction(workspace_id, idempotency_key)
            if existing:
                return _replayed(existing)

        def adjust(ws: WorkspaceCredits) -> int:
            before = ws.credit_count
            if direction == "add":
                ws.add_credits(amount)
            else:
                ws.remove_credits(amount)
            return before

        def undo(ws: WorkspaceCredits) -> None:
            if direction == "add":
                ws.remove_credits(amount)
            else:
                ws.add_credits(amount)

        workspace, balance_before = await self.store.run_in_transaction(workspace_id, adjust)
        signed = amount if direction == "add" else -amount
        try:
            entry = await self._record(
                workspace,
                TransactionType.ADJUSTMENT,
                signed,
                balance_before,
                f"Admin adjustment: {reason}",
                reference_type="admin_adjustment",
                idempotency_key=idempotency_key,
                revert=undo,
            )
        except ConflictError:
            # A concurrent request claimed the key first; ours has been reverted
            existing = await self.store.find_transaction(workspace_id, idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return _replayed(existing)
        log.info(
            "credits_adjusted",
            workspace_id=workspace_id,
            amount=signed,
            previous_balance=balance_before,
            new_balance=workspace.credit_count,
        )
        return AdjustmentResult(
            workspace_id=workspace_id,
            amount=signed,
            previous_balance=balance_before,
            new_balance=workspace.credit_count,
            transaction_id=entry.id,
        )

    async def get_credit_balance(self, workspace_id: str) -> CreditBalance:
        workspace = await self.store.get(workspace_id)
        if not workspace:
            raise WorkspaceNotFoundError(workspace_id)
        return CreditBalance(
            total=workspace.credit_count,
            allocated=workspace.allocated_credits,
            available=workspace.available_credits,
        )

    async def get_transactions(self, workspace_id: str, limit: int = 50, offset: int = 0) -> list[CreditTransaction]:
        if not await self.store.get(workspace_id):
            raise WorkspaceNotFoundError(workspace_id)
        return await self.store.list_transactions(workspace_id, limit=limit, offset=offset)

    async def _record(
        self,
        workspace: WorkspaceCredits,
        type_: TransactionType,
        amount: int,
        balance_before: int,
        description: str,
        reference_type: str | None = None,
        reference_id: str | None = None,
        idempotency_key: str | None = None,
        revert: Callable[[WorkspaceCredits], None] | None = None,
    ) -> CreditTransaction:
        """
        Append the history entry for a ledger write that already landed. If the
        append fails, `revert` is applied so no balance change exists without its
        entry, and the append error propagates.
        """
        entry = CreditTransaction(
            id=str(uuid.uuid4()),
            workspace_id=workspace.workspace_id,
            type=type_,
            amount=amount,
            balance_before=balance_before,
            balance_after=workspace.credit_count,
            description=description,
            reference_type=reference_type,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
        )
        try:
            return await self.store.record_transaction(entry)
        except Exception as e:
            log.warning(
                "transaction_record_failed",
                workspace_id=workspace.workspace_id,
                transaction_id=entry.id,
                reason=str(e),
            )
            if revert is not None:
                try:
                    await self.store.run_in_transaction(workspace.workspace_id, revert)
                except Exception:
                    log.exception(
                        "ledger_revert_failed",
                        workspace_id=workspace.workspace_id,
                        transaction_id=entry.id,
                        amount=amount,
                    )
            raise
