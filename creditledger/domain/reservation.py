"""Credit reservation lifecycle for one metered operation.

    ESTIMATED --reserve--> RESERVED --reconcile--> RECONCILED --settle--> SETTLED
        |                     |                        |
        +--------------------release-------------------+--> RELEASED

`held` is always the amount currently allocated on the ledger by this
reservation, so release() and settle() never touch more than was allocated.
"""

from enum import Enum
from typing import TYPE_CHECKING

from creditledger.core.exceptions import CreditLedgerError, InsufficientCreditsError
from creditledger.core.logging import get_logger

if TYPE_CHECKING:
    from creditledger.services.credits import CreditDeductionService

log = get_logger(__name__)


class ReservationState(str, Enum):
    ESTIMATED = "ESTIMATED"
    RESERVED = "RESERVED"
    RECONCILED = "RECONCILED"
    SETTLED = "SETTLED"
    RELEASED = "RELEASED"


class CreditReservation:
    def __init__(self, credits: "CreditDeductionService", workspace_id: str, estimated: int):
        if estimated < 0:
            raise ValueError("Estimated credits cannot be negative")
        self.credits = credits
        self.workspace_id = workspace_id
        self.estimated = estimated
        self.held = 0
        self.allocation_id: str | None = None
        self.state = ReservationState.ESTIMATED

    def _require(self, *states: ReservationState) -> None:
        if self.state not in states:
            raise CreditLedgerError(
                f"Reservation is {self.state.value}, expected {' or '.join(s.value for s in states)}",
                details={"workspace_id": self.workspace_id},
            )

    async def reserve(self) -> "CreditReservation":
        self._require(ReservationState.ESTIMATED)
        if self.estimated > 0:
            allocation = await self.credits.allocate_credits(self.workspace_id, self.estimated)
            self.allocation_id = allocation.allocation_id
            self.held = self.estimated
        self.state = ReservationState.RESERVED
        return self

    async def reconcile(self, actual: int) -> int:
        """Bring the held amount to `actual`; returns what will be charged on settle."""
        self._require(ReservationState.RESERVED)
        if actual < 0:
            raise ValueError("Actual credits cannot be negative")
        if actual < self.held:
            await self.credits.release_credits(self.workspace_id, self.held - actual)
            self.held = actual
        elif actual > self.held:
            try:
                await self.credits.allocate_credits(self.workspace_id, actual - self.held)
                self.held = actual
            except InsufficientCreditsError as e:
                log.warning(
                    "reservation_capped",
                    workspace_id=self.workspace_id,
                    actual=actual,
                    charged=self.held,
                    available=e.available,
                )
        self.state = ReservationState.RECONCILED
        return self.held

    async def settle(self, description: str = "Credit usage", reference_id: str | None = None) -> int:
        self._require(ReservationState.RECONCILED)
        if self.held > 0:
            await self.credits.consume_credits(
                self.workspace_id,
                self.held,
                description=description,
                reference_type="generation" if reference_id else None,
                reference_id=reference_id,
            )
        self.state = ReservationState.SETTLED
        return self.held

    async def release(self) -> None:
        if self.state is ReservationState.RELEASED:
            return
        self._require(ReservationState.ESTIMATED, ReservationState.RESERVED, ReservationState.RECONCILED)
        if self.held > 0:
            await self.credits.release_credits(self.workspace_id, self.held)
            self.held = 0
        self.state = ReservationState.RELEASED

    async def __aenter__(self) -> "CreditReservation":
        return await self.reserve()

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None and self.state is not ReservationState.SETTLED:
            await self.release()
        return False
