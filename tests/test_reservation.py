import pytest

from creditledger.core.exceptions import CreditLedgerError, InsufficientCreditsError
from creditledger.domain.reservation import CreditReservation, ReservationState

pytestmark = pytest.mark.asyncio


async def _row(ledger):
    ws = await ledger.get("ws-1")
    return ws.credit_count, ws.allocated_credits


async def test_settle_below_estimate_releases_difference(credits, ledger, make_workspace):
    await make_workspace("ws-1", credit_count=100)
    reservation = await CreditReservation(credits, "ws-1", 30).reserve()
    assert reservation.state is ReservationState.RESERVED
    assert await _row(ledger) == (100, 30)

    assert await reservation.reconcile(12) == 12
    assert await _row(ledger) == (100, 12)
    assert await reservation.settle(reference_id="g1") == 12
    assert reservation.state is ReservationState.SETTLED
    assert await _row(ledger) == (88, 0)


async def test_actual_above_estimate_allocates_top_up(credits, ledger, make_workspace):
    await make_workspace("ws-1", credit_count=100)
    reservation = await CreditReservation(credits, "ws-1", 10).reserve()
    assert await reservation.reconcile(25) == 25
    await reservation.settle()
    assert await _row(ledger) == (75, 0)


async def test_top_up_refused_caps_charge_at_held(credits, ledger, make_workspace):
    await make_workspace("ws-1", credit_count=20)
    reservation = await CreditReservation(credits, "ws-1", 15).reserve()
    assert await reservation.reconcile(40) == 15
    assert await reservation.settle() == 15
    assert await _row(ledger) == (5, 0)


async def test_reserve_insufficient_leaves_ledger_untouched(credits, ledger, make_workspace):
    await make_workspace("ws-1", credit_count=5)
    reservation = CreditReservation(credits, "ws-1", 10)
    with pytest.raises(InsufficientCreditsError):
        await reservation.reserve()
    assert reservation.state is ReservationState.ESTIMATED
    assert await _row(ledger) == (5, 0)


async def test_release_is_idempotent(credits, ledger, make_workspace):
    await make_workspace("ws-1", credit_count=100)
    reservation = await CreditReservation(credits, "ws-1", 30).reserve()
    await reservation.release()
    await reservation.release()
    assert reservation.state is ReservationState.RELEASED
    assert await _row(ledger) == (100, 0)


async def test_release_after_settle_is_rejected(credits, make_workspace):
    await make_workspace("ws-1", credit_count=100)
    reservation = await CreditReservation(credits, "ws-1", 5).reserve()
    await reservation.reconcile(5)
    await reservation.settle()
    with pytest.raises(CreditLedgerError):
        await reservation.release()


async def test_settle_requires_reconcile(credits, make_workspace):
    await make_workspace("ws-1", credit_count=100)
    reservation = await CreditReservation(credits, "ws-1", 5).reserve()
    with pytest.raises(CreditLedgerError):
        await reservation.settle()


async def test_zero_estimate_holds_nothing(credits, ledger, make_workspace):
    await make_workspace("ws-1", credit_count=100)
    reservation = await CreditReservation(credits, "ws-1", 0).reserve()
    assert reservation.allocation_id is None
    assert await reservation.reconcile(0) == 0
    assert await reservation.settle() == 0
    assert await _row(ledger) == (100, 0)


async def test_context_manager_releases_on_error(credits, ledger, make_workspace):
    await make_workspace("ws-1", credit_count=100)
    with pytest.raises(RuntimeError):
        async with CreditReservation(credits, "ws-1", 40):
            assert await _row(ledger) == (100, 40)
            raise RuntimeError("provider down")
    assert await _row(ledger) == (100, 0)


async def test_context_manager_keeps_settlement(credits, ledger, make_workspace):
    await make_workspace("ws-1", credit_count=100)
    async with CreditReservation(credits, "ws-1", 40) as reservation:
        await reservation.reconcile(40)
        await reservation.settle()
    assert await _row(ledger) == (60, 0)
