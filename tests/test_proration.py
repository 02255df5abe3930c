from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import pytest_asyncio

from creditledger.core.exceptions import ProrationServiceError
from creditledger.schemas.billing import PlanInfo, SubscriptionInfo
from creditledger.services import stripe_billing
from creditledger.services.proration import (
    ProrationService,
    calculate_daily_proration,
    format_proration_breakdown,
)


PERIOD_START = datetime(2024, 1, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2024, 1, 31, tzinfo=timezone.utc)
MIDPOINT = datetime(2024, 1, 16, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def service(billing):
    await billing.save_plan(PlanInfo(id="basic", name="Basic", price=10, interval="month", stripe_price_id="price_basic"))
    await billing.save_plan(PlanInfo(id="pro", name="Pro", price=20, interval="month", stripe_price_id="price_pro"))
    await billing.save_plan(PlanInfo(id="legacy", name="Legacy", price=30, interval="month", is_active=False))
    await billing.save_plan(PlanInfo(id="pro-annual", name="Pro Annual", price=200, interval="year"))
    for sub_id, plan_id in (("sub-basic", "basic"), ("sub-pro", "pro")):
        await billing.save_subscription(
            SubscriptionInfo(
                id=sub_id,
                workspace_id="ws-1",
                plan_id=plan_id,
                current_period_start=PERIOD_START,
                current_period_end=PERIOD_END,
                stripe_subscription_id=f"stripe_{sub_id}",
            )
        )
    return ProrationService(billing)


@pytest.mark.asyncio
async def test_upgrade_mid_period(service):
    details = await service.calculate_proration("sub-basic", "pro", now=MIDPOINT)
    calc = details.calculation
    assert details.is_upgrade is True
    assert calc.total_days_in_period == 30
    assert calc.days_remaining == 15
    assert calc.current_daily_rate == pytest.approx(0.333, abs=1e-3)
    assert calc.new_daily_rate == pytest.approx(0.667, abs=1e-3)
    assert calc.unused_amount == pytest.approx(5.0)
    assert calc.new_period_cost == pytest.approx(10.0)
    assert calc.prorated_amount == 5.0
    assert calc.credit_amount == 0
    assert details.immediate_charge == 5.0
    assert details.next_billing_amount == 20
    assert details.effective_date == MIDPOINT


@pytest.mark.asyncio
async def test_downgrade_credits_next_invoice(service):
    details = await service.calculate_proration("sub-pro", "basic", now=MIDPOINT)
    assert details.is_upgrade is False
    assert details.immediate_charge == 0
    assert details.calculation.credit_amount == 5.0
    assert details.calculation.prorated_amount == 0
    assert details.next_billing_amount == 5.0
    assert details.effective_date == PERIOD_END


@pytest.mark.parametrize(
    "subscription_id,plan_id,code,status",
    [
        ("missing", "pro", "SUBSCRIPTION_NOT_FOUND", 404),
        ("sub-basic", "missing", "PLAN_NOT_FOUND", 404),
        ("sub-basic", "legacy", "PLAN_INACTIVE", 400),
        ("sub-basic", "pro-annual", "INTERVAL_MISMATCH", 400),
    ],
)
@pytest.mark.asyncio
async def test_rejected_changes(service, subscription_id, plan_id, code, status):
    with pytest.raises(ProrationServiceError) as exc:
        await service.calculate_proration(subscription_id, plan_id, now=MIDPOINT)
    assert exc.value.code == code
    assert exc.value.status_code == status


@pytest.mark.asyncio
async def test_store_failure_is_wrapped(billing):
    async def broken(_):
        raise RuntimeError("connection reset")

    billing.get_subscription = broken
    with pytest.raises(ProrationServiceError) as exc:
        await ProrationService(billing).calculate_proration("sub-basic", "pro")
    assert exc.value.code == "CALCULATION_FAILED"


def test_days_remaining_is_clamped_to_period():
    early = datetime(2023, 12, 1, tzinfo=timezone.utc)
    calc = calculate_daily_proration(10, 20, PERIOD_START, PERIOD_END, early)
    assert calc.days_remaining == calc.total_days_in_period == 30
    late = datetime(2024, 3, 1, tzinfo=timezone.utc)
    calc = calculate_daily_proration(10, 20, PERIOD_START, PERIOD_END, late)
    assert calc.days_remaining == 0
    assert calc.prorated_amount == 0


def test_empty_period_fails():
    with pytest.raises(ProrationServiceError) as exc:
        calculate_daily_proration(10, 20, PERIOD_END, PERIOD_END, PERIOD_END)
    assert exc.value.code == "CALCULATION_FAILED"


def test_naive_datetimes_are_treated_as_utc():
    calc = calculate_daily_proration(
        10, 20, PERIOD_START.replace(tzinfo=None), PERIOD_END.replace(tzinfo=None), MIDPOINT
    )
    assert calc.days_remaining == 15


@pytest.mark.asyncio
async def test_breakdown_for_upgrade(service):
    details = await service.calculate_proration("sub-basic", "pro", now=MIDPOINT)
    breakdown = format_proration_breakdown(details)
    assert [i.label for i in breakdown.items] == ["Current Plan (Unused)", "New Plan (Prorated)", "Immediate Charge"]
    assert [i.amount for i in breakdown.items] == [-5.0, 10.0, 5.0]
    assert breakdown.summary.startswith("Upgrading to Pro")
    assert "15 days" in breakdown.summary


@pytest.mark.asyncio
async def test_breakdown_for_downgrade(service):
    details = await service.calculate_proration("sub-pro", "basic", now=MIDPOINT)
    breakdown = format_proration_breakdown(details)
    assert [i.label for i in breakdown.items] == ["Current Plan (Unused)", "Credit Applied", "Next Billing Amount"]
    assert breakdown.items[1].amount == -5.0
    assert breakdown.summary.startswith("Downgrading to Basic")
    assert "2024-01-31" in breakdown.summary


@pytest.mark.asyncio
async def test_stripe_preview_converts_cents(service, monkeypatch):
    calls = []

    async def fake_preview(stripe_subscription_id, stripe_price_id):
        calls.append((stripe_subscription_id, stripe_price_id))
        line = SimpleNamespace(
            description="Remaining time on Pro",
            amount=1000,
            period=SimpleNamespace(start=1705363200, end=1706659200),
        )
        return SimpleNamespace(amount_due=500, period_start=1705363200, lines=SimpleNamespace(data=[line]))

    monkeypatch.setattr(stripe_billing, "preview_plan_change", fake_preview)
    preview = await service.get_stripe_proration_preview("sub-basic", "pro")
    assert calls == [("stripe_sub-basic", "price_pro")]
    assert preview.immediate_charge == 5.0
    assert preview.proration_date == 1705363200
    assert preview.line_items[0].amount == 10.0


@pytest.mark.asyncio
async def test_stripe_preview_failure_is_wrapped(service, monkeypatch):
    async def failing(*args):
        raise RuntimeError("stripe unavailable")

    monkeypatch.setattr(stripe_billing, "preview_plan_change", failing)
    with pytest.raises(ProrationServiceError) as exc:
        await service.get_stripe_proration_preview("sub-basic", "pro")
    assert exc.value.code == "STRIPE_PREVIEW_FAILED"
    assert exc.value.status_code == 502


@pytest.mark.asyncio
async def test_stripe_preview_requires_stripe_ids(service):
    with pytest.raises(ProrationServiceError) as exc:
        await service.get_stripe_proration_preview("sub-basic", "legacy")
    assert exc.value.code == "STRIPE_PREVIEW_FAILED"
