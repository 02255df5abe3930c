"""Plan-change proration: upgrade charges now, downgrade credits the next invoice."""

import math
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from creditledger.core.exceptions import ProrationServiceError
from creditledger.core.logging import get_logger
from creditledger.schemas.billing import (
    BreakdownItem,
    PlanInfo,
    PlanSummary,
    PreviewLineItem,
    PreviewPeriod,
    ProrationBreakdown,
    ProrationCalculation,
    ProrationDetails,
    StripeProrationPreview,
)
from creditledger.services import stripe_billing
from creditledger.stores.base import BillingStore

log = get_logger(__name__)

DAY_SECONDS = 24 * 60 * 60
CENT = Decimal("0.01")


def _as_utc(dt: datetime) -> datetime:
    # Mongo hands back naive UTC datetimes
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _days_between(start: datetime, end: datetime) -> int:
    return math.ceil((_as_utc(end) - _as_utc(start)).total_seconds() / DAY_SECONDS)


def _cents(value: Decimal) -> float:
    return float(value.quantize(CENT, rounding=ROUND_HALF_UP))


def calculate_daily_proration(
    current_price: float,
    new_price: float,
    period_start: datetime,
    period_end: datetime,
    change_date: datetime,
) -> ProrationCalculation:
    """Linear daily-rate proration over the days left in the current period."""
    total_days = _days_between(period_start, period_end)
    if total_days <= 0:
        raise ProrationServiceError("Billing period has no length", "CALCULATION_FAILED")
    days_remaining = min(max(0, _days_between(change_date, period_end)), total_days)

    current = Decimal(str(current_price))
    new = Decimal(str(new_price))
    unused_amount = current * days_remaining / total_days
    new_period_cost = new * days_remaining / total_days

    return ProrationCalculation(
        current_plan_price=current_price,
        new_plan_price=new_price,
        days_remaining=days_remaining,
        total_days_in_period=total_days,
        current_daily_rate=float(current / total_days),
        new_daily_rate=float(new / total_days),
        unused_amount=float(unused_amount),
        new_period_cost=float(new_period_cost),
        prorated_amount=_cents(max(Decimal(0), new_period_cost - unused_amount)),
        credit_amount=_cents(max(Decimal(0), unused_amount - new_period_cost)),
    )


def _summary(plan: PlanInfo) -> PlanSummary:
    return PlanSummary(id=plan.id, name=plan.name, price=plan.price, interval=plan.interval)


class ProrationService:
    def __init__(self, billing: BillingStore):
        self.billing = billing

    async def _load_plan(self, plan_id: str) -> PlanInfo:
        plan = await self.billing.get_plan(plan_id)
        if not plan:
            raise ProrationServiceError("Plan not found", "PLAN_NOT_FOUND")
        return plan

    async def calculate_proration(
        self,
        subscription_id: str,
        new_plan_id: str,
        now: datetime | None = None,
    ) -> ProrationDetails:
        now = _as_utc(now) if now else datetime.now(timezone.utc)
        try:
            subscription = await self.billing.get_subscription(subscription_id)
            if not subscription:
                raise ProrationServiceError("Subscription not found", "SUBSCRIPTION_NOT_FOUND")
            current_plan = await self._load_plan(subscription.plan_id)
            new_plan = await self._load_plan(new_plan_id)
            if not new_plan.is_active:
                raise ProrationServiceError("Plan is not active", "PLAN_INACTIVE")
            if current_plan.interval != new_plan.interval:
                raise ProrationServiceError(
                    "Cannot change between different billing intervals", "INTERVAL_MISMATCH"
                )

            is_upgrade = new_plan.price > current_plan.price
            calculation = calculate_daily_proration(
                current_plan.price,
                new_plan.price,
                subscription.current_period_start,
                subscription.current_period_end,
                now,
            )
            if is_upgrade:
                immediate_charge = calculation.prorated_amount
                next_billing_amount = new_plan.price
                effective_date = now
            else:
                immediate_charge = 0.0
                next_billing_amount = _cents(
                    Decimal(str(new_plan.price)) - Decimal(str(calculation.credit_amount))
                )
                effective_date = _as_utc(subscription.current_period_end)
        except ProrationServiceError:
            raise
        except Exception as e:
            log.exception("proration_failed", subscription_id=subscription_id, new_plan_id=new_plan_id)
            raise ProrationServiceError(f"Failed to calculate proration: {e}", "CALCULATION_FAILED") from e

        log.info(
            "proration_calculated",
            subscription_id=subscription_id,
            new_plan_id=new_plan_id,
            is_upgrade=is_upgrade,
            immediate_charge=immediate_charge,
        )
        return ProrationDetails(
            is_upgrade=is_upgrade,
            current_plan=_summary(current_plan),
            new_plan=_summary(new_plan),
            calculation=calculation,
            immediate_charge=immediate_charge,
            next_billing_amount=next_billing_amount,
            effective_date=effective_date,
        )

    async def get_stripe_proration_preview(self, subscription_id: str, new_plan_id: str) -> StripeProrationPreview:
        """Stripe's own numbers, for display next to the local calculation."""
        try:
            subscription = await self.billing.get_subscription(subscription_id)
            if not subscription:
                raise ProrationServiceError("Subscription not found", "SUBSCRIPTION_NOT_FOUND")
            new_plan = await self._load_plan(new_plan_id)
            if not subscription.stripe_subscription_id or not new_plan.stripe_price_id:
                raise ProrationServiceError(
                    "Subscription or plan is not linked to Stripe", "STRIPE_PREVIEW_FAILED"
                )
            invoice = await stripe_billing.preview_plan_change(
                subscription.stripe_subscription_id, new_plan.stripe_price_id
            )
            line_items = [
                PreviewLineItem(
                    description=line.description or "",
                    amount=line.amount / 100,
                    period=PreviewPeriod(start=line.period.start, end=line.period.end),
                )
                for line in invoice.lines.data
            ]
            return StripeProrationPreview(
                immediate_charge=invoice.amount_due / 100,
                proration_date=invoice.period_start,
                line_items=line_items,
            )
        except ProrationServiceError:
            raise
        except Exception as e:
            log.warning("stripe_preview_failed", subscription_id=subscription_id, reason=str(e))
            raise ProrationServiceError(
                f"Failed to get Stripe proration preview: {e}", "STRIPE_PREVIEW_FAILED"
            ) from e


def format_proration_breakdown(details: ProrationDetails) -> ProrationBreakdown:
    calc = details.calculation
    share = calc.days_remaining / calc.total_days_in_period
    unused = round(calc.current_plan_price * share, 2)
    days = calc.days_remaining
    effective = details.effective_date.strftime("%Y-%m-%d")

    if details.is_upgrade:
        items = [
            BreakdownItem(
                label="Current Plan (Unused)",
                amount=-unused,
                description=f"Credit for {days} unused days",
            ),
            BreakdownItem(
                label="New Plan (Prorated)",
                amount=round(calc.new_plan_price * share, 2),
                description=f"Charge for {days} days at new rate",
            ),
            BreakdownItem(label="Immediate Charge", amount=details.immediate_charge, description="Due today"),
        ]
        summary = (
            f"Upgrading to {details.new_plan.name}. You'll be charged "
            f"${details.immediate_charge:.2f} today for the remaining {days} days."
        )
    else:
        items = [
            BreakdownItem(
                label="Current Plan (Unused)",
                amount=unused,
                description=f"Credit for {days} unused days",
            ),
            BreakdownItem(
                label="Credit Applied",
                amount=-calc.credit_amount,
                description="Applied to next billing cycle",
            ),
            BreakdownItem(
                label="Next Billing Amount",
                amount=details.next_billing_amount,
                description=f"Effective {effective}",
            ),
        ]
        summary = (
            f"Downgrading to {details.new_plan.name}. Your plan will change on {effective} "
            f"and you'll receive a ${calc.credit_amount:.2f} credit for {days} unused days."
        )
    return ProrationBreakdown(summary=summary, items=items)
