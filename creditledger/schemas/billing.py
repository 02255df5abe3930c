from datetime import datetime

from pydantic import BaseModel


class PlanInfo(BaseModel):
    id: str
    name: str
    price: float
    interval: str  # "month" | "year"
    is_active: bool = True
    stripe_price_id: str | None = None


class SubscriptionInfo(BaseModel):
    id: str
    workspace_id: str
    plan_id: str
    status: str = "active"
    current_period_start: datetime
    current_period_end: datetime
    stripe_subscription_id: str | None = None


class PlanSummary(BaseModel):
    id: str
    name: str
    price: float
    interval: str


class ProrationCalculation(BaseModel):
    current_plan_price: float
    new_plan_price: float
    days_remaining: int
    total_days_in_period: int
    current_daily_rate: float
    new_daily_rate: float
    unused_amount: float
    new_period_cost: float
    prorated_amount: float  # charge, cents precision
    credit_amount: float  # credit, cents precision


class ProrationDetails(BaseModel):
    is_upgrade: bool
    current_plan: PlanSummary
    new_plan: PlanSummary
    calculation: ProrationCalculation
    immediate_charge: float
    next_billing_amount: float
    effective_date: datetime


class BreakdownItem(BaseModel):
    label: str
    amount: float
    description: str


class ProrationBreakdown(BaseModel):
    summary: str
    items: list[BreakdownItem]


class PreviewPeriod(BaseModel):
    start: int
    end: int


class PreviewLineItem(BaseModel):
    description: str
    amount: float
    period: PreviewPeriod


class StripeProrationPreview(BaseModel):
    immediate_charge: float
    proration_date: int
    line_items: list[PreviewLineItem]
