from datetime import datetime

from beanie import Document, Indexed


class Subscription(Document):
    subscription_id: Indexed(str, unique=True)
    workspace_id: str
    plan_id: str
    status: str = "active"
    current_period_start: datetime
    current_period_end: datetime
    stripe_subscription_id: str | None = None

    class Settings:
        name = "subscriptions"
        indexes = [[("workspace_id", 1)]]
