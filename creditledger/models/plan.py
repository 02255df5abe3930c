from beanie import Document, Indexed


class Plan(Document):
    plan_id: Indexed(str, unique=True)
    name: str
    price: float
    interval: str  # month | year
    is_active: bool = True
    stripe_price_id: str | None = None

    class Settings:
        name = "plans"
