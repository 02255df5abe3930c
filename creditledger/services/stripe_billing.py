"""Stripe calls used by billing previews."""

import stripe

from creditledger.core.config import get_settings
from creditledger.core.exceptions import BadRequestError


def _api_key() -> str:
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise BadRequestError("Payments not configured")
    return settings.stripe_secret_key


async def preview_plan_change(stripe_subscription_id: str, stripe_price_id: str) -> stripe.Invoice:
    """Upcoming invoice for swapping the subscription's price, with prorations."""
    api_key = _api_key()
    subscription = await stripe.Subscription.retrieve_async(stripe_subscription_id, api_key=api_key)
    item_id = subscription["items"]["data"][0]["id"]
    return await stripe.Invoice.create_preview_async(
        api_key=api_key,
        customer=subscription["customer"],
        subscription=stripe_subscription_id,
        subscription_details={
            "items": [{"id": item_id, "price": stripe_price_id}],
            "proration_behavior": "create_prorations",
        },
    )
