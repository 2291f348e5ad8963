"""Map a processor subscription payload to an entitlement tier."""

from shared.constants import ENTITLED_STATUSES, INTERVAL_TO_TIER, TIER_BASE


def _price_lines(subscription: dict) -> list:
    items = subscription.get("items")
    # Stripe list objects wrap the lines in {"data": [...]}
    if isinstance(items, dict):
        items = items.get("data")
    return items if isinstance(items, list) else []


def primary_price(subscription) -> dict:
    """Price of the first subscription line, or {} when there is none."""
    if not isinstance(subscription, dict):
        return {}
    lines = _price_lines(subscription)
    if not lines or not isinstance(lines[0], dict):
        return {}
    price = lines[0].get("price")
    return price if isinstance(price, dict) else {}


def resolve_tier(subscription) -> str:
    """
    Resolve the tier a subscription entitles its customer to.

    Non-entitled statuses (anything but active/trialing) always resolve to
    the base tier. Otherwise the primary price's recurring interval decides:
    monthly -> mid, yearly -> top. Unknown shapes degrade to base rather than
    raising, so bad input can only under-grant.
    """
    if not isinstance(subscription, dict):
        return TIER_BASE

    if subscription.get("status") not in ENTITLED_STATUSES:
        return TIER_BASE

    recurring = primary_price(subscription).get("recurring")
    if not isinstance(recurring, dict):
        return TIER_BASE

    interval = recurring.get("interval")
    if not isinstance(interval, str):
        return TIER_BASE

    return INTERVAL_TO_TIER.get(interval, TIER_BASE)
