"""
Shared Type Definitions for processor payloads.

TypedDict shapes for the normalized payloads the reconciliation engine
accepts and the webhook adapter produces.
"""

from typing import TypedDict, Any


class RecurringPayload(TypedDict, total=False):
    interval: str
    interval_count: int


class PricePayload(TypedDict, total=False):
    """One price on a subscription line."""

    id: str
    product_id: str
    unit_amount: int
    currency: str
    recurring: RecurringPayload


class SubscriptionLinePayload(TypedDict, total=False):
    price: PricePayload


class SubscriptionPayload(TypedDict, total=False):
    """Normalized subscription carried by a processor event.

    Timestamps are ISO-8601 strings after normalization.
    """

    id: str
    status: str
    currency: str
    current_period_start: str
    current_period_end: str
    ended_at: str
    canceled_at: str
    items: list[SubscriptionLinePayload]


class InvoicePayload(TypedDict, total=False):
    id: str
    subscription_id: str
    customer_id: str
    amount_due: int
    amount_paid: int
    currency: str


class CustomerPayload(TypedDict, total=False):
    email: str
    description: str
    created: str
    metadata: dict[str, Any]


class ProcessorEventPayload(TypedDict, total=False):
    """Inbound processor event as accepted by ProcessorEvent.from_dict.

    camelCase aliases (eventType, eventId, customerId, customerEmail) are
    accepted as well.
    """

    event_type: str
    event_id: str
    customer_id: str
    customer_email: str
    created: int
    subscription: SubscriptionPayload
    invoice: InvoicePayload
    customer: CustomerPayload
    metadata: dict[str, Any]
