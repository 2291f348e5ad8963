"""
Decision table for processor events.

(event kind, account found?, current tier) -> Action. Kept free of I/O so
every branch of the engine can be checked in isolation.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from shared.constants import (
    EVENT_CHECKOUT_COMPLETED,
    EVENT_CUSTOMER_CREATED,
    EVENT_INVOICE_PAID,
    EVENT_INVOICE_PAYMENT_FAILED,
    EVENT_INVOICE_PAYMENT_SUCCEEDED,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
    REASON_CANCELLATION,
    REASON_PAYMENT_FAILED,
    REASON_PROCESSOR_EVENT,
    REASON_RENEWAL,
    TIER_ADMIN,
    TIER_BASE,
)

from .models import Account


class EventKind(Enum):
    TIER_CHANGE = "tier_change"
    CANCELLATION = "cancellation"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CUSTOMER_CREATED = "customer_created"
    UNHANDLED = "unhandled"


class ActionType(Enum):
    APPLY = "apply"
    STAGE = "stage"
    DOWNGRADE = "downgrade"
    SKIP_ADMIN = "skip_admin"
    RECORD_PAYMENT = "record_payment"
    RECORD_FAILURE = "record_failure"
    LINK_CUSTOMER = "link_customer"
    CACHE_CUSTOMER = "cache_customer"
    DISCARD = "discard"
    IGNORE = "ignore"


@dataclass(frozen=True)
class Action:
    type: ActionType
    target_tier: Optional[str] = None
    reason: Optional[str] = None


EVENT_KINDS = {
    EVENT_SUBSCRIPTION_CREATED: EventKind.TIER_CHANGE,
    EVENT_SUBSCRIPTION_UPDATED: EventKind.TIER_CHANGE,
    EVENT_CHECKOUT_COMPLETED: EventKind.TIER_CHANGE,
    EVENT_SUBSCRIPTION_DELETED: EventKind.CANCELLATION,
    EVENT_INVOICE_PAYMENT_SUCCEEDED: EventKind.PAYMENT_SUCCEEDED,
    EVENT_INVOICE_PAID: EventKind.PAYMENT_SUCCEEDED,
    EVENT_INVOICE_PAYMENT_FAILED: EventKind.PAYMENT_FAILED,
    EVENT_CUSTOMER_CREATED: EventKind.CUSTOMER_CREATED,
}

# Kinds that would change an account's tier
TIER_CHANGING_KINDS = (EventKind.TIER_CHANGE, EventKind.CANCELLATION)

# (kind, account found) -> (action, audit reason)
DECISION_TABLE = {
    (EventKind.TIER_CHANGE, True): (ActionType.APPLY, REASON_PROCESSOR_EVENT),
    (EventKind.TIER_CHANGE, False): (ActionType.STAGE, None),
    (EventKind.CANCELLATION, True): (ActionType.DOWNGRADE, REASON_CANCELLATION),
    (EventKind.CANCELLATION, False): (ActionType.DISCARD, None),
    (EventKind.PAYMENT_SUCCEEDED, True): (ActionType.RECORD_PAYMENT, REASON_RENEWAL),
    (EventKind.PAYMENT_SUCCEEDED, False): (ActionType.DISCARD, None),
    (EventKind.PAYMENT_FAILED, True): (ActionType.RECORD_FAILURE, REASON_PAYMENT_FAILED),
    (EventKind.PAYMENT_FAILED, False): (ActionType.DISCARD, None),
    (EventKind.CUSTOMER_CREATED, True): (ActionType.LINK_CUSTOMER, None),
    (EventKind.CUSTOMER_CREATED, False): (ActionType.CACHE_CUSTOMER, None),
}


def classify(event_type: str) -> EventKind:
    return EVENT_KINDS.get(event_type, EventKind.UNHANDLED)


def decide(kind: EventKind, account: Optional[Account], resolved_tier: Optional[str] = None) -> Action:
    """
    Pick the action for an event.

    Args:
        kind: Result of ``classify``
        account: Matched account, or None
        resolved_tier: Tier the event's subscription resolves to (tier changes only)
    """
    if kind is EventKind.UNHANDLED:
        return Action(ActionType.IGNORE)

    action_type, reason = DECISION_TABLE[(kind, account is not None)]

    if kind is EventKind.CANCELLATION:
        target_tier = TIER_BASE
    elif kind is EventKind.TIER_CHANGE:
        target_tier = resolved_tier or TIER_BASE
    else:
        target_tier = None

    if account is None:
        return Action(action_type, target_tier, reason)

    # Admin is a manual override outside billing; record the attempt only
    if kind in TIER_CHANGING_KINDS and account.tier == TIER_ADMIN:
        return Action(ActionType.SKIP_ADMIN, target_tier, reason)

    # Linking only ever fills an empty customer id
    if action_type is ActionType.LINK_CUSTOMER and account.processor_customer_id:
        return Action(ActionType.CACHE_CUSTOMER)

    return Action(action_type, target_tier, reason)
