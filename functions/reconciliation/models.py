"""
Data model for tier reconciliation.

Dataclasses mirror the DynamoDB items written by the repositories. Every
``to_item`` drops None values so optional GSI keys are never stored as NULL.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from shared.constants import (
    CHANGE_REASONS,
    DEFAULT_CURRENCY,
    EVENT_CHECKOUT_COMPLETED,
    EVENT_CUSTOMER_CREATED,
    EVENT_INVOICE_PAID,
    EVENT_INVOICE_PAYMENT_FAILED,
    EVENT_INVOICE_PAYMENT_SUCCEEDED,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
    PENDING_UPDATE_TTL_DAYS,
    TIER_BASE,
    TIER_ORDER,
)
from shared.dynamo import strip_none
from shared.errors import MalformedEventError
from shared.types import CustomerPayload, InvoicePayload, PricePayload, SubscriptionPayload

from .identity import normalize_email_key
from .tier_resolver import primary_price

SUBSCRIPTION_EVENTS = (
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_UPDATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_CHECKOUT_COMPLETED,
)
INVOICE_EVENTS = (
    EVENT_INVOICE_PAYMENT_SUCCEEDED,
    EVENT_INVOICE_PAID,
    EVENT_INVOICE_PAYMENT_FAILED,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value) -> Optional[str]:
    """Normalize an epoch timestamp, datetime or ISO string to ISO-8601 UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")
    if isinstance(value, (int, float, Decimal)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc).isoformat()
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc).isoformat()
    raise ValueError(f"Not a timestamp: {value!r}")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _pick(data: dict, *keys, default=None):
    """First non-None value among snake_case/camelCase aliases."""
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return default


def _as_int(value) -> Optional[int]:
    if value is None:
        return None
    return int(value)


def _timestamp(data: dict, event_id: Optional[str], *keys) -> Optional[str]:
    try:
        return to_iso(_pick(data, *keys))
    except (TypeError, ValueError) as e:
        raise MalformedEventError(f"Invalid timestamp in {keys[0]}: {e}", event_id) from e


def _normalize_price(raw: dict) -> PricePayload:
    recurring = raw.get("recurring")
    price = {
        "id": raw.get("id"),
        "product_id": _pick(raw, "product_id", "productId", "product"),
        "unit_amount": _as_int(_pick(raw, "unit_amount", "unitAmount")),
        "currency": raw.get("currency"),
        "recurring": {"interval": recurring.get("interval")} if isinstance(recurring, dict) else None,
    }
    return strip_none(price)


def _normalize_subscription(raw, event_id: Optional[str]) -> SubscriptionPayload:
    if not isinstance(raw, dict):
        raise MalformedEventError("subscription must be an object", event_id)

    sub_id = raw.get("id")
    status = raw.get("status")
    if not sub_id or not isinstance(sub_id, str):
        raise MalformedEventError("subscription.id is required", event_id)
    if not status or not isinstance(status, str):
        raise MalformedEventError("subscription.status is required", event_id)

    lines = raw.get("items")
    if isinstance(lines, dict):
        lines = lines.get("data")
    if lines is None:
        lines = []
    if not isinstance(lines, list):
        raise MalformedEventError("subscription.items must be a list", event_id)

    items = []
    for line in lines:
        price = line.get("price") if isinstance(line, dict) else None
        items.append({"price": _normalize_price(price)} if isinstance(price, dict) else {})

    return strip_none({
        "id": sub_id,
        "status": status,
        "currency": raw.get("currency"),
        "current_period_start": _timestamp(
            raw, event_id, "current_period_start", "currentPeriodStart"
        ),
        "current_period_end": _timestamp(raw, event_id, "current_period_end", "currentPeriodEnd"),
        "ended_at": _timestamp(raw, event_id, "ended_at", "endedAt"),
        "canceled_at": _timestamp(raw, event_id, "canceled_at", "canceledAt"),
        "items": items,
    })


def _normalize_invoice(raw, event_id: Optional[str]) -> InvoicePayload:
    if not isinstance(raw, dict):
        raise MalformedEventError("invoice must be an object", event_id)
    try:
        amount_due = _as_int(_pick(raw, "amount_due", "amountDue"))
        amount_paid = _as_int(_pick(raw, "amount_paid", "amountPaid"))
    except (TypeError, ValueError) as e:
        raise MalformedEventError(f"Invalid invoice amount: {e}", event_id) from e
    return strip_none({
        "id": raw.get("id"),
        "subscription_id": _pick(raw, "subscription_id", "subscriptionId", "subscription"),
        "customer_id": _pick(raw, "customer_id", "customerId", "customer"),
        "amount_due": amount_due,
        "amount_paid": amount_paid,
        "currency": raw.get("currency"),
    })


def _normalize_customer(raw, event_id: Optional[str]) -> CustomerPayload:
    if not isinstance(raw, dict):
        raise MalformedEventError("customer must be an object", event_id)
    metadata = raw.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise MalformedEventError("customer.metadata must be an object", event_id)
    return strip_none({
        "email": raw.get("email"),
        "description": raw.get("description"),
        "created": _timestamp(raw, event_id, "created", "createdAt"),
        "metadata": metadata,
    })


@dataclass
class ProcessorEvent:
    """A verified processor event, normalized to snake_case."""

    event_type: str
    customer_id: Optional[str]
    event_id: Optional[str] = None
    customer_email: Optional[str] = None
    created: Optional[str] = None
    subscription: Optional[SubscriptionPayload] = None
    invoice: Optional[InvoicePayload] = None
    customer: Optional[CustomerPayload] = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload) -> "ProcessorEvent":
        """
        Validate and normalize an inbound event payload.

        Raises:
            MalformedEventError: required fields are missing or mistyped
        """
        if not isinstance(payload, dict):
            raise MalformedEventError("Event payload must be an object")

        event_id = _pick(payload, "event_id", "eventId")
        if event_id is not None and (not isinstance(event_id, str) or not event_id):
            raise MalformedEventError("event_id must be a non-empty string")

        event_type = _pick(payload, "event_type", "eventType")
        if not event_type or not isinstance(event_type, str):
            raise MalformedEventError("event_type is required", event_id)

        subscription = _pick(payload, "subscription")
        invoice = _pick(payload, "invoice")
        customer = _pick(payload, "customer")

        if subscription is not None:
            subscription = _normalize_subscription(subscription, event_id)
        if invoice is not None:
            invoice = _normalize_invoice(invoice, event_id)
        if customer is not None:
            customer = _normalize_customer(customer, event_id)

        if event_type in SUBSCRIPTION_EVENTS and subscription is None:
            raise MalformedEventError(f"{event_type} requires a subscription", event_id)
        if event_type in INVOICE_EVENTS and invoice is None:
            raise MalformedEventError(f"{event_type} requires an invoice", event_id)

        customer_id = _pick(payload, "customer_id", "customerId")
        if customer_id is None and invoice:
            customer_id = invoice.get("customer_id")

        handled = SUBSCRIPTION_EVENTS + INVOICE_EVENTS + (EVENT_CUSTOMER_CREATED,)
        if event_type in handled and (not customer_id or not isinstance(customer_id, str)):
            raise MalformedEventError("customer_id is required", event_id)

        customer_email = _pick(payload, "customer_email", "customerEmail")
        if customer_email is None and customer:
            customer_email = customer.get("email")
        if customer_email is not None and not isinstance(customer_email, str):
            raise MalformedEventError("customer_email must be a string", event_id)

        metadata = payload.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise MalformedEventError("metadata must be an object", event_id)

        return cls(
            event_type=event_type,
            event_id=event_id,
            customer_id=customer_id,
            customer_email=(customer_email or "").strip() or None,
            created=_timestamp(payload, event_id, "created"),
            subscription=subscription,
            invoice=invoice,
            customer=customer,
            metadata=metadata,
        )

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription.get("id")
        if self.invoice:
            return self.invoice.get("subscription_id")
        return None

    @property
    def subscription_status(self) -> Optional[str]:
        return (self.subscription or {}).get("status")

    @property
    def price(self) -> dict:
        return primary_price(self.subscription)

    @property
    def amount(self) -> Optional[int]:
        if self.invoice:
            return _pick(self.invoice, "amount_due", "amount_paid")
        return self.price.get("unit_amount")

    @property
    def currency(self) -> Optional[str]:
        if self.amount is None:
            return None
        currency = (
            (self.invoice or {}).get("currency")
            or self.price.get("currency")
            or (self.subscription or {}).get("currency")
        )
        return currency or DEFAULT_CURRENCY

    @property
    def period_start(self) -> Optional[str]:
        return (self.subscription or {}).get("current_period_start")

    @property
    def period_end(self) -> Optional[str]:
        return (self.subscription or {}).get("current_period_end")

    @property
    def end_date(self) -> Optional[str]:
        """When paid access ends for a live subscription."""
        sub = self.subscription or {}
        return sub.get("current_period_end") or sub.get("ended_at") or sub.get("canceled_at")

    def cancellation_date(self, now: datetime) -> str:
        sub = self.subscription or {}
        return sub.get("ended_at") or sub.get("canceled_at") or now.isoformat()


@dataclass
class Account:
    """Internal account record. Owned by the account system, updated by the engine."""

    account_id: str
    email: Optional[str]
    tier: str = TIER_BASE
    processor_customer_id: Optional[str] = None
    processor_subscription_id: Optional[str] = None
    subscription_status: Optional[str] = None
    subscription_end_date: Optional[str] = None
    last_payment_at: Optional[str] = None
    last_reconciled_at: Optional[str] = None
    tier_updated_at: Optional[str] = None
    version: int = 0

    @classmethod
    def from_item(cls, item: dict) -> "Account":
        return cls(
            account_id=item["pk"],
            email=item.get("email"),
            tier=item.get("tier", TIER_BASE),
            processor_customer_id=item.get("processor_customer_id"),
            processor_subscription_id=item.get("processor_subscription_id"),
            subscription_status=item.get("subscription_status"),
            subscription_end_date=item.get("subscription_end_date"),
            last_payment_at=item.get("last_payment_at"),
            last_reconciled_at=item.get("last_reconciled_at"),
            tier_updated_at=item.get("tier_updated_at"),
            version=int(item.get("version", 0)),
        )


@dataclass
class AuditRecord:
    """One immutable tier transition."""

    record_id: str
    account_id: str
    previous_tier: str
    new_tier: str
    change_reason: str
    created_at: str
    processor_customer_id: Optional[str] = None
    processor_subscription_id: Optional[str] = None
    processor_event_id: Optional[str] = None
    subscription_status: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    billing_period_start: Optional[str] = None
    billing_period_end: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def new(cls, account_id: str, previous_tier: str, new_tier: str, change_reason: str,
            now: Optional[datetime] = None, **fields) -> "AuditRecord":
        if change_reason not in CHANGE_REASONS:
            raise ValueError(f"Unknown change reason: {change_reason}")
        now = now or utc_now()
        return cls(
            record_id=str(uuid.uuid4()),
            account_id=account_id,
            previous_tier=previous_tier,
            new_tier=new_tier,
            change_reason=change_reason,
            created_at=now.isoformat(),
            **fields,
        )

    @property
    def pk(self) -> str:
        if self.processor_event_id:
            return f"event#{self.processor_event_id}"
        return f"audit#{self.record_id}"

    @property
    def change_type(self) -> str:
        previous = TIER_ORDER.get(self.previous_tier, 0)
        new = TIER_ORDER.get(self.new_tier, 0)
        if new > previous:
            return "upgrade"
        if new < previous:
            return "downgrade"
        return "lateral"

    def to_item(self) -> dict:
        return strip_none({
            "pk": self.pk,
            "sk": "AUDIT",
            "record_id": self.record_id,
            "account_id": self.account_id,
            "processor_customer_id": self.processor_customer_id,
            "processor_subscription_id": self.processor_subscription_id,
            "processor_event_id": self.processor_event_id,
            "previous_tier": self.previous_tier,
            "new_tier": self.new_tier,
            "subscription_status": self.subscription_status,
            "change_reason": self.change_reason,
            "change_type": self.change_type,
            "amount": self.amount,
            "currency": self.currency,
            "billing_period_start": self.billing_period_start,
            "billing_period_end": self.billing_period_end,
            "metadata": strip_none(self.metadata) if self.metadata else None,
            "created_at": self.created_at,
        })

    @classmethod
    def from_item(cls, item: dict) -> "AuditRecord":
        amount = item.get("amount")
        return cls(
            record_id=item["record_id"],
            account_id=item["account_id"],
            previous_tier=item["previous_tier"],
            new_tier=item["new_tier"],
            change_reason=item["change_reason"],
            created_at=item["created_at"],
            processor_customer_id=item.get("processor_customer_id"),
            processor_subscription_id=item.get("processor_subscription_id"),
            processor_event_id=item.get("processor_event_id"),
            subscription_status=item.get("subscription_status"),
            amount=int(amount) if amount is not None else None,
            currency=item.get("currency"),
            billing_period_start=item.get("billing_period_start"),
            billing_period_end=item.get("billing_period_end"),
            metadata=item.get("metadata") or {},
        )


@dataclass
class PendingUpdate:
    """A tier change staged until a matching account exists."""

    update_id: str
    email: str
    pending_tier: str
    source_event: str
    expires_at: str
    created_at: str
    processor_customer_id: Optional[str] = None
    processor_subscription_id: Optional[str] = None
    subscription_status: Optional[str] = None
    subscription_end_date: Optional[str] = None
    processor_event_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    is_processed: bool = False
    processed_at: Optional[str] = None

    @classmethod
    def new(cls, email: str, pending_tier: str, source_event: str,
            processor_event_id: Optional[str] = None,
            ttl_days: int = PENDING_UPDATE_TTL_DAYS,
            now: Optional[datetime] = None, **fields) -> "PendingUpdate":
        email_key = normalize_email_key(email)
        if not email_key:
            raise ValueError("Pending updates need an email or placeholder key")
        now = now or utc_now()
        suffix = processor_event_id or uuid.uuid4().hex
        return cls(
            update_id=f"pu_{suffix}",
            email=email_key,
            pending_tier=pending_tier,
            source_event=source_event,
            processor_event_id=processor_event_id,
            expires_at=(now + timedelta(days=ttl_days)).isoformat(),
            created_at=now.isoformat(),
            **fields,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        return parse_iso(self.expires_at) <= now

    def to_item(self) -> dict:
        return strip_none({
            "pk": self.update_id,
            "sk": "PENDING",
            "email": self.email,
            "processor_customer_id": self.processor_customer_id,
            "pending_tier": self.pending_tier,
            "processor_subscription_id": self.processor_subscription_id,
            "subscription_status": self.subscription_status,
            "subscription_end_date": self.subscription_end_date,
            "source_event": self.source_event,
            "processor_event_id": self.processor_event_id,
            "expires_at": self.expires_at,
            "metadata": strip_none(self.metadata) if self.metadata else None,
            "is_processed": self.is_processed,
            "processed_at": self.processed_at,
            "created_at": self.created_at,
        })

    @classmethod
    def from_item(cls, item: dict) -> "PendingUpdate":
        return cls(
            update_id=item["pk"],
            email=item["email"],
            pending_tier=item["pending_tier"],
            source_event=item.get("source_event", ""),
            expires_at=item["expires_at"],
            created_at=item["created_at"],
            processor_customer_id=item.get("processor_customer_id"),
            processor_subscription_id=item.get("processor_subscription_id"),
            subscription_status=item.get("subscription_status"),
            subscription_end_date=item.get("subscription_end_date"),
            processor_event_id=item.get("processor_event_id"),
            metadata=item.get("metadata") or {},
            is_processed=bool(item.get("is_processed", False)),
            processed_at=item.get("processed_at"),
        )


@dataclass
class CustomerSnapshot:
    """Cached view of a processor customer."""

    customer_id: str
    email: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    processor_created_at: Optional[str] = None
    description: Optional[str] = None
    subscription: dict = field(default_factory=dict)
    subscription_synced: bool = False
    last_sync_attempt: Optional[str] = None
    sync_errors: list = field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_item(cls, item: dict) -> "CustomerSnapshot":
        return cls(
            customer_id=item["pk"],
            email=item.get("email"),
            metadata=item.get("metadata") or {},
            processor_created_at=item.get("processor_created_at"),
            description=item.get("description"),
            subscription=item.get("subscription") or {},
            subscription_synced=bool(item.get("subscription_synced", False)),
            last_sync_attempt=item.get("last_sync_attempt"),
            sync_errors=list(item.get("sync_errors") or []),
            created_at=item.get("created_at"),
            updated_at=item.get("updated_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "email": self.email,
            "metadata": self.metadata,
            "processor_created_at": self.processor_created_at,
            "description": self.description,
            "subscription": self.subscription,
            "subscription_synced": self.subscription_synced,
            "last_sync_attempt": self.last_sync_attempt,
            "sync_errors": self.sync_errors,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class Outcome(Enum):
    APPLIED = "applied"
    STAGED = "staged"
    SKIPPED_ADMIN = "skipped_admin"
    RECORDED = "recorded"
    LINKED = "linked"
    DUPLICATE = "duplicate"
    DISCARDED = "discarded"
    IGNORED = "ignored"


@dataclass
class ReconcileResult:
    outcome: Outcome
    event_type: str
    event_id: Optional[str] = None
    account_id: Optional[str] = None
    previous_tier: Optional[str] = None
    new_tier: Optional[str] = None
    pending_update_id: Optional[str] = None

    @property
    def duplicate(self) -> bool:
        return self.outcome is Outcome.DUPLICATE

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "event_type": self.event_type,
            "event_id": self.event_id,
            "account_id": self.account_id,
            "previous_tier": self.previous_tier,
            "new_tier": self.new_tier,
            "pending_update_id": self.pending_update_id,
        }


@dataclass
class ApplyPendingResult:
    """What the login layer needs after applying staged updates.

    ``requires_reauth`` is set when the tier changed under an already
    authenticated identity, so cached claims are stale.
    """

    applied: bool
    requires_reauth: bool = False
    previous_tier: Optional[str] = None
    new_tier: Optional[str] = None
    pending_update_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "applied": self.applied,
            "requires_reauth": self.requires_reauth,
            "previous_tier": self.previous_tier,
            "new_tier": self.new_tier,
            "pending_update_id": self.pending_update_id,
            "reason": self.reason,
        }
