"""
Stripe Webhook Endpoint - POST /webhooks/stripe

Verifies the Stripe signature, maps the Stripe object to a ProcessorEvent and
hands it to the reconciliation engine. Deduplication happens in the engine
(audit log keyed by event id), so redelivered events are always safe.
"""

import json
import logging
import os
import time
from typing import Optional

import stripe
from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager
from shared.constants import (
    EVENT_CHECKOUT_COMPLETED,
    EVENT_CUSTOMER_CREATED,
    EVENT_INVOICE_PAID,
    EVENT_INVOICE_PAYMENT_FAILED,
    EVENT_INVOICE_PAYMENT_SUCCEEDED,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
    THROTTLING_ERRORS,
)
from shared.dynamo import error_code
from shared.errors import MalformedEventError, ReconciliationConflictError
from shared.logging_utils import configure_structured_logging, log_external_call, set_request_id
from shared.metrics import emit_error_metric
from shared.response_utils import error_response, success_response
from shared.types import ProcessorEventPayload, SubscriptionPayload

from reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

STRIPE_SECRET_ARN = os.environ.get("STRIPE_SECRET_ARN")
STRIPE_WEBHOOK_SECRET_ARN = os.environ.get("STRIPE_WEBHOOK_SECRET_ARN")

SUBSCRIPTION_EVENT_TYPES = (
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_UPDATED,
    EVENT_SUBSCRIPTION_DELETED,
)
INVOICE_EVENT_TYPES = (
    EVENT_INVOICE_PAYMENT_SUCCEEDED,
    EVENT_INVOICE_PAID,
    EVENT_INVOICE_PAYMENT_FAILED,
)

# Cached Stripe secrets with TTL
_stripe_secrets_cache: tuple[str | None, str | None] = (None, None)
_stripe_secrets_cache_time = 0.0
STRIPE_SECRETS_CACHE_TTL = 300  # 5 minutes

_engine: Optional[ReconciliationEngine] = None


def get_engine() -> ReconciliationEngine:
    global _engine
    if _engine is None:
        _engine = ReconciliationEngine()
    return _engine


def get_stripe_secrets() -> tuple[str | None, str | None]:
    """Retrieve Stripe API key and webhook secret from Secrets Manager (cached with TTL)."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time

    if _stripe_secrets_cache[0] and (time.time() - _stripe_secrets_cache_time) < STRIPE_SECRETS_CACHE_TTL:
        return _stripe_secrets_cache

    api_key = None
    webhook_secret = None
    sm = get_secretsmanager()

    if STRIPE_SECRET_ARN:
        try:
            response = sm.get_secret_value(SecretId=STRIPE_SECRET_ARN)
            secret_value = response.get("SecretString", "")
            try:
                secret_json = json.loads(secret_value)
                api_key = secret_json.get("key") or secret_value
            except json.JSONDecodeError:
                api_key = secret_value
        except ClientError as e:
            logger.error(f"Failed to retrieve Stripe API key: {e}")

    if STRIPE_WEBHOOK_SECRET_ARN:
        try:
            response = sm.get_secret_value(SecretId=STRIPE_WEBHOOK_SECRET_ARN)
            secret_value = response.get("SecretString", "")
            try:
                secret_json = json.loads(secret_value)
                webhook_secret = secret_json.get("secret") or secret_value
            except json.JSONDecodeError:
                webhook_secret = secret_value
        except ClientError as e:
            logger.error(f"Failed to retrieve Stripe webhook secret: {e}")

    _stripe_secrets_cache = (api_key, webhook_secret)
    _stripe_secrets_cache_time = time.time()
    return api_key, webhook_secret


# ===========================================
# Stripe object mapping
# ===========================================


def _subscription_payload(subscription) -> SubscriptionPayload:
    """Flatten a Stripe subscription into the engine's subscription shape.

    Newer Stripe API versions report billing periods on the subscription
    items rather than the subscription itself.
    """
    lines = (subscription.get("items") or {}).get("data") or []
    first = lines[0] if lines else {}

    items = []
    for line in lines:
        price = line.get("price") or {}
        recurring = price.get("recurring") or {}
        items.append({
            "price": {
                "id": price.get("id"),
                "product_id": price.get("product"),
                "unit_amount": price.get("unit_amount"),
                "currency": price.get("currency"),
                "recurring": {"interval": recurring.get("interval")},
            }
        })

    return {
        "id": subscription.get("id"),
        "status": subscription.get("status"),
        "currency": subscription.get("currency"),
        "current_period_start": subscription.get("current_period_start") or first.get("current_period_start"),
        "current_period_end": subscription.get("current_period_end") or first.get("current_period_end"),
        "ended_at": subscription.get("ended_at"),
        "canceled_at": subscription.get("canceled_at"),
        "items": items,
    }


def _lookup_customer_email(customer_id: str) -> Optional[str]:
    """Fetch the customer's email from Stripe. Best-effort: None on any Stripe error."""
    start = time.time()
    try:
        customer = stripe.Customer.retrieve(customer_id)
    except stripe.error.StripeError as e:
        log_external_call(logger, "stripe", "Customer.retrieve", False, (time.time() - start) * 1000, str(e))
        return None
    log_external_call(logger, "stripe", "Customer.retrieve", True, (time.time() - start) * 1000)
    return customer.get("email")


def _retrieve_subscription(subscription_id: str):
    start = time.time()
    try:
        subscription = stripe.Subscription.retrieve(subscription_id)
    except stripe.error.StripeError as e:
        log_external_call(logger, "stripe", "Subscription.retrieve", False, (time.time() - start) * 1000, str(e))
        raise
    log_external_call(logger, "stripe", "Subscription.retrieve", True, (time.time() - start) * 1000)
    return subscription


def to_processor_event(stripe_event) -> Optional[ProcessorEventPayload]:
    """
    Map a verified Stripe event to the engine's event payload.

    Returns:
        Event payload, or None when the event carries nothing to reconcile
        (e.g. a one-time checkout without a subscription)
    """
    event_type = stripe_event["type"]
    data = stripe_event["data"]["object"]
    base = {
        "event_type": event_type,
        "event_id": stripe_event.get("id"),
        "created": stripe_event.get("created"),
    }

    if event_type in SUBSCRIPTION_EVENT_TYPES:
        customer_id = data.get("customer")
        return {
            **base,
            "customer_id": customer_id,
            "customer_email": _lookup_customer_email(customer_id) if customer_id else None,
            "subscription": _subscription_payload(data),
        }

    if event_type == EVENT_CHECKOUT_COMPLETED:
        subscription_id = data.get("subscription")
        if not subscription_id:
            logger.info(f"Checkout {data.get('id')} has no subscription, nothing to reconcile")
            return None
        customer_details = data.get("customer_details") or {}
        return {
            **base,
            "customer_id": data.get("customer"),
            "customer_email": customer_details.get("email") or data.get("customer_email"),
            "subscription": _subscription_payload(_retrieve_subscription(subscription_id)),
            "metadata": {"checkout_session_id": data.get("id")},
        }

    if event_type in INVOICE_EVENT_TYPES:
        return {
            **base,
            "customer_id": data.get("customer"),
            "customer_email": data.get("customer_email"),
            "invoice": {
                "id": data.get("id"),
                "subscription_id": data.get("subscription"),
                "customer_id": data.get("customer"),
                "amount_due": data.get("amount_due"),
                "amount_paid": data.get("amount_paid"),
                "currency": data.get("currency"),
            },
        }

    if event_type == EVENT_CUSTOMER_CREATED:
        return {
            **base,
            "customer_id": data.get("id"),
            "customer_email": data.get("email"),
            "customer": {
                "email": data.get("email"),
                "description": data.get("description"),
                "created": data.get("created"),
                "metadata": data.get("metadata") or {},
            },
        }

    return {**base, "customer_id": data.get("customer")}


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Responses:
    - 200 with the reconciliation outcome (duplicates flagged)
    - 400 for bad signatures and malformed events (not retried by Stripe)
    - 500 for storage or transient Stripe errors (Stripe redelivers)
    """
    configure_structured_logging()
    set_request_id(event)

    stripe_api_key, webhook_secret = get_stripe_secrets()

    if not stripe_api_key or not webhook_secret:
        logger.error("Stripe secrets not configured")
        return error_response(500, "stripe_not_configured", "Stripe not configured")

    stripe.api_key = stripe_api_key

    payload = event.get("body", "")
    headers = event.get("headers") or {}
    sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Missing Stripe signature")
        return error_response(400, "missing_signature", "Missing Stripe signature")

    try:
        stripe_event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Invalid Stripe signature: {e}")
        return error_response(400, "invalid_signature", "Invalid signature")
    except ValueError as e:
        logger.error(f"Webhook error: {e}")
        return error_response(400, "invalid_webhook_payload", "Invalid webhook payload")

    event_type = stripe_event["type"]
    event_id = stripe_event.get("id")
    logger.info(f"Processing Stripe event: {event_type} (id={event_id})")

    try:
        processor_event = to_processor_event(stripe_event)
        if processor_event is None:
            return success_response({"received": True, "outcome": "ignored", "duplicate": False})

        result = get_engine().handle_event(processor_event)

    except MalformedEventError as e:
        emit_error_metric("MalformedEvent", handler="stripe_webhook")
        return e.to_response()
    except ReconciliationConflictError as e:
        emit_error_metric("ReconciliationConflict", handler="stripe_webhook")
        logger.error(f"Conflict handling {event_type}: {e}")
        return error_response(500, e.code, "Temporary conflict, please retry")
    except ClientError as e:
        error_type = "Throttled" if error_code(e) in THROTTLING_ERRORS else "StorageError"
        emit_error_metric(error_type, handler="stripe_webhook")
        logger.error(f"Transient error handling {event_type}: {e}")
        return error_response(500, "temporary_error", "Temporary error, please retry")
    except (stripe.error.APIConnectionError, stripe.error.RateLimitError, stripe.error.APIError) as e:
        logger.error(f"Transient Stripe error handling {event_type}: {e}")
        return error_response(500, "stripe_error", "Stripe error, please retry")
    except stripe.error.StripeError as e:
        # Permanent Stripe errors (InvalidRequestError, AuthenticationError, etc.)
        logger.error(f"Permanent Stripe error handling {event_type}: {e}")
        return error_response(400, "stripe_validation_error", "Stripe validation error")
    except Exception as e:
        emit_error_metric(type(e).__name__, handler="stripe_webhook")
        logger.error(f"Unexpected error handling {event_type}: {e}", exc_info=True)
        return error_response(500, "processing_failed", "Processing failed")

    return success_response({
        "received": True,
        "outcome": result.outcome.value,
        "duplicate": result.duplicate,
    })
