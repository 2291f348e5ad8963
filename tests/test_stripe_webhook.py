"""
Tests for Stripe webhook handler.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
import stripe
from botocore.exceptions import ClientError

from shared.errors import ReconciliationConflictError


@pytest.fixture
def webhook_module(mock_dynamodb):
    """Webhook module with cached Stripe secrets."""
    import api.stripe_webhook as module

    module._stripe_secrets_cache = ("sk_test_xxx", "whsec_xxx")
    module._stripe_secrets_cache_time = 9999999999.0
    yield module
    module._stripe_secrets_cache = (None, None)
    module._stripe_secrets_cache_time = 0.0


@pytest.fixture
def signed_event(api_gateway_event):
    api_gateway_event["body"] = json.dumps({"type": "ignored"})
    api_gateway_event["headers"] = {"stripe-signature": "t=123,v1=abc"}
    return api_gateway_event


def _stripe_subscription(status="active", interval="year", customer="cus_1", **fields):
    return {
        "id": "sub_1",
        "object": "subscription",
        "customer": customer,
        "status": status,
        "items": {
            "data": [
                {
                    "current_period_start": 1700000000,
                    "current_period_end": 1731536000,
                    "price": {
                        "id": f"price_{interval}",
                        "product": "prod_1",
                        "unit_amount": 12000,
                        "currency": "usd",
                        "recurring": {"interval": interval},
                    },
                }
            ]
        },
        **fields,
    }


def _stripe_event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "created": 1700000000, "data": {"object": obj}}


def _body(result):
    return json.loads(result["body"])


class TestStripeWebhookHandler:
    """Tests for request validation in the webhook Lambda handler."""

    def test_returns_500_without_stripe_secrets(self, mock_dynamodb, api_gateway_event):
        """Should return 500 when Stripe secrets are not configured."""
        import api.stripe_webhook as module

        module._stripe_secrets_cache = (None, None)
        module._stripe_secrets_cache_time = 0.0

        result = module.handler(api_gateway_event, {})

        assert result["statusCode"] == 500
        assert _body(result)["error"]["code"] == "stripe_not_configured"

    def test_missing_signature_returns_400(self, webhook_module, api_gateway_event):
        """Requests without a signature header should be rejected."""
        api_gateway_event["body"] = "{}"

        result = webhook_module.handler(api_gateway_event, {})

        assert result["statusCode"] == 400
        assert _body(result)["error"]["code"] == "missing_signature"

    def test_invalid_signature_returns_400(self, webhook_module, signed_event):
        """Signature verification failures should return 400."""
        error = stripe.SignatureVerificationError("bad signature", "t=123,v1=abc")
        with patch("stripe.Webhook.construct_event", side_effect=error):
            result = webhook_module.handler(signed_event, {})

        assert result["statusCode"] == 400
        assert _body(result)["error"]["code"] == "invalid_signature"

    def test_invalid_payload_returns_400(self, webhook_module, signed_event):
        """Unparseable payloads should return 400."""
        with patch("stripe.Webhook.construct_event", side_effect=ValueError("bad json")):
            result = webhook_module.handler(signed_event, {})

        assert result["statusCode"] == 400
        assert _body(result)["error"]["code"] == "invalid_webhook_payload"


class TestSubscriptionEvents:
    """End-to-end tests for subscription events through the engine."""

    def test_updates_linked_account(self, webhook_module, signed_event, seed_account, accounts_table):
        """A subscription update should reconcile the account tier."""
        seed_account(processor_customer_id="cus_1")
        event = _stripe_event("customer.subscription.updated", _stripe_subscription())

        with patch("stripe.Webhook.construct_event", return_value=event), \
                patch("stripe.Customer.retrieve", return_value={"email": "user@example.com"}):
            result = webhook_module.handler(signed_event, {})

        assert result["statusCode"] == 200
        assert _body(result) == {"received": True, "outcome": "applied", "duplicate": False}

        item = accounts_table.get_item(Key={"pk": "acct_1", "sk": "ACCOUNT"})["Item"]
        assert item["tier"] == "top"
        assert item["subscription_end_date"] == "2024-11-13T22:13:20+00:00"

    def test_duplicate_delivery_is_flagged(self, webhook_module, signed_event, seed_account, audit_table):
        """A redelivered event should return 200 with duplicate=True."""
        seed_account(processor_customer_id="cus_1")
        event = _stripe_event("customer.subscription.updated", _stripe_subscription())

        with patch("stripe.Webhook.construct_event", return_value=event), \
                patch("stripe.Customer.retrieve", return_value={"email": "user@example.com"}):
            webhook_module.handler(signed_event, {})
            result = webhook_module.handler(signed_event, {})

        assert result["statusCode"] == 200
        assert _body(result)["duplicate"] is True
        assert audit_table.scan()["Count"] == 1

    def test_unknown_customer_is_staged(self, webhook_module, signed_event, pending_table):
        """An event for an unknown customer should stage a pending update."""
        event = _stripe_event("customer.subscription.created", _stripe_subscription(interval="month"))

        with patch("stripe.Webhook.construct_event", return_value=event), \
                patch("stripe.Customer.retrieve", return_value={"email": "New@Example.com"}):
            result = webhook_module.handler(signed_event, {})

        assert _body(result)["outcome"] == "staged"
        item = pending_table.scan()["Items"][0]
        assert item["pending_tier"] == "mid"
        assert item["email"] == "new@example.com"

    def test_customer_lookup_failure_falls_back_to_placeholder(self, webhook_module, signed_event,
                                                               pending_table):
        """A failed customer lookup should not block reconciliation."""
        event = _stripe_event("customer.subscription.created", _stripe_subscription())
        error = stripe.error.APIConnectionError("network down")

        with patch("stripe.Webhook.construct_event", return_value=event), \
                patch("stripe.Customer.retrieve", side_effect=error):
            result = webhook_module.handler(signed_event, {})

        assert result["statusCode"] == 200
        assert pending_table.scan()["Items"][0]["email"] == "processor_customer_cus_1"

    def test_malformed_subscription_returns_400(self, webhook_module, signed_event):
        """A subscription without a status cannot be reconciled."""
        subscription = _stripe_subscription()
        del subscription["status"]
        event = _stripe_event("customer.subscription.updated", subscription)

        with patch("stripe.Webhook.construct_event", return_value=event), \
                patch("stripe.Customer.retrieve", return_value={"email": None}):
            result = webhook_module.handler(signed_event, {})

        assert result["statusCode"] == 400
        assert _body(result)["error"]["code"] == "malformed_event"


class TestCheckoutEvents:
    """Tests for checkout.session.completed."""

    def test_one_time_payment_is_ignored(self, webhook_module, signed_event):
        """Checkouts without a subscription carry nothing to reconcile."""
        event = _stripe_event("checkout.session.completed", {"id": "cs_1", "customer": "cus_1"})

        with patch("stripe.Webhook.construct_event", return_value=event):
            result = webhook_module.handler(signed_event, {})

        assert _body(result) == {"received": True, "outcome": "ignored", "duplicate": False}

    def test_subscription_checkout_is_staged_with_session(self, webhook_module, signed_event, pending_table):
        """A subscription checkout should fetch the subscription and keep the session id."""
        session = {
            "id": "cs_1",
            "customer": "cus_1",
            "subscription": "sub_1",
            "customer_details": {"email": "buyer@example.com"},
        }
        event = _stripe_event("checkout.session.completed", session)

        with patch("stripe.Webhook.construct_event", return_value=event), \
                patch("stripe.Subscription.retrieve", return_value=_stripe_subscription()):
            result = webhook_module.handler(signed_event, {})

        assert _body(result)["outcome"] == "staged"
        item = pending_table.scan()["Items"][0]
        assert item["email"] == "buyer@example.com"
        assert item["metadata"]["checkout_session_id"] == "cs_1"

    def test_transient_stripe_error_returns_500(self, webhook_module, signed_event):
        """Transient Stripe failures should ask Stripe to redeliver."""
        event = _stripe_event("checkout.session.completed",
                              {"id": "cs_1", "customer": "cus_1", "subscription": "sub_1"})

        with patch("stripe.Webhook.construct_event", return_value=event), \
                patch("stripe.Subscription.retrieve", side_effect=stripe.error.APIConnectionError("down")):
            result = webhook_module.handler(signed_event, {})

        assert result["statusCode"] == 500
        assert _body(result)["error"]["code"] == "stripe_error"

    def test_permanent_stripe_error_returns_400(self, webhook_module, signed_event):
        """Permanent Stripe failures should not be retried."""
        event = _stripe_event("checkout.session.completed",
                              {"id": "cs_1", "customer": "cus_1", "subscription": "sub_missing"})
        error = stripe.error.InvalidRequestError("No such subscription", "id")

        with patch("stripe.Webhook.construct_event", return_value=event), \
                patch("stripe.Subscription.retrieve", side_effect=error):
            result = webhook_module.handler(signed_event, {})

        assert result["statusCode"] == 400
        assert _body(result)["error"]["code"] == "stripe_validation_error"


class TestInvoiceAndCustomerEvents:
    """Tests for invoice and customer events."""

    def test_payment_failed_is_recorded(self, webhook_module, signed_event, seed_account,
                                        accounts_table, audit_table):
        """A failed payment should be audited without changing tier."""
        seed_account(processor_customer_id="cus_1", tier="top")
        invoice = {"id": "in_1", "customer": "cus_1", "subscription": "sub_1",
                   "amount_due": 12000, "amount_paid": 0, "currency": "usd"}
        event = _stripe_event("invoice.payment_failed", invoice, event_id="evt_fail")

        with patch("stripe.Webhook.construct_event", return_value=event):
            result = webhook_module.handler(signed_event, {})

        assert _body(result)["outcome"] == "recorded"
        assert accounts_table.get_item(Key={"pk": "acct_1", "sk": "ACCOUNT"})["Item"]["tier"] == "top"
        assert audit_table.scan()["Items"][0]["change_reason"] == "payment_failed"

    def test_customer_created_links_account(self, webhook_module, signed_event, seed_account, accounts_table):
        """customer.created should link an unlinked account by email."""
        seed_account()
        customer = {"id": "cus_1", "object": "customer", "email": "user@example.com",
                    "created": 1700000000, "metadata": {}}
        event = _stripe_event("customer.created", customer, event_id="evt_customer")

        with patch("stripe.Webhook.construct_event", return_value=event):
            result = webhook_module.handler(signed_event, {})

        assert _body(result)["outcome"] == "linked"
        item = accounts_table.get_item(Key={"pk": "acct_1", "sk": "ACCOUNT"})["Item"]
        assert item["processor_customer_id"] == "cus_1"

    def test_unhandled_event_is_acknowledged(self, webhook_module, signed_event):
        """Unhandled event types should return 200."""
        event = _stripe_event("charge.refunded", {"id": "ch_1", "customer": "cus_1"})

        with patch("stripe.Webhook.construct_event", return_value=event):
            result = webhook_module.handler(signed_event, {})

        assert result["statusCode"] == 200
        assert _body(result)["outcome"] == "ignored"


class TestEngineFailures:
    """Tests for mapping engine failures to responses."""

    def _handle_with(self, webhook_module, signed_event, error):
        engine = MagicMock()
        engine.handle_event.side_effect = error
        event = _stripe_event("invoice.paid", {"id": "in_1", "customer": "cus_1", "amount_paid": 100})
        with patch("stripe.Webhook.construct_event", return_value=event), \
                patch.object(webhook_module, "get_engine", return_value=engine):
            return webhook_module.handler(signed_event, {})

    def test_conflict_returns_500(self, webhook_module, signed_event):
        """Exhausted lock retries should ask Stripe to redeliver."""
        result = self._handle_with(webhook_module, signed_event, ReconciliationConflictError("acct_1", 3))

        assert result["statusCode"] == 500
        assert _body(result)["error"]["code"] == "reconciliation_conflict"

    def test_storage_error_returns_500(self, webhook_module, signed_event):
        """DynamoDB failures are transient."""
        error = ClientError({"Error": {"Code": "InternalServerError", "Message": "boom"}}, "TransactWriteItems")
        result = self._handle_with(webhook_module, signed_event, error)

        assert result["statusCode"] == 500
        assert _body(result)["error"]["code"] == "temporary_error"

    def test_unexpected_error_returns_500(self, webhook_module, signed_event):
        """Unknown failures should be retried by Stripe."""
        result = self._handle_with(webhook_module, signed_event, RuntimeError("boom"))

        assert result["statusCode"] == 500
        assert _body(result)["error"]["code"] == "processing_failed"


class TestSubscriptionPayload:
    """Tests for mapping Stripe subscriptions."""

    def test_periods_fall_back_to_items(self):
        """Billing periods reported on items should be used."""
        from api.stripe_webhook import _subscription_payload

        payload = _subscription_payload(_stripe_subscription())

        assert payload["current_period_start"] == 1700000000
        assert payload["current_period_end"] == 1731536000
        assert payload["items"][0]["price"]["product_id"] == "prod_1"
        assert payload["items"][0]["price"]["recurring"] == {"interval": "year"}

    def test_subscription_level_periods_win(self):
        """Older API versions report periods on the subscription itself."""
        from api.stripe_webhook import _subscription_payload

        payload = _subscription_payload(_stripe_subscription(current_period_end=1800000000))

        assert payload["current_period_end"] == 1800000000
