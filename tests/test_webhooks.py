"""Tests for the webhooks blueprint and processor event handling.

Covers:
- Stripe signature verification (missing, invalid)
- Idempotent event processing (duplicate, replay, exhausted)
- checkout.session.completed, invoice.paid, invoice.payment_failed
- customer.subscription.updated / deleted
- charge.dispute.created (chargeback hold)
- Handler failures (500 + event marked failed)
- PayPal header checks, verification API, OAuth token caching
- PayPal subscription lifecycle, sale completed and sale reversed
"""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import requests
import stripe

from app.extensions import db
from app.models.audit import AuditLogEntry
from app.models.billing import Customer, Subscription
from app.models.notification import NotificationDelivery
from app.models.webhook_event import WebhookEvent
from app.services import stripe_service

MAR_1 = 1772323200  # 2026-03-01T00:00:00Z
APR_1 = 1775001600  # 2026-04-01T00:00:00Z
MAY_1 = 1777593600  # 2026-05-01T00:00:00Z


def _post_stripe(client):
    return client.post(
        "/stripe/webhooks",
        data="{}",
        content_type="application/json",
        headers={"Stripe-Signature": "valid_sig"},
    )


class TestWebhookSignature:
    """Tests for Stripe webhook signature validation."""

    def test_missing_signature_returns_400(self, client):
        """POST /stripe/webhooks without signature -> 400."""
        resp = client.post(
            "/stripe/webhooks",
            data="{}",
            content_type="application/json",
        )
        assert resp.status_code == 400
        assert b"Missing signature" in resp.data

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_invalid_signature_returns_400(self, mock_construct, client):
        """POST /stripe/webhooks with bad signature -> 400, nothing recorded."""
        mock_construct.side_effect = Exception("Invalid signature")

        resp = client.post(
            "/stripe/webhooks",
            data="{}",
            content_type="application/json",
            headers={"Stripe-Signature": "bad_sig"},
        )
        assert resp.status_code == 400
        assert b"Invalid signature" in resp.data
        assert WebhookEvent.query.count() == 0


class TestWebhookIdempotency:
    """Tests for duplicate, replayed and exhausted events."""

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_duplicate_event_returns_200(self, mock_construct, client):
        """Already-processed event_id -> 200 with 'already_processed'."""
        db.session.add(WebhookEvent(
            source="stripe",
            event_id="evt_duplicate_123",
            event_type="customer.subscription.deleted",
            status=WebhookEvent.PROCESSED,
        ))
        db.session.commit()

        mock_construct.return_value = {
            "id": "evt_duplicate_123",
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_whatever"}},
        }

        resp = _post_stripe(client)
        assert resp.status_code == 200
        assert json.loads(resp.data)["status"] == "already_processed"

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_same_event_twice_applies_once(self, mock_construct, client, add_subscriber):
        """Redelivery of a processed event writes no second audit entry."""
        _, sub = add_subscriber(provider_subscription_id="sub_twice")
        mock_construct.return_value = {
            "id": "evt_twice",
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_twice"}},
        }

        first = _post_stripe(client)
        second = _post_stripe(client)

        assert json.loads(first.data)["status"] == "processed"
        assert json.loads(second.data)["status"] == "already_processed"
        assert AuditLogEntry.query.filter_by(subject_id=sub.id).count() == 1

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_failed_event_is_replayed(self, mock_construct, client, add_subscriber):
        """A previously failed event under the attempt cap is reprocessed."""
        add_subscriber(provider_subscription_id="sub_replay")
        db.session.add(WebhookEvent(
            source="stripe",
            event_id="evt_replay",
            event_type="customer.subscription.deleted",
            status=WebhookEvent.FAILED,
            attempts=1,
            error_message="timeout",
        ))
        db.session.commit()

        mock_construct.return_value = {
            "id": "evt_replay",
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_replay"}},
        }

        resp = _post_stripe(client)
        assert resp.status_code == 200
        assert json.loads(resp.data)["status"] == "replayed"

        evt = WebhookEvent.query.filter_by(event_id="evt_replay").one()
        assert evt.status == WebhookEvent.PROCESSED
        assert evt.attempts == 2
        sub = Subscription.query.filter_by(stripe_subscription_id="sub_replay").one()
        assert sub.status == Subscription.CANCELED

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_exhausted_event_is_skipped(self, mock_construct, client, add_subscriber):
        """A failed event at the attempt cap is acknowledged but not processed."""
        add_subscriber(provider_subscription_id="sub_exhausted")
        db.session.add(WebhookEvent(
            source="stripe",
            event_id="evt_exhausted",
            event_type="customer.subscription.deleted",
            status=WebhookEvent.FAILED,
            attempts=3,
        ))
        db.session.commit()

        mock_construct.return_value = {
            "id": "evt_exhausted",
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_exhausted"}},
        }

        resp = _post_stripe(client)
        assert resp.status_code == 200
        assert json.loads(resp.data)["status"] == "exhausted"
        sub = Subscription.query.filter_by(stripe_subscription_id="sub_exhausted").one()
        assert sub.status == Subscription.ACTIVE


class TestCheckoutCompleted:
    """Tests for checkout.session.completed webhook."""

    @patch("app.services.stripe_service.stripe.Subscription.retrieve")
    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_creates_customer_and_subscription(self, mock_construct, mock_sub_retrieve, client):
        """checkout.session.completed -> Customer + active Subscription with period."""
        mock_construct.return_value = {
            "id": "evt_checkout_001",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "mode": "subscription",
                    "subscription": "sub_stripe_new",
                    "customer": "cus_stripe_new",
                    "customer_details": {"email": "new@example.com", "name": "New Diner"},
                }
            },
        }
        mock_sub_retrieve.return_value = {
            "id": "sub_stripe_new",
            "status": "active",
            "items": {
                "data": [{"current_period_start": MAR_1, "current_period_end": APR_1}]
            },
        }

        resp = _post_stripe(client)
        assert resp.status_code == 200
        assert json.loads(resp.data)["status"] == "processed"

        customer = Customer.query.filter_by(stripe_customer_id="cus_stripe_new").one()
        assert customer.email == "new@example.com"
        assert customer.name == "New Diner"

        sub = Subscription.query.filter_by(stripe_subscription_id="sub_stripe_new").one()
        assert sub.status == Subscription.ACTIVE
        assert sub.customer_id == customer.id
        assert sub.current_period_end.replace(tzinfo=timezone.utc) == datetime(
            2026, 4, 1, tzinfo=timezone.utc
        )

        evt = WebhookEvent.query.filter_by(event_id="evt_checkout_001").one()
        assert evt.status == WebhookEvent.PROCESSED
        assert AuditLogEntry.query.filter_by(action="subscription.activated").count() == 1

    @patch("app.services.stripe_service.stripe.Subscription.retrieve")
    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_refetch_failure_marks_event_failed(self, mock_construct, mock_sub_retrieve, client):
        """Stripe API error during processing -> 500 so Stripe retries; event failed."""
        mock_construct.return_value = {
            "id": "evt_checkout_fail",
            "type": "checkout.session.completed",
            "data": {"object": {"subscription": "sub_x", "customer": "cus_x"}},
        }
        mock_sub_retrieve.side_effect = Exception("Stripe unavailable")

        resp = _post_stripe(client)
        assert resp.status_code == 500

        evt = WebhookEvent.query.filter_by(event_id="evt_checkout_fail").one()
        assert evt.status == WebhookEvent.FAILED
        assert "Stripe unavailable" in evt.error_message
        assert Subscription.query.count() == 0

    @patch("app.services.stripe_service.stripe.Subscription.retrieve")
    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_invoice_paid_before_checkout_converges(self, mock_construct, mock_sub_retrieve, client):
        """invoice.paid for a brand-new subscription, then checkout -> one customer, one active row."""
        invoice_paid = {
            "id": "evt_inv_first",
            "type": "invoice.paid",
            "data": {
                "object": {
                    "subscription": "sub_inv_first",
                    "customer": "cus_inv_first",
                    "customer_email": "early@example.com",
                    "amount_paid": 4500,
                    "lines": {"data": [{"period": {"start": MAR_1, "end": APR_1}}]},
                }
            },
        }
        checkout = {
            "id": "evt_checkout_late",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "mode": "subscription",
                    "subscription": "sub_inv_first",
                    "customer": "cus_inv_first",
                    "customer_details": {"email": "early@example.com", "name": "Early Diner"},
                }
            },
        }
        mock_construct.side_effect = [invoice_paid, checkout]
        mock_sub_retrieve.return_value = {
            "id": "sub_inv_first",
            "status": "active",
            "items": {
                "data": [{"current_period_start": MAR_1, "current_period_end": APR_1}]
            },
        }

        assert _post_stripe(client).status_code == 200
        assert _post_stripe(client).status_code == 200

        customer = Customer.query.filter_by(stripe_customer_id="cus_inv_first").one()
        assert Customer.query.count() == 1
        assert customer.name == "Early Diner"
        sub = Subscription.query.one()
        assert sub.stripe_subscription_id == "sub_inv_first"
        assert sub.customer_id == customer.id
        assert sub.status == Subscription.ACTIVE
        assert sub.current_period_start is not None
        assert sub.current_period_end.replace(tzinfo=timezone.utc) == datetime(
            2026, 4, 1, tzinfo=timezone.utc
        )


class TestStripeTimeouts:
    """Stripe API calls run over an HTTP client with a socket timeout."""

    @patch("app.services.stripe_service.stripe.Subscription.retrieve")
    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_connection_timeout_marks_event_failed(self, mock_construct, mock_sub_retrieve, client):
        mock_construct.return_value = {
            "id": "evt_checkout_slow",
            "type": "checkout.session.completed",
            "data": {"object": {"subscription": "sub_slow", "customer": "cus_slow"}},
        }
        mock_sub_retrieve.side_effect = stripe.error.APIConnectionError("Request timed out")

        resp = _post_stripe(client)

        assert resp.status_code == 500
        evt = WebhookEvent.query.filter_by(event_id="evt_checkout_slow").one()
        assert evt.status == WebhookEvent.FAILED
        assert "did not complete within" in evt.error_message

    def test_sdk_uses_shared_client_with_timeout(self, app, monkeypatch):
        monkeypatch.setattr(stripe_service, "_http_clients", {})
        monkeypatch.setattr(stripe, "default_http_client", None)

        with patch("app.services.stripe_service.stripe.RequestsClient") as mock_client, \
                patch("app.services.stripe_service.stripe.Subscription.retrieve") as mock_retrieve:
            mock_retrieve.return_value = {"id": "sub_1"}
            stripe_service.retrieve_subscription("sub_1")
            stripe_service.retrieve_subscription("sub_1")

        mock_client.assert_called_once_with(timeout=app.config["EXTERNAL_CALL_TIMEOUT"])
        assert stripe.default_http_client is mock_client.return_value
        assert mock_retrieve.call_count == 2


class TestInvoiceEvents:
    """Tests for invoice.paid and invoice.payment_failed."""

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_payment_failed_moves_to_past_due_and_dunns(self, mock_construct, client, mock_smtp,
                                                        add_subscriber):
        """invoice.payment_failed -> past_due, failure count 1, soft dunning email."""
        _, sub = add_subscriber(
            provider_customer_id="cus_dunning", provider_subscription_id="sub_dunning"
        )
        mock_construct.return_value = {
            "id": "evt_failed_1",
            "type": "invoice.payment_failed",
            "data": {
                "object": {
                    "subscription": "sub_dunning",
                    "customer": "cus_dunning",
                    "amount_due": 4500,
                    "attempt_count": 1,
                }
            },
        }

        resp = _post_stripe(client)
        assert resp.status_code == 200

        sub = db.session.get(Subscription, sub.id)
        assert sub.status == Subscription.PAST_DUE
        assert sub.payment_failure_count == 1

        delivery = NotificationDelivery.query.filter_by(
            idempotency_key=f"dunning_soft/{sub.id}/1"
        ).one()
        assert delivery.status == NotificationDelivery.SENT
        assert mock_smtp.return_value.__enter__.return_value.send_message.called

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_invoice_paid_restores_service(self, mock_construct, client, add_subscriber):
        """invoice.paid on past_due -> active, new period, service_restored notice."""
        _, sub = add_subscriber(
            status=Subscription.PAST_DUE, provider_subscription_id="sub_restore"
        )
        mock_construct.return_value = {
            "id": "evt_paid_1",
            "type": "invoice.paid",
            "data": {
                "object": {
                    "subscription": "sub_restore",
                    "amount_paid": 4500,
                    "lines": {"data": [{"period": {"start": APR_1, "end": MAY_1}}]},
                }
            },
        }

        resp = _post_stripe(client)
        assert resp.status_code == 200

        sub = db.session.get(Subscription, sub.id)
        assert sub.status == Subscription.ACTIVE
        assert sub.payment_failure_count == 0
        assert sub.current_period_end.replace(tzinfo=timezone.utc) == datetime(
            2026, 5, 1, tzinfo=timezone.utc
        )
        assert NotificationDelivery.query.filter_by(
            idempotency_key=f"service_restored/{sub.id}/evt_paid_1"
        ).count() == 1

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_invoice_for_unknown_subscription_without_customer_is_ignored(self, mock_construct, client):
        """No local row and no customer id -> acknowledged, nothing created."""
        mock_construct.return_value = {
            "id": "evt_orphan",
            "type": "invoice.paid",
            "data": {"object": {"subscription": "sub_unknown"}},
        }

        resp = _post_stripe(client)
        assert resp.status_code == 200
        assert Subscription.query.count() == 0


class TestSubscriptionLifecycle:
    """Tests for customer.subscription.updated / deleted."""

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_updated_maps_status(self, mock_construct, client, add_subscriber):
        """subscription.updated with status past_due -> past_due."""
        _, sub = add_subscriber(provider_subscription_id="sub_existing")
        mock_construct.return_value = {
            "id": "evt_update_001",
            "type": "customer.subscription.updated",
            "data": {
                "object": {
                    "id": "sub_existing",
                    "status": "past_due",
                    "current_period_start": MAR_1,
                    "current_period_end": APR_1,
                }
            },
        }

        resp = _post_stripe(client)
        assert resp.status_code == 200
        assert db.session.get(Subscription, sub.id).status == Subscription.PAST_DUE

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_deleted_cancels_and_notifies(self, mock_construct, client, add_subscriber):
        """subscription.deleted -> canceled, one canceled_notice."""
        _, sub = add_subscriber(provider_subscription_id="sub_cancel")
        mock_construct.return_value = {
            "id": "evt_delete_001",
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_cancel"}},
        }

        resp = _post_stripe(client)
        assert resp.status_code == 200
        assert db.session.get(Subscription, sub.id).status == Subscription.CANCELED
        assert NotificationDelivery.query.filter_by(
            idempotency_key=f"canceled_notice/{sub.id}"
        ).count() == 1

    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_unknown_event_type_recorded(self, mock_construct, client):
        """Unhandled event types are acknowledged and recorded as processed."""
        mock_construct.return_value = {
            "id": "evt_unknown",
            "type": "customer.tax_id.created",
            "data": {"object": {}},
        }

        resp = _post_stripe(client)
        assert resp.status_code == 200
        evt = WebhookEvent.query.filter_by(event_id="evt_unknown").one()
        assert evt.status == WebhookEvent.PROCESSED


class TestDispute:
    """Tests for charge.dispute.created (chargeback)."""

    @patch("app.services.stripe_service.stripe.Charge.retrieve")
    @patch("app.services.stripe_service.stripe.Webhook.construct_event")
    def test_dispute_suspends_and_holds(self, mock_construct, mock_charge, client, add_subscriber):
        """Chargeback -> suspended; a later 'active' update does not lift it."""
        _, sub = add_subscriber(
            provider_customer_id="cus_disputed", provider_subscription_id="sub_disputed"
        )
        mock_charge.return_value = {
            "id": "ch_1",
            "customer": "cus_disputed",
            "invoice": {"id": "in_1", "subscription": "sub_disputed"},
        }
        mock_construct.return_value = {
            "id": "evt_dispute",
            "type": "charge.dispute.created",
            "data": {"object": {"charge": "ch_1", "reason": "fraudulent"}},
        }

        with patch("app.services.reconciler.send_operator_alert") as mock_alert:
            resp = _post_stripe(client)
        assert resp.status_code == 200
        assert mock_alert.called

        sub = db.session.get(Subscription, sub.id)
        assert sub.status == Subscription.SUSPENDED
        assert sub.chargeback_at is not None

        mock_construct.return_value = {
            "id": "evt_after_dispute",
            "type": "customer.subscription.updated",
            "data": {
                "object": {
                    "id": "sub_disputed",
                    "status": "active",
                    "current_period_start": APR_1,
                    "current_period_end": MAY_1,
                }
            },
        }
        resp = _post_stripe(client)
        assert resp.status_code == 200
        assert db.session.get(Subscription, sub.id).status == Subscription.SUSPENDED


# ──────────────────────────────────────────────
# PayPal
# ──────────────────────────────────────────────

PAYPAL_HEADERS = {
    "PAYPAL-TRANSMISSION-ID": "tx-123",
    "PAYPAL-TRANSMISSION-TIME": "2026-03-01T00:00:00Z",
    "PAYPAL-CERT-URL": "https://api.paypal.com/v1/notifications/certs/CERT-1",
    "PAYPAL-TRANSMISSION-SIG": "sig==",
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
}


def _response(payload, status_code=200):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    resp.text = json.dumps(payload)
    return resp


def _paypal_api(verification="SUCCESS", subscription=None, sale=None):
    """Fake requests.request routing on the PayPal API path."""

    def _request(method, url, **kwargs):
        if url.endswith("/v1/oauth2/token"):
            return _response({"access_token": "A21-token", "expires_in": 32400})
        if url.endswith("/v1/notifications/verify-webhook-signature"):
            return _response({"verification_status": verification})
        if "/v1/billing/subscriptions/" in url:
            return _response(subscription or {})
        if "/v1/payments/sale/" in url:
            return _response(sale or {})
        return _response({"message": "not found"}, status_code=404)

    return _request


def _paypal_subscription(status="ACTIVE", sub_id="I-PAYPAL1", payer_id="PAYER1",
                         last_payment="2026-03-01T00:00:00Z",
                         next_billing="2026-04-01T00:00:00Z"):
    return {
        "id": sub_id,
        "status": status,
        "plan_id": "P-MEALS",
        "start_time": "2026-03-01T00:00:00Z",
        "subscriber": {
            "payer_id": payer_id,
            "email_address": "paypal@example.com",
            "name": {"given_name": "Pat", "surname": "Pal"},
        },
        "billing_info": {
            "last_payment": {"time": last_payment},
            "next_billing_time": next_billing,
            "cycle_executions": [{"tenure_type": "REGULAR", "cycles_remaining": 0}],
        },
    }


def _post_paypal(client, event, headers=None):
    return client.post(
        "/paypal/webhooks",
        data=json.dumps(event),
        content_type="application/json",
        headers=PAYPAL_HEADERS if headers is None else headers,
    )


class TestPayPalVerification:
    """Tests for PayPal webhook verification."""

    def test_missing_headers_returns_400(self, client):
        event = {"id": "WH-1", "event_type": "BILLING.SUBSCRIPTION.ACTIVATED", "resource": {}}
        resp = _post_paypal(client, event, headers={})
        assert resp.status_code == 400
        assert WebhookEvent.query.count() == 0

    def test_untrusted_cert_url_returns_400(self, client):
        headers = dict(PAYPAL_HEADERS, **{"PAYPAL-CERT-URL": "https://paypal.com.evil.test/cert"})
        event = {"id": "WH-2", "event_type": "BILLING.SUBSCRIPTION.ACTIVATED", "resource": {}}
        resp = _post_paypal(client, event, headers=headers)
        assert resp.status_code == 400

    def test_malformed_body_returns_400(self, client):
        resp = client.post(
            "/paypal/webhooks", data="not json", content_type="application/json",
            headers=PAYPAL_HEADERS,
        )
        assert resp.status_code == 400

    @patch("app.services.paypal_service.requests.request")
    def test_verification_failure_returns_400(self, mock_request, client):
        mock_request.side_effect = _paypal_api(verification="FAILURE")
        event = {"id": "WH-3", "event_type": "BILLING.SUBSCRIPTION.ACTIVATED", "resource": {}}
        resp = _post_paypal(client, event)
        assert resp.status_code == 400
        assert WebhookEvent.query.count() == 0

    @patch("app.services.paypal_service.requests.request")
    def test_verification_timeout_returns_503(self, mock_request, client):
        """PayPal unreachable -> 503 so PayPal redelivers later."""
        mock_request.side_effect = requests.Timeout("read timed out")
        event = {"id": "WH-4", "event_type": "BILLING.SUBSCRIPTION.ACTIVATED", "resource": {}}
        resp = _post_paypal(client, event)
        assert resp.status_code == 503

    @patch("app.services.paypal_service.requests.request")
    def test_oauth_token_is_cached(self, mock_request, client):
        """Two webhooks in the same environment fetch one OAuth token."""
        mock_request.side_effect = _paypal_api()
        for n in range(2):
            event = {"id": f"WH-CACHE-{n}", "event_type": "PAYMENT.CAPTURE.PENDING", "resource": {}}
            assert _post_paypal(client, event).status_code == 200

        token_calls = [c for c in mock_request.call_args_list if c.args[1].endswith("/v1/oauth2/token")]
        assert len(token_calls) == 1


class TestPayPalEvents:
    """Tests for PayPal events flowing through the reconciler."""

    @patch("app.services.paypal_service.requests.request")
    def test_activated_creates_subscription(self, mock_request, client):
        mock_request.side_effect = _paypal_api()
        event = {
            "id": "WH-ACT-1",
            "event_type": "BILLING.SUBSCRIPTION.ACTIVATED",
            "resource": _paypal_subscription(),
        }

        resp = _post_paypal(client, event)
        assert resp.status_code == 200

        customer = Customer.query.filter_by(paypal_payer_id="PAYER1").one()
        assert customer.payment_provider == "paypal"
        assert customer.name == "Pat Pal"
        sub = Subscription.query.filter_by(paypal_subscription_id="I-PAYPAL1").one()
        assert sub.status == Subscription.ACTIVE
        assert sub.current_period_end is not None

    @patch("app.services.paypal_service.requests.request")
    def test_activated_in_trial_is_trialing(self, mock_request, client):
        mock_request.side_effect = _paypal_api()
        resource = _paypal_subscription()
        resource["billing_info"]["cycle_executions"] = [
            {"tenure_type": "TRIAL", "cycles_remaining": 1}
        ]
        event = {"id": "WH-TRIAL", "event_type": "BILLING.SUBSCRIPTION.ACTIVATED", "resource": resource}

        assert _post_paypal(client, event).status_code == 200
        sub = Subscription.query.filter_by(paypal_subscription_id="I-PAYPAL1").one()
        assert sub.status == Subscription.TRIALING

    @patch("app.services.paypal_service.requests.request")
    def test_sale_completed_refetches_period(self, mock_request, client, add_subscriber):
        """PAYMENT.SALE.COMPLETED extends the period from the refetched subscription."""
        _, sub = add_subscriber(
            provider="paypal",
            status=Subscription.PAST_DUE,
            provider_customer_id="PAYER1",
            provider_subscription_id="I-PAYPAL1",
        )
        mock_request.side_effect = _paypal_api(subscription=_paypal_subscription(
            last_payment="2026-04-01T00:00:00Z", next_billing="2026-05-01T00:00:00Z",
        ))
        event = {
            "id": "WH-SALE-1",
            "event_type": "PAYMENT.SALE.COMPLETED",
            "resource": {"id": "SALE-1", "billing_agreement_id": "I-PAYPAL1",
                         "amount": {"total": "45.00"}},
        }

        assert _post_paypal(client, event).status_code == 200
        sub = db.session.get(Subscription, sub.id)
        assert sub.status == Subscription.ACTIVE
        assert sub.current_period_end.replace(tzinfo=timezone.utc) == datetime(
            2026, 5, 1, tzinfo=timezone.utc
        )

    @patch("app.services.paypal_service.requests.request")
    def test_sale_reversed_is_chargeback(self, mock_request, client, add_subscriber):
        _, sub = add_subscriber(
            provider="paypal", provider_customer_id="PAYER1", provider_subscription_id="I-PAYPAL1",
        )
        mock_request.side_effect = _paypal_api()
        event = {
            "id": "WH-REV-1",
            "event_type": "PAYMENT.SALE.REVERSED",
            "resource": {"id": "SALE-1", "billing_agreement_id": "I-PAYPAL1",
                         "reason_code": "CHARGEBACK"},
        }

        assert _post_paypal(client, event).status_code == 200
        sub = db.session.get(Subscription, sub.id)
        assert sub.status == Subscription.SUSPENDED
        assert sub.chargeback_at is not None
