"""PayPal service — webhook verification and event translation.

Responsible for:
- OAuth client-credentials tokens, cached per environment (sandbox/live)
- Verifying webhooks through PayPal's verify-webhook-signature API
- Translating PayPal events into CanonicalEvents for the reconciler

Every HTTP call carries an explicit timeout; a timeout surfaces as
ExternalCallTimeout so the webhook is marked failed and retried.
"""

import logging
import time
from datetime import datetime, timezone
from urllib.parse import urlparse

import requests
from flask import current_app

from app.services.reconciler import CanonicalEvent, EventClass, handle_webhook
from app.services.timeouts import ExternalCallTimeout

logger = logging.getLogger(__name__)

SOURCE = "paypal"

BASE_URLS = {
    "live": "https://api-m.paypal.com",
    "sandbox": "https://api-m.sandbox.paypal.com",
}

TOKEN_EXPIRY_BUFFER_SECONDS = 300

REQUIRED_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-cert-url",
    "paypal-transmission-sig",
    "paypal-auth-algo",
)

# PayPal subscription.status -> canonical event class
STATUS_EVENTS = {
    "APPROVAL_PENDING": EventClass.CREATED,
    "APPROVED": EventClass.CREATED,
    "ACTIVE": EventClass.ACTIVATED,
    "SUSPENDED": EventClass.SUSPENDED,
    "CANCELLED": EventClass.CANCELED,
    "EXPIRED": EventClass.EXPIRED,
}

# {mode: (access_token, expires_at_monotonic)}
_token_cache = {}


class PayPalVerificationError(Exception):
    """Webhook headers missing/invalid or PayPal rejected the signature."""


class PayPalAPIError(Exception):
    """PayPal API returned an error response."""


def _mode():
    mode = current_app.config.get("PAYPAL_MODE", "sandbox")
    return mode if mode in BASE_URLS else "sandbox"


def _base_url():
    return BASE_URLS[_mode()]


def _timeout():
    return current_app.config.get("EXTERNAL_CALL_TIMEOUT", 10)


def _request(method, path, **kwargs):
    """Issue a PayPal API request with a timeout. Returns parsed JSON."""
    url = f"{_base_url()}{path}"
    try:
        resp = requests.request(method, url, timeout=_timeout(), **kwargs)
    except requests.Timeout as e:
        raise ExternalCallTimeout(f"PayPal {method} {path} timed out") from e

    if resp.status_code >= 400:
        raise PayPalAPIError(f"PayPal {method} {path} returned {resp.status_code}: {resp.text[:200]}")
    return resp.json()


def clear_token_cache():
    _token_cache.clear()


def get_access_token():
    """Return a cached OAuth token for the current environment, refreshing if near expiry."""
    mode = _mode()
    cached = _token_cache.get(mode)
    if cached and cached[1] > time.monotonic():
        return cached[0]

    data = _request(
        "POST",
        "/v1/oauth2/token",
        auth=(current_app.config["PAYPAL_CLIENT_ID"], current_app.config["PAYPAL_CLIENT_SECRET"]),
        data={"grant_type": "client_credentials"},
        headers={"Accept": "application/json"},
    )
    token = data["access_token"]
    ttl = max(int(data.get("expires_in", 0)) - TOKEN_EXPIRY_BUFFER_SECONDS, 0)
    _token_cache[mode] = (token, time.monotonic() + ttl)
    logger.info(f"PayPal access token refreshed ({mode}, valid {ttl}s)")
    return token


def _authed(method, path, **kwargs):
    headers = kwargs.pop("headers", {})
    headers["Authorization"] = f"Bearer {get_access_token()}"
    headers.setdefault("Content-Type", "application/json")
    return _request(method, path, headers=headers, **kwargs)


# ──────────────────────────────────────────────
# Webhook Handling
# ──────────────────────────────────────────────

def _check_cert_url(cert_url):
    parsed = urlparse(cert_url)
    host = (parsed.hostname or "").lower()
    if parsed.scheme != "https" or not (host == "paypal.com" or host.endswith(".paypal.com")):
        raise PayPalVerificationError(f"Untrusted cert URL host: {host or cert_url!r}")


def verify_webhook_signature(headers, event):
    """Verify a PayPal webhook via the verify-webhook-signature API.

    ``headers`` is a case-insensitive mapping (Flask's request.headers),
    ``event`` the parsed JSON body. Raises PayPalVerificationError if the
    headers are incomplete or PayPal does not answer SUCCESS.
    """
    missing = [h for h in REQUIRED_HEADERS if not headers.get(h)]
    if missing:
        raise PayPalVerificationError(f"Missing headers: {', '.join(missing)}")

    _check_cert_url(headers.get("paypal-cert-url"))

    result = _authed("POST", "/v1/notifications/verify-webhook-signature", json={
        "auth_algo": headers.get("paypal-auth-algo"),
        "cert_url": headers.get("paypal-cert-url"),
        "transmission_id": headers.get("paypal-transmission-id"),
        "transmission_sig": headers.get("paypal-transmission-sig"),
        "transmission_time": headers.get("paypal-transmission-time"),
        "webhook_id": current_app.config["PAYPAL_WEBHOOK_ID"],
        "webhook_event": event,
    })

    status = result.get("verification_status")
    if status != "SUCCESS":
        raise PayPalVerificationError(f"Verification status {status}")
    return event


def handle_webhook_event(event):
    """Process a verified PayPal webhook. Returns (success: bool, message: str)."""
    return handle_webhook(
        SOURCE, event["id"], event["event_type"], lambda: build_canonical_events(event)
    )


def fetch_subscription(paypal_subscription_id):
    return _authed("GET", f"/v1/billing/subscriptions/{paypal_subscription_id}")


def _parse_time(value):
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(timezone.utc)


def _period(resource):
    """(start, end) from a subscription resource's billing_info."""
    billing_info = resource.get("billing_info") or {}
    last_payment = billing_info.get("last_payment") or {}
    start = _parse_time(last_payment.get("time") or resource.get("start_time"))
    end = _parse_time(billing_info.get("next_billing_time"))
    return start, end


def _subscriber(resource):
    subscriber = resource.get("subscriber") or {}
    name = subscriber.get("name") or {}
    full_name = f"{name.get('given_name', '')} {name.get('surname', '')}".strip() or None
    return subscriber.get("payer_id"), subscriber.get("email_address"), full_name


def _in_trial(resource):
    cycles = (resource.get("billing_info") or {}).get("cycle_executions") or []
    return any(
        c.get("tenure_type") == "TRIAL" and c.get("cycles_remaining", 0) > 0
        for c in cycles
    )


def build_canonical_events(event):
    """Translate a PayPal event into CanonicalEvents (empty for unhandled types)."""
    handlers = {
        "BILLING.SUBSCRIPTION.CREATED": _handle_subscription_event,
        "BILLING.SUBSCRIPTION.ACTIVATED": _handle_subscription_event,
        "BILLING.SUBSCRIPTION.RE-ACTIVATED": _handle_subscription_event,
        "BILLING.SUBSCRIPTION.UPDATED": _handle_subscription_event,
        "BILLING.SUBSCRIPTION.SUSPENDED": _handle_subscription_event,
        "BILLING.SUBSCRIPTION.CANCELLED": _handle_subscription_event,
        "BILLING.SUBSCRIPTION.EXPIRED": _handle_subscription_event,
        "BILLING.SUBSCRIPTION.PAYMENT.FAILED": _handle_payment_failed,
        "PAYMENT.SALE.COMPLETED": _handle_sale_completed,
        "PAYMENT.SALE.REVERSED": _handle_sale_reversed,
        "PAYMENT.SALE.REFUNDED": _handle_sale_refunded,
        "CUSTOMER.DISPUTE.CREATED": _handle_dispute_created,
    }

    handler = handlers.get(event["event_type"])
    if handler is None:
        logger.info(f"No handler for PayPal event type {event['event_type']}, recording only")
        return []
    return handler(event)


def _canonical(event, event_class, **kwargs):
    return CanonicalEvent(
        source=SOURCE,
        event_id=event["id"],
        event_type=event["event_type"],
        event_class=event_class,
        **kwargs,
    )


# Event type -> class for lifecycle events whose type alone decides.
_LIFECYCLE_EVENTS = {
    "BILLING.SUBSCRIPTION.CREATED": EventClass.CREATED,
    "BILLING.SUBSCRIPTION.ACTIVATED": EventClass.ACTIVATED,
    "BILLING.SUBSCRIPTION.RE-ACTIVATED": EventClass.ACTIVATED,
    "BILLING.SUBSCRIPTION.SUSPENDED": EventClass.SUSPENDED,
    "BILLING.SUBSCRIPTION.CANCELLED": EventClass.CANCELED,
    "BILLING.SUBSCRIPTION.EXPIRED": EventClass.EXPIRED,
}


def _handle_subscription_event(event):
    resource = event["resource"]
    status = (resource.get("status") or "").upper()

    event_class = _LIFECYCLE_EVENTS.get(event["event_type"]) or STATUS_EVENTS.get(status)
    if event_class is None:
        logger.warning(f"Unknown PayPal subscription status {status!r} on {event['id']}")
        return []
    if event_class == EventClass.ACTIVATED and _in_trial(resource):
        event_class = EventClass.TRIAL_STARTED

    payer_id, email, name = _subscriber(resource)
    period_start, period_end = _period(resource)
    return [_canonical(
        event,
        event_class,
        provider_subscription_id=resource.get("id"),
        provider_customer_id=payer_id,
        email=email,
        name=name,
        period_start=period_start,
        period_end=period_end,
        details={"paypal_status": status, "plan_id": resource.get("plan_id")},
    )]


def _handle_payment_failed(event):
    resource = event["resource"]
    payer_id, email, name = _subscriber(resource)
    return [_canonical(
        event,
        EventClass.PAYMENT_FAILED,
        provider_subscription_id=resource.get("id"),
        provider_customer_id=payer_id,
        email=email,
        name=name,
        details={
            "failed_payments_count": (resource.get("billing_info") or {}).get("failed_payments_count"),
        },
    )]


def _handle_sale_completed(event):
    """Handle PAYMENT.SALE.COMPLETED (recurring payment).

    The sale carries no billing period, so the subscription is refetched
    for its next_billing_time.
    """
    sale = event["resource"]
    subscription_id = sale.get("billing_agreement_id")
    if not subscription_id:
        logger.info(f"PayPal sale {sale.get('id')} is not a subscription payment, ignoring")
        return []

    subscription = fetch_subscription(subscription_id)
    payer_id, email, name = _subscriber(subscription)
    period_start, period_end = _period(subscription)
    return [_canonical(
        event,
        EventClass.PAYMENT_SUCCEEDED,
        provider_subscription_id=subscription_id,
        provider_customer_id=payer_id,
        email=email,
        name=name,
        period_start=period_start,
        period_end=period_end,
        details={"amount": (sale.get("amount") or {}).get("total")},
    )]


def _handle_sale_reversed(event):
    """Handle PAYMENT.SALE.REVERSED (chargeback)."""
    sale = event["resource"]
    return [_canonical(
        event,
        EventClass.CHARGEBACK,
        provider_subscription_id=sale.get("billing_agreement_id"),
        details={"sale_id": sale.get("id"), "reason_code": sale.get("reason_code")},
    )]


def _handle_sale_refunded(event):
    refund = event["resource"]
    subscription_id = refund.get("billing_agreement_id")
    if not subscription_id and refund.get("sale_id"):
        sale = _authed("GET", f"/v1/payments/sale/{refund['sale_id']}")
        subscription_id = sale.get("billing_agreement_id")
    return [_canonical(
        event,
        EventClass.REFUNDED,
        provider_subscription_id=subscription_id,
        details={"refund_id": refund.get("id"), "sale_id": refund.get("sale_id")},
    )]


def _handle_dispute_created(event):
    """Handle CUSTOMER.DISPUTE.CREATED by resolving the disputed sale's subscription."""
    dispute = event["resource"]
    transactions = dispute.get("disputed_transactions") or []
    sale_id = transactions[0].get("seller_transaction_id") if transactions else None
    if not sale_id:
        logger.warning(f"PayPal dispute {dispute.get('dispute_id')} has no seller transaction")
        return []

    sale = _authed("GET", f"/v1/payments/sale/{sale_id}")
    return [_canonical(
        event,
        EventClass.CHARGEBACK,
        provider_subscription_id=sale.get("billing_agreement_id"),
        details={"dispute_id": dispute.get("dispute_id"), "sale_id": sale_id},
    )]
