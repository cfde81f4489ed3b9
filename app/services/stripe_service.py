"""Stripe service — webhook verification and event translation.

Responsible for:
- Verifying webhook signatures (stripe.Webhook.construct_event)
- Translating Stripe events into CanonicalEvents for the reconciler
- Refetching subscription/charge data from the Stripe API, always over an
  HTTP client with an explicit socket timeout
"""

import logging
from datetime import datetime, timezone

import stripe
from flask import current_app

from app.services.reconciler import CanonicalEvent, EventClass, handle_webhook
from app.services.timeouts import ExternalCallTimeout

logger = logging.getLogger(__name__)

SOURCE = "stripe"

# Stripe subscription.status -> canonical event class
STATUS_EVENTS = {
    "incomplete": EventClass.CREATED,
    "trialing": EventClass.TRIAL_STARTED,
    "active": EventClass.ACTIVATED,
    "past_due": EventClass.PAST_DUE,
    "unpaid": EventClass.PAST_DUE,
    "paused": EventClass.SUSPENDED,
    "canceled": EventClass.CANCELED,
    "incomplete_expired": EventClass.EXPIRED,
}


def _ts(value):
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _extract_period(sub_data):
    """Extract (current_period_start, current_period_end) from a Stripe subscription.

    In newer Stripe API versions the period has moved from the subscription
    top level to items.data[0]. This helper checks both locations.

    Returns timezone-aware datetimes (or None).
    """
    start = sub_data.get("current_period_start")
    end = sub_data.get("current_period_end")

    if not end:
        items = sub_data.get("items")
        if items and items.get("data") and len(items["data"]) > 0:
            start = items["data"][0].get("current_period_start")
            end = items["data"][0].get("current_period_end")

    return _ts(start), _ts(end)


def _invoice_period(invoice):
    """Service period of the invoice's subscription line, if present."""
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        period = line.get("period") or {}
        if period.get("start") and period.get("end"):
            return _ts(period["start"]), _ts(period["end"])
    return None, None


def _invoice_subscription_id(invoice):
    """Subscription id of an invoice (top level, or parent details in newer API versions)."""
    sub_id = invoice.get("subscription")
    if not sub_id:
        parent = invoice.get("parent") or {}
        sub_id = (parent.get("subscription_details") or {}).get("subscription")
    if isinstance(sub_id, dict):
        sub_id = sub_id.get("id")
    return sub_id


def _timeout():
    return current_app.config.get("EXTERNAL_CALL_TIMEOUT", 10)


# One requests-backed HTTP client per configured timeout, shared by the process.
_http_clients = {}


def _configure_stripe():
    """Point the Stripe SDK at our key and a client with a real socket timeout."""
    timeout = _timeout()
    if timeout not in _http_clients:
        _http_clients[timeout] = stripe.RequestsClient(timeout=timeout)
    stripe.default_http_client = _http_clients[timeout]
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]


def _call_stripe(fn, *args, label, **kwargs):
    """Call the Stripe API. Network failures and timeouts surface as ExternalCallTimeout."""
    _configure_stripe()
    try:
        return fn(*args, **kwargs)
    except stripe.error.APIConnectionError as e:
        logger.warning(f"{label} did not complete: {e}")
        raise ExternalCallTimeout(f"{label} did not complete within {_timeout()}s") from e


def retrieve_subscription(stripe_subscription_id):
    """Fetch a subscription from Stripe under the configured timeout."""
    return _call_stripe(
        stripe.Subscription.retrieve,
        stripe_subscription_id,
        label="stripe.Subscription.retrieve",
    )


def _subscription_for_charge(charge_id):
    """Resolve (subscription_id, customer_id) for a charge via its invoice."""
    charge = _call_stripe(
        stripe.Charge.retrieve,
        charge_id,
        expand=["invoice"],
        label="stripe.Charge.retrieve",
    )
    invoice = charge.get("invoice") or {}
    if isinstance(invoice, str):
        logger.warning(f"Charge {charge_id} invoice was not expanded")
        return None, charge.get("customer")
    return _invoice_subscription_id(invoice), charge.get("customer")


# ──────────────────────────────────────────────
# Webhook Handling
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header):
    """Verify Stripe webhook signature and construct the event.

    Returns the verified Stripe event object.
    Raises stripe.error.SignatureVerificationError on invalid signature.
    """
    webhook_secret = current_app.config["STRIPE_WEBHOOK_SECRET"]
    return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)


def handle_webhook_event(event):
    """Process a verified Stripe webhook event.

    Idempotent via the webhook_events table. Returns (success: bool, message: str).
    """
    return handle_webhook(
        SOURCE, event["id"], event["type"], lambda: build_canonical_events(event)
    )


def build_canonical_events(event):
    """Translate a Stripe event into CanonicalEvents (empty for unhandled types)."""
    handlers = {
        "checkout.session.completed": _handle_checkout_completed,
        "invoice.paid": _handle_invoice_paid,
        "invoice.payment_succeeded": _handle_invoice_paid,
        "invoice.payment_failed": _handle_payment_failed,
        "customer.subscription.created": _handle_subscription_changed,
        "customer.subscription.updated": _handle_subscription_changed,
        "customer.subscription.deleted": _handle_subscription_deleted,
        "customer.subscription.paused": _handle_subscription_paused,
        "customer.subscription.resumed": _handle_subscription_resumed,
        "charge.dispute.created": _handle_dispute_created,
        "charge.refunded": _handle_charge_refunded,
    }

    handler = handlers.get(event["type"])
    if handler is None:
        logger.info(f"No handler for Stripe event type {event['type']}, recording only")
        return []
    return handler(event)


def _canonical(event, event_class, **kwargs):
    return CanonicalEvent(
        source=SOURCE,
        event_id=event["id"],
        event_type=event["type"],
        event_class=event_class,
        **kwargs,
    )


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _handle_checkout_completed(event):
    """Handle checkout.session.completed.

    The session carries no billing period, so the subscription is fetched
    from Stripe for its status and period.
    """
    session = event["data"]["object"]
    stripe_subscription_id = session.get("subscription")
    stripe_customer_id = session.get("customer")

    if session.get("mode") not in (None, "subscription") or not stripe_subscription_id:
        logger.info("checkout.session.completed without a subscription, ignoring")
        return []

    details = session.get("customer_details") or {}
    sub = retrieve_subscription(stripe_subscription_id)
    period_start, period_end = _extract_period(sub)
    status = sub.get("status", "active")

    return [_canonical(
        event,
        STATUS_EVENTS.get(status, EventClass.ACTIVATED),
        provider_subscription_id=stripe_subscription_id,
        provider_customer_id=stripe_customer_id,
        email=details.get("email") or session.get("customer_email"),
        name=details.get("name"),
        period_start=period_start,
        period_end=period_end,
        details={"stripe_status": status},
    )]


def _handle_invoice_paid(event):
    """Handle invoice.paid / invoice.payment_succeeded."""
    invoice = event["data"]["object"]
    period_start, period_end = _invoice_period(invoice)

    return [_canonical(
        event,
        EventClass.PAYMENT_SUCCEEDED,
        provider_subscription_id=_invoice_subscription_id(invoice),
        provider_customer_id=invoice.get("customer"),
        email=invoice.get("customer_email"),
        name=invoice.get("customer_name"),
        period_start=period_start,
        period_end=period_end,
        details={"amount_paid": invoice.get("amount_paid")},
    )]


def _handle_payment_failed(event):
    """Handle invoice.payment_failed (drives dunning)."""
    invoice = event["data"]["object"]
    return [_canonical(
        event,
        EventClass.PAYMENT_FAILED,
        provider_subscription_id=_invoice_subscription_id(invoice),
        provider_customer_id=invoice.get("customer"),
        email=invoice.get("customer_email"),
        details={
            "amount_due": invoice.get("amount_due"),
            "attempt_count": invoice.get("attempt_count"),
        },
    )]


def _handle_subscription_changed(event):
    """Handle customer.subscription.created / updated by mapping its status."""
    sub_data = event["data"]["object"]
    status = sub_data.get("status", "active")
    event_class = STATUS_EVENTS.get(status)
    if event_class is None:
        logger.warning(f"Unknown Stripe subscription status {status!r} on {event['id']}")
        return []

    period_start, period_end = _extract_period(sub_data)
    return [_canonical(
        event,
        event_class,
        provider_subscription_id=sub_data.get("id"),
        provider_customer_id=sub_data.get("customer"),
        period_start=period_start,
        period_end=period_end,
        details={
            "stripe_status": status,
            "cancel_at_period_end": bool(
                sub_data.get("cancel_at_period_end") or sub_data.get("cancel_at")
            ),
        },
    )]


def _handle_subscription_deleted(event):
    sub_data = event["data"]["object"]
    return [_canonical(
        event,
        EventClass.CANCELED,
        provider_subscription_id=sub_data.get("id"),
        provider_customer_id=sub_data.get("customer"),
    )]


def _handle_subscription_paused(event):
    sub_data = event["data"]["object"]
    return [_canonical(
        event,
        EventClass.SUSPENDED,
        provider_subscription_id=sub_data.get("id"),
        provider_customer_id=sub_data.get("customer"),
    )]


def _handle_subscription_resumed(event):
    sub_data = event["data"]["object"]
    period_start, period_end = _extract_period(sub_data)
    return [_canonical(
        event,
        EventClass.ACTIVATED,
        provider_subscription_id=sub_data.get("id"),
        provider_customer_id=sub_data.get("customer"),
        period_start=period_start,
        period_end=period_end,
    )]


def _handle_dispute_created(event):
    """Handle charge.dispute.created: chargeback, suspend immediately."""
    dispute = event["data"]["object"]
    charge_id = dispute.get("charge")
    if isinstance(charge_id, dict):
        charge_id = charge_id.get("id")
    stripe_subscription_id, stripe_customer_id = _subscription_for_charge(charge_id)

    return [_canonical(
        event,
        EventClass.CHARGEBACK,
        provider_subscription_id=stripe_subscription_id,
        provider_customer_id=stripe_customer_id,
        details={"charge": charge_id, "reason": dispute.get("reason")},
    )]


def _handle_charge_refunded(event):
    charge = event["data"]["object"]
    invoice = charge.get("invoice")
    if isinstance(invoice, dict):
        stripe_subscription_id = _invoice_subscription_id(invoice)
    elif invoice:
        stripe_subscription_id, _ = _subscription_for_charge(charge.get("id"))
    else:
        stripe_subscription_id = None

    return [_canonical(
        event,
        EventClass.REFUNDED,
        provider_subscription_id=stripe_subscription_id,
        details={"charge": charge.get("id"), "amount_refunded": charge.get("amount_refunded")},
    )]
