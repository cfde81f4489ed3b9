"""Webhooks blueprint — /stripe/webhooks and /paypal/webhooks

Receives payment-processor webhook events. Raw body is required for
signature verification; nothing is parsed or stored until the signature
checks out. Rate-limited per source IP.
"""

import json
import logging

from flask import Blueprint, current_app, jsonify, request

from app.extensions import limiter
from app.services import paypal_service, stripe_service

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__)


def _webhook_limit():
    return current_app.config.get("WEBHOOK_RATE_LIMIT", "120 per minute")


def _respond(success, message):
    if success:
        return jsonify({"status": message}), 200
    logger.error(f"Webhook processing failed: {message}")
    return jsonify({"error": "processing_failed"}), 500


@webhooks_bp.route("/stripe/webhooks", methods=["POST"])
@limiter.limit(_webhook_limit)
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature with STRIPE_WEBHOOK_SECRET
    3. Pass to handle_webhook_event (idempotent via webhook_events table)
    4. Return 200 to acknowledge receipt, 500 so Stripe retries on failure
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Webhook received without Stripe-Signature header")
        return jsonify({"error": "Missing signature"}), 400

    # --- Verify signature ---
    try:
        event = stripe_service.verify_webhook_signature(payload, sig_header)
    except Exception as e:
        logger.warning(f"Stripe webhook signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 400

    if not event.get("id") or not event.get("type"):
        return jsonify({"error": "Malformed event"}), 400

    # --- Process event (idempotent) ---
    return _respond(*stripe_service.handle_webhook_event(event))


@webhooks_bp.route("/paypal/webhooks", methods=["POST"])
@limiter.limit(_webhook_limit)
def paypal_webhook():
    """Receive and process PayPal webhook events.

    PayPal signs over the raw event; verification posts the parsed event
    back to PayPal's verify-webhook-signature API.
    """
    try:
        event = json.loads(request.get_data(as_text=True))
    except ValueError:
        return jsonify({"error": "Malformed body"}), 400
    if not isinstance(event, dict) or not event.get("id") or not event.get("event_type"):
        return jsonify({"error": "Malformed event"}), 400

    # --- Verify signature ---
    try:
        paypal_service.verify_webhook_signature(request.headers, event)
    except paypal_service.PayPalVerificationError as e:
        logger.warning(f"PayPal webhook verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 400
    except Exception as e:
        # Verification could not be completed (PayPal down or timed out): let PayPal retry.
        logger.error(f"PayPal webhook verification error: {e}")
        return jsonify({"error": "Verification unavailable"}), 503

    # --- Process event (idempotent) ---
    return _respond(*paypal_service.handle_webhook_event(event))
