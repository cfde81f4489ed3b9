"""Kiosk blueprint — /kiosk/redeem

Point-of-sale redemption. Every request carries the kiosk's device
assertion (see decorators.kiosk_session_required) plus the customer's
token, either the full signed JWT from the QR code or its short code.
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from app.decorators import kiosk_rate_limit_key, kiosk_session_required
from app.extensions import limiter
from app.services import redemption_service
from app.services.redemption_service import redeem

logger = logging.getLogger(__name__)

kiosk_bp = Blueprint("kiosk", __name__, url_prefix="/kiosk")

REJECTION_STATUS = {
    redemption_service.INVALID_TOKEN: 400,
    redemption_service.EXPIRED: 410,
    redemption_service.TOKEN_NOT_FOUND: 404,
    redemption_service.ALREADY_USED: 409,
    redemption_service.LIMIT_REACHED: 409,
    redemption_service.TOKEN_MISMATCH: 403,
    redemption_service.SUBSCRIPTION_INACTIVE: 403,
    redemption_service.NO_ENTITLEMENT: 403,
}


def _kiosk_limit():
    return current_app.config.get("KIOSK_RATE_LIMIT", "10 per minute")


@kiosk_bp.route("/redeem", methods=["POST"])
@limiter.limit(_kiosk_limit, key_func=kiosk_rate_limit_key)
@kiosk_session_required
def redeem_token():
    """Redeem a customer's meal token.

    Body: {"token": "<jwt or short code>", "customer_id": "<optional presenter id>"}
    """
    data = request.get_json(silent=True) or {}
    presented = data.get("token") or data.get("code")
    if not presented or not isinstance(presented, str):
        return jsonify({"success": False, "reason": "INVALID_TOKEN",
                        "message": "No code provided."}), 400

    result = redeem(
        presented,
        point_of_sale_id=g.kiosk_session.kiosk_id,
        presenter_customer_id=data.get("customer_id"),
    )

    if result.success:
        return jsonify(result.to_dict()), 200
    return jsonify(result.to_dict()), REJECTION_STATUS.get(result.reason, 400)
