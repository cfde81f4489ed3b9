"""
Custom route decorators for access control.

- kiosk_session_required: the request must carry a valid, unrevoked kiosk
  device assertion ("Authorization: Bearer <assertion>"). The validated
  KioskSession is stored on g.kiosk_session.
"""

import hashlib
from functools import wraps

from flask import g, jsonify, request
from flask_limiter.util import get_remote_address

from app.services.kiosk_service import KioskSessionError, validate_kiosk_session


def _bearer_token():
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def kiosk_rate_limit_key():
    """Rate-limit bucket per kiosk assertion, falling back to the client IP."""
    token = _bearer_token()
    if token:
        return "kiosk:" + hashlib.sha256(token.encode()).hexdigest()[:32]
    return get_remote_address()


def kiosk_session_required(f):
    """Require a valid kiosk device assertion."""

    @wraps(f)
    def decorated(*args, **kwargs):
        token = _bearer_token()
        if token is None:
            return jsonify({"success": False, "reason": "INVALID_SESSION",
                            "message": "Kiosk session required."}), 401

        try:
            g.kiosk_session = validate_kiosk_session(token)
        except KioskSessionError as e:
            return jsonify({"success": False, "reason": e.code,
                            "message": "Kiosk session is not valid. Ask an operator to sign in again."}), 401

        return f(*args, **kwargs)

    return decorated
