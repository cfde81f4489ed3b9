"""Kiosk (point-of-sale device) sessions.

An operator mints a device assertion with ``flask create-kiosk-session``;
the kiosk presents it on every redemption. Validation checks the ES256
signature, issuer and expiry, then the kiosk_sessions row so a leaked
assertion can be revoked before it expires.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone

from flask import current_app

from app.extensions import db
from app.models.kiosk_session import KioskSession
from app.services.audit_service import log_audit
from app.services.signing_service import (
    TokenVerificationError,
    sign_device_assertion,
    verify_device_assertion,
)

logger = logging.getLogger(__name__)


class KioskSessionError(Exception):
    """Device assertion rejected. ``code`` is INVALID_SESSION, SESSION_EXPIRED or SESSION_REVOKED."""

    def __init__(self, code, message):
        super().__init__(message)
        self.code = code


def create_kiosk_session(kiosk_id, location=None, hours=None):
    """Mint a device assertion and record its session. Returns (token, session)."""
    hours = hours or current_app.config.get("KIOSK_SESSION_HOURS", 8)
    jti = str(uuid.uuid4())
    expires_at = datetime.now(timezone.utc) + timedelta(hours=hours)

    token = sign_device_assertion(kiosk_id, location, jti, expires_at)
    session = KioskSession(
        id=jti,
        kiosk_id=kiosk_id,
        location=location,
        expires_at=expires_at,
    )
    db.session.add(session)
    log_audit("admin", "kiosk_session.created", "kiosk_session", jti, {
        "kiosk_id": kiosk_id,
        "location": location,
        "expires_at": expires_at.isoformat(),
    })
    db.session.commit()

    logger.info(f"Kiosk session {jti} created for {kiosk_id} ({hours}h)")
    return token, session


def revoke_kiosk_sessions(session_id=None, kiosk_id=None):
    """Revoke one session by id, or every live session of a kiosk. Returns the count."""
    if not session_id and not kiosk_id:
        raise ValueError("session_id or kiosk_id is required")

    query = KioskSession.query.filter(KioskSession.revoked_at.is_(None))
    if session_id:
        query = query.filter_by(id=session_id)
    if kiosk_id:
        query = query.filter_by(kiosk_id=kiosk_id)

    now = datetime.now(timezone.utc)
    sessions = query.all()
    for session in sessions:
        session.revoked_at = now
        log_audit("admin", "kiosk_session.revoked", "kiosk_session", session.id, {
            "kiosk_id": session.kiosk_id,
        })
    db.session.commit()

    logger.info(f"Revoked {len(sessions)} kiosk session(s)")
    return len(sessions)


def validate_kiosk_session(token):
    """Verify a device assertion and its session row. Returns the KioskSession.

    Bumps use_count/last_used_at. Raises KioskSessionError.
    """
    try:
        claims = verify_device_assertion(token)
    except TokenVerificationError as e:
        code = "SESSION_EXPIRED" if e.code == "EXPIRED" else "INVALID_SESSION"
        raise KioskSessionError(code, str(e)) from e

    session = db.session.get(KioskSession, claims["jti"])
    if session is None:
        raise KioskSessionError("INVALID_SESSION", "Session not found")
    if session.kiosk_id != claims["kiosk_id"]:
        raise KioskSessionError("INVALID_SESSION", "Session does not belong to this kiosk")
    if session.is_revoked:
        raise KioskSessionError("SESSION_REVOKED", "Session revoked")
    if session.is_expired:
        raise KioskSessionError("SESSION_EXPIRED", "Session expired")

    db.session.execute(
        db.update(KioskSession)
        .where(KioskSession.id == session.id)
        .values(
            use_count=KioskSession.use_count + 1,
            last_used_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return session
