"""Tests for the kiosk blueprint and kiosk sessions.

Covers:
- POST /kiosk/redeem requires a valid device assertion
- Revoked and expired kiosk sessions are refused
- Successful redemption and rejection status codes over HTTP
- Session use counting
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from app.extensions import db
from app.models.kiosk_session import KioskSession
from app.services.kiosk_service import create_kiosk_session, revoke_kiosk_sessions


def _redeem(client, kiosk_token, body):
    headers = {"Authorization": f"Bearer {kiosk_token}"} if kiosk_token else {}
    return client.post(
        "/kiosk/redeem",
        data=json.dumps(body),
        content_type="application/json",
        headers=headers,
    )


class TestKioskAuth:
    """Tests for kiosk_session_required."""

    def test_missing_assertion_returns_401(self, client):
        resp = _redeem(client, None, {"token": "whatever"})
        assert resp.status_code == 401
        assert json.loads(resp.data)["reason"] == "INVALID_SESSION"

    def test_garbage_assertion_returns_401(self, client):
        resp = _redeem(client, "not.a.jwt", {"token": "whatever"})
        assert resp.status_code == 401
        assert json.loads(resp.data)["reason"] == "INVALID_SESSION"

    def test_meal_token_is_not_a_kiosk_assertion(self, client, seed_data, make_token):
        """Keys are separated by purpose: a daily token cannot open a kiosk session."""
        meal_token = make_token(seed_data["customer_id"])
        resp = _redeem(client, meal_token.jwt_token, {"token": meal_token.jwt_token})
        assert resp.status_code == 401

    def test_revoked_session_returns_401(self, client, kiosk_token):
        assert revoke_kiosk_sessions(kiosk_id="front-counter") == 1

        resp = _redeem(client, kiosk_token, {"token": "whatever"})

        assert resp.status_code == 401
        assert json.loads(resp.data)["reason"] == "SESSION_REVOKED"

    def test_expired_session_returns_401(self, client, kiosk_token):
        session = KioskSession.query.filter_by(kiosk_id="front-counter").one()
        session.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        db.session.commit()

        resp = _redeem(client, kiosk_token, {"token": "whatever"})

        assert resp.status_code == 401
        assert json.loads(resp.data)["reason"] == "SESSION_EXPIRED"

    def test_revoke_requires_target(self):
        with pytest.raises(ValueError):
            revoke_kiosk_sessions()


class TestKioskRedeem:
    """Tests for POST /kiosk/redeem."""

    def test_successful_redemption(self, client, kiosk_token, seed_data, make_token):
        token = make_token(seed_data["customer_id"])

        resp = _redeem(client, kiosk_token, {"token": token.jwt_token})

        assert resp.status_code == 200
        data = json.loads(resp.data)
        assert data["success"] is True
        assert data["customer_name"] == "Alice Diner"
        assert resp.headers["Cache-Control"] == "no-store"

        session = KioskSession.query.filter_by(kiosk_id="front-counter").one()
        assert session.use_count == 1
        assert session.last_used_at is not None

    def test_short_code_redemption(self, client, kiosk_token, seed_data, make_token):
        token = make_token(seed_data["customer_id"])
        resp = _redeem(client, kiosk_token, {"code": token.short_code})
        assert resp.status_code == 200

    def test_second_redemption_returns_409(self, client, kiosk_token, seed_data, make_token):
        token = make_token(seed_data["customer_id"])
        assert _redeem(client, kiosk_token, {"token": token.jwt_token}).status_code == 200

        resp = _redeem(client, kiosk_token, {"token": token.jwt_token})

        assert resp.status_code == 409
        assert json.loads(resp.data)["reason"] == "ALREADY_USED"

    def test_missing_token_returns_400(self, client, kiosk_token):
        resp = _redeem(client, kiosk_token, {})
        assert resp.status_code == 400
        assert json.loads(resp.data)["reason"] == "INVALID_TOKEN"

    def test_unknown_code_returns_404(self, client, kiosk_token):
        resp = _redeem(client, kiosk_token, {"code": "ABCDE-FGHJK"})
        assert resp.status_code == 404

    def test_expired_token_returns_410(self, client, kiosk_token, seed_data, make_token):
        token = make_token(
            seed_data["customer_id"],
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
        resp = _redeem(client, kiosk_token, {"token": token.jwt_token})
        assert resp.status_code == 410

    def test_presenter_mismatch_returns_403(self, client, kiosk_token, seed_data, make_token):
        token = make_token(seed_data["customer_id"])
        resp = _redeem(client, kiosk_token, {"token": token.jwt_token, "customer_id": "intruder"})
        assert resp.status_code == 403
        assert json.loads(resp.data)["reason"] == "TOKEN_MISMATCH"


class TestKioskSessions:
    """Tests for create_kiosk_session()."""

    def test_session_row_and_default_lifetime(self, app):
        token, session = create_kiosk_session("kiosk-2", location="Annex")

        stored = db.session.get(KioskSession, session.id)
        assert stored.kiosk_id == "kiosk-2"
        lifetime = stored.expires_at.replace(tzinfo=timezone.utc) - datetime.now(timezone.utc)
        assert timedelta(hours=7) < lifetime <= timedelta(hours=app.config["KIOSK_SESSION_HOURS"])
        assert token.count(".") == 2
