"""Kiosk session model.

One row per minted device assertion, keyed by the assertion's jti. The
signed JWT proves who minted it; this row lets an operator revoke it before
it expires.
"""

from datetime import datetime, timezone

from app.extensions import db


class KioskSession(db.Model):
    __tablename__ = "kiosk_sessions"

    id = db.Column(db.String(64), primary_key=True)  # assertion jti
    kiosk_id = db.Column(db.String(100), nullable=False, index=True)
    location = db.Column(db.String(255), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    use_count = db.Column(db.Integer, nullable=False, default=0)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    @property
    def is_expired(self):
        now = datetime.now(timezone.utc)
        expires = self.expires_at
        # SQLite returns naive datetimes; Postgres returns aware ones.
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return now > expires

    @property
    def is_revoked(self):
        return self.revoked_at is not None

    def __repr__(self):
        return f"<KioskSession {self.kiosk_id} ({self.id[:8]}...)>"
