"""Notification delivery ledger.

Every customer-facing message is recorded under a unique idempotency key
(e.g. "qr_daily/<customer_id>/<date>") before it is sent, so a retried job or
redelivered webhook never sends the same logical message twice. Failed sends
are rescheduled with backoff until NOTIFICATION_MAX_ATTEMPTS is reached.
"""

import uuid

from app.extensions import db


class NotificationDelivery(db.Model):
    __tablename__ = "notification_deliveries"

    PENDING = "pending"
    SENDING = "sending"  # claimed by one worker; next_attempt_at is the claim lease
    SENT = "sent"
    RETRYING = "retrying"
    FAILED = "failed"
    SKIPPED = "skipped"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    idempotency_key = db.Column(db.String(255), unique=True, nullable=False)
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=True
    )
    template = db.Column(db.String(50), nullable=False)  # e.g. "qr_daily"
    recipient = db.Column(db.String(255), nullable=True)
    context = db.Column(db.JSON, default=dict)
    status = db.Column(db.String(20), nullable=False, default=PENDING)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    next_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending', 'sending', 'sent', 'retrying', 'failed', 'skipped')",
            name="ck_notification_deliveries_status",
        ),
        db.Index("idx_notification_deliveries_retry", "status", "next_attempt_at"),
    )

    def __repr__(self):
        return f"<NotificationDelivery {self.idempotency_key} ({self.status})>"
