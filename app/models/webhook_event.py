"""Webhook event model (idempotency table).

Every inbound webhook is recorded by (source, event_id) before any
processing. The unique constraint on that pair is the only guard against
processor-side redelivery: handlers insert first and treat a constraint
violation as "already seen", never select-then-insert.
"""

import uuid

from app.extensions import db


class WebhookEvent(db.Model):
    __tablename__ = "webhook_events"

    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    source = db.Column(db.String(20), nullable=False)  # stripe | paypal
    event_id = db.Column(
        db.String(255), nullable=False
    )  # e.g. "evt_1Abc..." or "WH-4AB..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "invoice.paid"
    status = db.Column(db.String(20), nullable=False, default=PROCESSING)
    attempts = db.Column(db.Integer, nullable=False, default=1)
    last_attempted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.UniqueConstraint("source", "event_id", name="uq_webhook_events_source_event"),
        db.CheckConstraint(
            "status IN ('processing', 'processed', 'failed')",
            name="ck_webhook_events_status",
        ),
        db.Index("idx_webhook_events_status", "status"),
    )

    def __repr__(self):
        return f"<WebhookEvent {self.source}:{self.event_id} ({self.status})>"
