"""Audit log model.

Append-only record of every subscription transition, redemption, skip and
operator action. PII inside metadata is anonymized on customer erasure;
rows themselves are never deleted.
"""

import uuid

from app.extensions import db


class AuditLogEntry(db.Model):
    __tablename__ = "audit_log"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    actor = db.Column(
        db.String(100), nullable=False
    )  # e.g. "system:stripe", "kiosk:front-counter", "admin"
    action = db.Column(db.String(255), nullable=False)  # e.g. "subscription.active"
    subject_type = db.Column(db.String(50), nullable=True)  # e.g. "subscription"
    subject_id = db.Column(db.String(255), nullable=True, index=True)
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid clashing with SQLAlchemy's attribute
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<AuditLogEntry {self.action}>"
