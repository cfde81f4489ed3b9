"""Audit service — append-only audit log and GDPR erasure.

log_audit() only flushes; the caller owns the commit boundary so the audit
row lands in the same transaction as the change it describes.
"""

import hashlib
import logging
from datetime import datetime, timezone

from app.extensions import db
from app.models.audit import AuditLogEntry
from app.models.billing import Customer

logger = logging.getLogger(__name__)

# Metadata keys that hold direct identifiers and are blanked on erasure.
REDACTED_FIELDS = ("telegram_handle", "handle", "email", "name", "customer_email")
REDACTED = "[deleted]"


def log_audit(actor, action, subject_type=None, subject_id=None, metadata=None):
    """Record an audit event. Actor is e.g. "system:stripe" or "kiosk:<id>"."""
    entry = AuditLogEntry(
        actor=actor,
        action=action,
        subject_type=subject_type,
        subject_id=str(subject_id) if subject_id is not None else None,
        metadata_=metadata or {},
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def anonymize_metadata(metadata):
    """Return a copy of ``metadata`` with PII removed.

    telegram_user_id becomes a stable "deleted:<sha256>" pseudonym so related
    entries can still be correlated; handle/email/name fields are blanked.
    """
    cleaned = dict(metadata or {})
    user_id = cleaned.get("telegram_user_id")
    if user_id is not None and not str(user_id).startswith("deleted:"):
        digest = hashlib.sha256(str(user_id).encode()).hexdigest()
        cleaned["telegram_user_id"] = f"deleted:{digest}"
    for field in REDACTED_FIELDS:
        if cleaned.get(field):
            cleaned[field] = REDACTED
    return cleaned


def erase_customer(customer_id, actor="admin"):
    """Scrub a customer's PII and archive them. Never hard-deletes.

    Audit entries about the customer are kept, with their metadata
    anonymized. Returns the number of audit entries rewritten.
    Raises ValueError if the customer does not exist.
    """
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise ValueError(f"Customer {customer_id} not found")

    entries = AuditLogEntry.query.filter(
        (AuditLogEntry.subject_id == customer_id)
        | (AuditLogEntry.metadata_["customer_id"].as_string() == customer_id)
    ).all()

    for entry in entries:
        entry.metadata_ = anonymize_metadata(entry.metadata_)

    customer.email = None
    customer.name = None
    customer.telegram_handle = None
    customer.telegram_user_id = None
    if customer.archived_at is None:
        customer.archived_at = datetime.now(timezone.utc)

    log_audit(actor, "customer.erased", "customer", customer_id, {
        "customer_id": customer_id,
        "audit_entries_anonymized": len(entries),
    })
    db.session.commit()

    logger.info(f"Erased PII for customer {customer_id} ({len(entries)} audit entries anonymized)")
    return len(entries)
