"""Idempotent webhook event store.

record() always tries the INSERT first and treats the unique-constraint
violation on (source, event_id) as "seen before". It never checks for
existence beforehand, since two deliveries of the same event can arrive at
the same time in separate processes.

Outcomes:
- ACCEPTED:  first sight; row is now "processing" with attempts=1.
- REPLAY:    previously failed with attempts < max; moved back to
             "processing" with attempts+1 and should be reprocessed.
- DUPLICATE: already processed, or another worker is processing it.
- EXHAUSTED: failed max times; skipped, logged and surfaced to operators.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.models.webhook_event import WebhookEvent
from app.services.alert_service import send_operator_alert

logger = logging.getLogger(__name__)


class RecordOutcome(enum.Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REPLAY = "replay"
    EXHAUSTED = "exhausted"


@dataclass
class RecordResult:
    outcome: RecordOutcome
    event: WebhookEvent

    @property
    def should_process(self):
        return self.outcome in (RecordOutcome.ACCEPTED, RecordOutcome.REPLAY)


def _max_attempts():
    return current_app.config.get("WEBHOOK_MAX_ATTEMPTS", 3)


def record(source, event_id, event_type):
    """Record an inbound event and decide whether it should be processed."""
    now = datetime.now(timezone.utc)
    event = WebhookEvent(
        source=source,
        event_id=event_id,
        event_type=event_type,
        status=WebhookEvent.PROCESSING,
        attempts=1,
        last_attempted_at=now,
    )
    db.session.add(event)
    try:
        db.session.commit()
        logger.info(f"Accepted {source} event {event_id} ({event_type})")
        return RecordResult(RecordOutcome.ACCEPTED, event)
    except IntegrityError:
        db.session.rollback()

    existing = WebhookEvent.query.filter_by(source=source, event_id=event_id).one()

    if existing.status != WebhookEvent.FAILED:
        logger.info(f"Duplicate {source} event {event_id} ({existing.status}), skipping")
        return RecordResult(RecordOutcome.DUPLICATE, existing)

    if existing.attempts >= _max_attempts():
        logger.error(
            f"{source} event {event_id} exhausted after {existing.attempts} attempts, "
            f"skipping: {existing.error_message}"
        )
        send_operator_alert("Webhook event exhausted retries", {
            "source": source,
            "event_id": event_id,
            "event_type": existing.event_type,
            "attempts": existing.attempts,
        })
        return RecordResult(RecordOutcome.EXHAUSTED, existing)

    # Guarded claim: only one concurrent redelivery moves failed -> processing.
    result = db.session.execute(
        db.update(WebhookEvent)
        .where(
            WebhookEvent.id == existing.id,
            WebhookEvent.status == WebhookEvent.FAILED,
            WebhookEvent.attempts < _max_attempts(),
        )
        .values(
            status=WebhookEvent.PROCESSING,
            attempts=WebhookEvent.attempts + 1,
            last_attempted_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    db.session.refresh(existing)

    if result.rowcount != 1:
        logger.info(f"{source} event {event_id} claimed by another worker, skipping")
        return RecordResult(RecordOutcome.DUPLICATE, existing)

    logger.info(f"Replaying {source} event {event_id} (attempt {existing.attempts})")
    return RecordResult(RecordOutcome.REPLAY, existing)


def mark_processed(webhook_event_id):
    """Mark an event processed. Commits the caller's pending work with it."""
    event = db.session.get(WebhookEvent, webhook_event_id)
    event.status = WebhookEvent.PROCESSED
    event.processed_at = datetime.now(timezone.utc)
    event.error_message = None
    db.session.commit()


def mark_failed(webhook_event_id, reason):
    """Mark an event failed after rolling back the caller's partial work."""
    db.session.rollback()
    event = db.session.get(WebhookEvent, webhook_event_id)
    event.status = WebhookEvent.FAILED
    event.error_message = str(reason)[:1000]
    db.session.commit()

    if event.attempts >= _max_attempts():
        logger.error(
            f"{event.source} event {event.event_id} failed on final attempt "
            f"{event.attempts}: {reason}"
        )
        send_operator_alert("Webhook event failed on final attempt", {
            "source": event.source,
            "event_id": event.event_id,
            "event_type": event.event_type,
            "error": str(reason)[:100],
        })
    else:
        logger.warning(
            f"{event.source} event {event.event_id} failed (attempt {event.attempts}): {reason}"
        )
