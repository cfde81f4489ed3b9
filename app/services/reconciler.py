"""Subscription reconciler — one state machine for both payment processors.

Responsible for:
- The canonical transition table (event class x current status -> status)
- Conflict-safe upserts of customers and subscriptions keyed by processor id
- Billing-period validation (never write an invalid or narrower window)
- Chargeback hold (suspended, terminal, never auto-reversed)
- Running a verified webhook through the idempotent event store

Processor adapters (stripe_service, paypal_service) only translate their
payloads into CanonicalEvent objects; no processor-specific logic lives here.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from flask import current_app

from app.extensions import db
from app.models.billing import Customer, Subscription
from app.services import event_store
from app.services.alert_service import send_operator_alert
from app.services.audit_service import log_audit
from app.services.event_store import RecordOutcome
from app.services.service_calendar import as_utc
from app.services.upserts import insert_for, insert_ignore

logger = logging.getLogger(__name__)


class EventClass:
    """Processor-agnostic event classes the adapters map onto."""

    CREATED = "created"  # awaiting approval / first payment
    TRIAL_STARTED = "trial_started"
    ACTIVATED = "activated"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAST_DUE = "past_due"  # processor reports past_due without a failure event
    SUSPENDED = "suspended"
    CANCELED = "canceled"
    EXPIRED = "expired"
    CHARGEBACK = "chargeback"
    REFUNDED = "refunded"  # one-time charge reversed; recorded, no state change


APPROVAL_PENDING = Subscription.APPROVAL_PENDING
TRIALING = Subscription.TRIALING
ACTIVE = Subscription.ACTIVE
PAST_DUE = Subscription.PAST_DUE
SUSPENDED = Subscription.SUSPENDED
CANCELED = Subscription.CANCELED
EXPIRED = Subscription.EXPIRED

KEEP = object()
NEW = None  # "no row yet"

# (event class) -> {current status: next status}. Missing current status = KEEP.
TRANSITIONS = {
    EventClass.CREATED: {
        NEW: APPROVAL_PENDING,
        APPROVAL_PENDING: APPROVAL_PENDING,
    },
    EventClass.TRIAL_STARTED: {
        NEW: TRIALING,
        APPROVAL_PENDING: TRIALING,
        TRIALING: TRIALING,
    },
    EventClass.ACTIVATED: {
        NEW: ACTIVE,
        APPROVAL_PENDING: ACTIVE,
        TRIALING: ACTIVE,
        ACTIVE: ACTIVE,
        PAST_DUE: ACTIVE,
        SUSPENDED: ACTIVE,
    },
    EventClass.PAYMENT_SUCCEEDED: {
        NEW: ACTIVE,
        APPROVAL_PENDING: ACTIVE,
        TRIALING: ACTIVE,
        ACTIVE: ACTIVE,
        PAST_DUE: ACTIVE,
    },
    EventClass.PAYMENT_FAILED: {
        NEW: PAST_DUE,
        TRIALING: PAST_DUE,
        ACTIVE: PAST_DUE,
        PAST_DUE: PAST_DUE,
    },
    EventClass.PAST_DUE: {
        NEW: PAST_DUE,
        TRIALING: PAST_DUE,
        ACTIVE: PAST_DUE,
        PAST_DUE: PAST_DUE,
    },
    EventClass.SUSPENDED: {
        NEW: SUSPENDED,
        APPROVAL_PENDING: SUSPENDED,
        TRIALING: SUSPENDED,
        ACTIVE: SUSPENDED,
        PAST_DUE: SUSPENDED,
        SUSPENDED: SUSPENDED,
    },
    EventClass.CANCELED: {
        NEW: CANCELED,
        APPROVAL_PENDING: CANCELED,
        TRIALING: CANCELED,
        ACTIVE: CANCELED,
        PAST_DUE: CANCELED,
        SUSPENDED: CANCELED,
        CANCELED: CANCELED,
    },
    EventClass.EXPIRED: {
        NEW: EXPIRED,
        APPROVAL_PENDING: EXPIRED,
        TRIALING: EXPIRED,
        ACTIVE: EXPIRED,
        PAST_DUE: EXPIRED,
        SUSPENDED: EXPIRED,
        CANCELED: EXPIRED,
        EXPIRED: EXPIRED,
    },
    EventClass.CHARGEBACK: {status: SUSPENDED for status in [NEW] + Subscription.STATUSES},
    EventClass.REFUNDED: {},
}

# Statuses that may not be entered without a known billing period.
PERIOD_REQUIRED = (ACTIVE, TRIALING)

DUNNING_TEMPLATES = {1: "dunning_soft", 2: "dunning_retry"}
DUNNING_FINAL = "dunning_final"


def next_status(current, event_class):
    """Pure transition function. ``current`` is None for a brand-new row."""
    target = TRANSITIONS[event_class].get(current, KEEP)
    if target is KEEP:
        return current if current is not None else APPROVAL_PENDING
    return target


@dataclass
class CanonicalEvent:
    source: str  # stripe | paypal
    event_id: str
    event_type: str  # processor's own type, for audit
    event_class: str
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    details: dict = field(default_factory=dict)


@dataclass
class CanonicalTransition:
    event_class: str
    applied: bool
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    period_updated: bool = False
    notifications: list = field(default_factory=list)  # (template, key, context)
    alerts: list = field(default_factory=list)  # (message, context)

    @property
    def changed(self):
        return self.applied and self.previous_status != self.new_status


class PeriodValidationError(ValueError):
    """A billing period window is missing, inverted or implausibly short."""


# ──────────────────────────────────────────────
# Billing period validation
# ──────────────────────────────────────────────

def validate_period(start, end):
    """Raise PeriodValidationError unless end > start by at least the minimum."""
    if start is None or end is None:
        raise PeriodValidationError("period start/end missing")
    start, end = as_utc(start), as_utc(end)
    if end <= start:
        raise PeriodValidationError(f"period end {end.isoformat()} is not after start {start.isoformat()}")
    min_hours = current_app.config.get("MIN_BILLING_PERIOD_HOURS", 24)
    if end - start < timedelta(hours=min_hours):
        raise PeriodValidationError(
            f"period {start.isoformat()} -> {end.isoformat()} shorter than {min_hours}h"
        )
    return start, end


def _apply_period(sub, event):
    """Write the event's period onto ``sub`` if it is valid and not narrower.

    Returns True if the period was written.
    """
    if event.period_start is None and event.period_end is None:
        return False

    try:
        start, end = validate_period(event.period_start, event.period_end)
    except PeriodValidationError as e:
        logger.warning(
            f"Discarding billing period from {event.source} event {event.event_id} "
            f"for sub={event.provider_subscription_id}: {e}"
        )
        return False

    current_start = as_utc(sub.current_period_start)
    current_end = as_utc(sub.current_period_end)
    if current_end is not None:
        older = end < current_end
        narrower = end == current_end and current_start is not None and start > current_start
        if older or narrower:
            logger.info(
                f"Ignoring out-of-order period {start.isoformat()} -> {end.isoformat()} "
                f"for sub={event.provider_subscription_id}; keeping "
                f"{current_start} -> {current_end.isoformat()}"
            )
            return False
        if end == current_end and start == current_start:
            return False

    sub.current_period_start = start
    sub.current_period_end = end
    return True


# ──────────────────────────────────────────────
# Upserts
# ──────────────────────────────────────────────

_CUSTOMER_KEYS = {"stripe": "stripe_customer_id", "paypal": "paypal_payer_id"}
_SUBSCRIPTION_KEYS = {"stripe": "stripe_subscription_id", "paypal": "paypal_subscription_id"}


def upsert_customer(event):
    """Insert-or-update the customer keyed by the processor's customer id.

    Profile fields are only filled in, never blanked, by later events.
    Returns the Customer, or None if the event carries no customer id.
    """
    if not event.provider_customer_id:
        return None

    key = _CUSTOMER_KEYS[event.source]
    stmt = insert_for(Customer).values(
        id=str(uuid.uuid4()),
        payment_provider=event.source,
        email=event.email,
        name=event.name,
        **{key: event.provider_customer_id},
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[key],
        set_={
            "email": db.func.coalesce(stmt.excluded.email, Customer.email),
            "name": db.func.coalesce(stmt.excluded.name, Customer.name),
        },
    )
    db.session.execute(stmt)

    return (
        Customer.query
        .filter(getattr(Customer, key) == event.provider_customer_id)
        .populate_existing()
        .one()
    )


def _lock_subscription(event):
    key = _SUBSCRIPTION_KEYS[event.source]
    return (
        Subscription.query
        .filter(getattr(Subscription, key) == event.provider_subscription_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def _ensure_subscription(event, customer):
    """Return (subscription, previous_status), creating the row if needed.

    Creation is INSERT ... ON CONFLICT DO NOTHING followed by a locking
    read, so two first-events racing for the same subscription converge on
    one row. previous_status is None when this call created the row.
    """
    sub = _lock_subscription(event)
    if sub is not None:
        return sub, sub.status

    if customer is None:
        return None, None

    key = _SUBSCRIPTION_KEYS[event.source]
    inserted = insert_ignore(
        Subscription,
        [key],
        id=str(uuid.uuid4()),
        customer_id=customer.id,
        payment_provider=event.source,
        status=APPROVAL_PENDING,
        payment_failure_count=0,
        **{key: event.provider_subscription_id},
    )
    sub = _lock_subscription(event)
    return sub, (None if inserted else sub.status)


# ──────────────────────────────────────────────
# Apply
# ──────────────────────────────────────────────

def apply(event):
    """Apply one canonical event. Flushes; the caller owns the commit.

    Returns a CanonicalTransition describing what happened, including the
    notifications and alerts to dispatch once the transaction commits.
    """
    if not event.provider_subscription_id:
        logger.info(f"{event.source} event {event.event_id} ({event.event_type}) has no subscription, ignoring")
        return CanonicalTransition(event_class=event.event_class, applied=False)

    customer = upsert_customer(event)
    sub, previous = _ensure_subscription(event, customer)
    if sub is None:
        logger.warning(
            f"{event.event_type}: no local subscription for {event.source} "
            f"sub={event.provider_subscription_id} and no customer to create it for"
        )
        return CanonicalTransition(event_class=event.event_class, applied=False)

    now = datetime.now(timezone.utc)
    transition = CanonicalTransition(
        event_class=event.event_class,
        applied=True,
        subscription_id=sub.id,
        customer_id=sub.customer_id,
        previous_status=previous,
    )

    if sub.chargeback_at is not None:
        # Chargeback hold: only an operator can lift it.
        new_status = SUSPENDED
        if event.event_class != EventClass.CHARGEBACK:
            logger.info(
                f"Sub {sub.id} is under chargeback hold; ignoring {event.event_type} "
                f"({event.event_id})"
            )
    else:
        new_status = next_status(previous, event.event_class)

    transition.period_updated = _apply_period(sub, event)

    if new_status in PERIOD_REQUIRED and sub.current_period_end is None:
        fallback = previous if previous not in (None, APPROVAL_PENDING) else APPROVAL_PENDING
        logger.warning(
            f"Sub {sub.id}: refusing {new_status} without a billing period "
            f"({event.source} {event.event_id}); staying {fallback}"
        )
        new_status = fallback

    if event.event_class == EventClass.CHARGEBACK and sub.chargeback_at is None:
        sub.chargeback_at = now
        transition.alerts.append(("Chargeback received, subscription suspended", {
            "source": event.source,
            "subscription": event.provider_subscription_id,
            "customer_id": sub.customer_id,
            "event_id": event.event_id,
        }))

    if event.event_class == EventClass.PAYMENT_FAILED and new_status == PAST_DUE:
        sub.payment_failure_count = (sub.payment_failure_count or 0) + 1
        sub.last_payment_failure_at = now
        attempt = sub.payment_failure_count
        template = DUNNING_TEMPLATES.get(attempt, DUNNING_FINAL)
        transition.notifications.append((
            template,
            f"{template}/{sub.id}/{attempt}",
            {"attempt": attempt},
        ))
    elif event.event_class == EventClass.PAYMENT_SUCCEEDED and new_status == ACTIVE:
        sub.payment_failure_count = 0

    sub.status = new_status
    transition.new_status = new_status
    db.session.flush()

    if previous == PAST_DUE and new_status == ACTIVE:
        transition.notifications.append((
            "service_restored",
            f"service_restored/{sub.id}/{event.event_id}",
            {},
        ))
    elif new_status == SUSPENDED and previous != SUSPENDED and sub.chargeback_at is None:
        transition.notifications.append((
            "subscription_suspended",
            f"subscription_suspended/{sub.id}/{event.event_id}",
            {},
        ))
    elif new_status == CANCELED and previous != CANCELED:
        transition.notifications.append((
            "canceled_notice",
            f"canceled_notice/{sub.id}",
            {},
        ))

    if event.event_class == EventClass.REFUNDED:
        transition.alerts.append(("Payment refunded", {
            "source": event.source,
            "subscription": event.provider_subscription_id,
            "event_id": event.event_id,
        }))

    log_audit(f"system:{event.source}", f"subscription.{event.event_class}", "subscription", sub.id, {
        "customer_id": sub.customer_id,
        "provider_subscription_id": event.provider_subscription_id,
        "event_id": event.event_id,
        "event_type": event.event_type,
        "previous_status": previous,
        "new_status": new_status,
        "period_updated": transition.period_updated,
        **event.details,
    })

    logger.info(
        f"Reconciled {event.source} {event.event_type} ({event.event_id}): "
        f"sub={sub.id} {previous} -> {new_status}"
    )
    return transition


def dispatch_side_effects(transition):
    """Send a committed transition's notifications and alerts. Never raises."""
    from app.services.notification_service import notify_customer

    for message, context in transition.alerts:
        send_operator_alert(message, context)

    if not transition.notifications:
        return
    customer = db.session.get(Customer, transition.customer_id)
    if customer is None or customer.archived_at is not None:
        return
    for template, key, context in transition.notifications:
        context = {"name": customer.name or "there", **context}
        notify_customer(customer, template, key, context)


def handle_webhook(source, event_id, event_type, build_events):
    """Run one verified webhook through the event store and reconciler.

    ``build_events`` is a zero-argument callable returning the
    CanonicalEvents for this webhook. It may make external calls
    (period refetch), so it runs only once the event has been accepted.

    Returns (success: bool, message: str).
    """
    recorded = event_store.record(source, event_id, event_type)
    if recorded.outcome is RecordOutcome.DUPLICATE:
        return True, "already_processed"
    if recorded.outcome is RecordOutcome.EXHAUSTED:
        return True, "exhausted"

    webhook_event_id = recorded.event.id
    try:
        transitions = [apply(event) for event in build_events()]
        event_store.mark_processed(webhook_event_id)
    except Exception as e:
        logger.error(f"Error handling {source} {event_type} ({event_id}): {e}", exc_info=True)
        event_store.mark_failed(webhook_event_id, e)
        return False, str(e)

    for transition in transitions:
        dispatch_side_effects(transition)

    return True, "processed" if recorded.outcome is RecordOutcome.ACCEPTED else "replayed"
