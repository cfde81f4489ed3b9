"""Entitlement issuer — one entitlement row per customer per service date.

Designed to be called from a Flask CLI command (``flask issue-entitlements``)
on a daily cron schedule. Safe to re-run, or to run concurrently with
itself: rows are created with INSERT ... ON CONFLICT DO NOTHING on
(customer_id, service_date).

Skips always win over issuance, in either order:
- issuance checks for a skip first and writes meals_allowed=0;
- apply_skip()/apply_skips() run afterwards as a lowering pass that can
  only reduce meals_allowed (down to meals_redeemed), never raise it.
"""

import logging
import uuid

from app.extensions import db
from app.models.billing import Customer, Subscription
from app.models.entitlement import Entitlement, Skip
from app.services.audit_service import log_audit
from app.services.service_calendar import (
    as_utc,
    end_of_service_day,
    is_service_day,
    start_of_service_day,
)
from app.services.upserts import insert_ignore

logger = logging.getLogger(__name__)


def governing_subscriptions():
    """Return {customer_id: Subscription} using the most recent subscription per customer."""
    subs = (
        Subscription.query
        .join(Customer, Customer.id == Subscription.customer_id)
        .filter(Customer.archived_at.is_(None))
        .order_by(Subscription.customer_id, *Subscription.latest_first())
        .all()
    )
    governing = {}
    for sub in subs:
        governing.setdefault(sub.customer_id, sub)
    return governing


def covers_service_date(sub, service_date):
    """True if the paid period overlaps ``service_date`` in the service timezone."""
    if sub.current_period_start is None or sub.current_period_end is None:
        return False
    return (
        as_utc(sub.current_period_start) <= end_of_service_day(service_date)
        and as_utc(sub.current_period_end) >= start_of_service_day(service_date)
    )


def eligible_customer_ids(service_date):
    """Customers whose governing subscription is serviceable and paid through ``service_date``."""
    return sorted(
        customer_id
        for customer_id, sub in governing_subscriptions().items()
        if sub.status in Subscription.SERVICEABLE and covers_service_date(sub, service_date)
    )


def _lower_for_skips(service_date, customer_id=None):
    """Force meals_allowed down to meals_redeemed where a skip exists.

    A single guarded UPDATE: never raises meals_allowed, and never drops it
    below meals already redeemed (the CHECK constraint would refuse anyway).
    Returns the number of rows lowered.
    """
    skipped = db.select(Skip.customer_id).where(Skip.skip_date == service_date)
    if customer_id is not None:
        skipped = skipped.where(Skip.customer_id == customer_id)

    result = db.session.execute(
        db.update(Entitlement)
        .where(
            Entitlement.service_date == service_date,
            Entitlement.customer_id.in_(skipped),
            Entitlement.meals_allowed > Entitlement.meals_redeemed,
        )
        .values(meals_allowed=Entitlement.meals_redeemed)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def issue_entitlements(service_date, dry_run=False):
    """Create entitlement rows for every eligible customer on ``service_date``.

    Returns a summary dict: created, existing, skipped, lowered.
    """
    summary = {"service_date": service_date.isoformat(), "created": 0, "existing": 0,
               "skipped": 0, "lowered": 0, "service_day": True}

    if not is_service_day(service_date):
        logger.info(f"{service_date} is not a service day, no entitlements issued")
        summary["service_day"] = False
        return summary

    customer_ids = eligible_customer_ids(service_date)
    skipping = {
        row.customer_id
        for row in Skip.query.filter_by(skip_date=service_date).all()
    }

    if dry_run:
        summary["created"] = len(customer_ids)
        summary["skipped"] = len(skipping.intersection(customer_ids))
        return summary

    for customer_id in customer_ids:
        allowed = 0 if customer_id in skipping else 1
        created = insert_ignore(
            Entitlement,
            ["customer_id", "service_date"],
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            service_date=service_date,
            meals_allowed=allowed,
            meals_redeemed=0,
        )
        if created:
            summary["created"] += 1
            if not allowed:
                summary["skipped"] += 1
        else:
            summary["existing"] += 1

    summary["lowered"] = apply_skips(service_date, commit=False)
    db.session.commit()

    logger.info(
        f"Entitlements for {service_date}: {summary['created']} created, "
        f"{summary['existing']} existing, {summary['skipped']} skipped, "
        f"{summary['lowered']} lowered"
    )
    return summary


def apply_skips(service_date, commit=True):
    """Lowering pass for every skip on ``service_date``. Idempotent."""
    lowered = _lower_for_skips(service_date)
    if commit:
        db.session.commit()
    if lowered:
        logger.info(f"Applied skips for {service_date}: {lowered} entitlement(s) lowered")
    return lowered


def apply_skip(customer_id, skip_date, source="admin"):
    """Record a customer's skip for ``skip_date`` and lower any existing entitlement.

    Returns True if the entitlement for that date was lowered by this call.
    Raises ValueError for an unknown source.
    """
    if source not in Skip.SOURCES:
        raise ValueError(f"Unknown skip source {source!r}")

    inserted = insert_ignore(
        Skip,
        ["customer_id", "skip_date"],
        id=str(uuid.uuid4()),
        customer_id=customer_id,
        skip_date=skip_date,
        source=source,
    )
    lowered = _lower_for_skips(skip_date, customer_id=customer_id)

    if inserted or lowered:
        log_audit(source, "entitlement.skipped", "customer", customer_id, {
            "customer_id": customer_id,
            "service_date": skip_date.isoformat(),
            "lowered_existing": bool(lowered),
        })
    db.session.commit()

    logger.info(f"Skip recorded for customer {customer_id} on {skip_date} (lowered={bool(lowered)})")
    return bool(lowered)
