"""Token issuer — one signed meal token per customer per service date.

Designed to be called from a Flask CLI command (``flask issue-tokens``) on
a daily cron schedule, after entitlement issuance.

For every entitlement on the service date with meals left:
1. sign a token (sub=customer_id, service_date, jti, iat, exp) where exp is
   end of the service day in SERVICE_TIMEZONE;
2. write the metadata row (INSERT ... ON CONFLICT DO NOTHING on
   (customer_id, service_date)), commit, and read it back;
3. only then hand the token (plus a QR image of its short code) to the
   notification service under "qr_daily/<customer_id>/<date>".

Re-running reuses the existing row, and the delivery ledger keeps the
customer from getting a second message.
"""

import logging
import re
import secrets
import uuid
from datetime import datetime, timezone

import segno

from app.extensions import db
from app.models.billing import Customer, Subscription
from app.models.entitlement import Entitlement
from app.models.meal_token import MealToken
from app.models.notification import NotificationDelivery
from app.services.alert_service import format_job_error_alert, send_operator_alert
from app.services.notification_service import notify_customer
from app.services.service_calendar import end_of_service_day, is_service_day
from app.services.signing_service import sign_daily_token
from app.services.upserts import insert_ignore

logger = logging.getLogger(__name__)

# No 0/O, 1/I: codes are read aloud and typed at the counter.
SHORT_CODE_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
SHORT_CODE_LENGTH = 10
SHORT_CODE_MIN_LENGTH = 8
SHORT_CODE_MAX_LENGTH = 12
_SHORT_CODE_RE = re.compile(
    f"^[{SHORT_CODE_ALPHABET}]{{{SHORT_CODE_MIN_LENGTH},{SHORT_CODE_MAX_LENGTH}}}$"
)

MAX_INSERT_ATTEMPTS = 3


def generate_short_code(length=SHORT_CODE_LENGTH):
    return "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(length))


def normalize_short_code(value):
    """Uppercase and drop dashes/spaces. Returns None if it is not a short code."""
    code = re.sub(r"[\s-]", "", value or "").upper()
    if _SHORT_CODE_RE.match(code):
        return code
    return None


def format_short_code(code):
    """Group a code for display, e.g. ABCDE-FGHJK."""
    mid = len(code) // 2
    return f"{code[:mid]}-{code[mid:]}"


def qr_data_uri(content):
    """PNG data URI of a QR code for ``content``."""
    return segno.make(content, error="m").png_data_uri(scale=8, border=2)


def _mint(customer_id, service_date):
    """Sign and store a token row. Returns the stored MealToken, read back from the DB."""
    for _ in range(MAX_INSERT_ATTEMPTS):
        jti = str(uuid.uuid4())
        issued_at = datetime.now(timezone.utc)
        expires_at = end_of_service_day(service_date)
        signed = sign_daily_token(customer_id, service_date, jti, issued_at, expires_at)

        insert_ignore(
            MealToken,
            None,
            id=str(uuid.uuid4()),
            customer_id=customer_id,
            service_date=service_date,
            jti=jti,
            short_code=generate_short_code(),
            jwt_token=signed,
            issued_at=issued_at,
            expires_at=expires_at,
        )
        db.session.commit()

        stored = (
            MealToken.query
            .filter_by(customer_id=customer_id, service_date=service_date)
            .populate_existing()
            .first()
        )
        if stored is not None:
            return stored
        # Collided on short_code or jti rather than (customer, date): try again.
        logger.warning(f"Token insert for {customer_id} on {service_date} collided, regenerating")

    raise RuntimeError(f"Could not store a token for {customer_id} on {service_date}")


def _deliver(customer, token):
    context = {
        "name": customer.name or "there",
        "service_date": token.service_date.isoformat(),
        "short_code": format_short_code(token.short_code),
        "qr_image": qr_data_uri(token.short_code),
        "token": token.jwt_token,
    }
    return notify_customer(
        customer,
        "qr_daily",
        f"qr_daily/{customer.id}/{token.service_date.isoformat()}",
        context,
    )


def check_null_periods():
    """Alert on serviceable subscriptions missing period dates (they get no meals)."""
    missing = (
        Subscription.query
        .filter(Subscription.status.in_(Subscription.SERVICEABLE))
        .filter(
            (Subscription.current_period_start.is_(None))
            | (Subscription.current_period_end.is_(None))
        )
        .all()
    )
    if missing:
        logger.warning(f"{len(missing)} serviceable subscription(s) have NULL period dates")
        send_operator_alert("Serviceable subscriptions with NULL billing period", {
            "count": len(missing),
            "subscriptions": ", ".join(s.id for s in missing[:5]),
        })
    return len(missing)


def issue_daily_tokens(service_date, dry_run=False):
    """Mint and deliver tokens for every entitlement with meals left on ``service_date``.

    Per-customer failures are collected, not raised; one operator alert
    summarizes them at the end. Returns a summary dict.
    """
    summary = {"service_date": service_date.isoformat(), "issued": 0, "reused": 0,
               "delivered": 0, "errors": [], "service_day": True}

    if not is_service_day(service_date):
        logger.info(f"{service_date} is not a service day, no tokens issued")
        summary["service_day"] = False
        return summary

    check_null_periods()

    entitlements = (
        Entitlement.query
        .join(Customer, Customer.id == Entitlement.customer_id)
        .filter(Entitlement.service_date == service_date)
        .filter(Entitlement.meals_allowed > Entitlement.meals_redeemed)
        .filter(Customer.archived_at.is_(None))
        .order_by(Entitlement.customer_id)
        .all()
    )
    targets = [(e.customer_id, e.customer) for e in entitlements]

    if dry_run:
        summary["issued"] = len(targets)
        return summary

    for customer_id, customer in targets:
        try:
            existing = MealToken.query.filter_by(
                customer_id=customer_id, service_date=service_date
            ).first()
            if existing is not None:
                token = existing
                summary["reused"] += 1
            else:
                token = _mint(customer_id, service_date)
                summary["issued"] += 1

            delivery = _deliver(customer, token)
            if delivery is not None and delivery.status == NotificationDelivery.SENT:
                summary["delivered"] += 1
        except Exception as e:
            db.session.rollback()
            logger.error(f"Token issuance failed for customer {customer_id}: {e}", exc_info=True)
            summary["errors"].append(f"{customer_id}: {e}")

    if summary["errors"]:
        send_operator_alert(
            format_job_error_alert("issue-tokens", summary["errors"], total=len(targets)),
            preformatted=True,
        )

    logger.info(
        f"Tokens for {service_date}: {summary['issued']} issued, {summary['reused']} reused, "
        f"{summary['delivered']} delivered, {len(summary['errors'])} errors"
    )
    return summary
