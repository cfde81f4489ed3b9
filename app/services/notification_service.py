"""Customer notification service (SMTP) with a delivery ledger.

Every notification is keyed by an idempotency key and recorded in
notification_deliveries before sending:
- a key already "sent" is never sent again (redelivered webhooks, re-run jobs);
- a row is claimed ("sending") by a guarded UPDATE before the send, so two
  workers racing on one key send it once;
- a failed send is rescheduled with backoff (5, 15, 60, 240 minutes);
- after NOTIFICATION_MAX_ATTEMPTS the row is marked "failed" and the
  operator is alerted.

Sending never raises into the caller. The webhook, issuance and redemption
paths stay correct even if SMTP is down.

Usage:
    from app.services.notification_service import notify_customer

    notify_customer(
        customer,
        template="service_restored",
        idempotency_key=f"service_restored/{sub.id}/{event_id}",
        context={"name": customer.name},
    )
"""

import logging
import smtplib
from datetime import datetime, timedelta, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from flask import current_app, render_template

from app.extensions import db
from app.models.notification import NotificationDelivery
from app.services.alert_service import send_operator_alert
from app.services.service_calendar import as_utc
from app.services.upserts import insert_ignore

logger = logging.getLogger(__name__)

RETRY_BACKOFF_MINUTES = [5, 15, 60, 240]
SEND_LEASE_MINUTES = 10

SUBJECTS = {
    "qr_daily": "Your meal pass for {service_date}",
    "service_restored": "Your meal service is back on",
    "dunning_soft": "We couldn't process your payment",
    "dunning_retry": "Second notice: payment still pending",
    "dunning_final": "Final notice: your meal plan will be paused",
    "subscription_suspended": "Your meal plan has been paused",
    "canceled_notice": "Your meal plan has been canceled",
}


class DeliveryError(Exception):
    """SMTP delivery failed."""


def _send_smtp(app, msg):
    """Send one message over SMTP. Raises DeliveryError on any failure."""
    host = app.config.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    port = app.config.get("MAIL_SMTP_PORT", 587)
    username = app.config.get("MAIL_USERNAME")
    password = app.config.get("MAIL_PASSWORD")

    if not username or not password:
        raise DeliveryError("MAIL_USERNAME or MAIL_PASSWORD not configured")

    try:
        with smtplib.SMTP(host, port, timeout=app.config.get("EXTERNAL_CALL_TIMEOUT", 30)) as server:
            server.ehlo()
            server.starttls()
            server.ehlo()
            server.login(username, password)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        raise DeliveryError(str(e)) from e
    logger.info(f"Email sent to {msg['To']} — {msg['Subject']}")


def _build_message(app, to, template, context):
    from_name = app.config.get("MAIL_FROM_NAME", "Mealpass")
    from_email = app.config.get("MAIL_FROM_ADDRESS") or app.config.get("MAIL_USERNAME", "")

    html_body = render_template(f"emails/{template}.html", **context)

    msg = MIMEMultipart("alternative")
    msg["Subject"] = SUBJECTS[template].format(**context)
    msg["From"] = f"{from_name} <{from_email}>"
    msg["To"] = to
    msg.attach(MIMEText(html_body, "html"))
    return msg


def _claim(delivery, from_status, now):
    """Move a row from ``from_status`` to "sending" for this worker only.

    Single guarded UPDATE on (status, attempts): a second worker holding the
    same snapshot matches zero rows and must not send. The claim counts as an
    attempt and holds a lease in next_attempt_at, after which
    retry_due_notifications() may take the row over.
    """
    lease = current_app.config.get("NOTIFICATION_SEND_LEASE_MINUTES", SEND_LEASE_MINUTES)
    result = db.session.execute(
        db.update(NotificationDelivery)
        .where(
            NotificationDelivery.id == delivery.id,
            NotificationDelivery.status == from_status,
            NotificationDelivery.attempts == delivery.attempts,
        )
        .values(
            status=NotificationDelivery.SENDING,
            attempts=NotificationDelivery.attempts + 1,
            next_attempt_at=now + timedelta(minutes=lease),
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    if result.rowcount != 1:
        logger.info(f"Notification {delivery.idempotency_key} claimed by another worker, skipping")
        return False
    db.session.refresh(delivery)
    return True


def _attempt(delivery):
    """Send a claimed ledger row and record the outcome. Commits."""
    app = current_app._get_current_object()
    now = datetime.now(timezone.utc)

    try:
        msg = _build_message(app, delivery.recipient, delivery.template, delivery.context or {})
        _send_smtp(app, msg)
    except Exception as e:
        delivery.last_error = str(e)[:1000]
        max_attempts = app.config.get("NOTIFICATION_MAX_ATTEMPTS", len(RETRY_BACKOFF_MINUTES))
        if delivery.attempts >= max_attempts:
            delivery.status = NotificationDelivery.FAILED
            delivery.next_attempt_at = None
            db.session.commit()
            logger.error(
                f"Notification {delivery.idempotency_key} failed permanently "
                f"after {delivery.attempts} attempts: {e}"
            )
            send_operator_alert("Customer notification failed permanently", {
                "key": delivery.idempotency_key,
                "attempts": delivery.attempts,
                "error": str(e)[:100],
            })
        else:
            backoff = RETRY_BACKOFF_MINUTES[min(delivery.attempts - 1, len(RETRY_BACKOFF_MINUTES) - 1)]
            delivery.status = NotificationDelivery.RETRYING
            delivery.next_attempt_at = now + timedelta(minutes=backoff)
            db.session.commit()
            logger.warning(
                f"Notification {delivery.idempotency_key} failed (attempt {delivery.attempts}), "
                f"retrying in {backoff} min: {e}"
            )
        return False

    delivery.status = NotificationDelivery.SENT
    delivery.sent_at = now
    delivery.next_attempt_at = None
    delivery.last_error = None
    db.session.commit()
    return True


def notify_customer(customer, template, idempotency_key, context=None):
    """Send a templated notification at most once per idempotency key.

    Returns the NotificationDelivery row, or None if the ledger itself could
    not be written.
    """
    context = dict(context or {})
    try:
        insert_ignore(
            NotificationDelivery,
            ["idempotency_key"],
            idempotency_key=idempotency_key,
            customer_id=customer.id,
            template=template,
            recipient=customer.email,
            context=context,
            status=NotificationDelivery.PENDING,
            attempts=0,
        )
        db.session.commit()

        delivery = NotificationDelivery.query.filter_by(idempotency_key=idempotency_key).one()
        if delivery.status != NotificationDelivery.PENDING:
            logger.info(f"Notification {idempotency_key} already {delivery.status}, not resending")
            return delivery

        if not delivery.recipient:
            db.session.execute(
                db.update(NotificationDelivery)
                .where(
                    NotificationDelivery.id == delivery.id,
                    NotificationDelivery.status == NotificationDelivery.PENDING,
                )
                .values(status=NotificationDelivery.SKIPPED, last_error="customer has no email address")
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
            db.session.refresh(delivery)
            logger.warning(f"Notification {idempotency_key} skipped: no recipient")
            return delivery

        if _claim(delivery, NotificationDelivery.PENDING, datetime.now(timezone.utc)):
            _attempt(delivery)
        return delivery
    except Exception as e:
        db.session.rollback()
        logger.error(f"Failed to record notification {idempotency_key}: {e}", exc_info=True)
        return None


def retry_due_notifications(now=None):
    """Resend ledger rows whose backoff has elapsed.

    Rows left in "sending" past their lease (a worker died mid-send) are
    taken over as well. Returns (sent, still_failing) counts.
    """
    now = now or datetime.now(timezone.utc)
    due = (
        NotificationDelivery.query
        .filter(NotificationDelivery.status.in_(
            [NotificationDelivery.RETRYING, NotificationDelivery.SENDING]
        ))
        .order_by(NotificationDelivery.next_attempt_at.asc())
        .all()
    )

    sent = failing = 0
    for delivery in due:
        if delivery.next_attempt_at and as_utc(delivery.next_attempt_at) > now:
            continue
        if delivery.status == NotificationDelivery.SENDING:
            logger.warning(f"Notification {delivery.idempotency_key} send lease expired, retrying")
        if not _claim(delivery, delivery.status, now):
            continue
        if _attempt(delivery):
            sent += 1
        else:
            failing += 1
    return sent, failing
