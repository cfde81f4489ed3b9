"""Operator alerts via the Telegram Bot API.

Fire-and-forget: an alert that cannot be delivered is logged and dropped.
Nothing on the webhook, issuance or redemption path ever waits on or fails
because of this module.

Usage:
    from app.services.alert_service import send_operator_alert

    send_operator_alert("Webhook exhausted", {"source": "stripe", "event_id": "evt_1"})
"""

import logging
import re

import requests
from flask import current_app

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"

MAX_LISTED_ERRORS = 5
MAX_ERROR_LENGTH = 100

_MARKDOWN_SPECIAL = re.compile(r"([_*\[\]`])")


def escape_markdown(text):
    """Escape Telegram legacy-Markdown control characters."""
    return _MARKDOWN_SPECIAL.sub(r"\\\1", str(text))


def send_operator_alert(message, context=None, preformatted=False):
    """Post an alert to the operator chat. Returns True if Telegram accepted it.

    ``preformatted`` messages are already Markdown-escaped (see
    format_job_error_alert) and are sent as-is.
    """
    config = current_app.config
    token = config.get("TELEGRAM_BOT_TOKEN")
    chat_id = config.get("OPERATOR_ALERT_CHAT_ID")

    if not config.get("OPERATOR_ALERTS_ENABLED", True):
        logger.info(f"Operator alerts disabled, not sent: {message}")
        return False
    if not token or not chat_id:
        logger.warning(f"Operator alert not sent (Telegram not configured): {message}")
        return False

    body = message if preformatted else escape_markdown(message)
    text = f"🚨 *Operator alert*\n{body}"
    if context:
        lines = [f"{escape_markdown(k)}: `{v}`" for k, v in context.items()]
        text += "\n" + "\n".join(lines)

    try:
        resp = requests.post(
            TELEGRAM_API_URL.format(token=token),
            json={"chat_id": chat_id, "text": text, "parse_mode": "Markdown"},
            timeout=config.get("EXTERNAL_CALL_TIMEOUT", 10),
        )
        resp.raise_for_status()
        logger.info(f"Operator alert sent: {message}")
        return True
    except Exception as e:
        logger.error(f"Failed to send operator alert '{message}': {e}")
        return False


def format_job_error_alert(job_name, errors, total=None):
    """Build one alert body for a batch job's per-customer failures.

    Lists at most the first five errors, each escaped and cut to 100 chars.
    """
    header = f"Job {escape_markdown(job_name)} finished with {len(errors)} error(s)"
    if total is not None:
        header += f" out of {total}"

    lines = [header]
    for err in errors[:MAX_LISTED_ERRORS]:
        err = str(err)
        if len(err) > MAX_ERROR_LENGTH:
            err = err[:MAX_ERROR_LENGTH - 3] + "..."
        lines.append(f"• {escape_markdown(err)}")

    remaining = len(errors) - MAX_LISTED_ERRORS
    if remaining > 0:
        lines.append(f"...and {remaining} more")
    return "\n".join(lines)
