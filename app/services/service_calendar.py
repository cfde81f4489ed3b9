"""Service calendar — service-timezone dates and service-day rules.

All "today" and "end of day" arithmetic happens in SERVICE_TIMEZONE, not
UTC, so a token issued at 06:00 local expires at local midnight regardless
of the server's clock zone.
"""

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

from flask import current_app

from app.models.service_calendar import ServiceException


def service_tz():
    return ZoneInfo(current_app.config["SERVICE_TIMEZONE"])


def as_utc(value):
    """Normalize a datetime to aware UTC (SQLite hands back naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def today_in_service_tz(now=None):
    now = now or datetime.now(timezone.utc)
    return now.astimezone(service_tz()).date()


def start_of_service_day(service_date):
    """Midnight opening ``service_date`` in the service timezone, as UTC."""
    local_start = datetime.combine(service_date, time(0, 0), tzinfo=service_tz())
    return local_start.astimezone(timezone.utc)


def end_of_service_day(service_date):
    """Last second of ``service_date`` in the service timezone, as UTC."""
    local_end = datetime.combine(service_date, time(23, 59, 59), tzinfo=service_tz())
    return local_end.astimezone(timezone.utc)


def is_service_day(service_date):
    """True if meals are served on ``service_date``.

    A service_exceptions row for the date wins; otherwise the ISO weekday is
    checked against SERVICE_WEEKDAYS.
    """
    override = ServiceException.query.filter_by(exception_date=service_date).first()
    if override is not None:
        return override.is_service_day
    return service_date.isoweekday() in current_app.config["SERVICE_WEEKDAYS"]


def parse_service_date(value):
    """Parse a YYYY-MM-DD string, or return today's service date for None."""
    if value is None:
        return today_in_service_tz()
    if isinstance(value, date):
        return value
    return datetime.strptime(value, "%Y-%m-%d").date()
