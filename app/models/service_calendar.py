"""Service calendar overrides.

By default a date is a service day when its weekday is in SERVICE_WEEKDAYS.
A row here overrides that for one date (holiday closure, or a special
opening on a normally closed day).
"""

import uuid

from app.extensions import db


class ServiceException(db.Model):
    __tablename__ = "service_exceptions"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    exception_date = db.Column(db.Date, unique=True, nullable=False)
    is_service_day = db.Column(db.Boolean, nullable=False, default=False)
    reason = db.Column(db.String(255), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<ServiceException {self.exception_date} open={self.is_service_day}>"
