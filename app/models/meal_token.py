"""Meal token and redemption models.

- MealToken: metadata for one signed daily token per (customer, service_date).
  used_at goes from NULL to a timestamp exactly once, at redemption.
- Redemption: append-only fact row written in the same transaction that
  consumes the token. UNIQUE(jti) makes a second consumption impossible.
"""

import uuid

from app.extensions import db


class MealToken(db.Model):
    __tablename__ = "meal_tokens"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=False
    )
    service_date = db.Column(db.Date, nullable=False)
    jti = db.Column(db.String(64), unique=True, nullable=False)
    short_code = db.Column(
        db.String(12), unique=True, nullable=False
    )  # human-typeable fallback for the QR image
    jwt_token = db.Column(db.Text, nullable=False)
    issued_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    customer = db.relationship("Customer")

    __table_args__ = (
        db.UniqueConstraint(
            "customer_id", "service_date", name="uq_meal_tokens_customer_date"
        ),
    )

    def __repr__(self):
        return f"<MealToken {self.short_code} {self.service_date}>"


class Redemption(db.Model):
    __tablename__ = "redemptions"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    jti = db.Column(db.String(64), unique=True, nullable=False)
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=False
    )
    service_date = db.Column(db.Date, nullable=False, index=True)
    kiosk_id = db.Column(db.String(100), nullable=False)  # point-of-sale identifier
    redeemed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<Redemption {self.jti} at {self.kiosk_id}>"
