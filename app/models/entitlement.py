"""Entitlement and skip models.

- Entitlement: the right to redeem meals_allowed meals on one service date.
  0 <= meals_redeemed <= meals_allowed is enforced by a CHECK constraint.
- Skip: a customer's request not to be served on a date. Skip intent always
  wins over issuance; it can only ever lower meals_allowed.
"""

import uuid

from app.extensions import db


class Entitlement(db.Model):
    __tablename__ = "entitlements"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=False
    )
    service_date = db.Column(db.Date, nullable=False, index=True)
    meals_allowed = db.Column(db.Integer, nullable=False, default=1)
    meals_redeemed = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    customer = db.relationship("Customer")

    __table_args__ = (
        db.UniqueConstraint(
            "customer_id", "service_date", name="uq_entitlements_customer_date"
        ),
        db.CheckConstraint(
            "meals_redeemed >= 0 AND meals_redeemed <= meals_allowed",
            name="ck_entitlements_redeemed_within_allowed",
        ),
    )

    @property
    def remaining(self):
        return self.meals_allowed - self.meals_redeemed

    def __repr__(self):
        return (
            f"<Entitlement {self.customer_id} {self.service_date} "
            f"{self.meals_redeemed}/{self.meals_allowed}>"
        )


class Skip(db.Model):
    __tablename__ = "skips"

    SOURCES = ["telegram", "admin"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=False
    )
    skip_date = db.Column(db.Date, nullable=False, index=True)
    source = db.Column(db.String(20), nullable=False)  # telegram | admin
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    __table_args__ = (
        db.UniqueConstraint("customer_id", "skip_date", name="uq_skips_customer_date"),
        db.CheckConstraint("source IN ('telegram', 'admin')", name="ck_skips_source"),
    )

    def __repr__(self):
        return f"<Skip {self.customer_id} {self.skip_date}>"
