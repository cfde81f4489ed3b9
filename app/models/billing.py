"""Billing models.

- Customer: one row per subscriber, holding whichever payment processor id
  created it plus an optional secondary-channel (Telegram) identity.
- Subscription: one row per processor-side subscription object. status is the
  canonical, processor-agnostic state and the source of truth for
  entitlement gating. Mutated only by the reconciler.
"""

import uuid

from app.extensions import db


class Customer(db.Model):
    __tablename__ = "customers"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    payment_provider = db.Column(db.String(20), nullable=False)  # stripe | paypal
    stripe_customer_id = db.Column(db.String(255), unique=True, nullable=True)
    paypal_payer_id = db.Column(db.String(255), unique=True, nullable=True)
    email = db.Column(db.String(255), nullable=True)
    name = db.Column(db.String(255), nullable=True)
    telegram_handle = db.Column(db.String(64), nullable=True)
    telegram_user_id = db.Column(db.String(64), nullable=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    subscriptions = db.relationship("Subscription", back_populates="customer")

    __table_args__ = (
        db.CheckConstraint(
            "payment_provider IN ('stripe', 'paypal')",
            name="ck_customers_payment_provider",
        ),
    )

    def __repr__(self):
        return f"<Customer {self.id} ({self.payment_provider})>"


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    # -- Canonical statuses --
    APPROVAL_PENDING = "approval_pending"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELED = "canceled"
    EXPIRED = "expired"

    STATUSES = [
        APPROVAL_PENDING,
        TRIALING,
        ACTIVE,
        PAST_DUE,
        SUSPENDED,
        CANCELED,
        EXPIRED,
    ]

    # Statuses that may redeem meals and receive entitlements.
    SERVICEABLE = (ACTIVE, TRIALING)

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_id = db.Column(
        db.String(36), db.ForeignKey("customers.id"), nullable=False, index=True
    )
    payment_provider = db.Column(db.String(20), nullable=False)  # stripe | paypal
    stripe_subscription_id = db.Column(db.String(255), unique=True, nullable=True)
    paypal_subscription_id = db.Column(db.String(255), unique=True, nullable=True)
    status = db.Column(db.String(30), nullable=False)
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    chargeback_at = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_failure_count = db.Column(db.Integer, nullable=False, default=0)
    last_payment_failure_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    customer = db.relationship("Customer", back_populates="subscriptions")

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('approval_pending', 'trialing', 'active', 'past_due', "
            "'suspended', 'canceled', 'expired')",
            name="ck_subscriptions_status",
        ),
        db.CheckConstraint(
            "chargeback_at IS NULL OR status = 'suspended'",
            name="ck_subscriptions_chargeback_suspended",
        ),
        db.CheckConstraint(
            "(payment_provider = 'stripe' AND stripe_subscription_id IS NOT NULL) OR "
            "(payment_provider = 'paypal' AND paypal_subscription_id IS NOT NULL)",
            name="ck_subscriptions_provider_id",
        ),
        db.Index("idx_subscriptions_customer_created", "customer_id", "created_at"),
    )

    @classmethod
    def latest_first(cls):
        """Ordering under which a customer's first row is their governing subscription."""
        return (cls.created_at.desc(), cls.id.desc())

    @classmethod
    def governing_query(cls, customer_id):
        """Query for one customer's subscriptions, governing one first."""
        return cls.query.filter_by(customer_id=customer_id).order_by(*cls.latest_first())

    @property
    def provider_subscription_id(self):
        if self.payment_provider == "paypal":
            return self.paypal_subscription_id
        return self.stripe_subscription_id

    def __repr__(self):
        return f"<Subscription {self.provider_subscription_id} ({self.status})>"
