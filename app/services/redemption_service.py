"""Redemption engine — consume one meal for a presented token, at most once.

Everything after signature verification happens in one database
transaction:
1. lock the token row (SELECT ... FOR UPDATE) and check it is unused and
   bound to the claimed customer/date;
2. read the governing subscription and require active/trialing;
3. lock the entitlement row and check there are meals left;
4. guarded UPDATEs: used_at only WHERE used_at IS NULL, meals_redeemed+1
   only WHERE meals_redeemed < meals_allowed (rowcount checked);
5. insert the Redemption fact row (UNIQUE jti).

Any failed guard rolls the whole unit back. A concurrent loser on the same
token sees either the lock-then-used_at check or a zero-rowcount guard, and
gets ALREADY_USED. Rejections are returned, never raised.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.models.billing import Customer, Subscription
from app.models.entitlement import Entitlement
from app.models.meal_token import MealToken, Redemption
from app.services.audit_service import log_audit
from app.services.signing_service import TokenVerificationError, verify_daily_token
from app.services.token_service import normalize_short_code

logger = logging.getLogger(__name__)

INVALID_TOKEN = "INVALID_TOKEN"
EXPIRED = "EXPIRED"
TOKEN_NOT_FOUND = "TOKEN_NOT_FOUND"
ALREADY_USED = "ALREADY_USED"
TOKEN_MISMATCH = "TOKEN_MISMATCH"
SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
NO_ENTITLEMENT = "NO_ENTITLEMENT"
LIMIT_REACHED = "LIMIT_REACHED"

MESSAGES = {
    INVALID_TOKEN: "This code is not valid.",
    EXPIRED: "This code has expired.",
    TOKEN_NOT_FOUND: "This code was not found.",
    ALREADY_USED: "This code has already been used.",
    TOKEN_MISMATCH: "This code belongs to someone else.",
    SUBSCRIPTION_INACTIVE: "This meal plan is not active.",
    NO_ENTITLEMENT: "No meal is scheduled for today.",
    LIMIT_REACHED: "Today's meal has already been collected.",
}


@dataclass
class RedemptionResult:
    success: bool
    reason: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    service_date: Optional[date] = None
    redemption_id: Optional[str] = None

    @property
    def message(self):
        if self.success:
            return "Enjoy your meal!"
        return MESSAGES.get(self.reason, "Redemption failed.")

    def to_dict(self):
        data = {"success": self.success, "message": self.message}
        if self.success:
            data.update({
                "customer_id": self.customer_id,
                "customer_name": self.customer_name,
                "service_date": self.service_date.isoformat(),
                "redemption_id": self.redemption_id,
            })
        else:
            data["reason"] = self.reason
        return data


def _reject(reason, **kwargs):
    db.session.rollback()
    return RedemptionResult(success=False, reason=reason, **kwargs)


def resolve_presented_token(presented):
    """Return the signed token for a presented value (raw JWT or short code).

    Returns None if a short code matches no token.
    """
    presented = (presented or "").strip()
    if presented.count(".") == 2:
        return presented
    code = normalize_short_code(presented)
    if code is None:
        return presented
    token = MealToken.query.filter_by(short_code=code).first()
    return token.jwt_token if token else None


def _lock_token(jti):
    return (
        MealToken.query
        .filter_by(jti=jti)
        .with_for_update()
        .populate_existing()
        .first()
    )


def redeem(presented, point_of_sale_id, presenter_customer_id=None):
    """Redeem a presented token at ``point_of_sale_id``. Returns RedemptionResult."""
    signed = resolve_presented_token(presented)
    if signed is None:
        logger.info(f"Redemption at {point_of_sale_id}: unknown short code")
        return RedemptionResult(success=False, reason=TOKEN_NOT_FOUND)

    # 1-2. Signature, algorithm, issuer, expiry.
    try:
        claims = verify_daily_token(signed)
    except TokenVerificationError as e:
        logger.info(f"Redemption at {point_of_sale_id} rejected: {e.code} ({e})")
        return RedemptionResult(success=False, reason=e.code)

    jti = claims["jti"]
    customer_id = claims["sub"]
    service_date = datetime.strptime(claims["service_date"], "%Y-%m-%d").date()

    try:
        # 3. Token row, locked.
        token = _lock_token(jti)
        if token is None:
            return _reject(TOKEN_NOT_FOUND)
        if token.customer_id != customer_id or token.service_date != service_date:
            logger.warning(f"Token {jti} claims do not match its stored row")
            return _reject(TOKEN_MISMATCH)
        if token.used_at is not None:
            return _reject(ALREADY_USED)

        # 4. Presenter binding, when the channel identifies the presenter.
        if presenter_customer_id is not None and presenter_customer_id != customer_id:
            logger.warning(
                f"Token {jti} for {customer_id} presented by {presenter_customer_id} "
                f"at {point_of_sale_id}"
            )
            return _reject(TOKEN_MISMATCH)

        # 5. Governing subscription, re-checked now rather than at issuance.
        subscription = (
            Subscription.governing_query(customer_id)
            .with_for_update(read=True)
            .populate_existing()
            .first()
        )
        if subscription is None or subscription.status not in Subscription.SERVICEABLE:
            return _reject(SUBSCRIPTION_INACTIVE)

        entitlement = (
            Entitlement.query
            .filter_by(customer_id=customer_id, service_date=service_date)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if entitlement is None:
            return _reject(NO_ENTITLEMENT)
        if entitlement.meals_redeemed >= entitlement.meals_allowed:
            return _reject(LIMIT_REACHED)

        # 6. Guarded writes.
        now = datetime.now(timezone.utc)
        claimed = db.session.execute(
            db.update(MealToken)
            .where(MealToken.id == token.id, MealToken.used_at.is_(None))
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            return _reject(ALREADY_USED)

        consumed = db.session.execute(
            db.update(Entitlement)
            .where(
                Entitlement.id == entitlement.id,
                Entitlement.meals_redeemed < Entitlement.meals_allowed,
            )
            .values(meals_redeemed=Entitlement.meals_redeemed + 1)
            .execution_options(synchronize_session=False)
        )
        if consumed.rowcount != 1:
            return _reject(LIMIT_REACHED)

        redemption = Redemption(
            jti=jti,
            customer_id=customer_id,
            service_date=service_date,
            kiosk_id=point_of_sale_id,
        )
        db.session.add(redemption)
        db.session.flush()

        log_audit(f"kiosk:{point_of_sale_id}", "meal.redeemed", "customer", customer_id, {
            "customer_id": customer_id,
            "jti": jti,
            "service_date": service_date.isoformat(),
            "kiosk_id": point_of_sale_id,
        })
        customer_name = db.session.get(Customer, customer_id).name
        redemption_id = redemption.id
        db.session.commit()
    except IntegrityError:
        # UNIQUE(redemptions.jti) or the entitlement CHECK: someone else won.
        logger.info(f"Redemption of {jti} lost a race at commit")
        return _reject(ALREADY_USED)
    except Exception:
        db.session.rollback()
        raise

    logger.info(f"Redeemed token {jti} for customer {customer_id} at {point_of_sale_id}")
    return RedemptionResult(
        success=True,
        customer_id=customer_id,
        customer_name=customer_name,
        service_date=service_date,
        redemption_id=redemption_id,
    )
