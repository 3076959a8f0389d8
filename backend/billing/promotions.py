"""
Promotions and coupon redemption
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import sessionmaker

from ..database import session_scope
from ..models import Coupon, Promotion, Subscription, SubscriptionStatus
from ..utils.clock import utcnow
from .exceptions import ValidationException
from .gateway import PaymentGateway
from .models import CouponValidation
from .pricing import promotion_applies
from .repository import BillingRepository

logger = logging.getLogger(__name__)


def check_coupon(coupon: Optional[Coupon], as_of: datetime, plan=None) -> CouponValidation:
    """Validate a loaded coupon against its promotion's rules"""
    if coupon is None:
        return CouponValidation(valid=False, reason="not_found")

    promotion: Promotion = coupon.promotion

    def invalid(reason: str) -> CouponValidation:
        return CouponValidation(valid=False, reason=reason, coupon_id=coupon.id, promotion_id=promotion.id)

    if not coupon.is_active or not promotion.is_active:
        return invalid("inactive")
    if promotion.start_date and as_of < promotion.start_date:
        return invalid("not_started")
    if promotion.end_date and as_of > promotion.end_date:
        return invalid("expired")
    if coupon.max_redemptions is not None and coupon.redemption_count >= coupon.max_redemptions:
        return invalid("coupon_redemption_limit_reached")
    if promotion.max_redemptions is not None and promotion.redemption_count >= promotion.max_redemptions:
        return invalid("promotion_redemption_limit_reached")
    if plan is not None and not promotion_applies(promotion, plan, as_of):
        return invalid("not_applicable")

    return CouponValidation(valid=True, coupon_id=coupon.id, promotion_id=promotion.id)


class PromotionService:
    """Looks up live promotions and redeems coupon codes"""

    def __init__(self, session_factory: sessionmaker = None,
                 gateway: Optional[PaymentGateway] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.gateway = gateway
        self.clock = clock

    def get_active_promotions(self, plan_id: Optional[str] = None,
                              as_of: Optional[datetime] = None) -> List[Promotion]:
        """
        Promotions live at ``as_of`` (now by default), optionally only those
        applicable to a plan
        """
        as_of = as_of or self.clock()
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            promotions = repo.list_active_promotions(as_of)
            if plan_id is None:
                return promotions
            plan = repo.get_plan(plan_id)
            return [promotion for promotion in promotions if promotion_applies(promotion, plan, as_of)]

    def validate_coupon_code(self, code: str, plan_id: Optional[str] = None,
                             as_of: Optional[datetime] = None) -> CouponValidation:
        """Check whether a code can be redeemed (for a plan, if given)"""
        as_of = as_of or self.clock()
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            plan = repo.get_plan(plan_id) if plan_id else None
            return check_coupon(repo.get_coupon_by_code(code), as_of, plan)

    def apply_coupon(self, subscription_id: str, code: str) -> Subscription:
        """
        Redeem a coupon on a subscription

        The redemption is counted before the gateway is updated and rolled
        back with the rest of the unit of work if the gateway fails.

        Raises:
            ValidationException: If the code cannot be redeemed
            ExternalServiceException: If the gateway rejects the coupon
        """
        now = self.clock()
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            subscription = repo.get_subscription(subscription_id, for_update=True)
            if subscription.status == SubscriptionStatus.CANCELED:
                raise ValidationException(
                    f"Cannot apply a coupon to canceled subscription {subscription_id}",
                    entity_id=subscription_id, operation="apply_coupon"
                )

            coupon = repo.get_coupon_by_code(code)
            validation = check_coupon(coupon, now, subscription.plan)
            if not validation.valid:
                raise ValidationException(
                    f"Coupon {code} cannot be applied: {validation.reason}",
                    entity_id=subscription_id, operation="apply_coupon",
                    details={"reason": validation.reason}
                )

            redeem(repo, coupon, subscription_id, "apply_coupon")

            promotion = coupon.promotion
            if self.gateway and subscription.gateway_subscription_id and promotion.gateway_coupon_id:
                self.gateway.apply_coupon(subscription.gateway_subscription_id, promotion.gateway_coupon_id)

            subscription.coupon_id = coupon.id
            repo.flush(subscription_id, "apply_coupon")

        logger.info(f"Applied coupon {code} to subscription {subscription_id}")
        return subscription


def redeem(repo: BillingRepository, coupon: Coupon, entity_id: Optional[str], operation: str) -> None:
    """
    Count one redemption on the coupon and its promotion

    Raises:
        ValidationException: If a redemption cap was reached since the
            coupon was validated
    """
    reason = repo.redeem_coupon(coupon)
    if reason is not None:
        raise ValidationException(
            f"Coupon {coupon.code} cannot be applied: {reason}",
            entity_id=entity_id, operation=operation, details={"reason": reason}
        )
