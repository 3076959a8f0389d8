"""
Tests for coupon validation and redemption
"""

from datetime import datetime
from decimal import Decimal

import pytest

from backend.billing.exceptions import ExternalServiceException, ValidationException
from backend.billing.models import CouponValidation
from backend.billing.promotions import PromotionService, redeem
from backend.billing.repository import BillingRepository
from backend.database import session_scope
from backend.models import Coupon, Promotion, PromotionType, Subscription, SubscriptionStatus

from conftest import add_subscription, gateway_error


def add_coupon(session_factory, code, plan_ids, **promotion_fields):
    coupon_fields = {key: promotion_fields.pop(key) for key in ("coupon_max", "coupon_count")
                     if key in promotion_fields}
    with session_scope(session_factory) as session:
        promotion = Promotion(
            name=f"{code} promotion",
            promotion_type=promotion_fields.pop("promotion_type", PromotionType.PERCENTAGE),
            value=promotion_fields.pop("value", Decimal("20")),
            applicable_plan_ids=plan_ids,
            **promotion_fields
        )
        session.add(promotion)
        session.flush()
        coupon = Coupon(
            code=code,
            promotion_id=promotion.id,
            max_redemptions=coupon_fields.get("coupon_max"),
            redemption_count=coupon_fields.get("coupon_count", 0)
        )
        session.add(coupon)
        session.flush()
        return coupon.id


@pytest.fixture
def service(session_factory, gateway, clock):
    return PromotionService(session_factory, gateway=gateway, clock=clock)


class TestValidateCoupon:

    def test_valid_coupon(self, service, session_factory, catalogue):
        add_coupon(session_factory, "SAVE20", [catalogue.basic_id])
        validation = service.validate_coupon_code("SAVE20", plan_id=catalogue.basic_id)
        assert validation.valid
        assert validation.reason is None

    @pytest.mark.parametrize("fields,reason", [
        ({"is_active": False}, "inactive"),
        ({"start_date": datetime(2024, 2, 1)}, "not_started"),
        ({"end_date": datetime(2024, 1, 10)}, "expired"),
        ({"coupon_max": 1, "coupon_count": 1}, "coupon_redemption_limit_reached"),
        ({"max_redemptions": 5, "redemption_count": 5}, "promotion_redemption_limit_reached"),
    ])
    def test_rejection_reasons(self, service, session_factory, catalogue, fields, reason):
        add_coupon(session_factory, "CODE", [catalogue.basic_id], **fields)
        validation = service.validate_coupon_code("CODE", plan_id=catalogue.basic_id)
        assert not validation.valid
        assert validation.reason == reason

    def test_unknown_code(self, service, catalogue):
        assert service.validate_coupon_code("NOPE").reason == "not_found"

    def test_other_plan_is_not_applicable(self, service, session_factory, catalogue):
        add_coupon(session_factory, "PROONLY", [catalogue.pro_id])
        validation = service.validate_coupon_code("PROONLY", plan_id=catalogue.basic_id)
        assert validation.reason == "not_applicable"

    def test_active_promotions_for_plan(self, service, session_factory, catalogue):
        add_coupon(session_factory, "BASIC", [catalogue.basic_id])
        add_coupon(session_factory, "PRO", [catalogue.pro_id])
        add_coupon(session_factory, "OLD", [catalogue.basic_id], end_date=datetime(2023, 12, 31))

        names = [promotion.name for promotion in service.get_active_promotions(catalogue.basic_id)]
        assert names == ["BASIC promotion"]


class TestApplyCoupon:

    def test_redemption_updates_counters_and_gateway(self, service, gateway, session_factory, catalogue):
        coupon_id = add_coupon(session_factory, "SAVE20", [catalogue.basic_id],
                               gateway_coupon_id="co_save20")
        subscription_id = add_subscription(session_factory, catalogue.acme_id, catalogue.basic_id,
                                           gateway_subscription_id="sub_coupon")

        subscription = service.apply_coupon(subscription_id, "SAVE20")

        assert subscription.coupon_id == coupon_id
        assert gateway.called("apply_coupon") == [
            {"subscription_id": "sub_coupon", "coupon_id": "co_save20"}
        ]
        with session_scope(session_factory) as session:
            coupon = session.get(Coupon, coupon_id)
            assert coupon.redemption_count == 1
            assert coupon.promotion.redemption_count == 1

    def test_gateway_failure_leaves_counters(self, service, gateway, session_factory, catalogue):
        coupon_id = add_coupon(session_factory, "SAVE20", [catalogue.basic_id],
                               gateway_coupon_id="co_save20")
        subscription_id = add_subscription(session_factory, catalogue.acme_id, catalogue.basic_id,
                                           gateway_subscription_id="sub_coupon")
        gateway.failures["apply_coupon"] = gateway_error()

        with pytest.raises(ExternalServiceException):
            service.apply_coupon(subscription_id, "SAVE20")

        with session_scope(session_factory) as session:
            assert session.get(Coupon, coupon_id).redemption_count == 0

    def test_exhausted_coupon_is_rejected(self, service, session_factory, catalogue):
        add_coupon(session_factory, "ONCE", [catalogue.basic_id], coupon_max=1)
        first = add_subscription(session_factory, catalogue.acme_id, catalogue.basic_id)
        second = add_subscription(session_factory, catalogue.local_id, catalogue.basic_id)

        service.apply_coupon(first, "ONCE")
        with pytest.raises(ValidationException) as exc_info:
            service.apply_coupon(second, "ONCE")
        assert exc_info.value.details["reason"] == "coupon_redemption_limit_reached"

    def test_canceled_subscription_is_rejected(self, service, session_factory, catalogue):
        add_coupon(session_factory, "SAVE20", [catalogue.basic_id])
        canceled = add_subscription(session_factory, catalogue.acme_id, catalogue.basic_id,
                                    status=SubscriptionStatus.CANCELED)
        with pytest.raises(ValidationException):
            service.apply_coupon(canceled, "SAVE20")

    def test_cap_is_enforced_at_redemption_time(self, service, session_factory, catalogue, mocker):
        # Another redemption took the last slot after the coupon was validated
        coupon_id = add_coupon(session_factory, "LAST", [catalogue.basic_id],
                               coupon_max=1, coupon_count=1)
        subscription_id = add_subscription(session_factory, catalogue.acme_id, catalogue.basic_id)
        mocker.patch("backend.billing.promotions.check_coupon",
                     return_value=CouponValidation(valid=True, coupon_id=coupon_id))

        with pytest.raises(ValidationException) as exc_info:
            service.apply_coupon(subscription_id, "LAST")

        assert exc_info.value.details["reason"] == "coupon_redemption_limit_reached"
        with session_scope(session_factory) as session:
            assert session.get(Coupon, coupon_id).redemption_count == 1
            assert session.get(Subscription, subscription_id).coupon_id is None

    def test_promotion_cap_rolls_back_the_coupon_count(self, session_factory, catalogue):
        coupon_id = add_coupon(session_factory, "SHARED", [catalogue.basic_id],
                               max_redemptions=1, redemption_count=1)

        with pytest.raises(ValidationException):
            with session_scope(session_factory) as session:
                repo = BillingRepository(session)
                redeem(repo, repo.get_coupon_by_code("SHARED"), None, "apply_coupon")

        with session_scope(session_factory) as session:
            coupon = session.get(Coupon, coupon_id)
            assert coupon.redemption_count == 0
            assert coupon.promotion.redemption_count == 1
