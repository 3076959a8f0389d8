"""
Shared fixtures: in-memory database, frozen clock, fake payment gateway and
a small product catalogue.
"""

import json
import os
import sys
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from backend.billing.exceptions import ExternalServiceException, WebhookVerificationException
from backend.billing.gateway import GatewaySubscription, PaymentGateway
from backend.database import build_engine, build_session_factory, create_tables, session_scope
from backend.models import (
    BillingInterval,
    Feature,
    MemberRole,
    Organization,
    OrganizationMember,
    PlanFeature,
    PricingPlan,
    PricingTier,
    PricingType,
    Subscription,
    SubscriptionStatus
)


PERIOD_START = datetime(2024, 1, 1)
PERIOD_END = datetime(2024, 2, 1)


class FrozenClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway(PaymentGateway):
    """In-memory gateway that records calls and can be told to fail"""

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.subscription_status = "active"
        self.proration_amount = 1234
        self.period = (PERIOD_START, PERIOD_END)
        self.usage_records = {}
        self._counter = 0

    def called(self, name):
        return [kwargs for call, kwargs in self.calls if call == name]

    def _call(self, name, **kwargs):
        self.calls.append((name, kwargs))
        if name in self.failures:
            raise self.failures[name]

    def _next_id(self, prefix):
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _subscription(self, subscription_id, status=None, price_ids=()):
        return GatewaySubscription(
            id=subscription_id,
            status=status or self.subscription_status,
            current_period_start=self.period[0],
            current_period_end=self.period[1],
            items={price_id: f"si_{price_id}" for price_id in price_ids}
        )

    def create_subscription(self, customer_id, price_id, quantity=1, trial_period_days=None,
                            metered_price_ids=None, coupon_id=None, metadata=None):
        self._call("create_subscription", customer_id=customer_id, price_id=price_id,
                   quantity=quantity, trial_period_days=trial_period_days,
                   metered_price_ids=metered_price_ids, coupon_id=coupon_id)
        return self._subscription(self._next_id("sub"),
                                  price_ids=[price_id] + list(metered_price_ids or []))

    def update_subscription_plan(self, subscription_id, item_id, price_id, quantity,
                                 proration_behavior, proration_date=None):
        self._call("update_subscription_plan", subscription_id=subscription_id, item_id=item_id,
                   price_id=price_id, quantity=quantity, proration_behavior=proration_behavior)
        return self._subscription(subscription_id, price_ids=[price_id])

    def cancel_subscription(self, subscription_id, at_period_end=True):
        self._call("cancel_subscription", subscription_id=subscription_id, at_period_end=at_period_end)
        return self._subscription(subscription_id, status="active" if at_period_end else "canceled")

    def resume_subscription(self, subscription_id):
        self._call("resume_subscription", subscription_id=subscription_id)
        return self._subscription(subscription_id)

    def pause_subscription(self, subscription_id):
        self._call("pause_subscription", subscription_id=subscription_id)
        return self._subscription(subscription_id, status="paused")

    def unpause_subscription(self, subscription_id):
        self._call("unpause_subscription", subscription_id=subscription_id)
        return self._subscription(subscription_id)

    def apply_coupon(self, subscription_id, coupon_id):
        self._call("apply_coupon", subscription_id=subscription_id, coupon_id=coupon_id)
        return self._subscription(subscription_id)

    def preview_proration(self, customer_id, subscription_id, item_id, price_id, quantity,
                          proration_date=None):
        self._call("preview_proration", subscription_id=subscription_id, price_id=price_id)
        return self.proration_amount

    def create_usage_record(self, item_id, quantity, timestamp, idempotency_key):
        self._call("create_usage_record", item_id=item_id, quantity=quantity,
                   idempotency_key=idempotency_key)
        # Same key counts once, as the real gateway does
        if idempotency_key not in self.usage_records:
            self.usage_records[idempotency_key] = (item_id, quantity, self._next_id("mbur"))
        return self.usage_records[idempotency_key][2]

    def retrieve_customer(self, customer_id):
        self._call("retrieve_customer", customer_id=customer_id)
        return {"id": customer_id}

    def verify_webhook_signature(self, payload, signature):
        self._call("verify_webhook_signature", signature=signature)
        if signature != "valid-signature":
            raise WebhookVerificationException("Invalid signature")
        return json.loads(payload)

    def reported_quantity(self):
        return sum(quantity for _, quantity, _ in self.usage_records.values())


def gateway_error(message="gateway unavailable"):
    return ExternalServiceException(message, service="stripe")


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", echo=False)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 1, 15, 12, 0, 0))


@pytest.fixture
def gateway():
    return FakeGateway()


def make_catalogue(session_factory):
    """Organizations, features and plans shared by the service tests"""
    with session_scope(session_factory) as session:
        acme = Organization(name="Acme", email="billing@acme.test", gateway_customer_id="cus_acme")
        local = Organization(name="Local Co", email="billing@local.test")
        session.add_all([acme, local])
        session.flush()

        session.add_all([
            OrganizationMember(organization_id=acme.id, user_id="user-owner", role=MemberRole.OWNER),
            OrganizationMember(organization_id=acme.id, user_id="user-admin", role=MemberRole.ADMIN),
            OrganizationMember(organization_id=acme.id, user_id="user-member", role=MemberRole.MEMBER),
            OrganizationMember(organization_id=local.id, user_id="local-admin", role=MemberRole.ADMIN),
        ])

        api_calls = Feature(code="api_calls", name="API Calls", unit="call",
                            gateway_price_id="price_api_calls")
        storage = Feature(code="storage_gb", name="Storage", unit="GB")
        reports = Feature(code="reports", name="Reports")
        session.add_all([api_calls, storage, reports])
        session.flush()

        session.add(PricingTier(feature_id=api_calls.id, min_quantity=0, max_quantity=1000,
                                unit_price=Decimal("0.01")))

        basic = PricingPlan(name="Basic", pricing_type=PricingType.FLAT, base_price=1000,
                            currency="USD", billing_interval=BillingInterval.MONTHLY,
                            gateway_price_id="price_basic")
        pro = PricingPlan(name="Pro", pricing_type=PricingType.FLAT, base_price=5000,
                          currency="USD", billing_interval=BillingInterval.MONTHLY,
                          gateway_price_id="price_pro")
        trial = PricingPlan(name="Trial Plan", pricing_type=PricingType.FLAT, base_price=2000,
                            currency="USD", billing_interval=BillingInterval.MONTHLY,
                            trial_days=14, gateway_price_id="price_trial")
        retired = PricingPlan(name="Retired", pricing_type=PricingType.FLAT, base_price=500,
                              currency="USD", billing_interval=BillingInterval.MONTHLY,
                              is_active=False)
        session.add_all([basic, pro, trial, retired])
        session.flush()

        session.add_all([
            PlanFeature(plan_id=basic.id, feature_id=api_calls.id, usage_limit=1000),
            PlanFeature(plan_id=basic.id, feature_id=storage.id, usage_limit=10),
            PlanFeature(plan_id=pro.id, feature_id=api_calls.id, usage_limit=None),
            PlanFeature(plan_id=pro.id, feature_id=storage.id, usage_limit=100),
            PlanFeature(plan_id=pro.id, feature_id=reports.id, usage_limit=50),
            PlanFeature(plan_id=trial.id, feature_id=api_calls.id, usage_limit=1000),
        ])

        return SimpleNamespace(
            acme_id=acme.id,
            local_id=local.id,
            api_calls_id=api_calls.id,
            storage_id=storage.id,
            reports_id=reports.id,
            basic_id=basic.id,
            pro_id=pro.id,
            trial_id=trial.id,
            retired_id=retired.id
        )


@pytest.fixture
def catalogue(session_factory):
    return make_catalogue(session_factory)


def add_subscription(session_factory, organization_id, plan_id, status=SubscriptionStatus.ACTIVE,
                     gateway_subscription_id=None, gateway_items=None, **fields):
    """Insert a subscription directly, bypassing the manager"""
    plan_price_id = fields.pop("plan_price_id", None)
    with session_scope(session_factory) as session:
        subscription = Subscription(
            organization_id=organization_id,
            plan_id=plan_id,
            status=status,
            quantity=fields.pop("quantity", 1),
            current_period_start=fields.pop("current_period_start", PERIOD_START),
            current_period_end=fields.pop("current_period_end", PERIOD_END),
            gateway_subscription_id=gateway_subscription_id,
            gateway_items=gateway_items or {},
            gateway_item_id=(gateway_items or {}).get(plan_price_id),
            **fields
        )
        session.add(subscription)
        session.flush()
        return subscription.id
