"""
Tests for usage metering, limits and gateway reconciliation
"""

from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import select

from backend.billing.exceptions import (
    ExternalServiceException,
    SubscriptionNotFoundException,
    ValidationException
)
from backend.billing.notifications import NotificationService
from backend.billing.settings import BillingSettings
from backend.billing.usage_tracker import UsageTracker, create_usage_tracker
from backend.database import session_scope
from backend.models import (
    Feature,
    Notification,
    NotificationSeverity,
    PricingTier,
    SubscriptionStatus,
    UsageAlert,
    UsageRecord,
    UsageReport,
    UsageReportStatus
)

from conftest import FakeGateway, add_subscription, gateway_error


ITEMS = {"price_basic": "si_price_basic", "price_api_calls": "si_price_api_calls"}


@pytest.fixture
def subscription_id(session_factory, catalogue):
    return add_subscription(
        session_factory, catalogue.acme_id, catalogue.basic_id,
        gateway_subscription_id="sub_usage", gateway_items=ITEMS, plan_price_id="price_basic"
    )


@pytest.fixture
def tracker(session_factory, gateway, clock):
    return UsageTracker(
        session_factory,
        gateway=gateway,
        notifications=NotificationService(session_factory),
        clock=clock
    )


def notifications(session_factory):
    with session_scope(session_factory) as session:
        return [
            (n.user_id, n.severity)
            for n in session.scalars(select(Notification).order_by(Notification.created_at))
        ]


class TestLimits:

    def test_single_bounded_tier_thresholds(self, tracker, catalogue):
        below = tracker.check_usage_limits(749, catalogue.api_calls_id)
        warning = tracker.check_usage_limits(750, catalogue.api_calls_id)
        exceeded = tracker.check_usage_limits(1000, catalogue.api_calls_id)

        assert not below.is_warning and not below.is_exceeded
        assert warning.is_warning and not warning.is_exceeded
        assert warning.usage_percentage == 75.0
        assert exceeded.is_exceeded
        assert exceeded.limit == 1000

    def test_usage_far_beyond_last_bounded_tier_is_exceeded(self, tracker, catalogue):
        status = tracker.check_usage_limits(5000, catalogue.api_calls_id)
        assert status.is_exceeded
        assert status.usage_percentage == 500.0

    def test_feature_without_tiers_is_unlimited(self, tracker, catalogue):
        status = tracker.check_usage_limits(10 ** 6, catalogue.storage_id)
        assert not status.is_exceeded
        assert not status.is_warning
        assert status.remaining is None

    def test_unbounded_tier_is_unlimited(self, tracker, session_factory, catalogue):
        with session_scope(session_factory) as session:
            session.add(PricingTier(feature_id=catalogue.reports_id, min_quantity=0,
                                    infinite=True, unit_price=Decimal("0.5")))

        assert not tracker.check_usage_limits(10 ** 6, catalogue.reports_id).is_warning

    def test_remaining_points_at_next_tier(self, tracker, session_factory, catalogue):
        with session_scope(session_factory) as session:
            session.add_all([
                PricingTier(feature_id=catalogue.reports_id, min_quantity=0, max_quantity=100),
                PricingTier(feature_id=catalogue.reports_id, min_quantity=100, infinite=True),
            ])

        status = tracker.check_usage_limits(80, catalogue.reports_id)
        assert status.is_warning
        assert status.remaining == 20

    def test_reaching_a_tier_limit_with_a_following_tier_is_exceeded(self, tracker, session_factory,
                                                                       catalogue):
        with session_scope(session_factory) as session:
            session.add_all([
                PricingTier(feature_id=catalogue.reports_id, min_quantity=0, max_quantity=1000),
                PricingTier(feature_id=catalogue.reports_id, min_quantity=1000, infinite=True),
            ])

        warning = tracker.check_usage_limits(750, catalogue.reports_id)
        at_limit = tracker.check_usage_limits(1000, catalogue.reports_id)
        beyond = tracker.check_usage_limits(1001, catalogue.reports_id)

        assert warning.is_warning and not warning.is_exceeded
        assert at_limit.is_exceeded
        assert at_limit.limit == 1000
        assert at_limit.usage_percentage == 100.0
        assert at_limit.remaining == 0
        assert not beyond.is_exceeded and not beyond.is_warning

    def test_limit_is_measured_against_the_tier_being_filled(self, tracker, session_factory, catalogue):
        with session_scope(session_factory) as session:
            session.add_all([
                PricingTier(feature_id=catalogue.reports_id, min_quantity=0, max_quantity=100),
                PricingTier(feature_id=catalogue.reports_id, min_quantity=100, max_quantity=500),
            ])

        first = tracker.check_usage_limits(100, catalogue.reports_id)
        second = tracker.check_usage_limits(101, catalogue.reports_id)

        assert first.is_exceeded and first.limit == 100
        assert not second.is_warning and second.limit == 500

    def test_tiers_are_served_from_cache_until_invalidated(self, tracker, session_factory, catalogue):
        tracker.get_feature_tiers(catalogue.api_calls_id)
        with session_scope(session_factory) as session:
            for tier in session.scalars(select(PricingTier).where(
                    PricingTier.feature_id == catalogue.api_calls_id)):
                tier.max_quantity = 2000

        assert tracker.get_feature_tiers(catalogue.api_calls_id)[0].max_quantity == 1000
        tracker.invalidate_feature_tiers(catalogue.api_calls_id)
        assert tracker.get_feature_tiers(catalogue.api_calls_id)[0].max_quantity == 2000


class TestRecordUsage:

    def test_records_under_current_plan_context(self, tracker, session_factory, catalogue, subscription_id):
        record = tracker.record_usage(subscription_id, catalogue.api_calls_id, 10,
                                      metadata={"source": "api"})

        assert record.plan_id == catalogue.basic_id
        assert record.timestamp == datetime(2024, 1, 15, 12, 0, 0)
        assert record.reported_to_gateway is False

    def test_negative_quantity_is_rejected(self, tracker, catalogue, subscription_id):
        with pytest.raises(ValidationException):
            tracker.record_usage(subscription_id, catalogue.api_calls_id, -5)

    def test_unknown_subscription(self, tracker, catalogue):
        with pytest.raises(SubscriptionNotFoundException):
            tracker.record_usage("missing", catalogue.api_calls_id, 1)

    def test_canceled_subscription_rejects_usage(self, tracker, session_factory, catalogue):
        canceled = add_subscription(session_factory, catalogue.acme_id, catalogue.basic_id,
                                    status=SubscriptionStatus.CANCELED)
        with pytest.raises(ValidationException):
            tracker.record_usage(canceled, catalogue.api_calls_id, 1)

    def test_warning_notifies_admins_once(self, tracker, session_factory, catalogue, subscription_id):
        tracker.record_usage(subscription_id, catalogue.api_calls_id, 700)
        assert notifications(session_factory) == []

        tracker.record_usage(subscription_id, catalogue.api_calls_id, 50)
        tracker.record_usage(subscription_id, catalogue.api_calls_id, 10)

        sent = notifications(session_factory)
        assert sorted(user for user, _ in sent) == ["user-admin", "user-owner"]
        assert {severity for _, severity in sent} == {NotificationSeverity.WARNING}

    def test_exceeded_notifies_with_critical_severity(self, tracker, session_factory, catalogue,
                                                      subscription_id):
        tracker.record_usage(subscription_id, catalogue.api_calls_id, 800)
        tracker.record_usage(subscription_id, catalogue.api_calls_id, 200)
        tracker.record_usage(subscription_id, catalogue.api_calls_id, 200)

        critical = [user for user, severity in notifications(session_factory)
                    if severity == NotificationSeverity.CRITICAL]
        assert sorted(critical) == ["user-admin", "user-owner"]

        with session_scope(session_factory) as session:
            levels = sorted(alert.level.value for alert in session.scalars(select(UsageAlert)))
        assert levels == ["exceeded", "warning"]

    def test_usage_outside_period_is_not_aggregated(self, tracker, session_factory, catalogue,
                                                    subscription_id):
        tracker.record_usage(subscription_id, catalogue.api_calls_id, 900,
                             timestamp=datetime(2023, 12, 20))
        assert notifications(session_factory) == []
        assert tracker.aggregate_usage(
            subscription_id, datetime(2024, 1, 1), datetime(2024, 2, 1)
        ) == {}


class TestSummary:

    def test_summary_covers_every_plan_feature(self, tracker, catalogue, subscription_id):
        tracker.record_usage(subscription_id, catalogue.api_calls_id, 250)
        tracker.record_usage(subscription_id, catalogue.storage_id, 4)

        summary = tracker.get_usage_summary(subscription_id)
        by_code = {feature.feature_code: feature for feature in summary.features}

        assert set(by_code) == {"api_calls", "storage_gb"}
        assert by_code["api_calls"].total_usage == 250
        assert by_code["api_calls"].usage_limit == 1000
        assert by_code["api_calls"].usage_percentage == 25.0
        assert by_code["api_calls"].current_tier["max_quantity"] == 1000
        assert by_code["storage_gb"].usage_percentage == 40.0
        assert summary.period_start == datetime(2024, 1, 1)

    def test_history_is_newest_first(self, tracker, catalogue, subscription_id):
        tracker.record_usage(subscription_id, catalogue.api_calls_id, 1, timestamp=datetime(2024, 1, 2))
        tracker.record_usage(subscription_id, catalogue.api_calls_id, 2, timestamp=datetime(2024, 1, 3))

        history = tracker.get_usage_history(subscription_id)
        assert [record.quantity for record in history] == [2, 1]


class LostResponseGateway(FakeGateway):
    """Accepts the first usage record, then loses the response"""

    def __init__(self):
        super().__init__()
        self.lose_next = True

    def create_usage_record(self, item_id, quantity, timestamp, idempotency_key):
        record_id = super().create_usage_record(item_id, quantity, timestamp, idempotency_key)
        if self.lose_next:
            self.lose_next = False
            raise ExternalServiceException("read timeout", service="stripe")
        return record_id


class TestReconciliation:

    def test_reports_unreported_usage_once(self, tracker, gateway, session_factory, catalogue,
                                           subscription_id):
        tracker.record_usage(subscription_id, catalogue.api_calls_id, 300)
        tracker.record_usage(subscription_id, catalogue.api_calls_id, 200)

        result = tracker.process_usage_records()
        assert result.reports_sent == 1
        assert result.records_reported == 2
        assert result.quantity_reported == 500

        call = gateway.called("create_usage_record")[0]
        assert call["item_id"] == "si_price_api_calls"

        again = tracker.process_usage_records()
        assert again.reports_sent == 0
        assert gateway.reported_quantity() == 500

        with session_scope(session_factory) as session:
            records = list(session.scalars(select(UsageRecord)))
        assert all(record.reported_to_gateway for record in records)

    def test_failed_report_is_resent_with_the_same_key(self, tracker, gateway, session_factory,
                                                       catalogue, subscription_id):
        tracker.record_usage(subscription_id, catalogue.api_calls_id, 500)
        gateway.failures["create_usage_record"] = gateway_error()

        failed = tracker.process_usage_records()
        assert failed.reports_failed == 1

        # Usage recorded meanwhile waits for the pending batch
        tracker.record_usage(subscription_id, catalogue.api_calls_id, 100)
        del gateway.failures["create_usage_record"]

        retried = tracker.process_usage_records()
        assert retried.quantity_reported == 500

        keys = [call["idempotency_key"] for call in gateway.called("create_usage_record")]
        assert keys[0] == keys[1]

        tracker.process_usage_records()
        assert gateway.reported_quantity() == 600

    def test_lost_gateway_response_is_not_double_counted(self, session_factory, catalogue,
                                                         subscription_id, clock):
        gateway = LostResponseGateway()
        tracker = UsageTracker(session_factory, gateway=gateway, clock=clock)
        tracker.record_usage(subscription_id, catalogue.api_calls_id, 400)

        assert tracker.process_usage_records().reports_failed == 1
        assert tracker.process_usage_records().reports_sent == 1

        assert len(gateway.called("create_usage_record")) == 2
        assert gateway.reported_quantity() == 400

        with session_scope(session_factory) as session:
            report = session.scalars(select(UsageReport)).one()
            assert report.status == UsageReportStatus.REPORTED
            assert report.last_error is None

    def test_trialing_subscriptions_are_skipped(self, tracker, gateway, session_factory, catalogue):
        trialing = add_subscription(
            session_factory, catalogue.acme_id, catalogue.trial_id,
            status=SubscriptionStatus.TRIALING, gateway_subscription_id="sub_trial",
            gateway_items=ITEMS, trial_end=datetime(2024, 1, 20)
        )
        tracker.record_usage(trialing, catalogue.api_calls_id, 10)

        result = tracker.process_usage_records()
        assert result.skipped == 1
        assert gateway.called("create_usage_record") == []

    def test_feature_without_metered_item_stays_pending(self, tracker, gateway, catalogue,
                                                        subscription_id):
        tracker.record_usage(subscription_id, catalogue.storage_id, 3)

        result = tracker.process_usage_records()
        assert result.skipped == 1
        assert gateway.called("create_usage_record") == []

    def test_requires_gateway(self, session_factory):
        with pytest.raises(ValidationException):
            UsageTracker(session_factory).process_usage_records()


def test_factory_uses_configured_cache_and_gateway(session_factory, gateway, catalogue):
    tracker = create_usage_tracker(session_factory, gateway=gateway,
                                   settings=BillingSettings(rate_cache_ttl=10))

    assert tracker.gateway is gateway
    assert tracker.tier_cache.ttl_seconds == 10
    tracker.get_feature_tiers(catalogue.api_calls_id)
    tracker.get_feature_tiers(catalogue.api_calls_id)
    assert tracker.tier_cache.stats == {"hits": 1, "misses": 1}


def test_feature_codes_are_unique(session_factory, catalogue):
    with session_scope(session_factory) as session:
        codes = [feature.code for feature in session.scalars(select(Feature))]
    assert len(codes) == len(set(codes))
