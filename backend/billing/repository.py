"""
Billing repository

Persistence access for the billing services. A repository wraps one
SQLAlchemy session, so everything done through it belongs to the caller's
unit of work (see ``backend.database.session_scope``).
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..models import (
    CancellationFeedback,
    Coupon,
    DeliveryStatus,
    Feature,
    MemberRole,
    Notification,
    Organization,
    OrganizationMember,
    PlanFeature,
    PricingPlan,
    PricingTier,
    ProcessedWebhookEvent,
    Promotion,
    ScheduledJob,
    Subscription,
    SubscriptionStatus,
    UsageAlert,
    UsageRecord,
    UsageReport,
    UsageReportStatus,
    WebhookDelivery,
    WebhookSubscription
)
from .exceptions import (
    ConcurrencyConflictException,
    DataIntegrityException,
    FeatureNotFoundException,
    InvalidBillingPlanException,
    OrganizationNotFoundException,
    SubscriptionNotFoundException
)

logger = logging.getLogger(__name__)


class BillingRepository:
    """Queries and writes over one session"""

    def __init__(self, session: Session):
        self.session = session

    # Generic

    def add(self, entity):
        self.session.add(entity)
        return entity

    def flush(self, entity_id: str = None, operation: str = None) -> None:
        """
        Flush pending changes, translating optimistic-lock and uniqueness
        failures into billing exceptions.
        """
        try:
            self.session.flush()
        except StaleDataError as e:
            raise ConcurrencyConflictException(entity_id or "unknown", operation=operation, cause=e)
        except IntegrityError as e:
            raise DataIntegrityException(
                f"Integrity violation during {operation or 'flush'}",
                entity_id=entity_id, operation=operation, cause=e
            )

    # Organizations

    def get_organization(self, organization_id: str) -> Organization:
        organization = self.session.get(Organization, organization_id)
        if organization is None:
            raise OrganizationNotFoundException(organization_id)
        return organization

    def get_organization_admins(self, organization_id: str) -> List[OrganizationMember]:
        return list(self.session.scalars(
            select(OrganizationMember).where(
                OrganizationMember.organization_id == organization_id,
                OrganizationMember.role.in_([MemberRole.ADMIN, MemberRole.OWNER])
            )
        ))

    # Catalogue

    def get_plan(self, plan_id: str) -> PricingPlan:
        plan = self.session.get(PricingPlan, plan_id)
        if plan is None:
            raise InvalidBillingPlanException(plan_id)
        return plan

    def get_feature(self, feature_id: str) -> Feature:
        feature = self.session.get(Feature, feature_id)
        if feature is None:
            raise FeatureNotFoundException(feature_id)
        return feature

    def get_feature_tiers(self, feature_id: str) -> List[PricingTier]:
        return list(self.session.scalars(
            select(PricingTier)
            .where(PricingTier.feature_id == feature_id)
            .order_by(PricingTier.min_quantity)
        ))

    def get_plan_features(self, plan_id: str) -> List[PlanFeature]:
        return list(self.session.scalars(
            select(PlanFeature).where(PlanFeature.plan_id == plan_id)
        ))

    # Subscriptions

    def get_subscription(self, subscription_id: str, for_update: bool = False) -> Subscription:
        query = select(Subscription).where(Subscription.id == subscription_id)
        if for_update:
            query = query.with_for_update()
        subscription = self.session.scalars(query).first()
        if subscription is None:
            raise SubscriptionNotFoundException(subscription_id)
        return subscription

    def get_subscription_by_gateway_id(self, gateway_subscription_id: str,
                                       for_update: bool = False) -> Subscription:
        query = select(Subscription).where(
            Subscription.gateway_subscription_id == gateway_subscription_id
        )
        if for_update:
            query = query.with_for_update()
        subscription = self.session.scalars(query).first()
        if subscription is None:
            raise SubscriptionNotFoundException(gateway_subscription_id)
        return subscription

    def list_billable_subscriptions_with_unreported_usage(self) -> List[Subscription]:
        """Subscriptions in a charging state that have usage not yet reported"""
        unreported = select(UsageRecord.subscription_id).where(
            UsageRecord.reported_to_gateway.is_(False),
            UsageRecord.is_transfer.is_(False)
        )
        return list(self.session.scalars(
            select(Subscription).where(
                Subscription.status.in_([
                    SubscriptionStatus.ACTIVE,
                    SubscriptionStatus.PAST_DUE,
                    SubscriptionStatus.TRIALING
                ]),
                Subscription.gateway_subscription_id.isnot(None),
                Subscription.id.in_(unreported)
            )
        ))

    def add_cancellation_feedback(self, subscription_id: str, reason: Optional[str],
                                  feedback: Optional[str], cancel_immediately: bool) -> CancellationFeedback:
        return self.add(CancellationFeedback(
            subscription_id=subscription_id,
            reason=reason,
            feedback=feedback,
            cancel_immediately=cancel_immediately
        ))

    # Usage

    def sum_usage(self, subscription_id: str, feature_id: str, plan_id: str,
                  start: datetime, end: datetime) -> int:
        """Fresh aggregate over the inclusive window for one plan context"""
        total = self.session.scalar(
            select(func.coalesce(func.sum(UsageRecord.quantity), 0)).where(
                UsageRecord.subscription_id == subscription_id,
                UsageRecord.feature_id == feature_id,
                UsageRecord.plan_id == plan_id,
                UsageRecord.timestamp >= start,
                UsageRecord.timestamp <= end
            )
        )
        return int(total or 0)

    def usage_totals_by_feature(self, subscription_id: str, start: datetime, end: datetime,
                                plan_id: str = None) -> Dict[str, int]:
        conditions = [
            UsageRecord.subscription_id == subscription_id,
            UsageRecord.timestamp >= start,
            UsageRecord.timestamp <= end
        ]
        if plan_id is not None:
            conditions.append(UsageRecord.plan_id == plan_id)

        rows = self.session.execute(
            select(UsageRecord.feature_id, func.sum(UsageRecord.quantity))
            .where(*conditions)
            .group_by(UsageRecord.feature_id)
        )
        return {feature_id: int(total or 0) for feature_id, total in rows}

    def list_usage(self, subscription_id: str, feature_id: str = None, limit: int = 100) -> List[UsageRecord]:
        query = select(UsageRecord).where(UsageRecord.subscription_id == subscription_id)
        if feature_id:
            query = query.where(UsageRecord.feature_id == feature_id)
        return list(self.session.scalars(
            query.order_by(UsageRecord.timestamp.desc()).limit(limit)
        ))

    def features_with_unclaimed_usage(self, subscription_id: str) -> List[str]:
        return list(self.session.scalars(
            select(UsageRecord.feature_id).where(
                UsageRecord.subscription_id == subscription_id,
                UsageRecord.reported_to_gateway.is_(False),
                UsageRecord.is_transfer.is_(False),
                UsageRecord.report_id.is_(None)
            ).distinct()
        ))

    def get_pending_usage_reports(self, subscription_id: str) -> List[UsageReport]:
        return list(self.session.scalars(
            select(UsageReport).where(
                UsageReport.subscription_id == subscription_id,
                UsageReport.status == UsageReportStatus.PENDING
            ).order_by(UsageReport.sequence)
        ))

    def next_report_sequence(self, subscription_id: str, feature_id: str, period_start: datetime) -> int:
        current = self.session.scalar(
            select(func.max(UsageReport.sequence)).where(
                UsageReport.subscription_id == subscription_id,
                UsageReport.feature_id == feature_id,
                UsageReport.period_start == period_start
            )
        )
        return (current or 0) + 1

    def claim_unreported_usage(self, report: UsageReport) -> int:
        """
        Attach every unclaimed, unreported record of the report's subscription
        and feature to the report. Returns the claimed quantity.
        """
        claim_filter = and_(
            UsageRecord.subscription_id == report.subscription_id,
            UsageRecord.feature_id == report.feature_id,
            UsageRecord.reported_to_gateway.is_(False),
            UsageRecord.is_transfer.is_(False),
            UsageRecord.report_id.is_(None)
        )
        self.session.execute(
            update(UsageRecord).where(claim_filter).values(report_id=report.id)
            .execution_options(synchronize_session=False)
        )
        total = self.session.scalar(
            select(func.coalesce(func.sum(UsageRecord.quantity), 0))
            .where(UsageRecord.report_id == report.id)
        )
        return int(total or 0)

    def mark_report_reported(self, report: UsageReport, gateway_record_id: str, now: datetime) -> int:
        """Mark the report and exactly its claimed records as reported"""
        report.status = UsageReportStatus.REPORTED
        report.gateway_record_id = gateway_record_id
        report.reported_at = now
        report.last_error = None
        result = self.session.execute(
            update(UsageRecord)
            .where(UsageRecord.report_id == report.id)
            .values(reported_to_gateway=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    def has_usage_alert(self, subscription_id: str, feature_id: str,
                        period_start: datetime, level) -> bool:
        return self.session.scalar(
            select(func.count(UsageAlert.id)).where(
                UsageAlert.subscription_id == subscription_id,
                UsageAlert.feature_id == feature_id,
                UsageAlert.period_start == period_start,
                UsageAlert.level == level
            )
        ) > 0

    # Promotions

    def get_coupon_by_code(self, code: str) -> Optional[Coupon]:
        return self.session.scalars(select(Coupon).where(Coupon.code == code)).first()

    def redeem_coupon(self, coupon: Coupon) -> Optional[str]:
        """
        Count one redemption on a coupon and its promotion.

        Each counter is raised with a conditional update, so concurrent
        redemptions can never push either past its cap.

        Returns:
            None on success, otherwise the limit that was reached. The caller
            must roll back, since the coupon may already have been counted.
        """
        counters = (
            (Coupon, coupon.id, "coupon_redemption_limit_reached"),
            (Promotion, coupon.promotion_id, "promotion_redemption_limit_reached"),
        )
        for model, entity_id, reason in counters:
            result = self.session.execute(
                update(model)
                .where(
                    model.id == entity_id,
                    or_(model.max_redemptions.is_(None),
                        model.redemption_count < model.max_redemptions)
                )
                .values(redemption_count=model.redemption_count + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return reason

        self.session.expire(coupon, ["redemption_count"])
        self.session.expire(coupon.promotion, ["redemption_count"])
        return None

    def list_active_promotions(self, as_of: Optional[datetime] = None) -> List[Promotion]:
        query = select(Promotion).where(Promotion.is_active.is_(True))
        if as_of is not None:
            query = query.where(
                or_(Promotion.start_date.is_(None), Promotion.start_date <= as_of),
                or_(Promotion.end_date.is_(None), Promotion.end_date >= as_of)
            )
        return list(self.session.scalars(query))

    # Webhooks

    def list_webhook_targets(self, event: str) -> List[WebhookSubscription]:
        return list(self.session.scalars(
            select(WebhookSubscription).where(
                WebhookSubscription.event == event,
                WebhookSubscription.is_active.is_(True)
            )
        ))

    def get_delivery(self, delivery_id: str) -> Optional[WebhookDelivery]:
        return self.session.get(WebhookDelivery, delivery_id)

    def claim_delivery(self, delivery_id: str, now: datetime, lease_until: datetime) -> bool:
        """
        Take a lease on a pending delivery. Only one caller can hold it, so a
        delivery is never attempted twice concurrently.
        """
        result = self.session.execute(
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery_id,
                WebhookDelivery.status == DeliveryStatus.PENDING,
                or_(WebhookDelivery.locked_until.is_(None), WebhookDelivery.locked_until <= now)
            )
            .values(locked_until=lease_until)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def list_due_deliveries(self, now: datetime, max_attempts: int, limit: int) -> List[str]:
        return list(self.session.scalars(
            select(WebhookDelivery.id).where(
                WebhookDelivery.status == DeliveryStatus.PENDING,
                WebhookDelivery.retries < max_attempts,
                or_(WebhookDelivery.next_attempt_at.is_(None), WebhookDelivery.next_attempt_at <= now),
                or_(WebhookDelivery.locked_until.is_(None), WebhookDelivery.locked_until <= now)
            ).order_by(WebhookDelivery.created_at).limit(limit)
        ))

    def get_processed_event(self, event_id: str) -> Optional[ProcessedWebhookEvent]:
        return self.session.scalars(
            select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.event_id == event_id)
        ).first()

    def add_processed_event(self, event_id: str, event_type: str, outcome: str,
                            now: datetime) -> ProcessedWebhookEvent:
        return self.add(ProcessedWebhookEvent(
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
            processed_at=now
        ))

    # Notifications and jobs

    def add_notifications(self, notifications: Iterable[Notification]) -> None:
        self.session.add_all(list(notifications))

    def add_jobs(self, jobs: Sequence[ScheduledJob]) -> None:
        self.session.add_all(list(jobs))
