"""
Usage tracking for billing

Records metered usage, evaluates it against the feature's tiers, summarises
the current period and reconciles unreported usage with the payment gateway.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from ..database import session_scope
from ..models import (
    NotificationSeverity,
    Subscription,
    SubscriptionStatus,
    UsageAlert,
    UsageAlertLevel,
    UsageRecord,
    UsageReport
)
from ..utils.clock import to_naive_utc, utcnow
from .exceptions import (
    DataIntegrityException,
    ExternalServiceException,
    ValidationException
)
from .gateway import PaymentGateway
from .models import FeatureUsage, ReconciliationResult, UsageLimitStatus, UsageSummary
from .notifications import NotificationService
from .pricing import find_limit_tier, next_tier
from .rate_cache import RateCache, TierSnapshot, build_rate_cache
from .repository import BillingRepository
from .settings import BillingSettings


logger = logging.getLogger(__name__)


def transfer_usage(repo: BillingRepository, subscription: Subscription, old_plan: Any,
                   new_plan: Any, now: datetime) -> List[UsageRecord]:
    """
    Carry the current period's usage over to a new plan.

    Features are matched by their stable code. For each shared feature one
    transfer record is appended under the new plan context; the original
    records are left untouched. Usage already present under the new plan
    context (from an earlier change back and forth) is not carried twice.
    """
    new_features = {pf.feature.code: pf.feature_id for pf in new_plan.plan_features}
    start, end = subscription.current_period_start, subscription.current_period_end

    transfers = []
    for plan_feature in old_plan.plan_features:
        code = plan_feature.feature.code
        new_feature_id = new_features.get(code)
        if new_feature_id is None:
            continue

        carried = repo.sum_usage(subscription.id, plan_feature.feature_id, old_plan.id, start, end)
        already_present = repo.sum_usage(subscription.id, new_feature_id, new_plan.id, start, end)
        quantity = carried - already_present
        if quantity <= 0:
            continue

        # Transfers are bookkeeping only and are never reported to the gateway
        transfers.append(repo.add(UsageRecord(
            subscription_id=subscription.id,
            feature_id=new_feature_id,
            plan_id=new_plan.id,
            quantity=quantity,
            timestamp=max(start, min(now, end)),
            is_transfer=True,
            transferred_from_plan_id=old_plan.id,
            reported_to_gateway=True,
            metadata_json={"feature_code": code}
        )))
        logger.info(
            f"Transferred {quantity} {code} from plan {old_plan.id} to {new_plan.id} "
            f"for subscription {subscription.id}"
        )

    return transfers


class UsageTracker:
    """
    Usage metering with tier-based limit evaluation.

    Features:
    - Append-only usage recording with fresh period aggregates
    - Warning/exceeded notifications to organization admins, once per level and period
    - Per-feature usage summaries
    - Idempotent usage reconciliation with the gateway
    """

    def __init__(
        self,
        session_factory: sessionmaker = None,
        gateway: Optional[PaymentGateway] = None,
        notifications: Optional[NotificationService] = None,
        settings: Optional[BillingSettings] = None,
        tier_cache: Optional[RateCache] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings or BillingSettings()
        self.notifications = notifications or NotificationService(session_factory)
        self.tier_cache = tier_cache or RateCache(ttl_seconds=self.settings.rate_cache_ttl)
        self.clock = clock

    def record_usage(
        self,
        subscription_id: str,
        feature_id: str,
        quantity: int,
        timestamp: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> UsageRecord:
        """
        Record a usage event

        Args:
            subscription_id: Subscription identifier
            feature_id: Feature consumed
            quantity: Units consumed
            timestamp: When the usage happened (defaults to now)
            metadata: Additional metadata

        Returns:
            Created usage record

        Raises:
            ValidationException: On negative quantity or a canceled subscription
            NotFoundException: If the subscription or feature does not exist
        """
        if quantity is None or quantity < 0:
            raise ValidationException(
                f"Usage quantity must be non-negative, got {quantity}",
                entity_id=subscription_id, operation="record_usage"
            )

        now = self.clock()
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            subscription = repo.get_subscription(subscription_id)
            if subscription.status == SubscriptionStatus.CANCELED:
                raise ValidationException(
                    f"Cannot record usage on canceled subscription {subscription_id}",
                    entity_id=subscription_id, operation="record_usage"
                )
            repo.get_feature(feature_id)

            record = repo.add(UsageRecord(
                subscription_id=subscription_id,
                feature_id=feature_id,
                plan_id=subscription.plan_id,
                quantity=quantity,
                timestamp=to_naive_utc(timestamp) if timestamp else now,
                metadata_json=metadata or {}
            ))
            repo.flush(subscription_id, "record_usage")

            aggregate = repo.sum_usage(
                subscription_id, feature_id, subscription.plan_id,
                subscription.current_period_start, subscription.current_period_end
            )
            organization_id = subscription.organization_id
            period_start = subscription.current_period_start

        logger.debug(
            f"Recorded usage: subscription={subscription_id}, feature={feature_id}, "
            f"quantity={quantity}, period_total={aggregate}"
        )

        status = self.check_usage_limits(aggregate, feature_id)
        if status.is_exceeded or status.is_warning:
            self._notify_threshold(subscription_id, organization_id, feature_id,
                                   period_start, aggregate, status)

        return record

    def check_usage_limits(self, aggregated_quantity: int, feature_id: str) -> UsageLimitStatus:
        """
        Evaluate a period aggregate against the feature's tiers

        Args:
            aggregated_quantity: Total usage in the period
            feature_id: Feature identifier

        Returns:
            Limit status; unlimited features are never warned
        """
        unlimited = UsageLimitStatus(is_exceeded=False, is_warning=False, remaining=None)

        tiers = self.get_feature_tiers(feature_id)
        if not tiers:
            return unlimited

        current = find_limit_tier(tiers, aggregated_quantity)
        if current is None or current.infinite or current.max_quantity is None:
            return unlimited

        limit = current.max_quantity
        percentage = aggregated_quantity / limit * 100
        following = next_tier(tiers, current)

        return UsageLimitStatus(
            is_exceeded=percentage >= self.settings.usage_exceeded_threshold,
            is_warning=percentage >= self.settings.usage_warning_threshold,
            remaining=following.min_quantity - aggregated_quantity if following else None,
            limit=limit,
            usage_percentage=round(percentage, 2)
        )

    def get_feature_tiers(self, feature_id: str) -> List[TierSnapshot]:
        """Feature tiers through the rate cache"""
        def load() -> List[TierSnapshot]:
            with session_scope(self.session_factory) as session:
                tiers = BillingRepository(session).get_feature_tiers(feature_id)
                return [TierSnapshot.from_tier(tier) for tier in tiers]

        return self.tier_cache.get_or_load(f"feature_tiers:{feature_id}", load)

    def invalidate_feature_tiers(self, feature_id: str) -> None:
        """Drop cached tiers after a catalogue change"""
        self.tier_cache.invalidate(f"feature_tiers:{feature_id}")

    def aggregate_usage(self, subscription_id: str, start: datetime, end: datetime,
                        plan_id: Optional[str] = None) -> Dict[str, int]:
        """Per-feature totals in the inclusive window"""
        with session_scope(self.session_factory) as session:
            return BillingRepository(session).usage_totals_by_feature(
                subscription_id, start, end, plan_id=plan_id
            )

    def get_usage_summary(self, subscription_id: str) -> UsageSummary:
        """
        Summarise each plan feature's usage in the current period

        Args:
            subscription_id: Subscription identifier

        Returns:
            Usage summary with tier position and percentage per feature
        """
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            subscription = repo.get_subscription(subscription_id)
            period_start = subscription.current_period_start
            period_end = subscription.current_period_end
            totals = repo.usage_totals_by_feature(
                subscription_id, period_start, period_end, plan_id=subscription.plan_id
            )
            plan_features = [
                (pf.feature_id, pf.feature.code, pf.feature.name, pf.usage_limit)
                for pf in repo.get_plan_features(subscription.plan_id)
            ]

        features = []
        for feature_id, code, name, plan_limit in plan_features:
            total = totals.get(feature_id, 0)
            tiers = self.get_feature_tiers(feature_id)
            current = find_limit_tier(tiers, total)
            following = next_tier(tiers, current) if current else None

            usage_limit = plan_limit
            if usage_limit is None and following is not None:
                usage_limit = following.min_quantity
            elif usage_limit is None and current is not None and not current.infinite:
                usage_limit = current.max_quantity

            percentage = None
            if usage_limit:
                percentage = min(100.0, round(total / usage_limit * 100, 2))

            features.append(FeatureUsage(
                feature_id=feature_id,
                feature_code=code,
                feature_name=name,
                total_usage=total,
                usage_limit=usage_limit,
                usage_percentage=percentage,
                current_tier=current.to_dict() if current else None,
                next_tier=following.to_dict() if following else None
            ))

        return UsageSummary(
            subscription_id=subscription_id,
            period_start=period_start,
            period_end=period_end,
            features=features
        )

    def get_usage_history(self, subscription_id: str, feature_id: Optional[str] = None,
                          limit: int = 100) -> List[UsageRecord]:
        """Most recent usage records, newest first"""
        with session_scope(self.session_factory) as session:
            return BillingRepository(session).list_usage(subscription_id, feature_id, limit)

    def process_usage_records(self) -> ReconciliationResult:
        """
        Report unreported usage to the gateway

        Each (subscription, feature) batch is claimed into a usage report
        with a stable idempotency key before the gateway is called. A report
        left pending by a failed or interrupted run is re-sent with the same
        key, so the gateway counts it once and the same records are marked.

        Returns:
            Counts of reports sent, failed and skipped
        """
        if self.gateway is None:
            raise ValidationException("Usage reconciliation requires a payment gateway",
                                      operation="process_usage_records")

        now = self.clock()
        result = ReconciliationResult()

        with session_scope(self.session_factory) as session:
            candidates = []
            for subscription in BillingRepository(session).list_billable_subscriptions_with_unreported_usage():
                if subscription.is_in_trial(now):
                    result.skipped += 1
                    continue
                candidates.append((
                    subscription.id,
                    subscription.current_period_start,
                    dict(subscription.gateway_items or {})
                ))

        for subscription_id, period_start, items in candidates:
            try:
                batches = self._claim_batches(subscription_id, period_start)
            except DataIntegrityException as e:
                logger.warning(f"Usage claim for {subscription_id} lost a race, retrying next run: {e}")
                result.reports_failed += 1
                continue

            for batch in batches:
                self._send_batch(batch, items, now, result)

        logger.info(
            f"Usage reconciliation: sent={result.reports_sent}, failed={result.reports_failed}, "
            f"records={result.records_reported}, skipped={result.skipped}"
        )
        return result

    def _claim_batches(self, subscription_id: str, period_start: datetime) -> List[Dict[str, Any]]:
        """Pending reports plus new reports claiming unclaimed usage"""
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            reports = repo.get_pending_usage_reports(subscription_id)
            pending_features = {report.feature_id for report in reports}

            for feature_id in repo.features_with_unclaimed_usage(subscription_id):
                if feature_id in pending_features:
                    # New usage waits until the pending batch is confirmed
                    continue

                sequence = repo.next_report_sequence(subscription_id, feature_id, period_start)
                report = repo.add(UsageReport(
                    subscription_id=subscription_id,
                    feature_id=feature_id,
                    period_start=period_start,
                    sequence=sequence,
                    idempotency_key=(
                        f"usage:{subscription_id}:{feature_id}:"
                        f"{period_start:%Y%m%dT%H%M%S}:{sequence}"
                    )
                ))
                repo.flush(subscription_id, "claim_usage")
                report.quantity = repo.claim_unreported_usage(report)
                reports.append(report)

            return [
                {
                    "report_id": report.id,
                    "feature_id": report.feature_id,
                    "quantity": report.quantity,
                    "idempotency_key": report.idempotency_key,
                    "price_id": repo.get_feature(report.feature_id).gateway_price_id
                }
                for report in reports
            ]

    def _send_batch(self, batch: Dict[str, Any], items: Dict[str, str], now: datetime,
                    result: ReconciliationResult) -> None:
        item_id = items.get(batch["price_id"]) if batch["price_id"] else None
        if batch["quantity"] > 0 and item_id is None:
            logger.warning(
                f"No metered gateway item for feature {batch['feature_id']}, "
                f"report {batch['report_id']} left pending"
            )
            result.skipped += 1
            return

        record_id = None
        if batch["quantity"] > 0:
            try:
                record_id = self.gateway.create_usage_record(
                    item_id, batch["quantity"], now, batch["idempotency_key"]
                )
            except ExternalServiceException as e:
                logger.error(f"Usage report {batch['idempotency_key']} failed: {e}")
                with session_scope(self.session_factory) as session:
                    report = session.get(UsageReport, batch["report_id"])
                    report.last_error = str(e)[:1000]
                result.reports_failed += 1
                return

        with session_scope(self.session_factory) as session:
            report = session.get(UsageReport, batch["report_id"])
            marked = BillingRepository(session).mark_report_reported(report, record_id, now)

        result.reports_sent += 1
        result.records_reported += marked
        result.quantity_reported += batch["quantity"]

    def _notify_threshold(self, subscription_id: str, organization_id: str, feature_id: str,
                          period_start: datetime, aggregate: int, status: UsageLimitStatus) -> None:
        level = UsageAlertLevel.EXCEEDED if status.is_exceeded else UsageAlertLevel.WARNING

        try:
            with session_scope(self.session_factory) as session:
                repo = BillingRepository(session)
                if repo.has_usage_alert(subscription_id, feature_id, period_start, level):
                    return
                feature_name = repo.get_feature(feature_id).name
                repo.add(UsageAlert(
                    subscription_id=subscription_id,
                    feature_id=feature_id,
                    period_start=period_start,
                    level=level,
                    usage_percentage=int(status.usage_percentage or 0)
                ))
                repo.flush(subscription_id, "usage_alert")
        except DataIntegrityException:
            # Another writer recorded the same alert first
            return

        if level == UsageAlertLevel.EXCEEDED:
            title = f"{feature_name} usage limit exceeded"
            severity = NotificationSeverity.CRITICAL
        else:
            title = f"{feature_name} usage approaching limit"
            severity = NotificationSeverity.WARNING

        self.notifications.notify_admins(
            organization_id,
            title,
            f"{feature_name} usage is at {status.usage_percentage}% of the current limit "
            f"({aggregate} of {status.limit}).",
            severity=severity,
            data={
                "subscription_id": subscription_id,
                "feature_id": feature_id,
                "usage": aggregate,
                "limit": status.limit,
                "level": level.value
            }
        )


def create_usage_tracker(
    session_factory: sessionmaker = None,
    gateway: Optional[PaymentGateway] = None,
    settings: Optional[BillingSettings] = None
) -> UsageTracker:
    """Create a usage tracker with the configured tier cache"""
    settings = settings or BillingSettings()
    if gateway is None:
        from .stripe_client import StripeClient
        gateway = StripeClient()

    return UsageTracker(
        session_factory=session_factory,
        gateway=gateway,
        settings=settings,
        tier_cache=build_rate_cache(settings)
    )
