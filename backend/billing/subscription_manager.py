"""
Subscription management for billing

Drives subscriptions through their lifecycle. For every transition the
gateway is called first; local state is written only after it succeeds, in a
single unit of work guarded by the subscription's version column.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..database import session_scope
from ..models import BillingInterval, NotificationSeverity, Subscription, SubscriptionStatus
from ..utils.clock import utcnow
from .exceptions import (
    ConfigurationException,
    ExternalServiceException,
    InvalidTransitionException,
    ValidationException
)
from .gateway import PaymentGateway
from .lifecycle import apply_period, can_transition, status_from_gateway, subscription_payload, transition
from .models import (
    ChangeType,
    FeatureChanges,
    FeatureLimitChange,
    PlanChangeImpact,
    PlanChangeParams,
    PricingOptions,
    ProrationSource,
    SubscriptionParams
)
from .notifications import JobScheduler, NotificationService, win_back_runs
from .pricing import calculate_price, calculate_proration, monthly_price
from .promotions import check_coupon, redeem
from .repository import BillingRepository
from .settings import BillingSettings
from .usage_tracker import transfer_usage
from .webhook_dispatcher import WebhookDispatcher


logger = logging.getLogger(__name__)


INTERVAL_MONTHS = {
    BillingInterval.MONTHLY: 1,
    BillingInterval.QUARTERLY: 3,
    BillingInterval.ANNUAL: 12,
}


def period_end_for(plan: Any, start: datetime) -> datetime:
    """End of a billing period of ``plan`` starting at ``start``"""
    if plan.billing_interval == BillingInterval.CUSTOM:
        months = plan.custom_interval_months or 1
    else:
        months = INTERVAL_MONTHS.get(plan.billing_interval, 1)
    return start + relativedelta(months=months)


def diff_plan_features(old_plan: Any, new_plan: Any) -> FeatureChanges:
    """Compare two plans' features by their stable code; no limit means unlimited"""
    old = {pf.feature.code: (pf.feature.name, pf.usage_limit) for pf in old_plan.plan_features}
    new = {pf.feature.code: (pf.feature.name, pf.usage_limit) for pf in new_plan.plan_features}

    changes = FeatureChanges(
        added=[new[code][0] for code in new if code not in old],
        removed=[old[code][0] for code in old if code not in new]
    )

    for code in old.keys() & new.keys():
        name, old_limit = old[code]
        new_limit = new[code][1]
        if old_limit == new_limit:
            continue

        change = FeatureLimitChange(code, name, old_limit, new_limit)
        old_value = float("inf") if old_limit is None else old_limit
        new_value = float("inf") if new_limit is None else new_limit
        if new_value > old_value:
            changes.upgraded.append(change)
        else:
            changes.downgraded.append(change)

    changes.upgraded.sort(key=lambda change: change.feature_code)
    changes.downgraded.sort(key=lambda change: change.feature_code)
    return changes


class SubscriptionManager:
    """
    Manages organization subscriptions
    """

    def __init__(
        self,
        session_factory: sessionmaker = None,
        gateway: Optional[PaymentGateway] = None,
        notifications: Optional[NotificationService] = None,
        scheduler: Optional[JobScheduler] = None,
        event_publisher: Optional[WebhookDispatcher] = None,
        settings: Optional[BillingSettings] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize subscription manager

        Args:
            session_factory: Session factory for units of work
            gateway: Payment gateway; subscriptions without gateway ids stay local
            notifications: Notification collaborator
            scheduler: Scheduling collaborator for win-back campaigns
            event_publisher: Outbound webhook dispatcher
            settings: Billing settings
            clock: Source of the current time
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifications = notifications or NotificationService(session_factory)
        self.scheduler = scheduler or JobScheduler(session_factory)
        self.event_publisher = event_publisher
        self.settings = settings or BillingSettings()
        self.clock = clock

    def get_subscription(self, subscription_id: str) -> Subscription:
        """
        Get a subscription

        Raises:
            SubscriptionNotFoundException: If not found
        """
        with session_scope(self.session_factory) as session:
            return BillingRepository(session).get_subscription(subscription_id)

    def create_subscription(self, params: SubscriptionParams) -> Subscription:
        """
        Create a new subscription for an organization

        Args:
            params: Organization, plan, quantity, trial and coupon

        Returns:
            Created subscription

        Raises:
            ValidationException: On invalid quantity, inactive plan or unusable coupon
            NotFoundException: If the organization or plan does not exist
            ExternalServiceException: If the gateway rejects the subscription
        """
        if params.quantity is None or params.quantity < 0:
            raise ValidationException(
                f"Quantity must be non-negative, got {params.quantity}",
                entity_id=params.organization_id, operation="create_subscription"
            )

        now = self.clock()
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            organization = repo.get_organization(params.organization_id)
            plan = repo.get_plan(params.plan_id)
            if not plan.is_active:
                raise ValidationException(f"Plan {plan.id} is not available",
                                          entity_id=plan.id, operation="create_subscription")

            coupon = None
            if params.coupon_code:
                coupon = repo.get_coupon_by_code(params.coupon_code)
                validation = check_coupon(coupon, now, plan)
                if not validation.valid:
                    raise ValidationException(
                        f"Coupon {params.coupon_code} cannot be applied: {validation.reason}",
                        operation="create_subscription", details={"reason": validation.reason}
                    )
                redeem(repo, coupon, None, "create_subscription")

            trial_days = params.trial_days if params.trial_days is not None else plan.trial_days

            gateway_subscription = None
            if self.gateway and organization.gateway_customer_id and plan.gateway_price_id:
                gateway_subscription = self.gateway.create_subscription(
                    customer_id=organization.gateway_customer_id,
                    price_id=plan.gateway_price_id,
                    quantity=params.quantity,
                    trial_period_days=trial_days or None,
                    metered_price_ids=[
                        pf.feature.gateway_price_id for pf in plan.plan_features
                        if pf.feature.gateway_price_id
                    ],
                    coupon_id=coupon.promotion.gateway_coupon_id if coupon else None,
                    metadata={"organization_id": organization.id, "plan_id": plan.id}
                )

            subscription = Subscription(
                organization_id=organization.id,
                plan=plan,
                quantity=params.quantity,
                status=SubscriptionStatus.PENDING,
                current_period_start=now,
                current_period_end=period_end_for(plan, now),
                trial_end=now + relativedelta(days=trial_days) if trial_days else None,
                metadata_json=dict(params.metadata or {})
            )

            if gateway_subscription is not None:
                gateway_status = status_from_gateway(gateway_subscription.status)
                if gateway_status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
                    subscription.status = gateway_status
                subscription.gateway_subscription_id = gateway_subscription.id
                subscription.gateway_items = dict(gateway_subscription.items)
                subscription.gateway_item_id = gateway_subscription.items.get(plan.gateway_price_id)
                if gateway_subscription.current_period_start and gateway_subscription.current_period_end:
                    subscription.current_period_start = gateway_subscription.current_period_start
                    subscription.current_period_end = gateway_subscription.current_period_end
                subscription.trial_end = gateway_subscription.trial_end or subscription.trial_end

            if coupon is not None:
                subscription.coupon_id = coupon.id

            repo.add(subscription)
            repo.flush(organization.id, "create_subscription")

        logger.info(
            f"Created subscription {subscription.id} for organization {params.organization_id} "
            f"on plan {params.plan_id} ({subscription.status.value})"
        )

        self.notifications.notify(
            params.organization_id,
            "Subscription created",
            f"Your subscription to {plan.name} has been created.",
            data={"subscription_id": subscription.id, "plan_id": plan.id}
        )
        self._publish("subscription.created", subscription)
        return subscription

    def calculate_plan_change_impact(
        self,
        subscription_id: str,
        new_plan_id: str,
        quantity: Optional[int] = None,
        proration_date: Optional[datetime] = None
    ) -> PlanChangeImpact:
        """
        Preview a plan change

        The gateway's upcoming-invoice preview is used when the subscription
        lives on the gateway; otherwise, or if the preview fails, the
        proration is estimated from the remaining share of the period.

        Args:
            subscription_id: Subscription identifier
            new_plan_id: Target plan
            quantity: Target quantity (current quantity if omitted)
            proration_date: Instant the change takes effect (now if omitted)

        Returns:
            Change type, prices, proration and feature differences
        """
        now = self.clock()
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            subscription = repo.get_subscription(subscription_id)
            old_plan = subscription.plan
            new_plan = repo.get_plan(new_plan_id)
            quantity = subscription.quantity if quantity is None else quantity

            current_price = monthly_price(old_plan, subscription.quantity)
            new_price = monthly_price(new_plan, quantity)
            feature_changes = diff_plan_features(old_plan, new_plan)

            current_interval_price = calculate_price(
                old_plan, PricingOptions(quantity=subscription.quantity)
            ).subtotal
            new_interval_price = calculate_price(new_plan, PricingOptions(quantity=quantity)).subtotal

            preview = None
            if (self.gateway and subscription.gateway_subscription_id
                    and subscription.gateway_item_id and new_plan.gateway_price_id):
                preview = {
                    "customer_id": subscription.organization.gateway_customer_id,
                    "subscription_id": subscription.gateway_subscription_id,
                    "item_id": subscription.gateway_item_id,
                    "price_id": new_plan.gateway_price_id,
                    "quantity": quantity,
                    "proration_date": proration_date
                }
            period_start = subscription.current_period_start
            period_end = subscription.current_period_end
            currency = old_plan.currency

        if new_price > current_price:
            change_type = ChangeType.UPGRADE
        elif new_price < current_price:
            change_type = ChangeType.DOWNGRADE
        else:
            change_type = ChangeType.CROSSGRADE

        prorated_amount = None
        source = ProrationSource.ESTIMATE
        if preview is not None:
            try:
                prorated_amount = self.gateway.preview_proration(**preview)
                source = ProrationSource.GATEWAY
            except ExternalServiceException as e:
                logger.warning(f"Proration preview failed for {subscription_id}, using estimate: {e}")

        if prorated_amount is None:
            prorated_amount = calculate_proration(
                current_interval_price, new_interval_price,
                period_start, period_end, proration_date or now
            )

        return PlanChangeImpact(
            change_type=change_type,
            current_price=current_price,
            new_price=new_price,
            price_difference=new_price - current_price,
            prorated_amount=prorated_amount,
            proration_source=source,
            feature_changes=feature_changes,
            currency=currency
        )

    def change_plan(self, params: PlanChangeParams) -> Subscription:
        """
        Move a subscription to another plan

        Args:
            params: Target plan, quantity, timing and usage transfer flag

        Returns:
            Updated subscription

        Raises:
            ValidationException: If the subscription cannot change plan
            ExternalServiceException: If the gateway update fails (nothing changes locally)
            ConcurrencyConflictException: If the subscription changed concurrently
        """
        if params.quantity is not None and params.quantity < 0:
            raise ValidationException(
                f"Quantity must be non-negative, got {params.quantity}",
                entity_id=params.subscription_id, operation="change_plan"
            )

        impact = self.calculate_plan_change_impact(
            params.subscription_id, params.new_plan_id, params.quantity, params.proration_date
        )

        now = self.clock()
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            subscription = repo.get_subscription(params.subscription_id, for_update=True)
            if subscription.status == SubscriptionStatus.CANCELED:
                raise InvalidTransitionException(
                    subscription.id, subscription.status.value, "plan change", operation="change_plan"
                )

            old_plan = subscription.plan
            new_plan = repo.get_plan(params.new_plan_id)
            quantity = subscription.quantity if params.quantity is None else params.quantity
            if new_plan.id == old_plan.id and quantity == subscription.quantity:
                raise ValidationException(
                    f"Subscription {subscription.id} is already on plan {new_plan.id}",
                    entity_id=subscription.id, operation="change_plan"
                )
            if not new_plan.is_active:
                raise ValidationException(f"Plan {new_plan.id} is not available",
                                          entity_id=new_plan.id, operation="change_plan")

            if self.gateway and subscription.gateway_subscription_id:
                if not new_plan.gateway_price_id:
                    raise ConfigurationException(
                        f"Plan {new_plan.id} has no gateway price", entity_id=new_plan.id,
                        operation="change_plan"
                    )
                gateway_subscription = self.gateway.update_subscription_plan(
                    subscription_id=subscription.gateway_subscription_id,
                    item_id=subscription.gateway_item_id,
                    price_id=new_plan.gateway_price_id,
                    quantity=quantity,
                    proration_behavior="always_invoice" if params.immediate else "create_prorations",
                    proration_date=params.proration_date
                )
                items = dict(subscription.gateway_items or {})
                items.update(gateway_subscription.items)
                subscription.gateway_items = items
                subscription.gateway_item_id = items.get(new_plan.gateway_price_id, subscription.gateway_item_id)

            if params.preserve_usage:
                transfer_usage(repo, subscription, old_plan, new_plan, now)

            subscription.plan = new_plan
            subscription.quantity = quantity
            repo.flush(subscription.id, "change_plan")

        logger.info(
            f"Changed subscription {subscription.id} from plan {old_plan.id} to {new_plan.id} "
            f"({impact.change_type.value}, immediate={params.immediate})"
        )

        self.notifications.notify(
            subscription.organization_id,
            "Plan changed",
            f"Your subscription moved from {old_plan.name} to {new_plan.name}.",
            data={
                "subscription_id": subscription.id,
                "change_type": impact.change_type.value,
                "prorated_amount": impact.prorated_amount
            }
        )
        self._publish("subscription.updated", subscription)
        return subscription

    def cancel_subscription(
        self,
        subscription_id: str,
        cancel_immediately: bool = False,
        reason: Optional[str] = None,
        feedback: Optional[str] = None
    ) -> Subscription:
        """
        Cancel a subscription now or at the end of its period

        Args:
            subscription_id: Subscription identifier
            cancel_immediately: End the subscription now instead of at period end
            reason: Cancellation reason code
            feedback: Free-text feedback

        Returns:
            Updated subscription
        """
        now = self.clock()
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            subscription = repo.get_subscription(subscription_id, for_update=True)
            current = SubscriptionStatus(subscription.status)

            if not can_transition(current, SubscriptionStatus.CANCELED):
                raise InvalidTransitionException(subscription_id, current.value,
                                                 SubscriptionStatus.CANCELED.value,
                                                 operation="cancel_subscription")
            if not cancel_immediately and subscription.cancel_at_period_end:
                raise ValidationException(
                    f"Subscription {subscription_id} is already scheduled to cancel",
                    entity_id=subscription_id, operation="cancel_subscription"
                )

            if self.gateway and subscription.gateway_subscription_id:
                self.gateway.cancel_subscription(
                    subscription.gateway_subscription_id, at_period_end=not cancel_immediately
                )

            if cancel_immediately:
                transition(subscription, SubscriptionStatus.CANCELED, now)
                subscription.ended_at = now
                subscription.cancel_at = None
            else:
                subscription.cancel_at_period_end = True
                subscription.cancel_at = subscription.current_period_end
                subscription.canceled_at = now

            if reason or feedback:
                repo.add_cancellation_feedback(subscription_id, reason, feedback, cancel_immediately)

            repo.flush(subscription_id, "cancel_subscription")

        logger.info(
            f"Canceled subscription {subscription_id} "
            f"({'immediately' if cancel_immediately else 'at period end'}, reason={reason})"
        )

        if reason and reason in self.settings.win_back_reasons:
            self.scheduler.schedule_many(
                "win_back_campaign",
                win_back_runs(
                    subscription_id,
                    subscription.organization_id,
                    reason,
                    self.settings.win_back_step_days,
                    self.settings.win_back_offer_valid_days,
                    now=now
                )
            )

        self.notifications.notify(
            subscription.organization_id,
            "Subscription canceled" if cancel_immediately else "Subscription cancellation scheduled",
            "Your subscription has ended." if cancel_immediately else
            f"Your subscription will end on {subscription.current_period_end:%Y-%m-%d}.",
            severity=NotificationSeverity.WARNING,
            data={"subscription_id": subscription_id, "reason": reason}
        )
        self._publish(
            "subscription.canceled" if cancel_immediately else "subscription.updated", subscription
        )
        return subscription

    def resume_subscription(self, subscription_id: str) -> Subscription:
        """
        Undo a scheduled cancellation

        Raises:
            ValidationException: If no cancellation is scheduled
        """
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            subscription = repo.get_subscription(subscription_id, for_update=True)
            if subscription.status == SubscriptionStatus.CANCELED or not subscription.cancel_at_period_end:
                raise ValidationException(
                    f"Subscription {subscription_id} is not scheduled for cancellation",
                    entity_id=subscription_id, operation="resume_subscription"
                )

            if self.gateway and subscription.gateway_subscription_id:
                self.gateway.resume_subscription(subscription.gateway_subscription_id)

            subscription.cancel_at_period_end = False
            subscription.cancel_at = None
            subscription.canceled_at = None
            repo.flush(subscription_id, "resume_subscription")

        logger.info(f"Resumed subscription {subscription_id}")
        self._publish("subscription.updated", subscription)
        return subscription

    def pause_subscription(self, subscription_id: str) -> Subscription:
        """Pause billing; usage keeps being recorded"""
        return self._set_paused(subscription_id, paused=True)

    def unpause_subscription(self, subscription_id: str) -> Subscription:
        """Resume billing of a paused subscription"""
        return self._set_paused(subscription_id, paused=False)

    def activate_subscription(self, subscription_id: str) -> Subscription:
        """Activate a pending subscription once its first payment is settled"""
        now = self.clock()
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            subscription = repo.get_subscription(subscription_id, for_update=True)
            if subscription.status != SubscriptionStatus.PENDING:
                raise InvalidTransitionException(subscription_id, subscription.status.value,
                                                 SubscriptionStatus.ACTIVE.value,
                                                 operation="activate_subscription")
            transition(subscription, SubscriptionStatus.ACTIVE, now)
            repo.flush(subscription_id, "activate_subscription")

        self._publish("subscription.updated", subscription)
        return subscription

    def apply_billing_cycle(self, subscription_id: str, period_start: datetime,
                            period_end: datetime) -> Subscription:
        """
        Apply a billing-cycle boundary

        Ends a subscription scheduled to cancel once the new period starts at
        or after its current period end; otherwise rolls the period forward.
        """
        now = self.clock()
        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            subscription = repo.get_subscription(subscription_id, for_update=True)
            if subscription.status == SubscriptionStatus.CANCELED:
                return subscription
            changed = apply_period(subscription, period_start, period_end, now)
            repo.flush(subscription_id, "apply_billing_cycle")

        if changed:
            event = (
                "subscription.canceled" if subscription.status == SubscriptionStatus.CANCELED
                else "subscription.renewed"
            )
            self._publish(event, subscription)
        return subscription

    def _set_paused(self, subscription_id: str, paused: bool) -> Subscription:
        target = SubscriptionStatus.PAUSED if paused else SubscriptionStatus.ACTIVE
        operation = "pause_subscription" if paused else "unpause_subscription"
        now = self.clock()

        with session_scope(self.session_factory) as session:
            repo = BillingRepository(session)
            subscription = repo.get_subscription(subscription_id, for_update=True)
            current = SubscriptionStatus(subscription.status)

            if paused:
                allowed = can_transition(current, target)
            else:
                allowed = current == SubscriptionStatus.PAUSED
            if not allowed:
                raise InvalidTransitionException(subscription_id, current.value, target.value,
                                                 operation=operation)

            if self.gateway and subscription.gateway_subscription_id:
                if paused:
                    self.gateway.pause_subscription(subscription.gateway_subscription_id)
                else:
                    self.gateway.unpause_subscription(subscription.gateway_subscription_id)

            transition(subscription, target, now)
            repo.flush(subscription_id, operation)

        logger.info(f"{'Paused' if paused else 'Unpaused'} subscription {subscription_id}")
        self._publish("subscription.updated", subscription)
        return subscription

    def _publish(self, event: str, subscription: Subscription) -> None:
        if self.event_publisher is None:
            return
        try:
            self.event_publisher.enqueue_event(event, subscription_payload(subscription))
        except SQLAlchemyError as e:
            logger.error(f"Failed to enqueue {event} for subscription {subscription.id}: {e}")
