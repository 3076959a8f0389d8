"""
Stripe API client for billing
Stripe integration for subscriptions, proration previews, metered usage and webhooks.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import stripe

from .exceptions import StripeException, WebhookVerificationException
from .gateway import GatewaySubscription, PaymentGateway
from .stripe_config import StripeConfig, get_stripe_config
from ..utils.clock import from_timestamp, to_timestamp


logger = logging.getLogger(__name__)


def _wrap_error(operation: str, error: "stripe.StripeError", entity_id: str = None) -> StripeException:
    logger.error(f"Stripe {operation} failed: {error}")
    error_type = None
    if getattr(error, "error", None) is not None:
        error_type = getattr(error.error, "type", None)
    return StripeException(
        message=str(error),
        stripe_error_code=getattr(error, "code", None),
        stripe_error_type=error_type,
        entity_id=entity_id,
        operation=operation,
        cause=error
    )


def _to_gateway_subscription(subscription: Any) -> GatewaySubscription:
    items = {}
    for item in subscription["items"]["data"] if subscription.get("items") else []:
        items[item["price"]["id"]] = item["id"]

    return GatewaySubscription(
        id=subscription["id"],
        status=subscription["status"],
        current_period_start=from_timestamp(subscription.get("current_period_start")),
        current_period_end=from_timestamp(subscription.get("current_period_end")),
        trial_end=from_timestamp(subscription.get("trial_end")),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        canceled_at=from_timestamp(subscription.get("canceled_at")),
        items=items
    )


class StripeClient(PaymentGateway):
    """
    Stripe API client for subscriptions and metered billing.

    Features:
    - Environment-aware configuration
    - Stripe errors wrapped in ``StripeException``
    - Idempotency keys on usage reporting
    - Webhook signature verification
    """

    def __init__(self, config: StripeConfig = None, api_key: str = None, webhook_secret: str = None):
        """
        Initialize Stripe client

        Args:
            config: Stripe configuration (loaded from the environment if not provided)
            api_key: Stripe secret API key override
            webhook_secret: Stripe webhook endpoint secret override
        """
        self.config = config or get_stripe_config()

        self.api_key = api_key or self.config.secret_key
        self.webhook_secret = webhook_secret or self.config.webhook_secret

        stripe.api_key = self.api_key
        stripe.api_version = self.config.api_version
        stripe.max_network_retries = self.config.max_retries

        logger.info(f"Stripe client initialized for {self.config.environment.value} environment")

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        quantity: int = 1,
        trial_period_days: Optional[int] = None,
        metered_price_ids: Optional[List[str]] = None,
        coupon_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None
    ) -> GatewaySubscription:
        """
        Create a Stripe subscription

        Args:
            customer_id: Stripe customer ID
            price_id: Stripe price ID of the plan
            quantity: Seats/units of the plan price
            trial_period_days: Trial period in days
            metered_price_ids: Metered prices added as extra items
            coupon_id: Stripe coupon to apply
            metadata: Additional metadata

        Returns:
            Created subscription

        Raises:
            StripeException: If creation fails
        """
        items = [{"price": price_id, "quantity": quantity}]
        items.extend({"price": metered} for metered in metered_price_ids or [])

        params = {
            "customer": customer_id,
            "items": items,
            "metadata": metadata or {}
        }
        if trial_period_days:
            params["trial_period_days"] = trial_period_days
        if coupon_id:
            params["coupon"] = coupon_id

        try:
            subscription = stripe.Subscription.create(**params)
        except stripe.StripeError as e:
            raise _wrap_error("create_subscription", e, entity_id=customer_id)

        logger.info(f"Created Stripe subscription: {subscription['id']}")
        return _to_gateway_subscription(subscription)

    def update_subscription_plan(
        self,
        subscription_id: str,
        item_id: str,
        price_id: str,
        quantity: int,
        proration_behavior: str,
        proration_date: Optional[datetime] = None
    ) -> GatewaySubscription:
        """
        Swap the plan price of a subscription

        Args:
            subscription_id: Stripe subscription ID
            item_id: Subscription item carrying the plan price
            price_id: New Stripe price ID
            quantity: New quantity
            proration_behavior: ``always_invoice`` or ``create_prorations``
            proration_date: Instant proration is computed at

        Returns:
            Updated subscription
        """
        params = {
            "items": [{"id": item_id, "price": price_id, "quantity": quantity}],
            "proration_behavior": proration_behavior
        }
        if proration_date:
            params["proration_date"] = to_timestamp(proration_date)

        try:
            subscription = stripe.Subscription.modify(subscription_id, **params)
        except stripe.StripeError as e:
            raise _wrap_error("update_subscription_plan", e, entity_id=subscription_id)

        logger.info(f"Updated Stripe subscription {subscription_id} to price {price_id}")
        return _to_gateway_subscription(subscription)

    def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> GatewaySubscription:
        """
        Cancel a Stripe subscription

        Args:
            subscription_id: Stripe subscription ID
            at_period_end: Whether to cancel at period end

        Returns:
            Updated subscription
        """
        try:
            if at_period_end:
                subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
            else:
                subscription = stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            raise _wrap_error("cancel_subscription", e, entity_id=subscription_id)

        logger.info(f"Canceled Stripe subscription: {subscription_id} (at_period_end={at_period_end})")
        return _to_gateway_subscription(subscription)

    def resume_subscription(self, subscription_id: str) -> GatewaySubscription:
        """Undo a scheduled cancellation"""
        try:
            subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=False)
        except stripe.StripeError as e:
            raise _wrap_error("resume_subscription", e, entity_id=subscription_id)

        logger.info(f"Resumed Stripe subscription: {subscription_id}")
        return _to_gateway_subscription(subscription)

    def pause_subscription(self, subscription_id: str) -> GatewaySubscription:
        """Stop collecting payments; invoices are voided while paused"""
        try:
            subscription = stripe.Subscription.modify(
                subscription_id, pause_collection={"behavior": "void"}
            )
        except stripe.StripeError as e:
            raise _wrap_error("pause_subscription", e, entity_id=subscription_id)

        logger.info(f"Paused Stripe subscription: {subscription_id}")
        return _to_gateway_subscription(subscription)

    def unpause_subscription(self, subscription_id: str) -> GatewaySubscription:
        """Resume payment collection"""
        try:
            subscription = stripe.Subscription.modify(subscription_id, pause_collection="")
        except stripe.StripeError as e:
            raise _wrap_error("unpause_subscription", e, entity_id=subscription_id)

        logger.info(f"Unpaused Stripe subscription: {subscription_id}")
        return _to_gateway_subscription(subscription)

    def apply_coupon(self, subscription_id: str, coupon_id: str) -> GatewaySubscription:
        """Attach a Stripe coupon to a subscription"""
        try:
            subscription = stripe.Subscription.modify(subscription_id, coupon=coupon_id)
        except stripe.StripeError as e:
            raise _wrap_error("apply_coupon", e, entity_id=subscription_id)

        logger.info(f"Applied coupon {coupon_id} to Stripe subscription {subscription_id}")
        return _to_gateway_subscription(subscription)

    def preview_proration(
        self,
        customer_id: str,
        subscription_id: str,
        item_id: str,
        price_id: str,
        quantity: int,
        proration_date: Optional[datetime] = None
    ) -> int:
        """
        Preview the upcoming invoice of a plan change

        Returns:
            Amount due in minor units
        """
        params = {
            "customer": customer_id,
            "subscription": subscription_id,
            "subscription_items": [{"id": item_id, "price": price_id, "quantity": quantity}]
        }
        if proration_date:
            params["subscription_proration_date"] = to_timestamp(proration_date)

        try:
            invoice = stripe.Invoice.upcoming(**params)
        except stripe.StripeError as e:
            raise _wrap_error("preview_proration", e, entity_id=subscription_id)

        return int(invoice["amount_due"])

    def create_usage_record(
        self,
        item_id: str,
        quantity: int,
        timestamp: datetime,
        idempotency_key: str
    ) -> str:
        """
        Report metered usage as an increment

        Args:
            item_id: Metered subscription item
            quantity: Units consumed
            timestamp: When the usage happened
            idempotency_key: Key Stripe deduplicates retries by

        Returns:
            Stripe usage record ID
        """
        try:
            record = stripe.SubscriptionItem.create_usage_record(
                item_id,
                quantity=quantity,
                timestamp=to_timestamp(timestamp),
                action="increment",
                idempotency_key=idempotency_key
            )
        except stripe.StripeError as e:
            raise _wrap_error("create_usage_record", e, entity_id=item_id)

        logger.info(f"Reported {quantity} units to Stripe item {item_id} ({idempotency_key})")
        return record["id"]

    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        """Fetch a Stripe customer"""
        try:
            customer = stripe.Customer.retrieve(customer_id)
        except stripe.StripeError as e:
            raise _wrap_error("retrieve_customer", e, entity_id=customer_id)

        return {
            "id": customer["id"],
            "email": customer.get("email"),
            "name": customer.get("name"),
            "metadata": dict(customer.get("metadata") or {})
        }

    def verify_webhook_signature(self, payload: str, signature: str) -> Dict[str, Any]:
        """
        Verify Stripe webhook signature and parse event

        Args:
            payload: Webhook payload
            signature: Stripe signature header

        Returns:
            Parsed webhook event

        Raises:
            WebhookVerificationException: If verification fails
        """
        if not self.webhook_secret:
            raise WebhookVerificationException("Webhook secret not configured")

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise WebhookVerificationException("Invalid payload", cause=e)
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid webhook signature: {e}")
            raise WebhookVerificationException("Invalid signature", cause=e)

        logger.info(f"Verified webhook event: {event['type']}")
        return event
