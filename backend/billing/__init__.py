"""
Billing Engine Module

This module handles billing computation, subscription lifecycle management,
usage metering and webhook reliability for organizations.

Features:
- Pricing and proration in integer minor units
- Subscription lifecycle state machine
- Usage metering, limits and gateway reconciliation
- Idempotent inbound Stripe webhooks
- Signed outbound webhooks with persisted retries
"""

from .stripe_client import StripeClient
from .gateway import GatewaySubscription, PaymentGateway
from .subscription_manager import SubscriptionManager
from .usage_tracker import UsageTracker
from .promotions import PromotionService
from .webhook_dispatcher import WebhookDispatcher
from .webhook_handler import WebhookEventHandler, create_webhook_handler
from .pricing import calculate_price, calculate_proration
from .models import (
    PlanChangeImpact,
    PlanChangeParams,
    PriceBreakdown,
    PricingOptions,
    SubscriptionParams,
    UsageLimitStatus
)
from .exceptions import (
    BillingException,
    ConcurrencyConflictException,
    ExternalServiceException,
    InvalidTransitionException,
    SubscriptionNotFoundException,
    ValidationException,
    WebhookProcessingException,
    WebhookVerificationException
)

__all__ = [
    "StripeClient",
    "GatewaySubscription",
    "PaymentGateway",
    "SubscriptionManager",
    "UsageTracker",
    "PromotionService",
    "WebhookDispatcher",
    "WebhookEventHandler",
    "create_webhook_handler",
    "calculate_price",
    "calculate_proration",
    "PlanChangeImpact",
    "PlanChangeParams",
    "PriceBreakdown",
    "PricingOptions",
    "SubscriptionParams",
    "UsageLimitStatus",
    "BillingException",
    "ConcurrencyConflictException",
    "ExternalServiceException",
    "InvalidTransitionException",
    "SubscriptionNotFoundException",
    "ValidationException",
    "WebhookProcessingException",
    "WebhookVerificationException"
]
