"""
Database Models Package

Persistence models for the billing engine.
"""

from .base import Base, BaseModel
from .enums import (
    BillingInterval,
    DeliveryStatus,
    JobStatus,
    MemberRole,
    NotificationSeverity,
    PricingType,
    PromotionType,
    SubscriptionStatus,
    UsageAlertLevel,
    UsageReportStatus
)
from .organization import Organization, OrganizationMember
from .pricing import Feature, PlanFeature, PricingPlan, PricingTier
from .promotion import Coupon, Promotion
from .subscription import CancellationFeedback, Subscription
from .usage import UsageAlert, UsageRecord, UsageReport
from .webhook import ProcessedWebhookEvent, WebhookDelivery, WebhookSubscription
from .notification import Notification, ScheduledJob
from .billing_event import BillingEvent

__all__ = [
    "Base",
    "BaseModel",
    "BillingInterval",
    "DeliveryStatus",
    "JobStatus",
    "MemberRole",
    "NotificationSeverity",
    "PricingType",
    "PromotionType",
    "SubscriptionStatus",
    "UsageAlertLevel",
    "UsageReportStatus",
    "Organization",
    "OrganizationMember",
    "Feature",
    "PlanFeature",
    "PricingPlan",
    "PricingTier",
    "Coupon",
    "Promotion",
    "CancellationFeedback",
    "Subscription",
    "UsageAlert",
    "UsageRecord",
    "UsageReport",
    "ProcessedWebhookEvent",
    "WebhookDelivery",
    "WebhookSubscription",
    "Notification",
    "ScheduledJob",
    "BillingEvent"
]
